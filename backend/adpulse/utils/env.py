import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file(path: str = ".env") -> bool:
    """Load environment variables from a local .env file if not already set.

    WHAT:
        Loads variables from `path` into os.environ.
        Does NOT overwrite existing environment variables.
    WHY:
        Process entrypoints (API startup script, scheduler) share one local
        .env for development without overriding production variables.
        Settings are still validated once by `load_settings`.
    """
    # Returns True when the file exists, even if no variables were set
    loaded = load_dotenv(path, override=False)

    if loaded:
        logger.info("Loaded local %s file (existing variables were NOT overwritten)", path)
    else:
        logger.debug("No local %s file found or loaded", path)
    return loaded
