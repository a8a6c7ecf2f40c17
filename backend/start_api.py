#!/usr/bin/env python3
"""
adpulse API Startup Script

Loads backend/.env (without overriding exported variables) and starts the
adpulse FastAPI server through the app factory.
"""

import sys

import uvicorn

from adpulse.utils.env import load_env_file


def main():
    """Start the adpulse API server."""
    load_env_file()
    print("Starting adpulse API Server...")
    print("Documentation will be available at:")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    try:
        uvicorn.run(
            "adpulse.main:create_app",
            factory=True,
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["adpulse"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down adpulse API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
