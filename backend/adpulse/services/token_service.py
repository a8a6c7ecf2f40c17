"""Token service for encrypting, inspecting and refreshing provider credentials.

WHAT:
    Encapsulates how tokens are attached to connections, how their expiry is
    classified, and how Meta long-lived tokens are refreshed.

WHY:
    - Keeps encryption logic out of routers.
    - Refresh bookkeeping (attempt counter, reconnect flag) lives in one place.

REFERENCES:
    - adpulse/security.py (TokenCipher)
    - adpulse/services/meta_ads_client.py (exchange_long_lived_token)
    - adpulse/routers/tokens.py
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Callable, Dict, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from adpulse.models import Connection, ConnectionStatus, Token
from adpulse.security import TokenCipher
from adpulse.services.meta_ads_client import (
    REQUIRED_PERMISSIONS,
    LongLivedToken,
    MetaAdsAuthenticationError,
    MetaAdsClient,
    MetaAdsClientError,
    has_required_permissions,
)

logger = logging.getLogger(__name__)

# Meta long-lived tokens last ~60 days from issue
ESTIMATED_TOKEN_LIFETIME = timedelta(days=60)
REFRESH_THRESHOLD = timedelta(hours=1)
DEFAULT_WARNING_DAYS = 7

TOKEN_VALID = "valid"
TOKEN_EXPIRING_SOON = "expiring_soon"
TOKEN_EXPIRED = "expired"
TOKEN_UNKNOWN = "unknown"

ExchangeFn = Callable[[str], LongLivedToken]


class TokenRefreshError(Exception):
    """Raised when a refresh attempt fails.

    `permanent` is True when the token can no longer be exchanged and the
    user has to reconnect the account.
    """

    def __init__(self, message: str, permanent: bool = False):
        super().__init__(message)
        self.permanent = permanent


def _label(connection: Connection) -> str:
    return f"{connection.provider.value}:{connection.external_account_id}"


def _utcnow() -> datetime:
    return datetime.utcnow()


def store_connection_token(
    db: Session,
    connection: Connection,
    cipher: TokenCipher,
    *,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    scope: Optional[str] = None,
) -> Token:
    """Encrypt and persist tokens for a connection.

    WHAT:
        Creates or updates the `Token` row referenced by the given connection.
    WHY:
        Centralizes encryption + persistence so OAuth and refresh flows share it.

    Returns:
        The Token ORM instance associated with the connection.
    """
    label = _label(connection)
    encrypted_access = (
        cipher.encrypt_secret(access_token, context=f"{label}:access")
        if access_token else None
    )
    encrypted_refresh = (
        cipher.encrypt_secret(refresh_token, context=f"{label}:refresh") if refresh_token else None
    )

    if connection.token:
        token = connection.token
        token.access_token_enc = encrypted_access
        # Meta has no refresh token; keep the stored one unless a new one is given
        if encrypted_refresh:
            token.refresh_token_enc = encrypted_refresh
        token.expires_at = expires_at
        if scope is not None:
            token.scope = scope
        token.updated_at = _utcnow()
        logger.info("[TOKEN_SERVICE] Updated encrypted token for %s", label)
    else:
        token = Token(
            provider=connection.provider,
            access_token_enc=encrypted_access,
            refresh_token_enc=encrypted_refresh,
            expires_at=expires_at,
            scope=scope,
            refresh_attempts=0,
        )
        db.add(token)
        db.flush()
        connection.token_id = token.id
        connection.token = token
        logger.info("[TOKEN_SERVICE] Created encrypted token for %s", label)

    db.add(connection)
    return token


def get_decrypted_token(
    db: Session,
    connection_id: UUID,
    cipher: TokenCipher,
    token_type: str = "access",
) -> Optional[str]:
    """Get decrypted token for a connection.

    Args:
        db: Database session
        connection_id: UUID of the connection
        cipher: Cipher built from TOKEN_ENCRYPTION_KEY
        token_type: "access" or "refresh"

    Returns:
        Decrypted token string, or None if not found / not decryptable
    """
    connection = (
        db.query(Connection)
        .filter(Connection.id == connection_id)
        .first()
    )

    if not connection or not connection.token:
        logger.warning("[TOKEN_SERVICE] No token found for connection %s", connection_id)
        return None

    token = connection.token
    label = _label(connection)

    if token_type == "access":
        ciphertext = token.access_token_enc
    elif token_type == "refresh":
        ciphertext = token.refresh_token_enc
    else:
        logger.error("[TOKEN_SERVICE] Invalid token_type: %s", token_type)
        return None

    if not ciphertext:
        logger.warning("[TOKEN_SERVICE] No %s token for %s", token_type, label)
        return None

    try:
        return cipher.decrypt_secret(ciphertext, context=f"{label}:{token_type}")
    except ValueError as e:
        logger.error("[TOKEN_SERVICE] Failed to decrypt %s token for %s: %s", token_type, label, e)
        return None


def get_token_status(
    token: Optional[Token],
    now: Optional[datetime] = None,
    warning_days: int = DEFAULT_WARNING_DAYS,
    requires_reconnect: bool = False,
) -> Dict[str, object]:
    """Classify a token's expiry.

    WHAT:
        Returns a dict matching `TokenStatusOut`: status (valid,
        expiring_soon, expired, unknown), expiry (estimated as
        updated_at + 60 days when the provider gave none), days left and
        whether a refresh is due.
    """
    now = now or _utcnow()

    if token is None or not token.access_token_enc:
        return {
            "status": TOKEN_UNKNOWN,
            "expires_at": None,
            "expires_at_estimated": False,
            "days_until_expiry": None,
            "needs_refresh": False,
            "refresh_attempts": 0,
            "requires_reconnect": requires_reconnect,
        }

    expires_at, estimated = _effective_expiry(token)
    if expires_at is None:
        status = TOKEN_UNKNOWN
        days_left = None
    else:
        remaining = expires_at - now
        days_left = remaining.days if remaining.total_seconds() > 0 else 0
        if remaining.total_seconds() <= 0:
            status = TOKEN_EXPIRED
        elif remaining <= timedelta(days=warning_days):
            status = TOKEN_EXPIRING_SOON
        else:
            status = TOKEN_VALID

    return {
        "status": status,
        "expires_at": expires_at,
        "expires_at_estimated": estimated,
        "days_until_expiry": days_left,
        "needs_refresh": needs_refresh(token, now),
        "refresh_attempts": token.refresh_attempts or 0,
        "requires_reconnect": requires_reconnect,
    }


def _effective_expiry(token: Token) -> tuple:
    if token.expires_at:
        return token.expires_at, False
    issued = token.updated_at or token.created_at
    if issued:
        return issued + ESTIMATED_TOKEN_LIFETIME, True
    return None, False


def needs_refresh(token: Optional[Token], now: Optional[datetime] = None) -> bool:
    """True when the token expires within one hour or already expired."""
    if token is None:
        return False
    expires_at, _ = _effective_expiry(token)
    if expires_at is None:
        return False
    now = now or _utcnow()
    return expires_at - now <= REFRESH_THRESHOLD


def refresh_connection_token(
    db: Session,
    connection: Connection,
    cipher: TokenCipher,
    exchange: ExchangeFn,
) -> Token:
    """Exchange the stored Meta token for a new long-lived token.

    WHAT:
        Increments `refresh_attempts`, calls `exchange(current_token)`, and
        stores the result. Success resets the counter. An authentication
        failure (Graph code 190) is permanent: the connection is marked
        `token_expired` and `requires_reconnect`.

    Raises:
        TokenRefreshError: refresh failed (see `.permanent`)
    """
    label = _label(connection)
    token = connection.token
    if token is None or not token.access_token_enc:
        raise TokenRefreshError(f"No stored token for {label}", permanent=True)

    current = cipher.decrypt_secret(token.access_token_enc, context=f"{label}:access")

    token.refresh_attempts = (token.refresh_attempts or 0) + 1
    token.last_refresh_at = _utcnow()
    logger.info("[TOKEN_REFRESH] Refreshing token for %s (attempt %s)", label, token.refresh_attempts)

    try:
        refreshed = exchange(current)
    except MetaAdsAuthenticationError as exc:
        token.last_refresh_error = str(exc)
        connection.status = ConnectionStatus.token_expired
        connection.requires_reconnect = True
        db.add_all([token, connection])
        db.commit()
        logger.warning("[TOKEN_REFRESH] Token for %s is no longer valid; reconnect required", label)
        raise TokenRefreshError(str(exc), permanent=True) from exc
    except MetaAdsClientError as exc:
        token.last_refresh_error = str(exc)
        db.add(token)
        db.commit()
        logger.warning("[TOKEN_REFRESH] Refresh failed for %s: %s", label, exc)
        raise TokenRefreshError(str(exc)) from exc

    store_connection_token(
        db,
        connection,
        cipher,
        access_token=refreshed.access_token,
        expires_at=refreshed.expires_at,
    )
    token.refresh_attempts = 0
    token.last_refresh_error = None
    connection.requires_reconnect = False
    if connection.status == ConnectionStatus.token_expired:
        connection.status = ConnectionStatus.active
    db.commit()
    db.refresh(token)

    logger.info("[TOKEN_REFRESH] Token refreshed for %s (expires %s)", label, refreshed.expires_at)
    return token


def check_and_auto_refresh(
    db: Session,
    connection: Connection,
    cipher: TokenCipher,
    exchange: ExchangeFn,
    now: Optional[datetime] = None,
    warning_days: int = DEFAULT_WARNING_DAYS,
) -> bool:
    """Refresh only when the token is expiring soon or due for refresh.

    Returns:
        True if a refresh happened.
    """
    status = get_token_status(connection.token, now=now, warning_days=warning_days)
    if status["status"] != TOKEN_EXPIRING_SOON and not status["needs_refresh"]:
        return False
    if connection.requires_reconnect:
        logger.info("[TOKEN_REFRESH] Skipping %s: reconnect required", _label(connection))
        return False

    refresh_connection_token(db, connection, cipher, exchange)
    return True


class TokenPermissionError(Exception):
    """Raised when a token lacks ads_read / ads_management."""

    def __init__(self, missing: Sequence[str]):
        super().__init__(f"Token is missing required permissions: {', '.join(missing)}")
        self.missing = list(missing)


def exchange_and_store_token(
    db: Session,
    connection: Connection,
    cipher: TokenCipher,
    client: MetaAdsClient,
    short_lived_token: str,
) -> Token:
    """Swap a short-lived Meta token for a long-lived one and store it.

    WHAT:
        Exchanges the token, checks it with debug_token (validity and the
        ads_read / ads_management scopes), then stores it encrypted and
        clears any reconnect flag on the connection.

    Raises:
        TokenRefreshError: exchanged token is invalid (permanent)
        TokenPermissionError: required scopes are missing
        MetaAdsClientError: Graph API errors from the exchange itself
    """
    label = _label(connection)
    long_lived = client.exchange_long_lived_token(short_lived_token)
    info = client.debug_token(long_lived.access_token)

    if not info.is_valid:
        raise TokenRefreshError(info.error or "Exchanged token is not valid", permanent=True)

    if not has_required_permissions(info.scopes):
        missing = [p for p in REQUIRED_PERMISSIONS if p not in info.scopes]
        logger.warning("[TOKEN_SERVICE] Token for %s is missing scopes: %s", label, missing)
        raise TokenPermissionError(missing)

    token = store_connection_token(
        db,
        connection,
        cipher,
        access_token=long_lived.access_token,
        expires_at=info.expires_at or long_lived.expires_at,
        scope=",".join(info.scopes),
    )
    token.refresh_attempts = 0
    token.last_refresh_error = None
    connection.requires_reconnect = False
    connection.status = ConnectionStatus.active
    db.commit()
    db.refresh(token)

    logger.info("[TOKEN_SERVICE] Stored long-lived token for %s (expires %s)", label, token.expires_at)
    return token
