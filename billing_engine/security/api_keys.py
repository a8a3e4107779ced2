"""
API-key authentication for metered endpoints.

Raw keys are shown once at creation and never stored; the database holds
only a SHA-256 hex digest plus a short display prefix.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from flask import current_app, has_app_context
from sqlalchemy.exc import OperationalError

from billing_engine.errors.domain import NotFoundError, TransientStoreError, ValidationError
from billing_engine.extensions import db
from billing_engine.models.api_key import ApiKey
from billing_engine.models.user import User
from billing_engine.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "bek_live"
ALLOWED_SCOPES = ("read", "write")
DISPLAY_PREFIX_HEX = 8


def hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


def generate_api_key(prefix: str = DEFAULT_KEY_PREFIX) -> Tuple[str, str]:
    """Returns (raw_key, key_hash). The raw key is ``<prefix>_<48 hex>``."""
    raw_key = f"{prefix}_{secrets.token_hex(24)}"
    return raw_key, hash_key(raw_key)


def extract_bearer_key(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


@dataclass(frozen=True)
class GateResult:
    ok: bool
    status: int
    error: Optional[str] = None
    user: Optional[User] = None
    key: Optional[ApiKey] = None
    scopes: List[str] = field(default_factory=list)


class ApiKeyGate:
    def authenticate(self, raw_key: Optional[str], required_scope: Optional[str] = None) -> GateResult:
        """
        Resolve a presented key to its owner.

        Failure order: missing (401), unknown (401), revoked (403), owner gone
        (401), scope not granted (403). A revoked key fails even though its
        hash matches.
        """
        if not raw_key:
            return GateResult(ok=False, status=401, error="missing_api_key")

        presented_hash = hash_key(raw_key)
        try:
            key = ApiKey.query.filter_by(key_hash=presented_hash).first()
        except OperationalError as e:
            db.session.rollback()
            raise TransientStoreError("API key store unavailable") from e

        if key is None or not secrets.compare_digest(key.key_hash, presented_hash):
            logger.info("Rejected unknown API key", extra={"key_prefix": raw_key[:len(DEFAULT_KEY_PREFIX) + 9]})
            return GateResult(ok=False, status=401, error="invalid_api_key")

        if key.is_revoked:
            logger.info("Rejected revoked API key", extra={"key_id": key.id, "user_id": key.user_id})
            return GateResult(ok=False, status=403, error="api_key_revoked", key=key)

        user = db.session.get(User, key.user_id) if key.user_id else None
        if user is None:
            logger.warning("API key has no owner", extra={"key_id": key.id})
            return GateResult(ok=False, status=401, error="invalid_api_key_owner", key=key)

        scopes = list(key.scopes or [])
        if required_scope and required_scope not in scopes:
            return GateResult(ok=False, status=403, error="insufficient_scope", user=user, key=key, scopes=scopes)

        return GateResult(ok=True, status=200, user=user, key=key, scopes=scopes)

    # ============================================
    # Key management
    # ============================================

    def create_key(self, user: User, name: Optional[str] = None,
                   scopes: Optional[Sequence[str]] = None) -> Tuple[ApiKey, str]:
        """Create a key for ``user``. Returns (record, raw_key); the raw key is not recoverable later."""
        if scopes is None:
            scopes = self._config("API_KEY_DEFAULT_SCOPES", list(ALLOWED_SCOPES))
        scopes = sorted(set(scopes))
        unknown = [s for s in scopes if s not in ALLOWED_SCOPES]
        if not scopes or unknown:
            raise ValidationError(f"Invalid scopes: {unknown or scopes}", field="scopes")

        name = (name or "").strip() or "default"
        if len(name) > 100:
            raise ValidationError("Key name must be at most 100 characters", field="name")

        prefix = self._config("API_KEY_PREFIX", DEFAULT_KEY_PREFIX)
        raw_key, key_hash = generate_api_key(prefix)
        key = ApiKey(
            user_id=user.id,
            name=name,
            key_hash=key_hash,
            key_prefix=raw_key[:len(prefix) + 1 + DISPLAY_PREFIX_HEX],
            scopes=scopes,
            created_at=utcnow(),
        )
        db.session.add(key)
        db.session.commit()

        logger.info("API key created", extra={"user_id": user.id, "key_id": key.id, "scopes": scopes})
        return key, raw_key

    def revoke_key(self, user_id: str, key_id: int) -> ApiKey:
        key = ApiKey.query.filter_by(id=key_id, user_id=user_id).first()
        if key is None:
            raise NotFoundError(f"API key {key_id} not found")
        if key.revoked_at is None:
            key.revoked_at = utcnow()
            db.session.commit()
            logger.info("API key revoked", extra={"user_id": user_id, "key_id": key_id})
        return key

    def list_keys(self, user_id: str) -> List[ApiKey]:
        return ApiKey.query.filter_by(user_id=user_id).order_by(ApiKey.created_at.desc(), ApiKey.id.desc()).all()

    @staticmethod
    def _config(key, default):
        if has_app_context():
            return current_app.config.get(key, default)
        return default
