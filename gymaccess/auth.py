"""
Bearer-token authentication and role lookups for staff actions.
"""
import hashlib
import logging
import secrets
from typing import Iterable, List, Optional

from .errors import NotAuthenticatedError, PermissionDeniedError
from .models import ApiToken, UserRole

logger = logging.getLogger(__name__)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenAuthenticator:
    """Resolves ``Authorization: Bearer`` headers to user ids."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def issue_token(self, user_id: str) -> str:
        """Create a token for a user. The raw value is returned once and never stored."""
        token = secrets.token_urlsafe(32)
        db = self.session_factory()
        try:
            db.add(ApiToken(token_hash=hash_token(token), user_id=user_id))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return token

    def revoke_token(self, token: str) -> bool:
        db = self.session_factory()
        try:
            row = db.query(ApiToken).filter(ApiToken.token_hash == hash_token(token)).first()
            if not row:
                return False
            row.revoked = True
            db.commit()
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def resolve_user(self, authorization: Optional[str]) -> str:
        """Return the user id behind a bearer header or raise NotAuthenticatedError."""
        if not authorization or not authorization.startswith("Bearer "):
            raise NotAuthenticatedError()
        token = authorization[len("Bearer "):].strip()
        if not token:
            raise NotAuthenticatedError()

        db = self.session_factory()
        try:
            row = db.query(ApiToken).filter(
                ApiToken.token_hash == hash_token(token),
                ApiToken.revoked == False,
            ).first()
        finally:
            db.close()

        if not row:
            logger.info("Rejected unknown or revoked bearer token")
            raise NotAuthenticatedError()
        return row.user_id

    def get_user_roles(self, user_id: str) -> List[str]:
        db = self.session_factory()
        try:
            return [r.role for r in db.query(UserRole).filter(UserRole.user_id == user_id).all()]
        finally:
            db.close()

    def require_role(self, user_id: str, allowed: Iterable[str]) -> List[str]:
        """Raise PermissionDeniedError unless the user holds one of ``allowed``."""
        roles = self.get_user_roles(user_id)
        allowed = set(allowed)
        if not any(role in allowed for role in roles):
            logger.info("User %s with roles %s lacks one of %s", user_id, roles, sorted(allowed))
            raise PermissionDeniedError()
        return roles
