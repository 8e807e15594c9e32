"""
Authentication Provider

Email/password and anonymous identities stored in MongoDB.
Passwords are bcrypt hashed; the active session is a JWT kept in the
local identity store so it survives restarts.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

import jwt
from pymongo.errors import DuplicateKeyError

from utils.auth import create_token, decode_token, hash_password, verify_password

from .config import COLLECTIONS, REMOTE_CALL_TIMEOUT_SECONDS
from .errors import AuthError, EmailAlreadyInUse, InvalidCredentials
from .models import AuthIdentity
from .remote import bounded_call

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class MongoAuthProvider:
    """Identity provider backed by the auth_identities collection."""

    def __init__(self, db, session_store, jwt_secret: Optional[str] = None,
                 timeout_seconds: float = REMOTE_CALL_TIMEOUT_SECONDS):
        self.identities = getattr(db, COLLECTIONS["auth_identities"])
        self.session_store = session_store
        self.jwt_secret = jwt_secret
        self.timeout_seconds = timeout_seconds
        self._current: Optional[AuthIdentity] = None

    async def _call(self, operation: str, awaitable):
        return await bounded_call(operation, awaitable, self.timeout_seconds)

    def _start_session(self, identity: AuthIdentity) -> AuthIdentity:
        self.session_store.set_session_token(create_token(identity, self.jwt_secret))
        self._current = identity
        return identity

    @staticmethod
    def _to_identity(doc: dict) -> AuthIdentity:
        return AuthIdentity(
            uid=doc["uid"],
            email=doc.get("email"),
            display_name=doc.get("display_name"),
            is_anonymous=doc.get("is_anonymous", False),
            is_admin=doc.get("is_admin", False)
        )

    def current_identity(self) -> Optional[AuthIdentity]:
        """Identity of the persisted session, or None."""
        if self._current:
            return self._current

        token = self.session_store.get_session_token()
        if not token:
            return None
        try:
            self._current = decode_token(token, self.jwt_secret)
        except jwt.InvalidTokenError as e:
            logger.info(f"Discarding stored session: {e}")
            self.session_store.clear_session_token()
            return None
        return self._current

    async def sign_up(self, email: str, password: str, display_name: Optional[str] = None) -> AuthIdentity:
        email = _normalize_email(email)
        if not email or "@" not in email:
            raise AuthError("A valid email address is required")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise AuthError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        existing = await self._call("find_identity", self.identities.find_one({"email": email}, {"_id": 0}))
        if existing:
            raise EmailAlreadyInUse()

        identity = AuthIdentity(uid=str(uuid.uuid4()), email=email, display_name=display_name)
        doc = {
            **identity.model_dump(),
            "password_hash": hash_password(password),
            "created_at": datetime.now(timezone.utc).isoformat()
        }
        try:
            await self._call("create_identity", self.identities.insert_one(doc))
        except DuplicateKeyError:
            raise EmailAlreadyInUse()

        logger.info(f"Signed up {identity.uid}")
        return self._start_session(identity)

    async def sign_in(self, email: str, password: str) -> AuthIdentity:
        email = _normalize_email(email)
        doc = await self._call("find_identity", self.identities.find_one({"email": email}, {"_id": 0}))
        if not doc or not doc.get("password_hash") or not verify_password(password or "", doc["password_hash"]):
            raise InvalidCredentials()

        logger.info(f"Signed in {doc['uid']}")
        return self._start_session(self._to_identity(doc))

    async def sign_in_anonymously(self) -> AuthIdentity:
        current = self.current_identity()
        if current and current.is_anonymous:
            return current

        identity = AuthIdentity(uid=str(uuid.uuid4()), is_anonymous=True)
        doc = {**identity.model_dump(), "created_at": datetime.now(timezone.utc).isoformat()}
        await self._call("create_identity", self.identities.insert_one(doc))
        logger.info(f"Created anonymous identity {identity.uid}")
        return self._start_session(identity)

    def sign_out(self) -> None:
        self._current = None
        self.session_store.clear_session_token()

    async def delete(self, uid: str) -> None:
        await self._call("delete_identity", self.identities.delete_one({"uid": uid}))
        if self._current and self._current.uid == uid:
            self.sign_out()
        logger.info(f"Deleted identity {uid}")
