"""
Authentication utilities
"""
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import bcrypt
from datetime import datetime, timezone, timedelta
import os

from entitlements.models import AuthIdentity

security = HTTPBearer()
JWT_SECRET = os.environ.get('JWT_SECRET', 'nail-credits-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"
SESSION_DAYS = 30


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))

def create_token(identity: AuthIdentity, secret: str = None) -> str:
    payload = {
        "sub": identity.uid,
        "email": identity.email,
        "name": identity.display_name,
        "anonymous": identity.is_anonymous,
        "is_admin": identity.is_admin,
        "exp": datetime.now(timezone.utc) + timedelta(days=SESSION_DAYS)
    }
    return jwt.encode(payload, secret or JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str, secret: str = None) -> AuthIdentity:
    """Decode a session token. Raises jwt.InvalidTokenError (incl. expiry)."""
    payload = jwt.decode(token, secret or JWT_SECRET, algorithms=[JWT_ALGORITHM])
    uid = payload.get("sub")
    if not uid:
        raise jwt.InvalidTokenError("Token has no subject")
    return AuthIdentity(
        uid=uid,
        email=payload.get("email"),
        display_name=payload.get("name"),
        is_anonymous=bool(payload.get("anonymous", False)),
        is_admin=bool(payload.get("is_admin", False))
    )


async def get_current_identity(credentials: HTTPAuthorizationCredentials = Depends(security)) -> AuthIdentity:
    """Verify JWT token and return the caller's identity"""
    try:
        return decode_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_admin_identity(identity: AuthIdentity = Depends(get_current_identity)) -> AuthIdentity:
    """Check if caller is admin"""
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return identity
