from datetime import datetime, timedelta, timezone
import secrets

import bcrypt
from jose import jwt

from .settings import settings

INVITATION_TOKEN_BYTES = 32


def hash_password(password: str) -> str:
    """Hash password using bcrypt directly."""
    # bcrypt only looks at the first 72 bytes
    password_bytes = password.encode('utf-8')[:72]
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password_bytes, salt)
    return hashed.decode('utf-8')

def verify_password(password: str, hashed: str) -> bool:
    """Verify password against hash."""
    password_bytes = password.encode('utf-8')[:72]
    return bcrypt.checkpw(password_bytes, hashed.encode('utf-8'))

def create_access_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MIN)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALG)

def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])

def generate_invitation_token() -> str:
    """
    Bearer credential for an invitation link.
    Drawn from the OS CSPRNG; unrelated to the invitation id, timestamps or email.
    """
    return secrets.token_hex(INVITATION_TOKEN_BYTES)
