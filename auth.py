"""
Credential store and token verifier.

Passwords are bcrypt hashes (passlib); sessions are HS256 JWTs (python-jose)
carrying the user id and email. Tokens are read from the Authorization
header first and from the `token` / `auth-token` cookies otherwise.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from fastapi import Depends, Request
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from config import Settings, get_settings
from database import parse_object_id
from errors import InvalidCredentials, Unauthenticated, Unverified, ValidationError
from schemas import User

logger = logging.getLogger("salon.auth")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

TOKEN_COOKIES = ("token", "auth-token")
VERIFY_PURPOSE = "verify-email"


def hash_password(raw: str) -> str:
    return pwd_context.hash(raw)


def verify_password(raw: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(raw, hashed)
    except (ValueError, TypeError):
        return False


def create_access_token(settings: Settings, user_id: str, email: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "email": email,
        "exp": now + timedelta(minutes=settings.token_expire_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(settings: Settings, token: Optional[str]) -> Optional[dict]:
    """Decode a session token. Returns {"userId", "email"} or None, never raises."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.debug("Token verification failed: %s", e)
        return None
    user_id = payload.get("userId")
    if parse_object_id(user_id) is None:
        return None
    return {"userId": user_id, "email": payload.get("email")}


def extract_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if header:
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    for name in TOKEN_COOKIES:
        value = request.cookies.get(name)
        if value:
            return value
    return None


def get_current_user_id(request: Request, settings: Settings = Depends(get_settings)) -> ObjectId:
    token = extract_token(request)
    if not token:
        raise Unauthenticated("Authentication required")
    decoded = verify_token(settings, token)
    if not decoded:
        raise Unauthenticated("Invalid token")
    return ObjectId(decoded["userId"])


# ----- Account operations -----

def sign_in(db: Database, settings: Settings, email: str, password: str) -> str:
    if not email or not password:
        raise ValidationError("Email and password are required")
    user = db["users"].find_one({"email": email.strip().lower()})
    if not user:
        logger.warning("Failed sign-in for %s", email)
        raise InvalidCredentials()
    if not user.get("isVerified"):
        raise Unverified()
    if not verify_password(password, user.get("password", "")):
        logger.warning("Failed sign-in for %s", email)
        raise InvalidCredentials()
    return create_access_token(settings, str(user["_id"]), user["email"])


def send_verification(email: str, token: str) -> None:
    """Deliver an email-verification token. No mailer is wired in, so it goes to the server log."""
    logger.info("Verification token for %s: %s", email, token)


def sign_up(db: Database, settings: Settings, email: str, password: str, name: Optional[str] = None,
            now: Optional[datetime] = None) -> None:
    """Create an unverified account and send its email-verification token."""
    email = (email or "").strip().lower()
    if not email or not password:
        raise ValidationError("Email and password are required")
    if len(password) < 6:
        raise ValidationError("Password must be at least 6 characters")
    if db["users"].find_one({"email": email}):
        raise ValidationError("An account with this email already exists")
    now = now or datetime.now()
    user = User(email=email, name=name, password=hash_password(password), isVerified=False)
    db["users"].insert_one(user.model_dump() | {"createdAt": now, "updatedAt": now})
    logger.info("Created account %s", email)
    token = jwt.encode(
        {"email": email, "purpose": VERIFY_PURPOSE,
         "exp": datetime.now(timezone.utc) + timedelta(days=1)},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    send_verification(email, token)


def verify_email(db: Database, settings: Settings, token: str) -> str:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise ValidationError("Invalid or expired verification token")
    if payload.get("purpose") != VERIFY_PURPOSE or not payload.get("email"):
        raise ValidationError("Invalid or expired verification token")
    res = db["users"].update_one({"email": payload["email"]}, {"$set": {"isVerified": True}})
    if res.matched_count == 0:
        raise ValidationError("Invalid or expired verification token")
    return payload["email"]
