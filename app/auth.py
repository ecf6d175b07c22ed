import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app import models
from app.database import get_db
from app.errors import AuthenticationRequired, MissingConfiguration, UserNotFound
from app.schemas import AuthenticatedUser

load_dotenv()

ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "10080"))
USER_ROLE = "user"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)


def _jwt_secret() -> str:
    secret = os.getenv("JWT_SECRET", "").strip()
    if not secret:
        raise MissingConfiguration("JWT_SECRET environment variable must be set.")
    return secret


def _auth_cookie_name() -> str:
    return os.getenv("AUTH_COOKIE_NAME", "user_token").strip() or "user_token"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, _jwt_secret(), algorithm=ALGORITHM)


def _decode_principal(token: str) -> AuthenticatedUser:
    try:
        payload = jwt.decode(token, _jwt_secret(), algorithms=[ALGORITHM])
    except JWTError:
        raise AuthenticationRequired(details="Invalid or expired token")

    if payload.get("role") != USER_ROLE:
        raise AuthenticationRequired(details="User access required")

    try:
        user_id = int(payload.get("id"))
    except (TypeError, ValueError):
        raise AuthenticationRequired(details="Token is missing the user id")

    return AuthenticatedUser(
        id=user_id,
        email=str(payload.get("email") or "").strip(),
        name=payload.get("name"),
    )


def get_current_principal(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
) -> AuthenticatedUser:
    cookie_token = (request.cookies.get(_auth_cookie_name()) or "").strip()
    header_token = (token or "").strip()

    # For browser sessions, prefer the HttpOnly cookie over the Authorization header.
    candidate_token = cookie_token or header_token
    if not candidate_token:
        raise AuthenticationRequired(details="User token not found")
    return _decode_principal(candidate_token)


def get_current_user(
    principal: AuthenticatedUser = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> models.User:
    user = db.query(models.User).filter(models.User.id == principal.id).first()
    if user is None:
        raise UserNotFound()
    if not user.is_active:
        raise AuthenticationRequired(details="Inactive user")
    return user
