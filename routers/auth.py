from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import OAuth2PasswordRequestForm
from jose import jwt
from passlib.context import CryptContext

from models import User
from schemas import Token, RefreshRequest
from deps import SECRET_KEY, REFRESH_SECRET, ALGORITHM, decode_subject
from services import config

router = APIRouter(tags=["auth"])
pwd_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


def create_token(data: dict, secret: str, expires: int) -> str:
    return jwt.encode(
        {**data, "exp": datetime.now(tz=timezone.utc) + timedelta(seconds=expires)},
        secret,
        algorithm=ALGORITHM,
    )


def issue_tokens(user: User) -> Token:
    """Access + refresh pair; `is_admin` rides along for the admin UI."""
    claims = {"sub": str(user.id), "is_admin": user.is_admin}
    return Token(
        access_token=create_token(claims, SECRET_KEY, config.ACCESS_TOKEN_SECONDS),
        refresh_token=create_token(claims, REFRESH_SECRET, config.REFRESH_TOKEN_SECONDS),
        token_type="bearer",
    )


async def _authenticate(username: str, password: str) -> User:
    user = await User.get_or_none(username=username)
    if user is None or not pwd_ctx.verify(password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.disabled:
        raise HTTPException(status_code=400, detail="Inactive user")
    return user


@router.post("/login/access-token", response_model=Token)
async def login(form: OAuth2PasswordRequestForm = Depends()):
    return issue_tokens(await _authenticate(form.username, form.password))


@router.post("/login/refresh-token", response_model=Token)
async def refresh_token(payload: RefreshRequest):
    try:
        user = await User.get_or_none(id=decode_subject(payload.refresh_token, REFRESH_SECRET))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    if user is None or user.disabled:
        raise HTTPException(status_code=401, detail="User not found")
    return issue_tokens(user)
