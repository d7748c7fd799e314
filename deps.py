"""
Request identity for the billing API: bearer token -> User -> which
connections and bills that user may act on.
"""
from dataclasses import dataclass
import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError

from models import User
from services import config

SECRET_KEY = config.JWT_SECRET_KEY
REFRESH_SECRET = config.JWT_REFRESH_SECRET
ALGORITHM = config.JWT_ALGORITHM

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="login/access-token")


def decode_subject(token: str, secret: str) -> uuid.UUID:
    """User id from a signed token. ValueError if the token is unusable."""
    try:
        claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
        return uuid.UUID(str(claims["sub"]))
    except (JWTError, KeyError, ValueError) as e:
        raise ValueError("invalid token") from e


async def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    try:
        user = await User.get_or_none(id=decode_subject(token, SECRET_KEY))
    except ValueError:
        user = None
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def get_current_active_user(user: User = Depends(get_current_user)) -> User:
    if user.disabled:
        raise HTTPException(status_code=400, detail="Inactive user")
    return user


async def get_current_admin_user(user: User = Depends(get_current_active_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Not enough permissions")
    return user


@dataclass
class Account:
    """
    The caller as the billing core sees it. Staff act on every connection;
    a citizen only on connections (and so readings and bills) they own.
    """
    user: User

    @property
    def is_staff(self) -> bool:
        return bool(self.user.is_admin)

    @property
    def owner_id(self):
        # None lifts the ownership check in services.billing
        return None if self.is_staff else self.user.id

    @property
    def submitted_by(self) -> str:
        return "STAFF" if self.is_staff else "CITIZEN"

    def owns(self, record) -> bool:
        return self.is_staff or record.user_id == self.user.id

    def scope(self, qs):
        return qs if self.is_staff else qs.filter(user_id=self.user.id)


async def get_account(user: User = Depends(get_current_active_user)) -> Account:
    return Account(user)
