# core/security.py
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlmodel import Session, select

from core.database import get_session
from core.config import settings
from models.models import Community, User


# ========================================
# 🔑 JWT / APP CONFIG
# ========================================
SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM or "HS256"

# Tokens are issued by the account service; this app only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


# ========================================
# 🔑 Token Helpers
# ========================================
def decode_token(token: str) -> dict:
    """Decode JWT and return payload."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


# ========================================
# 👤 Authentication & Role Checks
# ========================================
def get_current_user(token: str = Depends(oauth2_scheme), session: Session = Depends(get_session)) -> User:
    """Extract user from token and load full record from DB."""
    payload = decode_token(token)
    user_id = payload.get("user_id")
    email = payload.get("sub")

    if not (user_id or email):
        raise HTTPException(status_code=401, detail="Invalid token payload")

    user = None
    if user_id:
        user = session.get(User, user_id)
    if not user and email:
        user = session.exec(select(User).where(User.email == email)).first()

    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_platform_admin(current_user: User = Depends(get_current_user)) -> User:
    """Platform-wide reporting is admin only."""
    if not current_user.is_platform_admin:
        raise HTTPException(status_code=403, detail="Platform admin privileges required")
    return current_user


def ensure_community_access(user: User, community: Optional[Community]) -> Community:
    """Community-scoped reporting: the creator or a platform admin."""
    if community is None:
        raise HTTPException(status_code=404, detail="Community not found")
    if community.creator_id != user.id and not user.is_platform_admin:
        raise HTTPException(status_code=403, detail="Only the community creator can view these analytics")
    return community
