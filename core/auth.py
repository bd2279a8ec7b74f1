import jwt
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from core.config import settings
from core.database import get_db
from core.errors import ErrorCode, ErrorMessage, forbidden
from core.models import User

# tokens are issued by the member auth service, we only verify them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_token_payload(token: str = Depends(oauth2_scheme)) -> dict:
    if not settings.JWT_SECRET:
        raise RuntimeError("JWT_SECRET environment variable is missing")

    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(
    payload: dict = Depends(get_token_payload),
    db: Session = Depends(get_db),
) -> User:
    user_id = payload.get("id") or payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = db.query(User).filter(User.id == str(user_id)).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    return user


def get_current_user_id(user: User = Depends(get_current_user)) -> str:
    return str(user.id)


def require_admin(payload: dict = Depends(get_token_payload)) -> dict:
    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]

    if "admin" not in roles:
        raise forbidden(ErrorCode.AUTH_FORBIDDEN, ErrorMessage.ADMIN_REQUIRED)

    return payload
