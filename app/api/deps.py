"""Request-scoped dependencies shared by the routes."""
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.domain import User
from app.models.enums import UserStatus


def get_current_user(
    x_user_id: str = Header(..., alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the acting user.

    Session management lives in the gateway in front of this service,
    which forwards the authenticated user id in X-User-Id.
    """
    user = db.query(User).filter(User.id == x_user_id).first()
    if user is None or user.status != UserStatus.ACTIVE:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown or inactive user")
    return user
