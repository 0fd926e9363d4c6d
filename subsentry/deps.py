from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from subsentry.db import get_db
from subsentry.services.wiring import Services, for_session


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Acting user from the X-User-Id header; authentication lives upstream."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    return x_user_id.strip()


def get_services(db: Session = Depends(get_db)) -> Services:
    return for_session(db)
