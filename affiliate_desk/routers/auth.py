"""Authentication routes and session management."""
from __future__ import annotations

import os

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from affiliate_desk.auth import User
from affiliate_desk.dependencies import get_current_user, get_db
from affiliate_desk.security import (
    increment_failed_login,
    is_account_locked,
    record_login_attempt,
    reset_failed_login,
)

router = APIRouter(tags=["Auth"])


def _user_payload(user: User) -> dict:
    return {"id": user.id, "username": user.username, "role": user.role}


@router.post("/login")
def login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    db: Session = Depends(get_db),
):
    """Check credentials and set the session cookie."""
    client_ip = request.client.host if request.client else "unknown"

    locked, lock_reason = is_account_locked(db, username)
    if locked:
        record_login_attempt(db, username, False, client_ip)
        raise HTTPException(status_code=403, detail=f"Account locked due to too many failed login attempts. {lock_reason}")

    user = db.execute(select(User).where(User.username == username)).scalars().first()
    if not user or not user.verify_password(password):
        remaining = increment_failed_login(db, username)
        record_login_attempt(db, username, False, client_ip)
        detail = "Invalid username or password"
        if user and remaining > 0:
            detail += f" ({remaining} attempt{'s' if remaining != 1 else ''} remaining)"
        raise HTTPException(status_code=401, detail=detail)

    reset_failed_login(db, username)
    record_login_attempt(db, username, True, client_ip)

    response = JSONResponse(_user_payload(user))
    # Secure cookies only when served behind HTTPS in production.
    is_production = os.getenv("ENVIRONMENT", "development").lower() == "production"
    response.set_cookie(
        key="user_id",
        value=str(user.id),
        httponly=True,
        path="/",
        secure=is_production,
        samesite="lax",
        max_age=86400,
    )
    return response


@router.post("/logout")
def logout():
    response = JSONResponse({"status": "logged out"})
    response.delete_cookie("user_id")
    return response


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return _user_payload(user)
