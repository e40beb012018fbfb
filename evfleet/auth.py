"""Principal resolution.

Credentials are checked upstream; by the time a request reaches the core
the gateway has stamped it with ``X-User-Id`` and ``X-User-Role``.
"""
from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from .database import get_session
from .models import Role, User
from .permissions import Principal


def _header_principal(request: Request) -> Principal:
    uid = request.headers.get("X-User-Id")
    if not uid:
        raise HTTPException(401, "Missing X-User-Id header")
    try:
        principal_id = int(uid)
    except ValueError:
        raise HTTPException(400, "Invalid X-User-Id")
    if principal_id <= 0:
        raise HTTPException(400, "Invalid X-User-Id")

    role = request.headers.get("X-User-Role") or Role.CUSTOMER
    if role not in Role.ALL:
        raise HTTPException(400, f"Invalid X-User-Role: {role}")
    return Principal(principal_id=principal_id, role=role)


def get_principal(
    request: Request,
    session: Session = Depends(get_session),
) -> Principal:
    principal = _header_principal(request)

    # keep the user directory in step with what the gateway tells us
    user: Optional[User] = session.get(User, principal.principal_id)
    name = request.headers.get("X-User-Name")
    if not user:
        user = User(
            id=principal.principal_id,
            name=name or f"User {principal.principal_id}",
            email=request.headers.get("X-User-Email") or f"user{principal.principal_id}@evfleet.local",
            role=principal.role,
        )
        session.add(user)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(409, "Email already registered to another user")
    elif user.role != principal.role or (name and user.name != name):
        user.role = principal.role
        user.name = name or user.name
        session.add(user)
        session.commit()
    return principal
