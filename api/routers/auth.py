import logging

from deps import get_services
from fastapi import APIRouter, Depends, HTTPException
from models import User
from pydantic import BaseModel
from services import Services
from store import EmailTakenError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth")


class RegisterRequest(BaseModel):
    name: str | None = None
    email: str | None = None
    password: str | None = None


class LoginRequest(BaseModel):
    email: str | None = None
    password: str | None = None


def _user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "active": user.active,
        "created_at": user.created_at,
    }


@router.post("/register")
def register(body: RegisterRequest, services: Services = Depends(get_services)):
    name = (body.name or "").strip()
    email = (body.email or "").strip()
    if not name or not email or not body.password:
        raise HTTPException(400, "name, email and password are required")

    try:
        user, token = services.users.create(name[:100], email, body.password)
    except EmailTakenError:
        raise HTTPException(400, "Email already registered")

    logger.info(f"Registered user {user.id}")
    return {"user": _user_to_dict(user), "token": token}


@router.post("/login")
def login(body: LoginRequest, services: Services = Depends(get_services)):
    result = services.users.authenticate((body.email or "").strip(), body.password or "")
    if not result:
        raise HTTPException(401, "Invalid credentials")
    user, token = result
    return {"user": _user_to_dict(user), "token": token}
