from fastapi import Depends, Header, HTTPException, Query, Request

from models import User
from services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_user(
    authorization: str | None = Header(None),
    token: str | None = Query(None),
    services: Services = Depends(get_services),
) -> User:
    """Bearer token from the header, or ?token= for audio elements that cannot set headers."""
    bearer = None
    if authorization and authorization.startswith("Bearer "):
        bearer = authorization[len("Bearer "):].strip()
    bearer = bearer or token
    if not bearer:
        raise HTTPException(401, "Token not provided")

    user = services.users.get_by_token(bearer)
    if not user:
        raise HTTPException(401, "Invalid token")
    return user


def require_admin(x_admin_token: str = Header(None), services: Services = Depends(get_services)):
    admin_token = services.settings.admin_token
    if not admin_token:
        raise HTTPException(500, "ADMIN_TOKEN not configured")
    if x_admin_token != admin_token:
        raise HTTPException(403, "Invalid admin token")
