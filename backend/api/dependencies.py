"""FastAPI dependencies."""

from typing import Optional

from fastapi import Header, HTTPException, Request

from api.services import Services


def get_services(request: Request) -> Services:
    """Components built in the app lifespan."""
    return request.app.state.services


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> str:
    """Caller identity, set by the authentication layer in front of the API."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    return x_user_id
