"""
Shared FastAPI dependencies: the runtime and the authenticated user.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .runtime import Runtime

security = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    id: str
    name: Optional[str] = None
    email: Optional[str] = None


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    runtime: Runtime = Depends(get_runtime),
) -> CurrentUser:
    """
    Resolve the bearer token to a user.

    In "dev" auth mode the token is the user id. In "static" mode it must be
    one of COGNIVAULT_API_TOKENS.
    """
    if credentials is None or not credentials.credentials.strip():
        raise _unauthorized("Missing bearer token")
    token = credentials.credentials.strip()

    settings = runtime.settings
    if settings.auth_mode == "static":
        user_id = settings.api_tokens.get(token)
        if user_id is None:
            raise _unauthorized("Invalid bearer token")
        return CurrentUser(id=user_id)
    return CurrentUser(id=token)
