from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from .services.controller import CheckoutManager


def bearer_token(authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    """Bearer token issued by the identity provider, or None when absent."""
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def require_bearer_token(token: Optional[str] = Depends(bearer_token)) -> str:
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return token


def get_manager(request: Request) -> CheckoutManager:
    return request.app.state.manager
