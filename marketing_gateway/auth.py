from typing import Optional

from fastapi import HTTPException, Request, status
from pydantic import BaseModel
import secrets

from .settings import Settings


class CurrentUser(BaseModel):
    email: str
    name: Optional[str] = None


def current_user(request: Request) -> CurrentUser:
    """
    Identity comes from the authenticating proxy in front of the gateway;
    it is trusted as-is once the shared secret (if configured) matches.
    """
    settings: Settings = request.app.state.settings

    if settings.GATEWAY_SHARED_SECRET:
        presented = request.headers.get("X-Gateway-Secret", "")
        if not secrets.compare_digest(presented, settings.GATEWAY_SHARED_SECRET):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    email = (request.headers.get(settings.IDENTITY_EMAIL_HEADER) or "").strip().lower()
    if not email:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    domain = (settings.ALLOWED_EMAIL_DOMAIN or "").lower().lstrip("@")
    if domain and not email.endswith(f"@{domain}"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Only @{domain} email addresses are allowed",
        )

    name = request.headers.get(settings.IDENTITY_NAME_HEADER) or None
    return CurrentUser(email=email, name=name)
