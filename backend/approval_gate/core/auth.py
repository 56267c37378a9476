"""Caller identity resolution for gateway-fronted requests.

The approval service does not authenticate end users itself. The fronting
gateway presents the shared service token as a bearer credential and forwards
the already-authenticated caller in trusted `X-User-*` headers.
"""

from __future__ import annotations

from dataclasses import dataclass
from hmac import compare_digest
from uuid import UUID

from fastapi import HTTPException, Request, status

from approval_gate.core.config import settings
from approval_gate.core.logging import get_logger

logger = get_logger(__name__)

USER_ID_HEADER = "X-User-Id"
USER_NAME_HEADER = "X-User-Name"
USER_EMAIL_HEADER = "X-User-Email"
USER_PROFILE_HEADER = "X-User-Profile"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller snapshot."""

    id: UUID
    name: str = ""
    email: str = ""
    profile: str = ""

    @property
    def is_admin(self) -> bool:
        return self.profile in settings.admin_profile_set


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    value = authorization.strip()
    if not value.lower().startswith("bearer "):
        return None
    token = value[7:].strip()
    return token or None


def _parse_actor(request: Request) -> Actor:
    raw_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    if not raw_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {USER_ID_HEADER} header",
        )
    try:
        user_id = UUID(raw_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid {USER_ID_HEADER} header",
        ) from exc
    return Actor(
        id=user_id,
        name=(request.headers.get(USER_NAME_HEADER) or "").strip(),
        email=(request.headers.get(USER_EMAIL_HEADER) or "").strip(),
        profile=(request.headers.get(USER_PROFILE_HEADER) or "").strip().lower(),
    )


async def get_actor(request: Request) -> Actor:
    """Verify the service token and resolve the calling user."""
    token = _extract_bearer_token(request.headers.get("Authorization"))
    expected = settings.service_token.strip()
    if token is None or not expected or not compare_digest(token, expected):
        logger.info("auth.service_token.rejected", extra={"path": request.url.path})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    return _parse_actor(request)
