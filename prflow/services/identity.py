"""
Identity adapter: turns a bearer token into an explicit Actor.

Tokens are issued by the external identity provider; this module only
verifies them and resolves the role claim into the Role enum, once.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from jose import jwt, JWTError
import structlog

from prflow.config import settings

logger = structlog.get_logger()


class Role(str, Enum):
    PURCHASING = "purchasing"
    COST_CONTROL = "cost_control"
    GENERAL_MANAGER = "general_manager"
    PROJECT_MANAGER = "project_manager"
    SITE_TEAM = "site_team"
    DIRECTOR = "director"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Accept the slug or a display spelling ("Cost Control", "GM")."""
        if isinstance(value, Role):
            return value
        key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        key = _ROLE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown role: {value!r}") from None


_ROLE_ALIASES = {
    "gm": "general_manager",
    "costcontrol": "cost_control",
    "tim_lapangan": "site_team",
    "field_team": "site_team",
    "pm": "project_manager",
}


@dataclass(frozen=True)
class Actor:
    actor_id: str
    role: Role
    name: Optional[str] = None


class TokenError(Exception):
    """The bearer token could not be turned into an Actor."""


def _verification_key() -> str:
    if settings.JWT_ALGORITHM.upper().startswith("HS"):
        if not settings.JWT_SECRET_KEY:
            raise TokenError("JWT_SECRET_KEY is not configured")
        return settings.JWT_SECRET_KEY
    with open(settings.JWT_PUBLIC_KEY_PATH, "r") as f:
        return f.read()


def resolve_actor(token: str) -> Actor:
    """Verify the token and return the acting principal."""
    options = {"verify_aud": settings.JWT_AUDIENCE is not None}
    try:
        payload = jwt.decode(
            token,
            _verification_key(),
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            options=options,
        )
    except JWTError as e:
        raise TokenError(str(e)) from e

    subject = payload.get("sub")
    if not subject:
        raise TokenError("Token has no subject")
    try:
        role = Role.parse(payload.get("role", ""))
    except ValueError as e:
        raise TokenError(str(e)) from e

    return Actor(actor_id=str(subject), role=role, name=payload.get("name"))
