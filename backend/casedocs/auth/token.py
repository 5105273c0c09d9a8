"""
JWT Claims — OIDC-Compatible

Supports the two auth providers the platform is deployed behind:

  Provider A: AWS Cognito
    Claims:   sub, email, custom:role, cognito:groups

  Provider B: Auth0
    Claims:   sub, email, https://<namespace>/role

Both sign tokens with RS256; signature verification lives in
auth/middleware.py. This module only turns verified claims into a typed
TokenPayload.

RBAC roles (lowest → highest):
  viewer  - read own cases
  member  - enqueue and run OCR on own documents
  admin   - member + operational reads
  owner   - account owner
  service - scheduler / machine callers; may run the batch processor
"""

from __future__ import annotations

import logging
from uuid import UUID

from pydantic import BaseModel

logger = logging.getLogger(__name__)

ROLE_RANK: dict[str, int] = {
    "viewer":  0,
    "member":  1,
    "admin":   2,
    "owner":   3,
    "service": 4,
}

DEFAULT_ROLE = "member"


class TokenPayload(BaseModel):
    """Parsed, validated JWT claims — passed to route handlers."""
    sub:     str
    email:   str = ""
    role:    str            # viewer | member | admin | owner | service
    exp:     int
    iss:     str
    user_id: UUID | None = None   # sub as UUID; None only for service callers

    @property
    def is_service(self) -> bool:
        return self.role == "service"


def has_role(user_role: str, required_role: str) -> bool:
    """Return True if user_role meets or exceeds required_role."""
    return ROLE_RANK.get(user_role, -1) >= ROLE_RANK.get(required_role, 999)


def extract_role(claims: dict, namespace: str = "") -> str:
    """
    Extract RBAC role from JWT claims.

    A token with no role claim is an ordinary signed-in user (member).
    A role outside ROLE_RANK is downgraded to viewer.
    """
    role = claims.get("custom:role") or claims.get("role")
    if not role and namespace:
        role = claims.get(f"{namespace.rstrip('/')}/role")
    if not role and "cognito:groups" in claims:
        groups = claims["cognito:groups"]
        role = groups[0] if groups else None

    if not role:
        return DEFAULT_ROLE
    if role not in ROLE_RANK:
        logger.warning("Unknown role %r in token, defaulting to viewer", role)
        return "viewer"
    return role


def extract_user_id(claims: dict) -> UUID | None:
    """sub as a UUID, or None when the provider's subject is not a UUID."""
    raw = claims.get("user_id") or claims.get("sub")
    try:
        return UUID(str(raw))
    except (ValueError, TypeError):
        return None
