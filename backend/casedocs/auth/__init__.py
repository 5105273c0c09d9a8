from casedocs.auth.token import TokenPayload, has_role
from casedocs.auth.middleware import (
    JWTDecoder,
    RoleChecker,
    jwks_cache,
    require_member,
    require_service,
    require_viewer,
)

__all__ = [
    "TokenPayload", "has_role",
    "JWTDecoder", "RoleChecker", "jwks_cache",
    "require_viewer", "require_member", "require_service",
]
