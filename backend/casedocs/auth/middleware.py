"""
Bearer-token gates for the casedocs API.

  _JWKSCache   signing keys per issuer, refreshed hourly or on an unknown kid
  JWTDecoder   RS256 verification into a TokenPayload
  RoleChecker  minimum-role gate; require_viewer / require_member /
               require_service are the instances routes depend on

A caller that is not the service account must present a UUID `sub`: that
value is the owner id compared against cases and documents. Rejections log
the X-Request-ID of the failing call.
"""

from __future__ import annotations

import logging
import time

import httpx
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt

from casedocs.auth.token import ROLE_RANK, TokenPayload, extract_role, extract_user_id, has_role
from casedocs.core.config import settings

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=True)


# ─────────────────────────────────────────────────────────────────────────────
# Signing keys
# ─────────────────────────────────────────────────────────────────────────────

class _JWKSCache:
    """Issuer -> (jwks document, monotonic fetch time)."""

    _TTL: int = 3600

    def __init__(self) -> None:
        self._store: dict[str, tuple[dict, float]] = {}

    async def get_signing_key(self, token: str, issuer: str | None = None) -> object:
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except JWTError as exc:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Malformed token header") from exc

        issuer = issuer or settings.auth_issuer
        key = _find_key(await self._fetch(issuer), kid)
        if key is None:
            # Keys may have rotated since the last fetch.
            self._store.pop(issuer, None)
            key = _find_key(await self._fetch(issuer), kid)
        if key is None:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Unknown signing key kid={kid!r}.")
        return key

    async def _fetch(self, issuer: str) -> dict:
        now = time.monotonic()
        cached = self._store.get(issuer)
        if cached and now - cached[1] < self._TTL:
            return cached[0]

        url = f"{issuer.rstrip('/')}/.well-known/jwks.json"
        try:
            async with httpx.AsyncClient(timeout=10.0) as http:
                resp = await http.get(url)
                resp.raise_for_status()
                jwks = resp.json()
        except httpx.HTTPError as exc:
            logger.error("JWKS unavailable | issuer=%s error=%s", issuer, exc)
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED,
                detail="Signing keys are unavailable.",
            ) from exc

        self._store[issuer] = (jwks, now)
        logger.debug("JWKS loaded | issuer=%s keys=%d", issuer, len(jwks.get("keys", [])))
        return jwks

    def clear(self) -> None:
        self._store.clear()


def _find_key(jwks: dict, kid: str | None) -> object | None:
    for key_data in jwks.get("keys", []):
        if key_data.get("kid") == kid:
            return jwk.construct(key_data).public_key()
    return None


jwks_cache = _JWKSCache()


# ─────────────────────────────────────────────────────────────────────────────
# Decoding
# ─────────────────────────────────────────────────────────────────────────────

class JWTDecoder:
    """Dependency that turns a bearer token into a TokenPayload, or raises 401."""

    def __init__(
        self,
        issuer:    str | None = None,
        audience:  str | None = None,
        cache:     _JWKSCache | None = None,
        namespace: str | None = None,
    ) -> None:
        self._issuer    = issuer    or settings.auth_issuer
        self._audience  = audience  or settings.auth_audience
        self._cache     = cache     or jwks_cache
        self._namespace = settings.auth_claim_namespace if namespace is None else namespace

    async def __call__(
        self,
        request:     Request,
        credentials: HTTPAuthorizationCredentials = Depends(_bearer),
    ) -> TokenPayload:
        request_id = request.headers.get("X-Request-ID", "-")
        token = credentials.credentials
        signing_key = await self._cache.get_signing_key(token, issuer=self._issuer)

        try:
            claims = jwt.decode(
                token,
                signing_key,
                algorithms=["RS256"],
                audience=self._audience,
                issuer=self._issuer,
                options={"verify_exp": True},
            )
        except ExpiredSignatureError:
            logger.info("Token expired | request_id=%s", request_id)
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        except JWTError as exc:
            logger.warning("Token rejected | request_id=%s error=%s", request_id, exc)
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid token: {exc}",
                headers={"WWW-Authenticate": "Bearer"},
            )

        role = extract_role(claims, self._namespace)
        user_id = extract_user_id(claims)
        if user_id is None and role != "service":
            logger.warning("Token without owner id | sub=%s request_id=%s", claims.get("sub"), request_id)
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED,
                detail="Token subject must be a user id.",
            )

        return TokenPayload(
            sub=claims["sub"],
            email=claims.get("email", ""),
            role=role,
            exp=claims["exp"],
            iss=claims["iss"],
            user_id=user_id,
        )


default_decoder = JWTDecoder()


# ─────────────────────────────────────────────────────────────────────────────
# Role gates
# ─────────────────────────────────────────────────────────────────────────────

class RoleChecker:
    def __init__(self, minimum_role: str, decoder: JWTDecoder | None = None) -> None:
        if minimum_role not in ROLE_RANK:
            raise ValueError(f"Invalid minimum_role={minimum_role!r}; expected one of {list(ROLE_RANK)}")
        self._min_role = minimum_role
        self._decoder  = decoder or default_decoder

    async def __call__(
        self,
        request:     Request,
        credentials: HTTPAuthorizationCredentials = Depends(_bearer),
    ) -> TokenPayload:
        user = await self._decoder(request, credentials)
        if not has_role(user.role, self._min_role):
            logger.info("Role too low | user=%s role=%s required=%s", user.sub, user.role, self._min_role)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{self._min_role}' or above is required; token has '{user.role}'.",
            )
        return user


require_viewer  = RoleChecker("viewer")
require_member  = RoleChecker("member")
require_service = RoleChecker("service")
