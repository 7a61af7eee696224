"""
Identity resolution.

Whichever way the caller proves who they are (a signed bearer token, or
headers injected by a trusted auth proxy) the result is one
``AuthenticatedPrincipal``. The resolver is chosen by ``identity_mode``.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from trek.config import get_settings

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    id: str
    email: str
    email_verified: bool = False
    display_name: str | None = None


class IdentityResolver(ABC):
    @abstractmethod
    async def resolve(self, request: Request) -> Optional[AuthenticatedPrincipal]:
        """Return the principal, or None when the request carries no identity."""


class BearerTokenResolver(IdentityResolver):
    async def resolve(self, request):
        credentials: Optional[HTTPAuthorizationCredentials] = await bearer_scheme(request)
        if credentials is None:
            return None
        try:
            payload = jwt.decode(
                credentials.credentials,
                settings.secret_key,
                algorithms=[settings.jwt_algorithm],
            )
        except JWTError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired token",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if not payload.get("sub") or not payload.get("email"):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
        return AuthenticatedPrincipal(
            id=payload["sub"],
            email=payload["email"],
            email_verified=bool(payload.get("email_verified", False)),
            display_name=payload.get("name"),
        )


class TrustedHeaderResolver(IdentityResolver):
    """For deployments behind a proxy that has already verified the user."""

    async def resolve(self, request):
        user_id = request.headers.get("X-User-Id")
        email = request.headers.get("X-User-Email")
        if not user_id or not email:
            return None
        return AuthenticatedPrincipal(
            id=user_id,
            email=email,
            email_verified=request.headers.get("X-User-Email-Verified", "").lower() == "true",
            display_name=request.headers.get("X-User-Name"),
        )


@lru_cache
def get_identity_resolver() -> IdentityResolver:
    if settings.identity_mode == "headers":
        return TrustedHeaderResolver()
    return BearerTokenResolver()


def create_access_token(data: dict) -> str:
    """Sign a JWT with the configured secret (HS256), expiring after access_token_expire_minutes."""
    payload = dict(data)
    payload.setdefault("exp", datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes))
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


async def get_principal(
    request: Request,
    resolver: IdentityResolver = Depends(get_identity_resolver),
) -> AuthenticatedPrincipal:
    principal = await resolver.resolve(request)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    domain = settings.allowed_email_domain
    if domain and not principal.email.lower().endswith("@" + domain.lower()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Trek is limited to @{domain} accounts",
        )
    return principal
