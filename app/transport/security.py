# app/transport/security.py
"""
Who is calling, and may they.

Three kinds of caller reach this service:

- Customers and vendors come through the auth gateway, which sets
  ``X-Actor-Role`` / ``X-Actor-Id``. Those headers are trusted as-is
  (``TRUST_IDENTITY_HEADERS``) but can never claim the admin role.
- Dispatchers present the admin bearer token, compared in constant time.
- Public link routes (bid, choose, track) carry no identity; the
  unguessable token in the path is the credential.
"""
import hmac
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.core.dispatch.domain import Actor
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = (
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
)
GATEWAY_ROLES = ("customer", "vendor")
MAX_ACTOR_ID = 64

# Shows the "Authorize" button in the OpenAPI docs
bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="Dispatcher admin token (without the 'Bearer ' prefix)",
    auto_error=False,
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """Warnings for a weak token; an empty list means it looks random enough."""
    warnings = []
    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    lowered = token.lower()
    weak = next((pattern for pattern in WEAK_TOKEN_PATTERNS if pattern in lowered), None)
    if weak:
        warnings.append(f"{token_name} contains weak pattern '{weak}'. Use a cryptographically random token")

    classes = (str.isupper, str.islower, str.isdigit)
    if not all(any(test(c) for c in token) for test in classes):
        warnings.append(f"{token_name} has low character diversity. Mix uppercase, lowercase and digits")
    return warnings


def generate_secure_token(length: int = 32) -> str:
    return secrets.token_urlsafe(length)


def check_configured_tokens() -> None:
    """Startup hook: log every weakness of the configured admin token."""
    if settings.admin_token:
        for warning in validate_token_strength(settings.admin_token, "ADMIN_TOKEN"):
            logger.warning("SECURITY: %s", warning)


def _bearer_matches(credentials: HTTPAuthorizationCredentials | None) -> bool:
    return bool(credentials) and hmac.compare_digest(
        credentials.credentials.encode(), settings.admin_token.encode()
    )


def _admin_actor(request: Request) -> Actor:
    # Dispatchers may name themselves for the audit trail
    admin_id = request.headers.get("X-Actor-Id", "").strip()[:MAX_ACTOR_ID]
    return Actor(role="admin", id=admin_id or "admin")


async def require_admin_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    """
    Dependency for dispatcher-only routes.

    503 when no admin token is configured at all, 401 for a missing or wrong one.
    """
    if not settings.admin_token:
        logger.critical("ADMIN_TOKEN not configured but admin endpoint accessed")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service unavailable")

    if not _bearer_matches(credentials):
        reason = "missing" if not credentials else "invalid"
        logger.warning("Admin auth failed: %s token", reason, extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _admin_actor(request)


def get_actor(request: Request) -> Actor:
    """Gateway identity; anything missing or unrecognised is a guest."""
    if not settings.trust_identity_headers:
        return Actor(role="guest")

    role = request.headers.get("X-Actor-Role", "").strip().lower()
    actor_id = request.headers.get("X-Actor-Id", "").strip()[:MAX_ACTOR_ID]
    if role in GATEWAY_ROLES and actor_id:
        return Actor(role=role, id=actor_id)
    return Actor(role="guest")


async def get_actor_or_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    """A valid admin bearer wins; otherwise fall back to the gateway identity."""
    if settings.admin_token and _bearer_matches(credentials):
        return _admin_actor(request)
    return get_actor(request)


def require_roles(*roles: str):
    """Dependency factory: 403 unless the caller holds one of ``roles``."""

    async def dependency(actor: Actor = Depends(get_actor_or_admin)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(roles)}",
            )
        return actor

    return dependency


class SecurityHeaders:
    """Response hardening for a JSON API whose URLs can carry bearer-like link tokens."""

    FIXED = {
        "X-Frame-Options": "DENY",
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": "no-referrer",
        "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
        "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
        "Cross-Origin-Opener-Policy": "same-origin",
    }

    @classmethod
    def add_security_headers(cls, response):
        for header, value in cls.FIXED.items():
            response.headers[header] = value

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store"

        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"

        if "Server" in response.headers:
            del response.headers["Server"]
        return response
