"""
Public link tokens.

Customers, guests and vendors reach a job through unguessable links rather
than accounts.  Each token is bound to one job and one scope, expires after
a configurable TTL and can be revoked by an admin.
"""
from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional, Union

from app.core.dispatch.domain import Actor, Job, PublicToken, TokenScope
from app.core.dispatch.errors import TokenInvalidOrExpired
from app.core.dispatch.ports import AsyncJobStore
from app.infra.audit_log import audit_event
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

if TYPE_CHECKING:
    from app.core.dispatch.transitions import StatusTransitionEngine

logger = get_logger(__name__)


def new_token_value() -> str:
    """32 hex chars (128 bits)."""
    return secrets.token_hex(16)


def mint_token(job: Job, scope: Union[TokenScope, str], *, now: datetime, ttl_hours: int) -> PublicToken:
    """Attach a fresh token for ``scope`` to ``job`` (replacing any previous one)."""
    scope_value = TokenScope(scope).value
    token = PublicToken(
        value=new_token_value(),
        scope=scope_value,
        expires_at=now + timedelta(hours=ttl_hours) if ttl_hours > 0 else None,
    )
    job.tokens[scope_value] = token
    return token


class TokenService:
    def __init__(
        self,
        store: AsyncJobStore,
        engine: "StatusTransitionEngine",
        *,
        ttl_hours: int = 72,
    ):
        self.store = store
        self.engine = engine
        self.ttl_hours = ttl_hours

    def mint(self, job: Job, scope: Union[TokenScope, str]) -> PublicToken:
        return mint_token(job, scope, now=self.engine.now(), ttl_hours=self.ttl_hours)

    async def resolve(self, value: Optional[str], scope: Union[TokenScope, str]) -> Job:
        """
        Return the job a token points to.

        Unknown, revoked, expired and wrong-scope tokens all raise the same
        TokenInvalidOrExpired so callers cannot probe which case applied.
        """
        scope_value = TokenScope(scope).value
        if not value:
            raise TokenInvalidOrExpired("Link is invalid or has expired")

        job = await self.store.get_by_token(value)
        token = job.tokens.get(scope_value) if job else None
        if (
            job is None
            or token is None
            or not secrets.compare_digest(token.value, value)
            or not token.is_usable(self.engine.now())
        ):
            inc_counter("token_rejected", scope=scope_value)
            raise TokenInvalidOrExpired("Link is invalid or has expired")
        return job

    async def revoke(self, job_id: str, scope: Union[TokenScope, str], *, actor: Actor) -> Job:
        try:
            scope_value = TokenScope(scope).value
        except ValueError:
            raise TokenInvalidOrExpired(f"Unknown token scope: {scope}")

        def change(job: Job) -> None:
            token = job.tokens.get(scope_value)
            if token is None:
                raise TokenInvalidOrExpired(f"Job {job_id} has no {scope_value} link")
            if token.revoked_at is None:
                token.revoked_at = self.engine.now()

        saved = await self.engine.update(job_id, change, operation="token_revoke")
        logger.info("Revoked %s link for job %s", scope_value, job_id, extra={"job_id": job_id})
        audit_event("token.revoke", job_id=job_id, actor=str(actor), detail=scope_value)
        return saved
