# app/infra/http_client.py
"""
Pooled aiohttp sessions for outbound notification delivery.

Sessions are created lazily per profile and reused, so a burst of
notifications shares TCP connections. ``close_all_sessions`` runs once
from the app lifespan on shutdown.
"""
from __future__ import annotations

from typing import NamedTuple

import aiohttp

from app.infra.logging_config import get_logger

logger = get_logger(__name__)


class SessionProfile(NamedTuple):
    total: float
    connect: float
    limit: int


# push: webhook gateway, best effort so it fails fast
# default: Telegram and other slower APIs
PROFILES = {
    "push": SessionProfile(total=10, connect=3, limit=20),
    "default": SessionProfile(total=30, connect=5, limit=10),
}

_sessions: dict[str, aiohttp.ClientSession] = {}


def get_session(profile: str) -> aiohttp.ClientSession:
    session = _sessions.get(profile)
    if session is not None and not session.closed:
        return session

    limits = PROFILES[profile]
    session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=limits.total, connect=limits.connect),
        connector=aiohttp.TCPConnector(limit=limits.limit, keepalive_timeout=30, enable_cleanup_closed=True),
    )
    _sessions[profile] = session
    logger.debug("Opened '%s' HTTP session (limit=%d)", profile, limits.limit)
    return session


def get_push_session() -> aiohttp.ClientSession:
    return get_session("push")


def get_default_session() -> aiohttp.ClientSession:
    return get_session("default")


async def close_all_sessions() -> None:
    while _sessions:
        profile, session = _sessions.popitem()
        if not session.closed:
            await session.close()
            logger.debug("Closed '%s' HTTP session", profile)
