"""
Audit trail for dispatch mutations.

Accepted changes (intake, status moves, bids, selection, completion,
escalation, token revocation) go to the ``audit`` logger rather than the
module loggers, so deployments can route them to their own sink.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    job_id: str | None = None,
    actor: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Write one audit record.

    ``action`` is dotted (``job.status``, ``bid.select``); ``actor`` is
    ``role:id``. Keys in ``extra`` become record attributes, so the JSON
    formatter and log handlers see them as fields.
    """
    fields: dict[str, Any] = dict(extra or {})
    fields.update(audit_action=action, job_id=job_id or "", actor=actor or "", detail=detail)

    _audit_logger.info(
        "AUDIT: %s job=%s actor=%s %s", action, job_id or "-", actor or "-", detail,
        extra=fields,
    )
