# app/core/dispatch/__init__.py
"""
Dispatch core: job lifecycle, bidding and mission control.

- ``domain``: Job, Bid, PublicToken, VendorRecord and their JSON shapes
- ``transitions``: StatusTransitionEngine (the only writer of job status)
- ``jobs``: intake, manual dispatch, escalation, completion
- ``bidding``: bid ledger service and bid selection
- ``tokens``: public link tokens (mint / resolve / revoke)
- ``commission``: completion amount checks, commission, under-report flag
- ``sla`` / ``routing``: dashboard computations (pure, recomputed on read)
- ``events`` / ``watchers``: role notifications for mutations and polled diffs
- ``ops``: mission-control dashboard assembly

Core modules do no HTTP and no SQL; stores come in through ``ports``.
"""
