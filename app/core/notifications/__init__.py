# app/core/notifications/__init__.py
"""
Per-recipient notification log with key-based dedupe.

- ``models``: Notification, typed ``meta`` union, normalization
- ``engine``: NotificationEngine (publish / read state / delivery hand-off)
- ``ports``: AsyncNotificationStore protocol

Change detection (which events are new) lives in
``app.core.dispatch.watchers``; this package only guarantees that a given
dedupe key is stored and delivered at most once per recipient.
"""
