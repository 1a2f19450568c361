# tests/test_middleware.py
"""Tests for app/transport/middleware.py: request ID, logging, error handling."""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.infra.metrics import get_metrics_collector
from app.transport.middleware import (
    RequestIDMiddleware,
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
)


def _build_app(raise_for: set[str] | None = None):
    """Build a minimal FastAPI app with middleware for testing."""
    app = FastAPI()
    # Order matters: ErrorHandling wraps RequestID
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    raise_for = raise_for or set()

    @app.get("/test")
    def test_endpoint():
        if "/test" in raise_for:
            raise RuntimeError("boom")
        return {"ok": True}

    @app.post("/bids/{token}")
    def bid_endpoint(token: str):
        if "/bids" in raise_for:
            raise RuntimeError("ledger boom")
        return {"ok": True}

    return app


# ============================================================================
# RequestIDMiddleware
# ============================================================================

class TestRequestIDMiddleware:
    def test_generates_request_id(self):
        app = _build_app()
        client = TestClient(app)
        resp = client.get("/test")
        assert resp.status_code == 200
        assert "X-Request-ID" in resp.headers
        # Should be a UUID-style string
        rid = resp.headers["X-Request-ID"]
        assert len(rid) >= 32  # UUID has 36 chars with dashes

    def test_preserves_existing_request_id(self):
        app = _build_app()
        client = TestClient(app)
        custom_id = "my-custom-request-id-123"
        resp = client.get("/test", headers={"X-Request-ID": custom_id})
        assert resp.status_code == 200
        assert resp.headers["X-Request-ID"] == custom_id


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================

class TestRequestLoggingMiddleware:
    def test_counts_requests(self):
        collector = get_metrics_collector()
        before = collector.get_counter("http_requests_total", method="POST", status="200")

        client = TestClient(_build_app())
        assert client.post("/bids/abc").status_code == 200

        assert collector.get_counter("http_requests_total", method="POST", status="200") == before + 1


# ============================================================================
# ErrorHandlingMiddleware
# ============================================================================

class TestErrorHandlingMiddleware:
    def test_normal_request_passes_through(self):
        app = _build_app()
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

    def test_generic_error_returns_500(self):
        app = _build_app(raise_for={"/test"})
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 500
        data = resp.json()
        assert data["error"] == "internal_error"
        assert "request_id" in data

    def test_error_message_hides_details(self):
        app = _build_app(raise_for={"/bids"})
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.post("/bids/abc")
        assert resp.status_code == 500
        assert "ledger boom" not in resp.text
