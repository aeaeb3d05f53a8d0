"""Unit tests for the request logging middleware."""

import structlog
from fastapi import FastAPI
from fastapi.testclient import TestClient

from catalog_sync.middleware.request_logging import REQUEST_ID_HEADER, RequestLoggingMiddleware


def build_client() -> TestClient:
    app = FastAPI()
    app.add_middleware(RequestLoggingMiddleware)

    @app.get("/api/v1/echo")
    async def echo() -> dict:
        return {"request_id": structlog.contextvars.get_contextvars().get("request_id")}

    return TestClient(app)


class TestRequestLoggingMiddleware:
    def test_adds_timing_header(self) -> None:
        response = build_client().get("/api/v1/echo")

        assert response.status_code == 200
        assert float(response.headers["X-Response-Time-Ms"]) >= 0

    def test_generates_request_id(self) -> None:
        response = build_client().get("/api/v1/echo")

        request_id = response.headers[REQUEST_ID_HEADER]
        assert len(request_id) == 32
        assert response.json()["request_id"] == request_id

    def test_propagates_incoming_request_id(self) -> None:
        response = build_client().get("/api/v1/echo", headers={REQUEST_ID_HEADER: "abc-123"})

        assert response.headers[REQUEST_ID_HEADER] == "abc-123"
        assert response.json()["request_id"] == "abc-123"
