from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from backend.core.errors import AppError, AuthenticationError, app_error_handler
from backend.core.logging import get_request_id
from backend.core.middleware.request_id import RequestIdMiddleware


def _make_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, app_error_handler)

    @app.get("/")
    async def root(request: Request):
        return {"request_id": getattr(request.state, "request_id", None), "context": get_request_id()}

    @app.get("/private")
    async def private():
        raise AuthenticationError("No token provided")

    return app


def test_generates_request_id_when_missing():
    client = TestClient(_make_app())

    resp = client.get("/")
    assert resp.status_code == 200
    rid_header = resp.headers.get("x-request-id")
    body = resp.json()

    assert rid_header
    assert body["request_id"] == rid_header
    assert body["context"] == rid_header


def test_echoes_provided_request_id():
    client = TestClient(_make_app())

    provided = "test-rid-123"
    resp = client.get("/", headers={"X-Request-Id": provided})

    assert resp.status_code == 200
    assert resp.headers.get("x-request-id") == provided
    assert resp.json().get("request_id") == provided


def test_error_envelope_carries_request_id():
    client = TestClient(_make_app())

    resp = client.get("/private", headers={"X-Request-Id": "rid-401"})

    assert resp.status_code == 401
    assert resp.headers.get("x-request-id") == "rid-401"
    assert resp.json()["request_id"] == "rid-401"
