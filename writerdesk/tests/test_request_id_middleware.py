import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from writerdesk.core.logging import get_request_id
from writerdesk.core.middleware.request_id import RequestIdMiddleware, accept_request_id


@pytest.fixture
def rid_client():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/")
    async def root(request: Request):
        return {"state": request.state.request_id, "context": get_request_id()}

    return TestClient(app)


def test_generates_request_id_when_missing(rid_client):
    resp = rid_client.get("/")

    rid = resp.headers.get("x-request-id")
    assert rid
    assert resp.json() == {"state": rid, "context": rid}


def test_echoes_provided_request_id(rid_client):
    resp = rid_client.get("/", headers={"X-Request-Id": "checkout-7f3a"})

    assert resp.headers.get("x-request-id") == "checkout-7f3a"
    assert resp.json()["state"] == "checkout-7f3a"


def test_replaces_unsafe_request_id(rid_client):
    resp = rid_client.get("/", headers={"X-Request-Id": "bad id<script>"})

    rid = resp.headers.get("x-request-id")
    assert rid != "bad id<script>"
    assert accept_request_id(rid) == rid


def test_context_is_cleared_after_request(rid_client):
    rid_client.get("/", headers={"X-Request-Id": "rid-1"})
    assert get_request_id() is None


@pytest.mark.parametrize("value,expected", [
    ("abc-123", "abc-123"),
    ("", None),
    (None, None),
    ("x" * 129, None),
    ("has space", None),
])
def test_accept_request_id(value, expected):
    assert accept_request_id(value) == expected
