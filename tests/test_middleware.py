from __future__ import annotations

from dataclasses import replace

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from anemia_screen.api.app import create_app
from anemia_screen.config import SecurityConfig, Settings
from anemia_screen.errors import AppError
from anemia_screen.middleware import RequestIdMiddleware, api_key_dependency
from anemia_screen.logging import request_id_var
from anemia_screen.store import MemoryRegistrationStore


def test_request_id_header_roundtrip() -> None:
    app = create_app(Settings.defaults(), store_provider=MemoryRegistrationStore)
    client = TestClient(app)
    r = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert r.headers["x-request-id"] == "req-123"


def test_request_id_generated_and_visible_to_handlers() -> None:
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    async def _echo() -> dict[str, str]:
        return {"rid": request_id_var.get()}

    app.add_api_route("/echo", _echo, methods=["GET"])
    r = TestClient(app).get("/echo")
    rid = r.headers["x-request-id"]
    assert rid and r.json()["rid"] == rid


def test_api_key_dependency_blank_key_allows_all() -> None:
    s = Settings.defaults()
    guard = api_key_dependency(s)
    assert guard(None) is None


def test_api_key_dependency_rejects_wrong_key() -> None:
    s = replace(Settings.defaults(), security=SecurityConfig(api_key="abc"))
    app = FastAPI()

    async def _admin() -> dict[str, bool]:
        return {"ok": True}

    guard = Depends(api_key_dependency(s))
    app.add_api_route("/admin", _admin, methods=["GET"], dependencies=[guard])

    async def _handle(_: Request, exc: Exception) -> JSONResponse:
        code = exc.http_status if isinstance(exc, AppError) else 500
        return JSONResponse(status_code=code, content={})

    app.add_exception_handler(AppError, _handle)
    client = TestClient(app)
    assert client.get("/admin").status_code == 401
    assert client.get("/admin", headers={"X-Api-Key": "abc"}).status_code == 200
