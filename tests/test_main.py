from __future__ import annotations

from dataclasses import replace

import pytest
import uvicorn
from fastapi import FastAPI

from anemia_screen.__main__ import main
from anemia_screen.config import Settings


def test_main_serves_app_on_configured_port(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, object] = {}

    def _fake_run(app: object, **kwargs: object) -> None:
        seen["app"] = app
        seen.update(kwargs)

    monkeypatch.setattr(uvicorn, "run", _fake_run)
    base = Settings.defaults()
    s = replace(base, app=replace(base.app, port=8123))
    main(s)
    assert isinstance(seen["app"], FastAPI)
    assert seen["port"] == 8123
    assert seen["host"] == "0.0.0.0"
