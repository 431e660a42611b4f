from __future__ import annotations

import os
import tempfile
from dataclasses import fields
from pathlib import Path

import pytest

from anemia_screen.config import Limits, ScreeningConfig, Settings


def test_defaults() -> None:
    s = Settings.defaults()
    assert s.screening.max_image_mb == 5
    # The resize target belongs to the model manifest, not to settings
    assert "input_size" not in {f.name for f in fields(ScreeningConfig)}
    assert s.screening.locale == "th"
    assert s.app.port == 3000
    lim = Limits.from_settings(s)
    assert lim.max_bytes == 5 * 1024 * 1024
    assert lim.max_side_px == 8192


def test_env_overrides_happy_paths() -> None:
    with tempfile.TemporaryDirectory() as td:
        env = os.environ.copy()
        env["APP__DATA_ROOT"] = (Path(td) / "data").as_posix()
        env["APP__THREADS"] = "2"
        env["SCREEN__MODEL_URI"] = "https://models.example.org/conjunctiva_v2"
        env["SCREEN__MAX_IMAGE_MB"] = "3"
        env["SCREEN__PREDICT_TIMEOUT_SECONDS"] = "4"
        env["SCREEN__LOCALE"] = "EN"
        env["SCREEN__LOAD_ON_STARTUP"] = "false"
        env["SECURITY__API_KEY"] = "k"
        # Point to a non-existent TOML so env values are not overridden
        env["ANEMIA_SCREEN_CONFIG"] = (Path(td) / "missing.toml").as_posix()
        s = _load_with_env(env)
        assert s.app.data_root.as_posix().endswith("data")
        assert s.app.threads == 2
        assert s.screening.model_uri.endswith("conjunctiva_v2")
        assert s.screening.max_image_mb == 3
        assert s.screening.predict_timeout_seconds == 4
        assert s.screening.locale == "en"
        assert s.screening.load_on_startup is False
        assert s.security.api_key == "k"


def test_toml_overrides_env() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text(
            """
[app]
port = 8080
uploads_root = "/srv/uploads"

[screening]
max_image_mb = 2
locale = "en"
load_on_startup = false
""".strip(),
            encoding="utf-8",
        )
        env = os.environ.copy()
        env["SCREEN__MAX_IMAGE_MB"] = "9"
        env["ANEMIA_SCREEN_CONFIG"] = p.as_posix()
        s = _load_with_env(env)
        assert s.app.port == 8080
        assert s.app.uploads_root == Path("/srv/uploads")
        assert s.screening.max_image_mb == 2
        assert s.screening.locale == "en"
        assert s.screening.load_on_startup is False


def test_security_api_key_enabled_false_disables_key() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text(
            """
[security]
api_key = "secret"
api_key_enabled = false
""".strip(),
            encoding="utf-8",
        )
        env = os.environ.copy()
        env["ANEMIA_SCREEN_CONFIG"] = p.as_posix()
        s = _load_with_env(env)
        assert s.security.api_key == ""


def test_app_port_out_of_range_raises() -> None:
    env = os.environ.copy()
    env["APP__PORT"] = "70000"
    with pytest.raises(RuntimeError):
        _ = _load_with_env(env)


def test_unsupported_locale_raises() -> None:
    env = os.environ.copy()
    env["SCREEN__LOCALE"] = "fr"
    with pytest.raises(RuntimeError):
        _ = _load_with_env(env)


def test_invalid_toml_raises() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "bad.toml"
        p.write_text("[screening\nmax_image_mb = ", encoding="utf-8")
        env = os.environ.copy()
        env["ANEMIA_SCREEN_CONFIG"] = p.as_posix()
        with pytest.raises(RuntimeError):
            _ = _load_with_env(env)


def _load_with_env(env: dict[str, str]) -> Settings:
    old = os.environ.copy()
    try:
        os.environ.clear()
        for k, v in env.items():
            os.environ[k] = v
        return Settings.load()
    finally:
        os.environ.clear()
        for k, v in old.items():
            os.environ[k] = v
