from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/anemia_screen.toml")
_LOCALES: Final[frozenset[str]] = frozenset({"th", "en"})


@dataclass(frozen=True)
class AppConfig:
    data_root: Path = Path("/data")
    uploads_root: Path = Path("/data/uploads")
    threads: int = 0
    port: int = 3000


@dataclass(frozen=True)
class ScreeningConfig:
    model_uri: str = "/data/models/conjunctiva_v1"
    max_image_mb: int = 5
    max_image_side_px: int = 8192
    predict_timeout_seconds: int = 10
    locale: str = "th"
    load_on_startup: bool = True


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the admin key check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    screening: ScreeningConfig
    security: SecurityConfig

    @staticmethod
    def defaults() -> Settings:
        return Settings(app=AppConfig(), screening=ScreeningConfig(), security=SecurityConfig())

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("ANEMIA_SCREEN_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(
            app=_load_app_from_env(),
            screening=_load_screening_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            screening=_merge_screening(base.screening, _toml_table(raw, "screening")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    dr = os.getenv("APP__DATA_ROOT")
    ur = os.getenv("APP__UPLOADS_ROOT")
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    if dr:
        a = replace(a, data_root=Path(dr))
    if ur:
        a = replace(a, uploads_root=Path(ur))
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    if pt is not None and pt.isdigit():
        a = replace(a, port=_check_port(int(pt), "APP__PORT"))
    return a


def _load_screening_from_env() -> ScreeningConfig:
    c = ScreeningConfig()
    uri = os.getenv("SCREEN__MODEL_URI")
    mb = os.getenv("SCREEN__MAX_IMAGE_MB")
    mx = os.getenv("SCREEN__MAX_IMAGE_SIDE_PX")
    to = os.getenv("SCREEN__PREDICT_TIMEOUT_SECONDS")
    loc = os.getenv("SCREEN__LOCALE")
    los = os.getenv("SCREEN__LOAD_ON_STARTUP")
    if uri:
        c = replace(c, model_uri=uri)
    if mb is not None:
        c = replace(c, max_image_mb=int(mb))
    if mx is not None:
        c = replace(c, max_image_side_px=int(mx))
    if to is not None:
        c = replace(c, predict_timeout_seconds=int(to))
    if loc:
        c = replace(c, locale=_check_locale(loc))
    if los is not None:
        c = replace(c, load_on_startup=los.lower() in {"1", "true", "yes"})
    return c


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "data_root" in data:
        out = replace(out, data_root=Path(str(data["data_root"])))
    if "uploads_root" in data:
        out = replace(out, uploads_root=Path(str(data["uploads_root"])))
    if "threads" in data:
        out = replace(out, threads=int(str(data["threads"])))
    if "port" in data:
        out = replace(out, port=_check_port(int(str(data["port"])), "port"))
    return out


def _merge_screening(base: ScreeningConfig, data: dict[str, object]) -> ScreeningConfig:
    out = base
    if "model_uri" in data:
        out = replace(out, model_uri=str(data["model_uri"]))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=int(str(data["max_image_mb"])))
    if "max_image_side_px" in data:
        out = replace(out, max_image_side_px=int(str(data["max_image_side_px"])))
    if "predict_timeout_seconds" in data:
        out = replace(out, predict_timeout_seconds=int(str(data["predict_timeout_seconds"])))
    if "locale" in data:
        out = replace(out, locale=_check_locale(str(data["locale"])))
    if "load_on_startup" in data:
        out = replace(out, load_on_startup=bool(data["load_on_startup"]))
    return out


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    api_key_val = data.get("api_key")
    if isinstance(api_key_val, str):
        out = replace(out, api_key=api_key_val)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _check_port(port: int, name: str) -> int:
    if not (1 <= port <= 65535):
        raise RuntimeError(f"{name} out of range")
    return port


def _check_locale(loc: str) -> str:
    v = loc.strip().lower()
    if v not in _LOCALES:
        raise RuntimeError(f"unsupported locale: {loc}")
    return v


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.screening.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.screening.max_image_side_px),
        )
