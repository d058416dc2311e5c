"""Configuration management for the community portal backend."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from .models import Role

_FALSE_VALUES = {"0", "false", "no", "off"}

DEFAULT_BATTLEMETRICS_URL = "https://api.battlemetrics.com"

# Role assumed when an authenticated session's account row cannot be found.
DEFAULT_FALLBACK_ROLE = Role.ADMIN


def _parse_flag(value: object, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in _FALSE_VALUES


def _resolve_path(raw: object, base_path: Path | None) -> Path:
    candidate = Path(str(raw)).expanduser()
    if candidate.is_absolute() or base_path is None:
        return candidate.resolve(strict=False)
    return (base_path / candidate).resolve(strict=False)


def _parse_fallback_role(value: object) -> Role:
    role = Role.parse(value)
    if role is Role.OWNER:
        raise ValueError("The fallback role must never be 'owner'")
    return role


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the portal database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "portal.sqlite3").resolve(strict=False)


@dataclass(frozen=True)
class PortalSettings:
    """Runtime settings for the portal service."""

    database_path: Path
    session_ttl_hours: float = 8.0
    secure_cookies: bool = True
    battlemetrics_api_key: Optional[str] = None
    battlemetrics_base_url: str = DEFAULT_BATTLEMETRICS_URL
    enrichment_timeout: float = 8.0
    enrichment_connect_timeout: float = 3.0
    fallback_role: Role = DEFAULT_FALLBACK_ROLE
    lenient_announcement_reads: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.fallback_role is Role.OWNER:
            raise ValueError("The fallback role must never be 'owner'")
        if self.session_ttl_hours <= 0:
            raise ValueError("Session TTL must be positive")
        if self.enrichment_timeout <= 0 or self.enrichment_connect_timeout <= 0:
            raise ValueError("Enrichment timeouts must be positive")

    @property
    def enrichment_enabled(self) -> bool:
        return bool(self.battlemetrics_api_key)

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "PortalSettings":
        """Create :class:`PortalSettings` from raw dictionary data."""

        raw_db = data.get("database_path")
        database_path = (
            _resolve_path(raw_db, base_path) if raw_db else resolve_database_path(None)
        )
        api_key = data.get("battlemetrics_api_key")

        return PortalSettings(
            database_path=database_path,
            session_ttl_hours=float(data.get("session_ttl_hours", 8.0)),
            secure_cookies=_parse_flag(data.get("secure_cookies"), True),
            battlemetrics_api_key=(str(api_key).strip() or None) if api_key else None,
            battlemetrics_base_url=str(
                data.get("battlemetrics_base_url") or DEFAULT_BATTLEMETRICS_URL
            ).rstrip("/"),
            enrichment_timeout=float(data.get("enrichment_timeout", 8.0)),
            enrichment_connect_timeout=float(data.get("enrichment_connect_timeout", 3.0)),
            fallback_role=_parse_fallback_role(data.get("fallback_role", DEFAULT_FALLBACK_ROLE)),
            lenient_announcement_reads=_parse_flag(data.get("lenient_announcement_reads"), False),
            log_level=str(data.get("log_level", "INFO")).upper(),
        )


_ENV_OVERRIDES: Dict[str, str] = {
    "PORTAL_SESSION_TTL_HOURS": "session_ttl_hours",
    "PORTAL_SESSION_SECURE": "secure_cookies",
    "BATTLEMETRICS_API_KEY": "battlemetrics_api_key",
    "PORTAL_BATTLEMETRICS_URL": "battlemetrics_base_url",
    "PORTAL_ENRICHMENT_TIMEOUT": "enrichment_timeout",
    "PORTAL_FALLBACK_ROLE": "fallback_role",
    "PORTAL_LENIENT_ANNOUNCEMENT_READS": "lenient_announcement_reads",
    "PORTAL_LOG_LEVEL": "log_level",
}


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the optional YAML configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "portal.yaml").resolve(strict=False)
    return candidate


def load_settings(
    config_path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> PortalSettings:
    """Load settings from YAML (when present) with environment overrides applied."""

    env = os.environ if environ is None else environ
    path = config_path or resolve_config_path(env.get("PORTAL_CONFIG"))

    raw: Dict[str, object] = {}
    base_path: Path | None = None
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        raw.update(loaded)
        base_path = path.parent

    for env_name, key in _ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None and value.strip() != "":
            raw[key] = value

    settings = PortalSettings.from_dict(raw, base_path=base_path)
    if env.get("PORTAL_DB_PATH"):
        settings = replace(settings, database_path=resolve_database_path(env["PORTAL_DB_PATH"]))
    return settings


__all__ = [
    "DEFAULT_FALLBACK_ROLE",
    "PortalSettings",
    "load_settings",
    "resolve_config_path",
    "resolve_database_path",
]
