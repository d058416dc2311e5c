"""BattleMetrics client used to enrich server records with live metadata."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence
from urllib.parse import quote

import httpx

from .config import DEFAULT_BATTLEMETRICS_URL, PortalSettings

logger = logging.getLogger("portal.enrichment")


@dataclass(frozen=True)
class Enrichment:
    """Normalised subset of a BattleMetrics server record."""

    display_name: Optional[str]
    game_title: Optional[str]
    region: Optional[str]


@dataclass(frozen=True)
class ServerStatus:
    """Live status for a server, as shown on the public status pages."""

    external_id: str
    name: Optional[str]
    players: Optional[int]
    max_players: Optional[int]
    status: Optional[str]
    map: Optional[str]
    ip: Optional[str]
    port: Optional[int]


@dataclass
class _ClientConfig:
    base_url: str
    api_key: Optional[str]
    timeout: float
    connect_timeout: float


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("BattleMetrics base URL must not be empty")
    return cleaned.rstrip("/")


def _first_text(sources: Sequence[Mapping[str, Any]], keys: Sequence[str]) -> Optional[str]:
    for source in sources:
        for key in keys:
            value = source.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _as_int(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


class BattleMetricsClient:
    """Fetch server records from the BattleMetrics API.

    Every failure mode (no API key configured, transport errors, HTTP error
    statuses, and payloads that do not match the expected schema) collapses
    into ``None``. The reason is only logged.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = DEFAULT_BATTLEMETRICS_URL,
        timeout: float = 8.0,
        connect_timeout: float = 3.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = _ClientConfig(
            base_url=_normalize_base_url(base_url),
            api_key=(api_key or "").strip() or None,
            timeout=timeout,
            connect_timeout=connect_timeout,
        )
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: PortalSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> "BattleMetricsClient":
        return cls(
            settings.battlemetrics_api_key,
            base_url=settings.battlemetrics_base_url,
            timeout=settings.enrichment_timeout,
            connect_timeout=settings.enrichment_connect_timeout,
            transport=transport,
        )

    @property
    def enabled(self) -> bool:
        return self._config.api_key is not None

    def fetch(self, external_id: str) -> Optional[Enrichment]:
        """Return enrichment data for ``external_id`` or ``None`` if unavailable."""

        attributes = self._fetch_attributes(external_id)
        if attributes is None:
            return None

        details = attributes.get("details")
        if not isinstance(details, dict):
            details = {}

        return Enrichment(
            display_name=_first_text([attributes], ("name", "hostname")),
            game_title=_first_text([attributes, details], ("game", "gameMode", "mode")),
            region=_first_text([attributes, details], ("region",)),
        )

    def fetch_status(self, external_id: str) -> Optional[ServerStatus]:
        """Return live player counts and connection details, or ``None``."""

        attributes = self._fetch_attributes(external_id)
        if attributes is None:
            return None

        details = attributes.get("details")
        if not isinstance(details, dict):
            details = {}

        return ServerStatus(
            external_id=external_id,
            name=_first_text([attributes], ("name", "hostname")),
            players=_as_int(attributes.get("players")),
            max_players=_as_int(attributes.get("maxPlayers")),
            status=_first_text([attributes], ("status",)),
            map=_first_text([details], ("map",)),
            ip=_first_text([attributes], ("ip",)),
            port=_as_int(attributes.get("port")),
        )

    def _fetch_attributes(self, external_id: str) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            logger.warning("BattleMetrics lookup for %s skipped: no API key configured", external_id)
            return None

        url = f"{self._config.base_url}/servers/{quote(external_id, safe='')}"
        headers = {
            "Authorization": f"Bearer {self._config.api_key}",
            "Accept": "application/json",
        }
        timeout = httpx.Timeout(self._config.timeout, connect=self._config.connect_timeout)

        try:
            with httpx.Client(transport=self._transport, timeout=timeout) as client:
                response = client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("BattleMetrics lookup for %s failed: %s", external_id, exc)
            return None

        if response.status_code >= 400:
            logger.warning(
                "BattleMetrics lookup for %s returned status %s",
                external_id,
                response.status_code,
            )
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning("BattleMetrics lookup for %s returned invalid JSON", external_id)
            return None

        data = payload.get("data") if isinstance(payload, dict) else None
        attributes = data.get("attributes") if isinstance(data, dict) else None
        if not isinstance(attributes, dict):
            logger.warning(
                "BattleMetrics lookup for %s returned an unexpected payload", external_id
            )
            return None
        return attributes


__all__ = ["BattleMetricsClient", "Enrichment", "ServerStatus"]
