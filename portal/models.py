"""Domain models for the community portal backend."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class Role(str, Enum):
    """Fixed staff roles, highest privilege first."""

    OWNER = "owner"
    ADMIN = "admin"
    STAFF = "staff"

    @classmethod
    def parse(cls, value: object) -> "Role":
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Unknown role {value!r}")
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown role {value!r}") from exc


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Identity:
    """The authenticated caller as established at login time."""

    id: int
    name: str
    role: Role


@dataclass(frozen=True)
class Account:
    """A staff account. The password hash never leaves the data layer."""

    id: int
    name: str
    role: Role
    active: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Server:
    """A game server tracked by its external (BattleMetrics) identifier."""

    id: int
    external_id: str
    display_name: str
    game_title: Optional[str]
    region: Optional[str]
    active: bool
    sort_order: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Announcement:
    """A banner message, optionally scoped to one server and a time window."""

    id: int
    server_id: Optional[int]
    message: str
    severity: Severity
    starts_at: Optional[datetime]
    ends_at: Optional[datetime]
    active: bool
    created_at: datetime
    updated_at: datetime
    server_name: Optional[str] = None
    server_external_id: Optional[str] = None

    @property
    def is_global(self) -> bool:
        return self.server_id is None


__all__ = ["Account", "Announcement", "Identity", "Role", "Server", "Severity"]
