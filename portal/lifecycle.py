"""Create, list, soft-delete, and reactivate servers, announcements, and users.

Each manager validates caller input before touching the store, then performs
the mutation as a single statement. Store failures surface as
:class:`~portal.errors.ServerError`; the underlying detail is only logged.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

from .database import Database, MissingReference, UniqueViolation, hash_password
from .enrichment import BattleMetricsClient, Enrichment, ServerStatus
from .errors import (
    Conflict,
    Forbidden,
    NotFound,
    ServerError,
    UpstreamUnavailable,
    ValidationError,
    store_errors,
)
from .models import Account, Announcement, Role, Server
from .sessions import SessionManager
from .visibility import coerce_severity, is_visible, normalize_datetime

logger = logging.getLogger("portal.lifecycle")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}
_INTEGER_PATTERN = re.compile(r"^-?\d+$")


def parse_id(value: object, *, field: str = "id") -> int:
    """Parse a record identifier, rejecting anything but a positive integer."""

    if isinstance(value, bool):
        raise ValidationError(f"A valid {field} is required.")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and _INTEGER_PATTERN.match(value.strip()):
        parsed = int(value.strip())
    else:
        raise ValidationError(f"A valid {field} is required.")
    if parsed <= 0:
        raise ValidationError(f"A valid {field} is required.")
    return parsed


def parse_flag(value: object, *, default: bool, field: str = "isActive") -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
    raise ValidationError(f"{field} must be a boolean.")


def _require_text(value: object, message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(message)
    return value.strip()


class LifecycleManager:
    """Shared soft-delete behaviour for the three record types."""

    label = "Record"

    def __init__(self, database: Database) -> None:
        self._database = database

    @property
    def database(self) -> Database:
        return self._database

    def soft_delete(self, record_id: object) -> None:
        """Mark the record inactive. Raises :class:`NotFound` for unknown ids."""

        parsed = parse_id(record_id)
        with store_errors(logger, f"deactivate {self.label.lower()} {parsed}"):
            found = self._deactivate(parsed)
        if not found:
            raise NotFound(f"{self.label} not found.")
        logger.info("%s %s deactivated", self.label, parsed)

    def _deactivate(self, record_id: int) -> bool:
        raise NotImplementedError


class ServerManager(LifecycleManager):
    label = "Server"

    def __init__(self, database: Database, enrichment: Optional[BattleMetricsClient] = None) -> None:
        super().__init__(database)
        self._enrichment = enrichment

    def list(self) -> List[Server]:
        """Return active servers ordered by ``(sort_order, id)``."""

        with store_errors(logger, "list servers"):
            return self._database.list_active_servers()

    def upsert(self, external_id: object) -> Server:
        """Create or refresh the server keyed on ``external_id``.

        The stored row always ends up active, so this also reactivates a
        previously deleted server. Enrichment failures fall back to a
        placeholder display name and never fail the save.
        """

        key = self._parse_external_id(external_id)
        enrichment = self._enrich(key)
        if enrichment is not None and enrichment.display_name:
            display_name = enrichment.display_name
        else:
            display_name = f"Server {key}"

        with store_errors(logger, f"save server {key}"):
            server = self._database.upsert_server(
                key,
                display_name=display_name,
                game_title=enrichment.game_title if enrichment else None,
                region=enrichment.region if enrichment else None,
            )

        logger.info(
            "Server %s saved as %s (enriched=%s)",
            key,
            server.id,
            enrichment is not None,
        )
        return server

    def get_status(self, external_id: object) -> ServerStatus:
        """Return live status for a registered, active server."""

        key = self._parse_external_id(external_id)
        with store_errors(logger, f"look up server {key}"):
            server = self._database.get_server_by_external_id(key)
        if server is None or not server.active:
            raise NotFound("Server not found.")

        status = self._enrichment.fetch_status(key) if self._enrichment is not None else None
        if status is None:
            raise UpstreamUnavailable()
        return status

    def cluster_status(self) -> List[ServerStatus]:
        """Return live status for every active server that answered."""

        results: List[ServerStatus] = []
        if self._enrichment is None:
            return results
        for server in self.list():
            status = self._enrichment.fetch_status(server.external_id)
            if status is not None:
                results.append(status)
        return results

    def _enrich(self, key: str) -> Optional[Enrichment]:
        if self._enrichment is None:
            logger.warning("Enrichment for server %s skipped: no client configured", key)
            return None
        return self._enrichment.fetch(key)

    def _deactivate(self, record_id: int) -> bool:
        return self._database.set_server_active(record_id, False)

    @staticmethod
    def _parse_external_id(value: object) -> str:
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        return _require_text(value, "A server ID is required.")


class AnnouncementManager(LifecycleManager):
    label = "Announcement"

    def __init__(self, database: Database, *, lenient_reads: bool = False) -> None:
        super().__init__(database)
        self._lenient_reads = lenient_reads

    def list(
        self,
        *,
        server_id: object = None,
        external_id: object = None,
        active_only: bool = False,
    ) -> List[Announcement]:
        """Return announcements newest first.

        ``server_id`` and ``external_id`` narrow the result to one server plus
        every global announcement. ``active_only`` keeps only announcements
        that are active and inside their display window right now.
        """

        scope_id = None if server_id in (None, "") else parse_id(server_id, field="serverId")
        if external_id is not None and not isinstance(external_id, str):
            raise ValidationError("externalId must be a string.")
        scope_key = external_id.strip() if external_id else None

        try:
            with store_errors(logger, "list announcements"):
                announcements = self._database.query_announcements(
                    server_id=scope_id,
                    external_id=scope_key or None,
                    active_only=active_only,
                )
        except ServerError:
            if not self._lenient_reads:
                raise
            logger.warning("Announcement listing failed; returning an empty result")
            return []

        if not active_only:
            return announcements
        now = self._database.now()
        return [
            announcement
            for announcement in announcements
            if is_visible(announcement.active, announcement.starts_at, announcement.ends_at, now)
        ]

    def save(
        self,
        *,
        message: object,
        severity: object = None,
        starts_at: object = None,
        ends_at: object = None,
        server_id: object = None,
        active: object = None,
    ) -> Announcement:
        """Insert a new announcement and return it joined with its server."""

        text = _require_text(message, "Announcement message is required.")
        level = coerce_severity(severity)
        server_ref = self._parse_server_ref(server_id)
        is_active = parse_flag(active, default=True)
        window_start = normalize_datetime(starts_at)
        window_end = normalize_datetime(ends_at)

        try:
            with store_errors(logger, "save an announcement"):
                announcement = self._database.insert_announcement(
                    server_id=server_ref,
                    message=text,
                    severity=level,
                    starts_at=window_start,
                    ends_at=window_end,
                    active=is_active,
                )
        except MissingReference as exc:
            raise ValidationError("The selected server does not exist.") from exc

        logger.info(
            "Announcement %s created (server=%s, severity=%s)",
            announcement.id,
            server_ref if server_ref is not None else "global",
            level.value,
        )
        return announcement

    def _deactivate(self, record_id: int) -> bool:
        return self._database.deactivate_announcement(record_id)

    @staticmethod
    def _parse_server_ref(value: object) -> Optional[int]:
        if isinstance(value, bool):
            raise ValidationError("A valid serverId is required.")
        if value is None or value == 0 or (isinstance(value, str) and value.strip() in ("", "0")):
            return None
        return parse_id(value, field="serverId")


class UserManager(LifecycleManager):
    label = "User"

    def __init__(self, database: Database, *, sessions: Optional[SessionManager] = None) -> None:
        super().__init__(database)
        self._sessions = sessions

    def list(self) -> List[Account]:
        """Return every account, active or not, ordered by name."""

        with store_errors(logger, "list users"):
            return self._database.list_accounts()

    def save(
        self,
        *,
        name: object,
        password: object,
        role: object = None,
        created_by: Optional[Role] = None,
    ) -> Account:
        """Create an account.

        ``created_by`` is the acting user's current role. Only owners may
        create further owners; ``None`` means a trusted local caller such as
        the command line bootstrap.
        """

        username = _require_text(name, "Username and password are required.")
        if not isinstance(password, str) or not password:
            raise ValidationError("Username and password are required.")
        try:
            account_role = Role.ADMIN if role in (None, "") else Role.parse(role)
        except ValueError as exc:
            raise ValidationError("Role must be one of owner, admin, or staff.") from exc
        if account_role is Role.OWNER and created_by not in (None, Role.OWNER):
            raise Forbidden("Only owners can create owner accounts.")

        password_hash = hash_password(password)
        try:
            with store_errors(logger, f"create user {username}"):
                account = self._database.insert_account(username, password_hash, account_role)
        except UniqueViolation as exc:
            raise Conflict("User already exists.") from exc

        logger.info("User %s created with role %s", account.id, account.role.value)
        return account

    def soft_delete(self, record_id: object, *, acting_role: Optional[Role] = None) -> None:
        self._guard_owner(parse_id(record_id), acting_role)
        super().soft_delete(record_id)
        if self._sessions is not None:
            revoked = self._sessions.revoke_user(parse_id(record_id))
            if revoked:
                logger.info("Revoked %s session(s) for deactivated user %s", revoked, record_id)

    def reactivate(self, record_id: object, *, acting_role: Optional[Role] = None) -> None:
        parsed = parse_id(record_id)
        self._guard_owner(parsed, acting_role)
        with store_errors(logger, f"reactivate user {parsed}"):
            found = self._database.set_account_active(parsed, True)
        if not found:
            raise NotFound("User not found.")
        logger.info("User %s reactivated", parsed)

    def reset_credential(
        self,
        record_id: object,
        new_password: object,
        *,
        acting_role: Optional[Role] = None,
    ) -> None:
        """Replace the password of ``record_id`` without needing the old one.

        Like :meth:`save`, ``acting_role`` of ``None`` means a trusted local
        caller. Any other non-owner role may not touch an owner account.
        """

        parsed = parse_id(record_id)
        if not isinstance(new_password, str) or not new_password:
            raise ValidationError("A new password is required.")
        self._guard_owner(parsed, acting_role)

        password_hash = hash_password(new_password)
        with store_errors(logger, f"reset the password of user {parsed}"):
            found = self._database.set_account_password_hash(parsed, password_hash)
        if not found:
            raise NotFound("User not found.")
        logger.info("Password reset for user %s", parsed)

    def _guard_owner(self, record_id: int, acting_role: Optional[Role]) -> None:
        if acting_role in (None, Role.OWNER):
            return
        with store_errors(logger, f"look up the role of user {record_id}"):
            target_role = self._database.get_account_role(record_id)
        if target_role is Role.OWNER:
            logger.warning(
                "Refused %s request against owner account %s",
                acting_role.value,
                record_id,
            )
            raise Forbidden("Only owners can manage owner accounts.")

    def _deactivate(self, record_id: int) -> bool:
        return self._database.set_account_active(record_id, False)


__all__ = [
    "AnnouncementManager",
    "LifecycleManager",
    "ServerManager",
    "UserManager",
    "parse_flag",
    "parse_id",
]
