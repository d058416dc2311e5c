"""SQLite-backed persistence for accounts, servers, and announcements."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from passlib.context import CryptContext

from .config import resolve_database_path
from .models import Account, Announcement, Role, Server, Severity
from .visibility import format_timestamp, parse_timestamp


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


# Also verifies legacy "$2y$" bcrypt hashes.
_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    """Return a salted, adaptive-cost digest of ``password``."""

    if not password:
        raise ValueError("Password must not be empty")
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


def dummy_verify() -> None:
    """Spend the same effort as a real verification when no account matched."""

    _pwd_context.dummy_verify()


class UniqueViolation(Exception):
    """Raised when an insert collides with a unique column."""


class MissingReference(Exception):
    """Raised when an insert points at a row that does not exist."""


_ANNOUNCEMENT_SELECT = """
    SELECT
        a.id,
        a.server_id,
        a.message,
        a.severity,
        a.starts_at,
        a.ends_at,
        a.is_active,
        a.created_at,
        a.updated_at,
        s.display_name AS server_name,
        s.external_id AS server_external_id
    FROM announcements a
    LEFT JOIN servers s ON s.id = a.server_id
"""


class Database:
    """Simple wrapper around SQLite for the portal's three tables.

    Every mutation is a single statement inside its own transaction.
    """

    def __init__(self, path: Path, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        _ensure_directory(path)
        self._path = path
        self._clock = clock or datetime.now

    @property
    def path(self) -> Path:
        return self._path

    def now(self) -> datetime:
        """Current local wall-clock time, truncated to whole seconds."""

        return self._clock().replace(microsecond=0)

    def _timestamp(self) -> str:
        return format_timestamp(self.now())

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._transaction() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'admin'
                        CHECK (role IN ('owner', 'admin', 'staff')),
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS servers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    external_id TEXT NOT NULL UNIQUE,
                    display_name TEXT NOT NULL,
                    game_title TEXT,
                    region TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS announcements (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    server_id INTEGER REFERENCES servers(id) ON DELETE SET NULL,
                    message TEXT NOT NULL,
                    severity TEXT NOT NULL DEFAULT 'info',
                    starts_at TEXT,
                    ends_at TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_servers_is_active ON servers(is_active);
                CREATE INDEX IF NOT EXISTS idx_servers_sort_order ON servers(sort_order);
                CREATE INDEX IF NOT EXISTS idx_announcements_server_id ON announcements(server_id);
                CREATE INDEX IF NOT EXISTS idx_announcements_is_active ON announcements(is_active);
                CREATE INDEX IF NOT EXISTS idx_announcements_window ON announcements(starts_at, ends_at);
                """
            )

    # ------------------------------------------------------------------
    # Credential store
    # ------------------------------------------------------------------
    def insert_account(self, name: str, password_hash: str, role: Role) -> Account:
        """Insert a new active account and return it."""

        timestamp = self._timestamp()
        with self._transaction() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users (name, password_hash, role, is_active, created_at, updated_at)
                    VALUES (?, ?, ?, 1, ?, ?)
                    """,
                    (name, password_hash, role.value, timestamp, timestamp),
                )
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" in str(exc).upper():
                    raise UniqueViolation(f"An account named {name!r} already exists") from exc
                raise
            account_id = cursor.lastrowid

        account = self.get_account(account_id)
        if account is None:
            raise RuntimeError("Failed to load account after creation")
        return account

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_account(row)

    def find_account_by_name(self, name: str) -> Optional[Tuple[Account, str]]:
        """Return the account with ``name`` and its stored password hash."""

        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM users WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        return self._row_to_account(row), str(row["password_hash"])

    def get_account_role(self, account_id: int) -> Optional[Role]:
        with self._transaction() as conn:
            row = conn.execute("SELECT role FROM users WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            return None
        return Role(str(row["role"]))

    def list_accounts(self) -> List[Account]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY name ASC, id ASC").fetchall()
        return [self._row_to_account(row) for row in rows]

    def set_account_active(self, account_id: int, active: bool) -> bool:
        """Flip the active flag. Returns ``False`` when no such account exists."""

        with self._transaction() as conn:
            rows = conn.execute(
                "UPDATE users SET is_active = ?, updated_at = ? WHERE id = ? RETURNING id",
                (int(bool(active)), self._timestamp(), account_id),
            ).fetchall()
        return bool(rows)

    def set_account_password_hash(self, account_id: int, password_hash: str) -> bool:
        with self._transaction() as conn:
            rows = conn.execute(
                "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ? RETURNING id",
                (password_hash, self._timestamp(), account_id),
            ).fetchall()
        return bool(rows)

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------
    def upsert_server(
        self,
        external_id: str,
        *,
        display_name: str,
        game_title: Optional[str],
        region: Optional[str],
    ) -> Server:
        """Insert or overwrite the server keyed on ``external_id``.

        The row always ends up active; the result is read back from the table.
        """

        timestamp = self._timestamp()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO servers (
                    external_id, display_name, game_title, region, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(external_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    game_title = excluded.game_title,
                    region = excluded.region,
                    is_active = 1,
                    updated_at = excluded.updated_at
                """,
                (external_id, display_name, game_title, region, timestamp, timestamp),
            )
            row = conn.execute(
                "SELECT * FROM servers WHERE external_id = ?",
                (external_id,),
            ).fetchone()

        if row is None:
            raise RuntimeError("Failed to load server after upsert")
        return self._row_to_server(row)

    def get_server(self, server_id: int) -> Optional[Server]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM servers WHERE id = ?", (server_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_server(row)

    def get_server_by_external_id(self, external_id: str) -> Optional[Server]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM servers WHERE external_id = ?",
                (external_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_server(row)

    def list_active_servers(self) -> List[Server]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM servers WHERE is_active = 1 ORDER BY sort_order ASC, id ASC"
            ).fetchall()
        return [self._row_to_server(row) for row in rows]

    def set_server_active(self, server_id: int, active: bool) -> bool:
        with self._transaction() as conn:
            rows = conn.execute(
                "UPDATE servers SET is_active = ?, updated_at = ? WHERE id = ? RETURNING id",
                (int(bool(active)), self._timestamp(), server_id),
            ).fetchall()
        return bool(rows)

    # ------------------------------------------------------------------
    # Announcements
    # ------------------------------------------------------------------
    def insert_announcement(
        self,
        *,
        server_id: Optional[int],
        message: str,
        severity: Severity,
        starts_at: Optional[str],
        ends_at: Optional[str],
        active: bool,
    ) -> Announcement:
        timestamp = self._timestamp()
        with self._transaction() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO announcements (
                        server_id, message, severity, starts_at, ends_at, is_active, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        server_id,
                        message,
                        severity.value,
                        starts_at,
                        ends_at,
                        int(bool(active)),
                        timestamp,
                        timestamp,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                if "FOREIGN KEY" in str(exc).upper():
                    raise MissingReference(f"Server {server_id} does not exist") from exc
                raise
            announcement_id = cursor.lastrowid

        announcement = self.get_announcement(announcement_id)
        if announcement is None:
            raise RuntimeError("Failed to load announcement after creation")
        return announcement

    def get_announcement(self, announcement_id: int) -> Optional[Announcement]:
        with self._transaction() as conn:
            row = conn.execute(
                _ANNOUNCEMENT_SELECT + " WHERE a.id = ?",
                (announcement_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_announcement(row)

    def query_announcements(
        self,
        *,
        server_id: Optional[int] = None,
        external_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Announcement]:
        """Return announcements newest first.

        Server scopes always include global announcements. The time window is
        not applied here; callers filter on it.
        """

        conditions: List[str] = []
        params: List[object] = []
        if server_id is not None:
            conditions.append("(a.server_id = ? OR a.server_id IS NULL)")
            params.append(server_id)
        if external_id is not None:
            conditions.append("(s.external_id = ? OR a.server_id IS NULL)")
            params.append(external_id)
        if active_only:
            conditions.append("a.is_active = 1")

        query = _ANNOUNCEMENT_SELECT
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY a.created_at DESC, a.id DESC"

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_announcement(row) for row in rows]

    def deactivate_announcement(self, announcement_id: int) -> bool:
        """Soft-delete an announcement, closing its window if it was open-ended."""

        timestamp = self._timestamp()
        with self._transaction() as conn:
            rows = conn.execute(
                """
                UPDATE announcements
                   SET is_active = 0, ends_at = COALESCE(ends_at, ?), updated_at = ?
                 WHERE id = ?
                RETURNING id
                """,
                (timestamp, timestamp, announcement_id),
            ).fetchall()
        return bool(rows)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_account(self, row: sqlite3.Row) -> Account:
        return Account(
            id=int(row["id"]),
            name=str(row["name"]),
            role=Role(str(row["role"])),
            active=bool(row["is_active"]),
            created_at=parse_timestamp(str(row["created_at"])),
            updated_at=parse_timestamp(str(row["updated_at"])),
        )

    def _row_to_server(self, row: sqlite3.Row) -> Server:
        return Server(
            id=int(row["id"]),
            external_id=str(row["external_id"]),
            display_name=str(row["display_name"]),
            game_title=row["game_title"],
            region=row["region"],
            active=bool(row["is_active"]),
            sort_order=int(row["sort_order"]),
            created_at=parse_timestamp(str(row["created_at"])),
            updated_at=parse_timestamp(str(row["updated_at"])),
        )

    def _row_to_announcement(self, row: sqlite3.Row) -> Announcement:
        server_id = row["server_id"]
        return Announcement(
            id=int(row["id"]),
            server_id=int(server_id) if server_id is not None else None,
            message=str(row["message"]),
            severity=Severity(str(row["severity"])),
            starts_at=parse_timestamp(row["starts_at"]),
            ends_at=parse_timestamp(row["ends_at"]),
            active=bool(row["is_active"]),
            created_at=parse_timestamp(str(row["created_at"])),
            updated_at=parse_timestamp(str(row["updated_at"])),
            server_name=row["server_name"],
            server_external_id=row["server_external_id"],
        )


__all__ = [
    "Database",
    "MissingReference",
    "UniqueViolation",
    "dummy_verify",
    "hash_password",
    "resolve_database_path",
    "verify_password",
]
