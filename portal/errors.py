"""Error taxonomy shared by the managers and the HTTP layer.

Every failure that reaches a caller is one of these exceptions. ``kind`` is
the machine-readable discriminator rendered into the response envelope and
``status_code`` is the HTTP status the presentation layer uses for it.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator


class PortalError(Exception):
    """Base class for errors surfaced to callers."""

    kind = "ServerError"
    status_code = 500
    default_message = "Internal server error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(PortalError):
    kind = "ValidationError"
    status_code = 422
    default_message = "Invalid input."


class NotFound(PortalError):
    kind = "NotFound"
    status_code = 404
    default_message = "Resource not found."


class Conflict(PortalError):
    kind = "Conflict"
    status_code = 409
    default_message = "Resource already exists."


class Unauthorized(PortalError):
    kind = "Unauthorized"
    status_code = 401
    default_message = "Unauthorized."


class InvalidCredentials(Unauthorized):
    """Raised for any login failure; the cause is never disclosed."""

    default_message = "Invalid credentials. Please try again."


class Forbidden(Unauthorized):
    kind = "Forbidden"
    status_code = 403
    default_message = "Forbidden."


class ServerError(PortalError):
    pass


class UpstreamUnavailable(ServerError):
    status_code = 502
    default_message = "Server status is currently unavailable."


@contextmanager
def store_errors(logger: logging.Logger, action: str) -> Iterator[None]:
    """Re-raise store failures as :class:`ServerError`, logging the detail."""

    try:
        yield
    except sqlite3.Error as exc:
        logger.exception("Database failure while attempting to %s", action)
        raise ServerError() from exc


__all__ = [
    "Conflict",
    "Forbidden",
    "InvalidCredentials",
    "NotFound",
    "PortalError",
    "ServerError",
    "Unauthorized",
    "UpstreamUnavailable",
    "ValidationError",
    "store_errors",
]
