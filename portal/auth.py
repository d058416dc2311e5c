"""Credential verification and role resolution for portal staff."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .config import DEFAULT_FALLBACK_ROLE
from .database import Database, dummy_verify, verify_password
from .errors import Forbidden, InvalidCredentials, Unauthorized, ValidationError, store_errors
from .models import Identity, Role
from .sessions import SessionIdentity

logger = logging.getLogger("portal.auth")


class Authenticator:
    """Authenticate staff and decide what an existing session may do.

    Roles are never read from the session. Each check goes back to the
    credential store so that a role change or demotion applies to sessions
    that are already open.
    """

    def __init__(self, database: Database, *, fallback_role: Role = DEFAULT_FALLBACK_ROLE) -> None:
        if fallback_role is Role.OWNER:
            raise ValueError("The fallback role must never be 'owner'")
        self._database = database
        self._fallback_role = fallback_role

    @property
    def fallback_role(self) -> Role:
        return self._fallback_role

    def verify_credentials(self, name: object, password: object) -> Identity:
        """Return the identity for a valid name/password pair.

        Raises :class:`ValidationError` when either value is missing and
        :class:`InvalidCredentials` for every other failure.
        """

        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Username and password are required.")
        if not isinstance(password, str) or not password:
            raise ValidationError("Username and password are required.")

        name = name.strip()
        with store_errors(logger, "look up an account"):
            found = self._database.find_account_by_name(name)

        if found is None:
            dummy_verify()
            logger.warning("Failed login attempt for unknown account %s", name)
            raise InvalidCredentials()

        account, password_hash = found
        if not verify_password(password, password_hash):
            logger.warning("Failed login attempt for account %s", name)
            raise InvalidCredentials()
        if not account.active:
            logger.warning("Login attempt for deactivated account %s", name)
            raise InvalidCredentials()

        logger.info("Account %s signed in", account.id)
        return Identity(id=account.id, name=account.name, role=account.role)

    @staticmethod
    def is_authenticated(session: Optional[SessionIdentity]) -> bool:
        if session is None:
            return False
        user_id = session.id
        return isinstance(user_id, int) and not isinstance(user_id, bool) and user_id > 0

    def resolve_role(self, session: SessionIdentity) -> Role:
        """Return the account's current role, re-read from the store."""

        with store_errors(logger, "resolve an account role"):
            role = self._database.get_account_role(session.id)
        if role is None:
            logger.warning(
                "No account row for session user %s; assuming role %s",
                session.id,
                self._fallback_role.value,
            )
            return self._fallback_role
        return role

    def require_role(self, session: Optional[SessionIdentity], allowed: Iterable[Role]) -> Identity:
        """Return the caller's identity if its current role is in ``allowed``."""

        if not self.is_authenticated(session):
            raise Unauthorized("Authentication required.")
        role = self.resolve_role(session)
        if role not in set(allowed):
            raise Forbidden("You do not have permission to perform this action.")
        return Identity(id=session.id, name=session.name, role=role)


__all__ = ["Authenticator"]
