"""HTTP API for the community portal's administrative backend."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .auth import Authenticator
from .config import PortalSettings, load_settings
from .database import Database
from .enrichment import BattleMetricsClient, ServerStatus
from .errors import PortalError, ServerError, ValidationError
from .lifecycle import AnnouncementManager, ServerManager, UserManager, parse_flag
from .models import Account, Announcement, Identity, Role, Server
from .sessions import SessionIdentity, SessionManager
from .visibility import format_timestamp

logger = logging.getLogger("portal.service")

SESSION_COOKIE_NAME = "portal_session"

CONTENT_ROLES = (Role.OWNER, Role.ADMIN, Role.STAFF)
USER_ADMIN_ROLES = (Role.OWNER, Role.ADMIN)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(_CamelModel):
    name: Optional[str] = Field(default=None, alias="username")
    password: Optional[str] = None


class ServerUpsertRequest(_CamelModel):
    external_id: Optional[Union[str, int]] = Field(default=None, alias="externalId")


class AnnouncementCreateRequest(_CamelModel):
    message: Optional[str] = None
    severity: Optional[Any] = None
    starts_at: Optional[Any] = Field(default=None, alias="startsAt")
    ends_at: Optional[Any] = Field(default=None, alias="endsAt")
    server_id: Optional[Union[int, str]] = Field(default=None, alias="serverId")
    is_active: Optional[Union[bool, int, str]] = Field(default=None, alias="isActive")


class UserCreateRequest(_CamelModel):
    name: Optional[str] = Field(default=None, alias="username")
    password: Optional[str] = None
    role: Optional[str] = None


class PasswordResetRequest(_CamelModel):
    password: Optional[str] = None


def _format(value: Optional[datetime]) -> Optional[str]:
    return format_timestamp(value) if value is not None else None


def _server_payload(server: Server) -> Dict[str, Any]:
    return {
        "id": server.id,
        "externalId": server.external_id,
        "displayName": server.display_name,
        "gameTitle": server.game_title,
        "region": server.region,
        "isActive": server.active,
        "sortOrder": server.sort_order,
        "createdAt": _format(server.created_at),
        "updatedAt": _format(server.updated_at),
    }


def _announcement_payload(announcement: Announcement) -> Dict[str, Any]:
    return {
        "id": announcement.id,
        "serverId": announcement.server_id,
        "serverName": announcement.server_name,
        "externalId": announcement.server_external_id,
        "message": announcement.message,
        "severity": announcement.severity.value,
        "startsAt": _format(announcement.starts_at),
        "endsAt": _format(announcement.ends_at),
        "isActive": announcement.active,
        "createdAt": _format(announcement.created_at),
        "updatedAt": _format(announcement.updated_at),
    }


def _account_payload(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "username": account.name,
        "role": account.role.value,
        "isActive": account.active,
        "createdAt": _format(account.created_at),
        "updatedAt": _format(account.updated_at),
    }


def _status_payload(server_status: ServerStatus) -> Dict[str, Any]:
    return {
        "externalId": server_status.external_id,
        "name": server_status.name,
        "players": server_status.players,
        "maxPlayers": server_status.max_players,
        "status": server_status.status,
        "map": server_status.map,
        "ip": server_status.ip,
        "port": server_status.port,
    }


def _success(data: Any = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"success": True}
    if data is not None:
        payload["data"] = data
    return payload


def _failure(kind: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "kind": kind, "message": message},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as the shared ``success: false`` envelope."""

    @app.exception_handler(PortalError)
    async def _portal_error(request: Request, exc: PortalError) -> JSONResponse:
        return _failure(exc.kind, exc.message, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _failure(
            ValidationError.kind,
            ValidationError.default_message,
            ValidationError.status_code,
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error while serving %s %s", request.method, request.url.path)
        return _failure(ServerError.kind, ServerError.default_message, ServerError.status_code)


def register_api_routes(
    app: FastAPI,
    *,
    authenticator: Authenticator,
    session_manager: SessionManager,
    servers: ServerManager,
    announcements: AnnouncementManager,
    users: UserManager,
    secure_cookies: bool,
) -> None:
    """Expose the JSON API endpoints on the provided FastAPI application."""

    def current_session(request: Request) -> Optional[SessionIdentity]:
        token = request.cookies.get(SESSION_COOKIE_NAME)
        if not token:
            return None
        return session_manager.resolve(token)

    def content_editor(session: Optional[SessionIdentity] = Depends(current_session)) -> Identity:
        return authenticator.require_role(session, CONTENT_ROLES)

    def user_admin(session: Optional[SessionIdentity] = Depends(current_session)) -> Identity:
        return authenticator.require_role(session, USER_ADMIN_ROLES)

    def _issue_session_cookie(response: Response, token: str) -> None:
        response.set_cookie(
            SESSION_COOKIE_NAME,
            token,
            max_age=session_manager.cookie_max_age,
            secure=secure_cookies,
            httponly=True,
            samesite="lax",
            path="/",
        )

    def _clear_session_cookie(response: Response, token: Optional[str]) -> None:
        if token:
            session_manager.destroy(token)
        response.delete_cookie(SESSION_COOKIE_NAME, path="/")

    @app.get("/healthz")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @app.post("/api/login")
    def login(payload: LoginRequest, request: Request, response: Response) -> Dict[str, Any]:
        identity = authenticator.verify_credentials(payload.name, payload.password)
        token = session_manager.create(
            SessionIdentity(id=identity.id, name=identity.name),
            previous_token=request.cookies.get(SESSION_COOKIE_NAME),
        )
        _issue_session_cookie(response, token)
        return _success({"id": identity.id, "username": identity.name, "role": identity.role.value})

    @app.post("/api/logout")
    def logout(request: Request, response: Response) -> Dict[str, Any]:
        _clear_session_cookie(response, request.cookies.get(SESSION_COOKIE_NAME))
        return _success()

    @app.get("/api/auth/check")
    def auth_check(session: Optional[SessionIdentity] = Depends(current_session)) -> Dict[str, Any]:
        if not authenticator.is_authenticated(session):
            return _success({"authenticated": False})
        role = authenticator.resolve_role(session)
        return _success(
            {
                "authenticated": True,
                "userId": session.id,
                "userName": session.name,
                "role": role.value,
            }
        )

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------
    @app.get("/api/servers")
    def list_servers() -> Dict[str, Any]:
        return _success([_server_payload(server) for server in servers.list()])

    @app.post("/api/servers")
    def upsert_server(
        payload: ServerUpsertRequest,
        identity: Identity = Depends(content_editor),
    ) -> Dict[str, Any]:
        server = servers.upsert(payload.external_id)
        return _success(_server_payload(server))

    @app.delete("/api/servers/{server_id}")
    def delete_server(server_id: str, identity: Identity = Depends(content_editor)) -> Dict[str, Any]:
        servers.soft_delete(server_id)
        return _success()

    @app.get("/api/servers/status")
    def cluster_status() -> Dict[str, Any]:
        return _success([_status_payload(entry) for entry in servers.cluster_status()])

    @app.get("/api/servers/{external_id}/status")
    def server_status(external_id: str) -> Dict[str, Any]:
        return _success(_status_payload(servers.get_status(external_id)))

    # ------------------------------------------------------------------
    # Announcements
    # ------------------------------------------------------------------
    @app.get("/api/announcements")
    def list_announcements(
        server_id: Optional[str] = Query(default=None, alias="serverId"),
        external_id: Optional[str] = Query(default=None, alias="externalId"),
        active: Optional[str] = Query(default=None),
    ) -> Dict[str, Any]:
        records = announcements.list(
            server_id=server_id,
            external_id=external_id,
            active_only=parse_flag(active, default=False, field="active"),
        )
        return _success([_announcement_payload(record) for record in records])

    @app.post("/api/announcements", status_code=status.HTTP_201_CREATED)
    def create_announcement(
        payload: AnnouncementCreateRequest,
        identity: Identity = Depends(content_editor),
    ) -> Dict[str, Any]:
        announcement = announcements.save(
            message=payload.message,
            severity=payload.severity,
            starts_at=payload.starts_at,
            ends_at=payload.ends_at,
            server_id=payload.server_id,
            active=payload.is_active,
        )
        return _success(_announcement_payload(announcement))

    @app.delete("/api/announcements/{announcement_id}")
    def delete_announcement(
        announcement_id: str,
        identity: Identity = Depends(content_editor),
    ) -> Dict[str, Any]:
        announcements.soft_delete(announcement_id)
        return _success()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    @app.get("/api/users")
    def list_users(identity: Identity = Depends(user_admin)) -> Dict[str, Any]:
        return _success([_account_payload(account) for account in users.list()])

    @app.post("/api/users", status_code=status.HTTP_201_CREATED)
    def create_user(
        payload: UserCreateRequest,
        identity: Identity = Depends(user_admin),
    ) -> Dict[str, Any]:
        account = users.save(
            name=payload.name,
            password=payload.password,
            role=payload.role,
            created_by=identity.role,
        )
        return _success(_account_payload(account))

    @app.post("/api/users/{user_id}/deactivate")
    def deactivate_user(user_id: str, identity: Identity = Depends(user_admin)) -> Dict[str, Any]:
        users.soft_delete(user_id, acting_role=identity.role)
        return _success()

    @app.post("/api/users/{user_id}/reactivate")
    def reactivate_user(user_id: str, identity: Identity = Depends(user_admin)) -> Dict[str, Any]:
        users.reactivate(user_id, acting_role=identity.role)
        return _success()

    @app.post("/api/users/{user_id}/password")
    def reset_password(
        user_id: str,
        payload: PasswordResetRequest,
        identity: Identity = Depends(user_admin),
    ) -> Dict[str, Any]:
        users.reset_credential(user_id, payload.password, acting_role=identity.role)
        return _success()


def _initialise_database(database: Database) -> Database:
    database.initialize()
    return database


def create_app(
    *,
    database: Database | None = None,
    settings: PortalSettings | None = None,
    enrichment: BattleMetricsClient | None = None,
    session_manager: SessionManager | None = None,
) -> FastAPI:
    """Build the FastAPI application and wire the managers together."""

    config = settings or load_settings()
    db = _initialise_database(database or Database(config.database_path))
    client = enrichment or BattleMetricsClient.from_settings(config)
    sessions = session_manager or SessionManager(ttl=timedelta(hours=config.session_ttl_hours))

    if not config.secure_cookies:
        logger.warning(
            "Session cookies are not marked as secure. Only disable secure cookies for"
            " local development."
        )
    if not client.enabled:
        logger.warning("No BattleMetrics API key configured; server enrichment is disabled")

    authenticator = Authenticator(db, fallback_role=config.fallback_role)
    servers = ServerManager(db, client)
    announcements = AnnouncementManager(db, lenient_reads=config.lenient_announcement_reads)
    users = UserManager(db, sessions=sessions)

    app = FastAPI(
        title="Community Portal API",
        version="0.1.0",
        description="Administrative backend for servers, announcements, and staff accounts.",
    )

    app.state.database = db
    app.state.settings = config
    app.state.session_manager = sessions
    app.state.authenticator = authenticator

    register_exception_handlers(app)
    register_api_routes(
        app,
        authenticator=authenticator,
        session_manager=sessions,
        servers=servers,
        announcements=announcements,
        users=users,
        secure_cookies=config.secure_cookies,
    )
    return app


__all__ = ["SESSION_COOKIE_NAME", "create_app"]
