"""HTTP API exposing the account finder tools."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import ConfigurationError, FinderConfig, load_config, resolve_config_path
from .manager import DEFAULT_MAX_RESULTS, PlexAccountManager
from .models import AuthPinResult, PlexPin, SearchResult, StatusReport
from .plex import CredentialFlowFailure
from .security import ApiTokenGuard

logger = logging.getLogger("plex_finder.service")

SERVICE_NAME = "plex-account-finder"
SERVICE_VERSION = "0.1.0"


class StatusRequest(BaseModel):
    refresh: bool = Field(default=False, description="Refresh cached server and user data")
    include_user_count: bool = Field(default=False, description="Count users across servers")


class AccountView(BaseModel):
    label: str
    valid: bool
    username: Optional[str] = None
    email: Optional[str] = None


class ServerView(BaseModel):
    name: str
    machine_identifier: str
    product: str
    version: str
    platform: str
    account_label: str
    owned: bool


class StatusResponse(BaseModel):
    status: str
    server_time: datetime
    accounts: List[AccountView]
    servers: List[ServerView]
    user_count: Optional[int] = None
    summary: str


class LookupRequest(BaseModel):
    query: str = Field(..., min_length=1, description="Email, username, or partial name to search for")
    max_results: Optional[int] = Field(default=None, ge=1, le=50)
    refresh: bool = Field(default=False, description="Bypass caches and fetch fresh data from Plex")


class UserView(BaseModel):
    id: Optional[int] = None
    uuid: Optional[str] = None
    username: Optional[str] = None
    title: Optional[str] = None
    email: Optional[str] = None
    restricted: Optional[bool] = None
    home: Optional[bool] = None
    guest: Optional[bool] = None
    can_invite: Optional[bool] = None
    server_identifier: str
    server_name: str
    account_label: str


class MatchDetailView(BaseModel):
    key: str
    value: str
    indices: List[List[int]]


class MatchView(BaseModel):
    score: float
    user: UserView
    match_details: List[MatchDetailView]


class LookupResponse(BaseModel):
    matches: List[MatchView]
    total_matched: int
    total_searched: int
    summary: str


class AuthUrlRequest(BaseModel):
    client_identifier: Optional[str] = Field(default=None, min_length=1, max_length=256)


class PinView(BaseModel):
    id: int
    code: str
    client_identifier: str
    expires_at: Optional[str] = None
    auth_token: Optional[str] = None


class AuthUrlResponse(BaseModel):
    authorization_url: str
    pin: PinView
    instructions: str


class PinStatusRequest(BaseModel):
    pin_id: int = Field(..., description="PIN identifier returned by plex_generate_auth_url")
    client_identifier: str = Field(..., min_length=1, max_length=256)


class PinStatusResponse(BaseModel):
    pin: PinView
    authorized: bool
    message: str


def format_status_summary(report: StatusReport) -> str:
    lines = [
        f"Accounts configured: {report.account_count}",
        f"Servers discovered: {len(report.servers)}",
        f"Accounts valid: {report.valid_accounts}/{len(report.accounts)}",
    ]
    if report.user_count is not None:
        lines.append(f"Distinct users found: {report.user_count}")
    return "\n".join(lines)


def format_lookup_summary(result: SearchResult) -> str:
    if not result.matches:
        return "No matching Plex users were found."

    lines: List[str] = []
    for index, match in enumerate(result.matches, start=1):
        user = match.user
        identity = " · ".join(part for part in (user.username, user.email, user.title) if part)
        lines.append(
            f"{index}. {identity or 'Unknown'} — server: {user.server_name} "
            f"(account: {user.account_label}) [score={match.score:.3f}]"
        )
    lines.extend(
        [
            "",
            f"Matches returned: {len(result.matches)}",
            f"Total users searched: {result.total_searched}",
        ]
    )
    return "\n".join(lines)


def format_auth_instructions(result: AuthPinResult) -> str:
    pin = result.pin
    return "\n".join(
        [
            "Open the following URL in your browser and sign in to Plex to authorize access:",
            result.authorization_url,
            "",
            f"PIN ID: {pin.id}",
            f"Client Identifier: {pin.client_identifier}",
            f"PIN Code: {pin.code}",
            f"Expires At: {pin.expires_at or 'unknown'}",
            "",
            "After completing the login, run plex_check_auth_pin with the PIN ID and "
            "client identifier to retrieve the token.",
        ]
    )


def pin_status_message(pin: PlexPin) -> str:
    if pin.authorized:
        return "Authorization complete. Use the returned auth token as your Plex API token."
    return "Authorization pending. Please complete the login flow in your browser."


def format_pin_status(pin: PlexPin) -> str:
    return "\n".join(
        [
            f"PIN ID: {pin.id}",
            f"Client Identifier: {pin.client_identifier}",
            f"Expires At: {pin.expires_at or 'unknown'}",
            f"Auth Token Received: {'yes' if pin.authorized else 'no'}",
            "",
            pin_status_message(pin),
        ]
    )


def _pin_to_view(pin: PlexPin) -> PinView:
    return PinView(**pin.to_dict())


def _status_to_response(report: StatusReport) -> StatusResponse:
    return StatusResponse(
        status="ok",
        server_time=datetime.now(timezone.utc),
        accounts=[AccountView(**account.to_dict()) for account in report.accounts],
        servers=[
            ServerView(
                name=server.friendly_name,
                machine_identifier=server.machine_identifier,
                product=server.product,
                version=server.version,
                platform=server.platform,
                account_label=server.account_label,
                owned=server.owned,
            )
            for server in report.servers
        ],
        user_count=report.user_count,
        summary=format_status_summary(report),
    )


def _search_to_response(result: SearchResult) -> LookupResponse:
    payload = result.to_dict()
    return LookupResponse(
        matches=[MatchView(**match) for match in payload["matches"]],
        total_matched=result.total_matched,
        total_searched=result.total_searched,
        summary=format_lookup_summary(result),
    )


def register_tool_routes(
    app: FastAPI,
    manager: PlexAccountManager,
    *,
    auth: ApiTokenGuard | None = None,
) -> None:
    """Expose the manager operations as JSON tool endpoints."""

    dependencies = [Depends(auth)] if auth is not None else []
    router = APIRouter(prefix="/v1", dependencies=dependencies)

    @router.post("/tools/plex_status", response_model=StatusResponse)
    async def plex_status(request: StatusRequest) -> StatusResponse:
        logger.info(
            "Status tool invoked (refresh=%s, include_user_count=%s)",
            request.refresh,
            request.include_user_count,
        )
        report = await manager.status(
            refresh=request.refresh,
            include_user_count=request.include_user_count,
        )
        return _status_to_response(report)

    @router.post("/tools/plex_lookup_user", response_model=LookupResponse)
    async def plex_lookup_user(request: LookupRequest) -> LookupResponse:
        logger.info(
            "Lookup tool invoked (query=%r, max_results=%s, refresh=%s)",
            request.query,
            request.max_results,
            request.refresh,
        )
        result = await manager.search_users(
            request.query,
            max_results=request.max_results or DEFAULT_MAX_RESULTS,
            refresh=request.refresh,
        )
        return _search_to_response(result)

    @router.post("/tools/plex_generate_auth_url", response_model=AuthUrlResponse)
    async def plex_generate_auth_url(request: AuthUrlRequest) -> AuthUrlResponse:
        logger.info(
            "Auth URL generation requested (custom identifier: %s)",
            request.client_identifier is not None,
        )
        result = await manager.generate_auth_pin(request.client_identifier)
        return AuthUrlResponse(
            authorization_url=result.authorization_url,
            pin=_pin_to_view(result.pin),
            instructions=format_auth_instructions(result),
        )

    @router.post("/tools/plex_check_auth_pin", response_model=PinStatusResponse)
    async def plex_check_auth_pin(request: PinStatusRequest) -> PinStatusResponse:
        logger.info("Auth PIN status requested for PIN %s", request.pin_id)
        pin = await manager.check_auth_pin_status(request.pin_id, request.client_identifier)
        return PinStatusResponse(
            pin=_pin_to_view(pin),
            authorized=pin.authorized,
            message=pin_status_message(pin),
        )

    @router.post("/cache/clear")
    async def clear_cache() -> Dict[str, str]:
        manager.clear_caches()
        logger.info("Caches cleared")
        return {"status": "cleared"}

    app.include_router(router)


def create_app(
    *,
    manager: PlexAccountManager | None = None,
    config: FinderConfig | None = None,
    auth: ApiTokenGuard | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for the account finder."""

    if manager is None:
        if config is None:
            config = load_config(resolve_config_path(os.getenv("PLEX_FINDER_CONFIG")))
        manager = PlexAccountManager.from_config(config)
        logger.info(
            "Starting Plex account finder with %s account(s), cache TTL %ss",
            manager.get_account_count(),
            config.cache_ttl_seconds,
        )

    if manager.get_account_count() == 0:
        logger.warning(
            "No Plex accounts configured. Tools will operate in degraded mode until tokens are provided."
        )

    if auth is None:
        auth = ApiTokenGuard.from_config(config) if config is not None else ApiTokenGuard.from_environ()
    if auth is None:
        logger.info("No API tokens configured; tool routes are unauthenticated.")

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await manager.aclose()

    app = FastAPI(
        title="Plex Account Finder",
        version=SERVICE_VERSION,
        description="Look up Plex user access across every configured account and server.",
        lifespan=lifespan,
    )
    app.state.manager = manager

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    register_tool_routes(app, manager, auth=auth)

    @app.exception_handler(CredentialFlowFailure)
    async def handle_credential_failure(_: object, exc: CredentialFlowFailure):
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def handle_configuration_error(_: object, exc: ConfigurationError):
        logger.error("Configuration error: %s", exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)})

    return app


__all__ = [
    "create_app",
    "format_auth_instructions",
    "format_lookup_summary",
    "format_pin_status",
    "format_status_summary",
    "register_tool_routes",
]
