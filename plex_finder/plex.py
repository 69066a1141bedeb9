"""Async client for plex.tv and the media servers it advertises."""

from __future__ import annotations

import logging
import uuid
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import httpx

from .models import AccountInfo, PlexPin, PlexResource, PlexServer, ServerConnection, UserAccess

logger = logging.getLogger("plex_finder.plex")

PLEX_API_BASE = "https://plex.tv"
PLEX_AUTH_URL = "https://app.plex.tv/auth"
PLEX_PRODUCT = "Plex MCP Account Finder"
PLEX_VERSION = "0.1.0"
PLEX_PLATFORM = "Python"
PLEX_DEVICE = "MCP"
MEDIA_SERVER_PRODUCT = "Plex Media Server"

DEFAULT_TIMEOUT = 15.0
DEFAULT_PROBE_TIMEOUT = 5.0


class PlexError(RuntimeError):
    """Raised when a call to plex.tv or a media server fails."""


class UpstreamUnavailable(PlexError):
    """Raised when a validation, listing or probe call cannot be completed."""


class ConnectionExhausted(UpstreamUnavailable):
    """Raised when none of a resource's advertised connections answered."""

    def __init__(self, resource: PlexResource) -> None:
        super().__init__(
            f"Unable to connect to Plex server '{resource.name}' ({resource.machine_identifier})"
        )
        self.resource = resource


class CredentialFlowFailure(PlexError):
    """Raised when creating or polling an authorization PIN fails."""


def build_headers(token: str | None = None, client_identifier: str | None = None) -> Dict[str, str]:
    headers = {
        "X-Plex-Product": PLEX_PRODUCT,
        "X-Plex-Version": PLEX_VERSION,
        "X-Plex-Platform": PLEX_PLATFORM,
        "X-Plex-Device": PLEX_DEVICE,
        "X-Plex-Client-Identifier": client_identifier or str(uuid.uuid4()),
        "Accept": "application/json",
    }
    if token:
        headers["X-Plex-Token"] = token
    return headers


def _clean(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first(attrs: Mapping[str, Any], *names: str) -> Optional[str]:
    for name in names:
        value = _clean(attrs.get(name))
        if value is not None:
            return value
    return None


def _normalize_bool(value: object) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        lowered = value.strip().lower()
        return lowered in {"1", "true"}
    return None


def _normalize_int(value: object) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def normalize_user_record(attrs: Mapping[str, Any], server: PlexServer) -> UserAccess:
    """Map a local-account or shared-user record onto :class:`UserAccess`.

    plex.tv and the media servers spell the same fields differently (JSON keys
    on ``/accounts``, XML attributes on ``shared_servers``); every variant is
    handled here so the rest of the code only sees the canonical record.
    Empty strings are treated as missing values.
    """

    return UserAccess(
        id=_normalize_int(attrs.get("userID", attrs.get("id"))),
        uuid=_first(attrs, "uuid", "UUID"),
        username=_first(attrs, "username", "name"),
        title=_first(attrs, "title", "friendlyName"),
        email=_first(attrs, "email", "Email"),
        restricted=_normalize_bool(attrs.get("restricted")),
        home=_normalize_bool(attrs.get("home")),
        guest=_normalize_bool(attrs.get("guest")),
        can_invite=_normalize_bool(attrs.get("canInvite")),
        server_identifier=server.machine_identifier,
        server_name=server.friendly_name,
        account_label=server.account_label,
    )


def parse_resources(xml_text: str) -> List[PlexResource]:
    """Parse the ``/pms/resources`` document, keeping media servers only."""

    root = ET.fromstring(xml_text)
    resources: List[PlexResource] = []
    for device in root.iter("Device"):
        attrs = device.attrib
        if attrs.get("product") != MEDIA_SERVER_PRODUCT:
            continue
        connections = tuple(
            ServerConnection(
                protocol=conn.attrib.get("protocol", ""),
                address=conn.attrib.get("address", ""),
                port=_normalize_int(conn.attrib.get("port")) or 0,
                uri=conn.attrib.get("uri", ""),
                local=_normalize_bool(conn.attrib.get("local")) or False,
                relay=_normalize_bool(conn.attrib.get("relay")) or False,
            )
            for conn in device.findall("Connection")
        )
        resources.append(
            PlexResource(
                name=attrs.get("name", ""),
                provides=attrs.get("provides", ""),
                machine_identifier=attrs.get("clientIdentifier", ""),
                owned=attrs.get("owned") == "1",
                product=attrs.get("product", ""),
                version=attrs.get("productVersion", ""),
                platform=attrs.get("platform", ""),
                connections=connections,
            )
        )
    return resources


def parse_shared_users(xml_text: str) -> List[Dict[str, str]]:
    """Return attribute maps for each shared user in a ``shared_servers`` document.

    A ``SharedServer`` without ``SharedUser`` children describes the user
    itself, so its own attributes are used.
    """

    root = ET.fromstring(xml_text)
    records: List[Dict[str, str]] = []
    for entry in root.iter("SharedServer"):
        shared_users = entry.findall("SharedUser")
        if shared_users:
            records.extend(dict(user.attrib) for user in shared_users)
        else:
            records.append(dict(entry.attrib))
    return records


def _parse_pin(payload: object, client_identifier: str) -> PlexPin:
    if not isinstance(payload, dict):
        raise ValueError("PIN response was not a JSON object")
    data = payload.get("pin", payload)
    if not isinstance(data, dict):
        raise ValueError("PIN response did not include a PIN")
    return PlexPin(
        id=int(data["id"]),
        code=str(data["code"]),
        client_identifier=client_identifier,
        expires_at=_clean(data.get("expiresAt")),
        auth_token=_clean(data.get("authToken")),
    )


def build_auth_url(pin: PlexPin, product_name: str = PLEX_PRODUCT) -> str:
    """Compose the browser URL a user opens to approve ``pin``."""

    params = [
        ("clientID", pin.client_identifier),
        ("code", pin.code),
        ("context[device][product]", product_name),
        ("context[device][environment]", "bundled"),
        ("context[device][platform]", "Web"),
        ("context[device][device]", PLEX_DEVICE),
        ("context[device][model]", "MCP"),
        ("context[device][version]", PLEX_VERSION),
        ("context[client][product]", product_name),
        ("context[client][version]", PLEX_VERSION),
        ("context[client][device]", PLEX_DEVICE),
        ("context[client][platform]", "Web"),
        ("context[client][model]", "MCP"),
    ]
    return f"{PLEX_AUTH_URL}#{urlencode(params)}"


class PlexClient:
    """Perform the plex.tv and media server calls needed by the manager."""

    def __init__(
        self,
        *,
        base_url: str = PLEX_API_BASE,
        timeout: float = DEFAULT_TIMEOUT,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._probe_timeout = probe_timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(
        self,
        url: str,
        *,
        token: str | None = None,
        client_identifier: str | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        response = await self._client.get(
            url,
            headers=build_headers(token, client_identifier),
            timeout=timeout if timeout is not None else self._timeout,
        )
        response.raise_for_status()
        return response

    async def validate_token(self, token: str, client_identifier: str) -> AccountInfo | None:
        """Return the account behind ``token`` or ``None`` when it is not accepted."""

        try:
            response = await self._get(
                f"{self._base_url}/users/account.json",
                token=token,
                client_identifier=client_identifier,
            )
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Token validation failed: %s", exc)
            return None

        user = payload.get("user") if isinstance(payload, dict) else None
        if not isinstance(user, dict):
            return None
        return AccountInfo(
            username=_first(user, "username", "title"),
            email=_clean(user.get("email")),
        )

    async def list_resources(self, token: str, client_identifier: str) -> List[PlexResource]:
        try:
            response = await self._get(
                f"{self._base_url}/pms/resources",
                token=token,
                client_identifier=client_identifier,
            )
            return parse_resources(response.text)
        except (httpx.HTTPError, ET.ParseError) as exc:
            raise UpstreamUnavailable(f"Failed to fetch Plex resources: {exc}") from exc

    async def connect_resource(
        self,
        resource: PlexResource,
        token: str,
        account_label: str,
        client_identifier: str,
    ) -> PlexServer:
        """Probe ``resource``'s connections in order and bind to the first that answers."""

        for connection in resource.connections:
            if not connection.uri:
                continue
            try:
                response = await self._get(
                    connection.uri,
                    token=token,
                    client_identifier=client_identifier,
                    timeout=self._probe_timeout,
                )
                payload = response.json()
            except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
                logger.debug("Server connection attempt to %s failed: %s", connection.uri, exc)
                continue

            container = payload.get("MediaContainer") if isinstance(payload, dict) else None
            if not isinstance(container, dict):
                logger.debug("Server at %s did not return a MediaContainer", connection.uri)
                continue

            return PlexServer(
                name=resource.name,
                friendly_name=_clean(container.get("friendlyName")) or resource.name,
                machine_identifier=resource.machine_identifier,
                host=connection.address,
                port=connection.port,
                scheme=connection.protocol,
                uri=connection.uri,
                product=resource.product,
                version=resource.version,
                platform=resource.platform,
                owned=resource.owned,
                account_label=account_label,
            )

        raise ConnectionExhausted(resource)

    async def list_local_users(
        self,
        server: PlexServer,
        token: str,
        client_identifier: str,
    ) -> List[UserAccess]:
        try:
            response = await self._get(
                f"{server.uri.rstrip('/')}/accounts",
                token=token,
                client_identifier=client_identifier,
            )
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamUnavailable(
                f"Local accounts endpoint failed for {server.friendly_name}: {exc}"
            ) from exc

        container = payload.get("MediaContainer") if isinstance(payload, dict) else None
        accounts = container.get("Account") if isinstance(container, dict) else None
        if not isinstance(accounts, list):
            return []
        return [normalize_user_record(item, server) for item in accounts if isinstance(item, dict)]

    async def list_shared_users(
        self,
        server: PlexServer,
        token: str,
        client_identifier: str,
    ) -> List[UserAccess]:
        try:
            response = await self._get(
                f"{self._base_url}/api/servers/{server.machine_identifier}/shared_servers",
                token=token,
                client_identifier=client_identifier,
            )
            records = parse_shared_users(response.text)
        except (httpx.HTTPError, ET.ParseError) as exc:
            raise UpstreamUnavailable(
                f"Shared server endpoint failed for {server.friendly_name}: {exc}"
            ) from exc
        return [normalize_user_record(record, server) for record in records]

    async def create_pin(self, client_identifier: str | None = None) -> PlexPin:
        identifier = client_identifier or str(uuid.uuid4())
        headers = build_headers(client_identifier=identifier)
        headers["Content-Type"] = "application/x-www-form-urlencoded"
        try:
            response = await self._client.post(
                f"{self._base_url}/api/v2/pins",
                data={"strong": "true"},
                headers=headers,
                timeout=self._timeout,
            )
            response.raise_for_status()
            return _parse_pin(response.json(), identifier)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            logger.error("Failed to create Plex auth PIN: %s", exc)
            raise CredentialFlowFailure(f"Failed to create Plex auth PIN: {exc}") from exc

    async def poll_pin(self, pin_id: int, client_identifier: str) -> PlexPin:
        try:
            response = await self._get(
                f"{self._base_url}/api/v2/pins/{pin_id}",
                client_identifier=client_identifier,
            )
            return _parse_pin(response.json(), client_identifier)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            logger.error("Failed to fetch Plex auth PIN %s status: %s", pin_id, exc)
            raise CredentialFlowFailure(f"Failed to fetch Plex auth PIN status: {exc}") from exc


__all__ = [
    "ConnectionExhausted",
    "CredentialFlowFailure",
    "PLEX_PRODUCT",
    "PlexClient",
    "PlexError",
    "UpstreamUnavailable",
    "build_auth_url",
    "build_headers",
    "normalize_user_record",
    "parse_resources",
    "parse_shared_users",
]
