from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from plex_finder.models import AccountInfo, PlexPin, PlexResource, PlexServer, ServerConnection  # noqa: E402
from plex_finder.plex import (  # noqa: E402
    ConnectionExhausted,
    CredentialFlowFailure,
    UpstreamUnavailable,
    normalize_user_record,
)


def make_resource(name: str, machine_identifier: str, *uris: str, owned: bool = True) -> PlexResource:
    return PlexResource(
        name=name,
        provides="server",
        machine_identifier=machine_identifier,
        owned=owned,
        product="Plex Media Server",
        version="1.40.0",
        platform="Linux",
        connections=tuple(
            ServerConnection(protocol="https", address=f"10.0.0.{index}", port=32400, uri=uri)
            for index, uri in enumerate(uris, start=1)
        ),
    )


class FakePlexClient:
    """In-memory stand-in for :class:`plex_finder.plex.PlexClient`."""

    def __init__(self) -> None:
        self.accounts: Dict[str, AccountInfo] = {}
        self.resources: Dict[str, List[PlexResource]] = {}
        self.reachable: Dict[str, str] = {}
        self.local_users: Dict[str, List[dict]] = {}
        self.shared_users: Dict[str, List[dict]] = {}
        self.failing_tokens: Set[str] = set()
        self.failing_local: Set[str] = set()
        self.failing_shared: Set[str] = set()
        self.server_label_override: Optional[str] = None
        self.pins: Dict[int, PlexPin] = {}
        self.pin_error: Optional[Exception] = None
        self.calls: List[tuple] = []
        self.closed = False

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def aclose(self) -> None:
        self.closed = True

    async def validate_token(self, token: str, client_identifier: str) -> Optional[AccountInfo]:
        self.calls.append(("validate_token", token, client_identifier))
        if token in self.failing_tokens:
            raise UpstreamUnavailable("validation failed")
        return self.accounts.get(token)

    async def list_resources(self, token: str, client_identifier: str) -> List[PlexResource]:
        self.calls.append(("list_resources", token, client_identifier))
        await asyncio.sleep(0)
        if token in self.failing_tokens:
            raise UpstreamUnavailable("resources unavailable")
        return list(self.resources.get(token, []))

    async def connect_resource(
        self,
        resource: PlexResource,
        token: str,
        account_label: str,
        client_identifier: str,
    ) -> PlexServer:
        for connection in resource.connections:
            self.calls.append(("probe", connection.uri))
            friendly = self.reachable.get(connection.uri)
            if friendly is None:
                continue
            return PlexServer(
                name=resource.name,
                friendly_name=friendly,
                machine_identifier=resource.machine_identifier,
                host=connection.address,
                port=connection.port,
                scheme=connection.protocol,
                uri=connection.uri,
                product=resource.product,
                version=resource.version,
                platform=resource.platform,
                owned=resource.owned,
                account_label=self.server_label_override or account_label,
            )
        raise ConnectionExhausted(resource)

    async def list_local_users(self, server: PlexServer, token: str, client_identifier: str):
        self.calls.append(("list_local_users", server.machine_identifier, token))
        if server.machine_identifier in self.failing_local:
            raise UpstreamUnavailable("local accounts unavailable")
        return [normalize_user_record(item, server) for item in self.local_users.get(server.machine_identifier, [])]

    async def list_shared_users(self, server: PlexServer, token: str, client_identifier: str):
        self.calls.append(("list_shared_users", server.machine_identifier, token))
        if server.machine_identifier in self.failing_shared:
            raise UpstreamUnavailable("shared servers unavailable")
        return [normalize_user_record(item, server) for item in self.shared_users.get(server.machine_identifier, [])]

    async def create_pin(self, client_identifier: Optional[str] = None) -> PlexPin:
        self.calls.append(("create_pin", client_identifier))
        if self.pin_error is not None:
            raise self.pin_error
        pin = PlexPin(
            id=4242,
            code="WXYZ",
            client_identifier=client_identifier or "generated-identifier",
            expires_at="2030-01-01T00:00:00Z",
        )
        self.pins.setdefault(pin.id, pin)
        return pin

    async def poll_pin(self, pin_id: int, client_identifier: str) -> PlexPin:
        self.calls.append(("poll_pin", pin_id, client_identifier))
        if self.pin_error is not None:
            raise self.pin_error
        try:
            return self.pins[pin_id]
        except KeyError as exc:
            raise CredentialFlowFailure(f"Unknown PIN {pin_id}") from exc


@pytest.fixture()
def fake_client() -> FakePlexClient:
    return FakePlexClient()
