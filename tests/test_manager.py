"""Tests for aggregating servers and users across accounts."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import FakePlexClient, make_resource
from plex_finder.cache import TTLCache
from plex_finder.config import ConfigurationError
from plex_finder.manager import PlexAccountManager
from plex_finder.models import Account, AccountInfo
from plex_finder.plex import CredentialFlowFailure, PlexClient

HOME = Account(label="home", token="token-home", client_identifier="client-home")
WORK = Account(label="work", token="token-work", client_identifier="client-work")


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2030, 1, 1, tzinfo=timezone.utc)

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock(monkeypatch: pytest.MonkeyPatch) -> _Clock:
    current = _Clock()
    monkeypatch.setattr(TTLCache, "_now", lambda self: current.now)
    return current


def _single_server_client() -> FakePlexClient:
    client = FakePlexClient()
    client.resources["token-home"] = [make_resource("Basement", "M1", "https://m1.example:32400")]
    client.reachable["https://m1.example:32400"] = "Basement Server"
    return client


def test_get_servers_uses_cache_within_ttl(clock: _Clock) -> None:
    client = _single_server_client()
    manager = PlexAccountManager([HOME], client=client, cache_ttl=timedelta(seconds=300))

    first = asyncio.run(manager.get_servers())
    calls_after_first = len(client.calls)
    second = asyncio.run(manager.get_servers())

    assert first == second
    assert [server.machine_identifier for server in first] == ["M1"]
    assert len(client.calls) == calls_after_first


def test_expired_server_entry_triggers_single_refetch(clock: _Clock) -> None:
    client = _single_server_client()
    manager = PlexAccountManager([HOME], client=client, cache_ttl=timedelta(seconds=60))

    asyncio.run(manager.get_servers())
    clock.advance(seconds=61)
    asyncio.run(manager.get_servers())
    asyncio.run(manager.get_servers())

    assert client.count("list_resources") == 2


def test_refresh_bypasses_cache(clock: _Clock) -> None:
    client = _single_server_client()
    manager = PlexAccountManager([HOME], client=client)

    asyncio.run(manager.get_servers())
    asyncio.run(manager.get_servers(refresh=True))

    assert client.count("list_resources") == 2


def test_server_is_listed_once_per_account() -> None:
    client = FakePlexClient()
    client.resources["token-home"] = [
        make_resource("Shared", "M1", "https://m1-a.example"),
        make_resource("Shared again", "M1", "https://m1-b.example"),
    ]
    client.resources["token-work"] = [make_resource("Shared", "M1", "https://m1-a.example")]
    client.reachable["https://m1-a.example"] = "Shared"
    client.reachable["https://m1-b.example"] = "Shared"
    manager = PlexAccountManager([HOME, WORK], client=client)

    servers = asyncio.run(manager.get_servers())

    assert [(server.machine_identifier, server.account_label) for server in servers] == [
        ("M1", "home"),
        ("M1", "work"),
    ]
    assert servers[0].uri == "https://m1-a.example"


def test_first_answering_connection_wins() -> None:
    client = FakePlexClient()
    client.resources["token-home"] = [
        make_resource("Remote", "M2", "https://down.example", "https://up.example", "https://never.example"),
    ]
    client.reachable["https://up.example"] = "Remote Server"
    client.reachable["https://never.example"] = "Remote Server"
    manager = PlexAccountManager([HOME], client=client)

    servers = asyncio.run(manager.get_servers())

    assert servers[0].uri == "https://up.example"
    assert servers[0].friendly_name == "Remote Server"
    probes = [call[1] for call in client.calls if call[0] == "probe"]
    assert probes == ["https://down.example", "https://up.example"]


def test_unreachable_resource_is_omitted() -> None:
    client = FakePlexClient()
    client.resources["token-home"] = [
        make_resource("Offline", "DEAD", "https://offline.example"),
        make_resource("Online", "M1", "https://m1.example"),
    ]
    client.reachable["https://m1.example"] = "Online"
    manager = PlexAccountManager([HOME], client=client)

    servers = asyncio.run(manager.get_servers())

    assert [server.machine_identifier for server in servers] == ["M1"]


def test_malformed_connection_uri_does_not_abort_aggregation() -> None:
    resources_xml = """<MediaContainer size="2">
  <Device name="Broken" product="Plex Media Server" clientIdentifier="BAD" provides="server" owned="1">
    <Connection protocol="http" address="10.0.0.1" port="32400" uri="http://10.0.0.1:notaport"/>
  </Device>
  <Device name="Good" product="Plex Media Server" clientIdentifier="GOOD" provides="server" owned="1">
    <Connection protocol="https" address="10.0.0.2" port="32400" uri="https://good.example:32400"/>
  </Device>
</MediaContainer>"""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/pms/resources":
            return httpx.Response(200, text=resources_xml)
        return httpx.Response(200, json={"MediaContainer": {"friendlyName": "Good Server"}})

    client = PlexClient(transport=httpx.MockTransport(handler))
    manager = PlexAccountManager([HOME], client=client)

    async def collect():
        try:
            return await manager.get_servers()
        finally:
            await client.aclose()

    servers = asyncio.run(collect())

    assert [server.machine_identifier for server in servers] == ["GOOD"]
    assert servers[0].friendly_name == "Good Server"


def test_failing_account_does_not_abort_aggregation() -> None:
    client = FakePlexClient()
    client.failing_tokens.add("token-home")
    client.resources["token-work"] = [make_resource("Office", "W1", "https://w1.example")]
    client.reachable["https://w1.example"] = "Office"
    manager = PlexAccountManager([HOME, WORK], client=client)

    servers = asyncio.run(manager.get_servers())
    assert [server.account_label for server in servers] == ["work"]

    client.failing_tokens.clear()
    client.resources["token-home"] = [make_resource("Basement", "M1", "https://m1.example")]
    client.reachable["https://m1.example"] = "Basement"
    servers = asyncio.run(manager.get_servers())
    assert [server.account_label for server in servers] == ["home", "work"]


def test_concurrent_misses_are_filled_once() -> None:
    client = _single_server_client()
    manager = PlexAccountManager([HOME], client=client)

    async def run_both():
        return await asyncio.gather(manager.get_servers(), manager.get_servers())

    first, second = asyncio.run(run_both())

    assert first == second
    assert client.count("list_resources") == 1
    assert manager._fill_locks == {}


def test_labels_containing_separators_do_not_share_cache_entries() -> None:
    client = FakePlexClient()
    client.resources["token-a"] = [make_resource("One", "M1", "https://one.example")]
    client.resources["token-b"] = [make_resource("Two", "M1:x", "https://two.example")]
    client.reachable.update({"https://one.example": "One", "https://two.example": "Two"})
    client.local_users["M1"] = [{"email": "first@example.com"}]
    client.local_users["M1:x"] = [{"email": "second@example.com"}]
    manager = PlexAccountManager(
        [
            Account(label="x:y", token="token-a", client_identifier="client-a"),
            Account(label="y", token="token-b", client_identifier="client-b"),
        ],
        client=client,
    )

    users = asyncio.run(manager.get_users_across_servers())

    assert [user.email for user in users] == ["first@example.com", "second@example.com"]
    assert client.count("list_local_users") == 2


def test_users_are_deduplicated_per_server_first_seen_wins() -> None:
    client = _single_server_client()
    client.local_users["M1"] = [{"email": "a@x.com", "username": "u1"}]
    client.shared_users["M1"] = [{"email": "A@X.COM", "username": "u2"}]
    manager = PlexAccountManager([HOME], client=client)

    users = asyncio.run(manager.get_users_across_servers())

    assert len(users) == 1
    assert users[0].username == "u1"
    assert users[0].server_identifier == "M1"
    assert users[0].account_label == "home"


def test_same_person_is_kept_once_per_server() -> None:
    client = FakePlexClient()
    client.resources["token-home"] = [
        make_resource("One", "M1", "https://m1.example"),
        make_resource("Two", "M2", "https://m2.example"),
    ]
    client.reachable.update({"https://m1.example": "One", "https://m2.example": "Two"})
    client.local_users["M1"] = [{"email": "alice@example.com", "username": "alice"}]
    client.shared_users["M2"] = [{"email": "alice@example.com", "username": "alice"}]
    manager = PlexAccountManager([HOME], client=client)

    users = asyncio.run(manager.get_users_across_servers())

    assert [user.server_name for user in users] == ["One", "Two"]


def test_user_listing_failure_is_isolated(clock: _Clock) -> None:
    client = _single_server_client()
    client.failing_local.add("M1")
    client.shared_users["M1"] = [{"email": "bob@example.com", "username": "bob"}]
    manager = PlexAccountManager([HOME], client=client)

    users = asyncio.run(manager.get_users_across_servers())
    asyncio.run(manager.get_users_across_servers())

    assert [user.username for user in users] == ["bob"]
    assert client.count("list_shared_users") == 1


def test_user_tier_expires_independently_of_server_tier(clock: _Clock) -> None:
    client = _single_server_client()
    client.local_users["M1"] = [{"email": "bob@example.com", "username": "bob"}]
    manager = PlexAccountManager([HOME], client=client, cache_ttl=timedelta(seconds=60))

    asyncio.run(manager.get_users_across_servers())
    clock.advance(seconds=30)
    manager._server_cache.clear()
    asyncio.run(manager.get_users_across_servers())

    assert client.count("list_resources") == 2
    assert client.count("list_local_users") == 1


def test_unknown_account_label_raises_configuration_error() -> None:
    client = _single_server_client()
    client.server_label_override = "ghost"
    manager = PlexAccountManager([HOME], client=client)

    with pytest.raises(ConfigurationError):
        asyncio.run(manager.get_users_across_servers())


def test_duplicate_account_labels_are_rejected() -> None:
    with pytest.raises(ConfigurationError):
        PlexAccountManager([HOME, HOME], client=FakePlexClient())


def test_blank_query_makes_no_upstream_calls() -> None:
    client = _single_server_client()
    manager = PlexAccountManager([HOME], client=client)

    result = asyncio.run(manager.search_users("   "))

    assert result.matches == []
    assert result.total_matched == 0
    assert result.total_searched == 0
    assert client.calls == []


def test_search_without_users_returns_empty_result() -> None:
    client = _single_server_client()
    manager = PlexAccountManager([HOME], client=client)

    result = asyncio.run(manager.search_users("alice"))

    assert result.to_dict() == {"matches": [], "total_matched": 0, "total_searched": 0}


def test_exact_email_ranks_ahead_of_similar_username() -> None:
    client = _single_server_client()
    client.local_users["M1"] = [
        {"email": "bob@other.org", "username": "alice.example", "title": "Bob"},
        {"email": "alice@example.com", "username": "ally", "title": "Alice"},
    ]
    manager = PlexAccountManager([HOME], client=client)

    result = asyncio.run(manager.search_users("alice@example.com"))

    assert result.total_searched == 2
    assert result.total_matched == 2
    assert result.matches[0].user.email == "alice@example.com"
    assert result.matches[0].score < result.matches[1].score
    assert result.matches[1].user.username == "alice.example"


def test_max_results_limits_matches_but_reports_total_searched() -> None:
    client = _single_server_client()
    client.local_users["M1"] = [{"username": f"alice{index}"} for index in range(10)]
    manager = PlexAccountManager([HOME], client=client)

    result = asyncio.run(manager.search_users("alice", max_results=1))

    assert len(result.matches) == 1
    assert result.total_matched == 1
    assert result.total_searched == 10
    assert result.matches[0].user.username == "alice0"


def test_validate_accounts_isolates_failures() -> None:
    client = FakePlexClient()
    client.failing_tokens.add("token-home")
    client.accounts["token-work"] = AccountInfo(username="worker", email="worker@example.com")
    manager = PlexAccountManager([HOME, WORK], client=client)

    results = asyncio.run(manager.validate_accounts())

    assert [result.to_dict() for result in results] == [
        {"label": "home", "valid": False},
        {"label": "work", "valid": True, "username": "worker", "email": "worker@example.com"},
    ]


def test_status_reports_accounts_servers_and_user_count() -> None:
    client = _single_server_client()
    client.accounts["token-home"] = AccountInfo(username="owner", email="owner@example.com")
    client.local_users["M1"] = [{"username": "one"}, {"username": "two"}]
    manager = PlexAccountManager([HOME], client=client)

    report = asyncio.run(manager.status(include_user_count=True))

    assert report.account_count == 1
    assert report.valid_accounts == 1
    assert len(report.servers) == 1
    assert report.user_count == 2


def test_generate_auth_pin_composes_authorization_url() -> None:
    client = FakePlexClient()
    manager = PlexAccountManager([], client=client)

    result = asyncio.run(manager.generate_auth_pin("my-device"))

    assert result.pin.client_identifier == "my-device"
    assert result.authorization_url.startswith("https://app.plex.tv/auth#clientID=my-device&code=WXYZ&")
    assert client.count("create_pin") == 1


def test_pin_failures_propagate_without_retry() -> None:
    client = FakePlexClient()
    client.pin_error = CredentialFlowFailure("plex.tv unavailable")
    manager = PlexAccountManager([], client=client)

    with pytest.raises(CredentialFlowFailure):
        asyncio.run(manager.generate_auth_pin())
    with pytest.raises(CredentialFlowFailure):
        asyncio.run(manager.check_auth_pin_status(1, "device"))

    assert client.count("create_pin") == 1
    assert client.count("poll_pin") == 1


def test_clear_caches_forces_refetch() -> None:
    client = _single_server_client()
    manager = PlexAccountManager([HOME], client=client)

    asyncio.run(manager.get_servers())
    manager.clear_caches()
    asyncio.run(manager.get_servers())

    assert client.count("list_resources") == 2
    assert manager.get_account_count() == 1


def test_manager_only_closes_its_own_client() -> None:
    client = FakePlexClient()
    manager = PlexAccountManager([HOME], client=client)

    asyncio.run(manager.aclose())

    assert client.closed is False
