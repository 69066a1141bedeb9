"""Aggregate servers and user access across all configured plex.tv accounts."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .cache import TTLCache
from .config import DEFAULT_CACHE_TTL_SECONDS, ConfigurationError, FinderConfig
from .matching import FuzzyIndex
from .models import (
    Account,
    AccountValidation,
    AuthPinResult,
    PlexPin,
    PlexServer,
    SearchResult,
    StatusReport,
    UserAccess,
)
from .plex import PlexClient, PlexError, UpstreamUnavailable, build_auth_url
from .users import deduplicate_users

logger = logging.getLogger("plex_finder.manager")

DEFAULT_MAX_RESULTS = 25

UserListing = Callable[[PlexServer, str, str], Awaitable[List[UserAccess]]]
CacheKey = Tuple[str, ...]


@dataclass
class _FillSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class PlexAccountManager:
    """Fan requests out over every account and cache each tier of results.

    Accounts, resources and servers are walked sequentially in configuration
    order, which keeps first-seen de-duplication deterministic. Cache misses
    for the same key are filled once; concurrent callers wait for the fill
    and then read the cached value.
    """

    def __init__(
        self,
        accounts: Iterable[Account],
        *,
        client: PlexClient | None = None,
        cache_ttl: timedelta = timedelta(seconds=DEFAULT_CACHE_TTL_SECONDS),
    ) -> None:
        self._accounts: Tuple[Account, ...] = tuple(accounts)
        self._accounts_by_label: Dict[str, Account] = {account.label: account for account in self._accounts}
        if len(self._accounts_by_label) != len(self._accounts):
            raise ConfigurationError("Account labels must be unique")
        self._owns_client = client is None
        self._client = client or PlexClient()
        self._server_cache: TTLCache[CacheKey, Tuple[PlexServer, ...]] = TTLCache(ttl=cache_ttl)
        self._user_cache: TTLCache[CacheKey, Tuple[UserAccess, ...]] = TTLCache(ttl=cache_ttl)
        self._fill_locks: Dict[CacheKey, _FillSlot] = {}

    @classmethod
    def from_config(cls, config: FinderConfig, *, client: PlexClient | None = None) -> "PlexAccountManager":
        return cls(
            config.build_accounts(),
            client=client,
            cache_ttl=timedelta(seconds=config.cache_ttl_seconds),
        )

    @property
    def accounts(self) -> Tuple[Account, ...]:
        return self._accounts

    def get_account_count(self) -> int:
        return len(self._accounts)

    def clear_caches(self) -> None:
        self._server_cache.clear()
        self._user_cache.clear()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _account_for(self, label: str) -> Account:
        try:
            return self._accounts_by_label[label]
        except KeyError as exc:
            raise ConfigurationError(f"No account found for label {label}") from exc

    @asynccontextmanager
    async def _filling(self, cache_key: CacheKey) -> AsyncIterator[None]:
        """Serialise fills of one key; the slot is dropped once nobody waits on it."""

        slot = self._fill_locks.get(cache_key)
        if slot is None:
            slot = self._fill_locks[cache_key] = _FillSlot()
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                self._fill_locks.pop(cache_key, None)

    async def validate_accounts(self) -> List[AccountValidation]:
        results: List[AccountValidation] = []
        for account in self._accounts:
            try:
                info = await self._client.validate_token(account.token, account.client_identifier)
            except PlexError as exc:
                logger.warning("Validation of account %s failed: %s", account.label, exc)
                info = None
            if info is None:
                results.append(AccountValidation(label=account.label, valid=False))
            else:
                results.append(
                    AccountValidation(
                        label=account.label,
                        valid=True,
                        username=info.username,
                        email=info.email,
                    )
                )
        return results

    async def get_servers(self, refresh: bool = False) -> List[PlexServer]:
        """Return every reachable server, at most once per (server, account)."""

        aggregated: List[PlexServer] = []
        seen: set[Tuple[str, str]] = set()
        for account in self._accounts:
            for server in await self._servers_for_account(account, refresh):
                key = (server.machine_identifier, account.label)
                if key in seen:
                    continue
                seen.add(key)
                aggregated.append(server)
        return aggregated

    async def _servers_for_account(self, account: Account, refresh: bool) -> Tuple[PlexServer, ...]:
        cache_key = ("servers", account.label)
        if not refresh:
            cached = self._server_cache.get(cache_key)
            if cached is not None:
                return cached

        async with self._filling(cache_key):
            if not refresh:
                cached = self._server_cache.get(cache_key)
                if cached is not None:
                    return cached

            logger.info("Loading servers for account %s", account.label)
            try:
                resources = await self._client.list_resources(account.token, account.client_identifier)
            except UpstreamUnavailable as exc:
                logger.warning("Skipping account %s: %s", account.label, exc)
                return ()

            connected: List[PlexServer] = []
            for resource in resources:
                try:
                    server = await self._client.connect_resource(
                        resource,
                        account.token,
                        account.label,
                        account.client_identifier,
                    )
                except UpstreamUnavailable as exc:
                    logger.warning("%s (account %s)", exc, account.label)
                    continue
                connected.append(server)

            servers = tuple(connected)
            self._server_cache.set(cache_key, servers)
            return servers

    async def get_users_across_servers(self, refresh: bool = False) -> List[UserAccess]:
        """Concatenate the user lists of every server; no cross-server de-duplication."""

        users: List[UserAccess] = []
        for server in await self.get_servers(refresh):
            users.extend(await self._users_for_server(server, refresh))
        return users

    async def _users_for_server(self, server: PlexServer, refresh: bool) -> Tuple[UserAccess, ...]:
        account = self._account_for(server.account_label)
        cache_key = ("users", server.machine_identifier, server.account_label)
        if not refresh:
            cached = self._user_cache.get(cache_key)
            if cached is not None:
                return cached

        async with self._filling(cache_key):
            if not refresh:
                cached = self._user_cache.get(cache_key)
                if cached is not None:
                    return cached

            logger.info(
                "Fetching users for server %s (account %s)",
                server.friendly_name,
                server.account_label,
            )
            local = await self._list_users(self._client.list_local_users, server, account)
            shared = await self._list_users(self._client.list_shared_users, server, account)
            users = tuple(deduplicate_users(local or [], shared or []))
            if local is None and shared is None:
                return users

            self._user_cache.set(cache_key, users)
            return users

    async def _list_users(
        self,
        listing: UserListing,
        server: PlexServer,
        account: Account,
    ) -> Optional[List[UserAccess]]:
        try:
            return await listing(server, account.token, account.client_identifier)
        except UpstreamUnavailable as exc:
            logger.warning("%s", exc)
            return None

    async def search_users(
        self,
        query: str,
        *,
        max_results: int = DEFAULT_MAX_RESULTS,
        refresh: bool = False,
    ) -> SearchResult:
        trimmed = query.strip()
        if not trimmed:
            return SearchResult()

        users = await self.get_users_across_servers(refresh)
        if not users:
            return SearchResult()

        matches = FuzzyIndex(users).search(trimmed, limit=max_results)
        return SearchResult(
            matches=matches,
            total_matched=len(matches),
            total_searched=len(users),
        )

    async def status(self, *, refresh: bool = False, include_user_count: bool = False) -> StatusReport:
        validation = await self.validate_accounts()
        servers = await self.get_servers(refresh)
        user_count: Optional[int] = None
        if include_user_count:
            user_count = len(await self.get_users_across_servers(refresh))
        return StatusReport(
            accounts=validation,
            servers=servers,
            account_count=self.get_account_count(),
            user_count=user_count,
        )

    async def generate_auth_pin(self, client_identifier: str | None = None) -> AuthPinResult:
        pin = await self._client.create_pin(client_identifier)
        return AuthPinResult(pin=pin, authorization_url=build_auth_url(pin))

    async def check_auth_pin_status(self, pin_id: int, client_identifier: str) -> PlexPin:
        return await self._client.poll_pin(pin_id, client_identifier)


__all__ = ["DEFAULT_MAX_RESULTS", "PlexAccountManager"]
