"""Domain models shared by the Plex client, the manager and the API."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Account:
    """A configured plex.tv account whose token is used for discovery."""

    label: str
    token: str
    client_identifier: str


@dataclass(frozen=True)
class AccountInfo:
    username: Optional[str]
    email: Optional[str]


@dataclass(frozen=True)
class ServerConnection:
    """One candidate endpoint advertised for a resource."""

    protocol: str
    address: str
    port: int
    uri: str
    local: bool = False
    relay: bool = False


@dataclass(frozen=True)
class PlexResource:
    """A media server advertised by plex.tv for an account."""

    name: str
    provides: str
    machine_identifier: str
    owned: bool
    product: str
    version: str
    platform: str
    connections: Tuple[ServerConnection, ...] = ()


@dataclass(frozen=True)
class PlexServer:
    """A resource bound to the connection that answered."""

    name: str
    friendly_name: str
    machine_identifier: str
    host: str
    port: int
    scheme: str
    uri: str
    product: str
    version: str
    platform: str
    owned: bool
    account_label: str

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class UserAccess:
    """One person's access to one server as seen through one account."""

    id: Optional[int]
    uuid: Optional[str]
    username: Optional[str]
    title: Optional[str]
    email: Optional[str]
    restricted: Optional[bool]
    home: Optional[bool]
    guest: Optional[bool]
    can_invite: Optional[bool]
    server_identifier: str
    server_name: str
    account_label: str

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class PlexPin:
    """Snapshot of a plex.tv device-authorization PIN."""

    id: int
    code: str
    client_identifier: str
    expires_at: Optional[str]
    auth_token: Optional[str] = None

    @property
    def authorized(self) -> bool:
        return self.auth_token is not None

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class AccountValidation:
    label: str
    valid: bool
    username: Optional[str] = None
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"label": self.label, "valid": self.valid}
        if self.valid:
            payload["username"] = self.username
            payload["email"] = self.email
        return payload


@dataclass(frozen=True)
class AuthPinResult:
    pin: PlexPin
    authorization_url: str


@dataclass(frozen=True)
class MatchDetail:
    """Which characters of a field matched the query."""

    key: str
    value: str
    indices: Tuple[Tuple[int, int], ...]

    def to_dict(self) -> Dict[str, object]:
        return {"key": self.key, "value": self.value, "indices": [list(pair) for pair in self.indices]}


@dataclass(frozen=True)
class SearchMatch:
    score: float
    user: UserAccess
    match_details: Tuple[MatchDetail, ...] = ()

    def to_dict(self) -> Dict[str, object]:
        return {
            "score": self.score,
            "user": self.user.to_dict(),
            "match_details": [detail.to_dict() for detail in self.match_details],
        }


@dataclass
class SearchResult:
    matches: List[SearchMatch] = field(default_factory=list)
    total_matched: int = 0
    total_searched: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "matches": [match.to_dict() for match in self.matches],
            "total_matched": self.total_matched,
            "total_searched": self.total_searched,
        }


@dataclass
class StatusReport:
    """Account validity and server availability across all accounts."""

    accounts: List[AccountValidation]
    servers: List[PlexServer]
    account_count: int
    user_count: Optional[int] = None

    @property
    def valid_accounts(self) -> int:
        return sum(1 for account in self.accounts if account.valid)


__all__ = [
    "Account",
    "AccountInfo",
    "AccountValidation",
    "AuthPinResult",
    "StatusReport",
    "MatchDetail",
    "PlexPin",
    "PlexResource",
    "PlexServer",
    "SearchMatch",
    "SearchResult",
    "ServerConnection",
    "UserAccess",
]
