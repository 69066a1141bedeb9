"""Configuration management for the Plex account finder."""
from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml

from .models import Account

DEFAULT_CACHE_TTL_SECONDS = 300
MIN_CACHE_TTL_SECONDS = 30
MAX_CACHE_TTL_SECONDS = 3600
DEFAULT_LOG_LEVEL = "info"

_LOG_LEVELS = {"debug", "info", "warn", "warning", "error"}
API_TOKENS_ENV = "PLEX_FINDER_API_TOKENS"


class ConfigurationError(ValueError):
    """Raised when configuration is invalid or refers to an unknown account."""


def parse_api_tokens(raw: Union[str, Iterable[object], None]) -> Tuple[str, ...]:
    """Normalise a comma separated string or a list of API tokens, dropping blanks and repeats."""

    if raw is None:
        return ()
    items = raw.split(",") if isinstance(raw, str) else raw
    cleaned = (str(item).strip() for item in items if item is not None)
    return tuple(dict.fromkeys(token for token in cleaned if token))


def deterministic_identifier(label: str) -> str:
    """Derive a stable client identifier so an account keeps its device identity."""

    return hashlib.sha1(label.encode("utf-8")).hexdigest()[:32]


@dataclass(frozen=True)
class AccountConfig:
    """Configuration for a single plex.tv account."""

    label: str
    token: str
    client_identifier: Optional[str] = None

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "AccountConfig":
        """Create an :class:`AccountConfig` from raw dictionary data."""
        if not isinstance(data, Mapping):
            raise ConfigurationError("Each account entry must be a mapping")

        label = str(data.get("label") or "").strip()
        if not label:
            raise ConfigurationError("Account label is required")
        token = str(data.get("token") or "").strip()
        if not token:
            raise ConfigurationError(f"Plex API token is required for account '{label}'")

        raw_identifier = data.get("client_identifier")
        identifier = str(raw_identifier).strip() if raw_identifier is not None else ""
        return AccountConfig(label=label, token=token, client_identifier=identifier or None)

    def to_account(self) -> Account:
        return Account(
            label=self.label,
            token=self.token,
            client_identifier=self.client_identifier or deterministic_identifier(self.label),
        )


@dataclass(frozen=True)
class FinderConfig:
    """Top level settings: logging, cache lifetime and the configured accounts."""

    log_level: str = DEFAULT_LOG_LEVEL
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    accounts: Tuple[AccountConfig, ...] = field(default_factory=tuple)
    api_tokens: Tuple[str, ...] = field(default_factory=tuple)

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "FinderConfig":
        log_level = _parse_log_level(data.get("log_level", DEFAULT_LOG_LEVEL))
        cache_ttl = _parse_cache_ttl(data.get("cache_ttl_seconds", DEFAULT_CACHE_TTL_SECONDS))

        accounts_raw = data.get("accounts") or []
        if not isinstance(accounts_raw, list):
            raise ConfigurationError("'accounts' must be a list of account entries")
        accounts = tuple(AccountConfig.from_dict(item) for item in accounts_raw)
        _ensure_unique_labels(accounts)

        api_tokens_raw = data.get("api_tokens")
        if api_tokens_raw is not None and not isinstance(api_tokens_raw, (str, list)):
            raise ConfigurationError("'api_tokens' must be a list or a comma separated string")

        return FinderConfig(
            log_level=log_level,
            cache_ttl_seconds=cache_ttl,
            accounts=accounts,
            api_tokens=parse_api_tokens(api_tokens_raw),
        )

    def build_accounts(self) -> List[Account]:
        return [account.to_account() for account in self.accounts]

    def secrets(self) -> List[str]:
        return [account.token for account in self.accounts] + list(self.api_tokens)


def _parse_log_level(value: object) -> str:
    level = str(value or DEFAULT_LOG_LEVEL).strip().lower()
    if level not in _LOG_LEVELS:
        raise ConfigurationError(
            f"log_level must be one of: {', '.join(sorted(_LOG_LEVELS))}"
        )
    return level


def _parse_cache_ttl(value: object) -> int:
    if isinstance(value, bool):
        raise ConfigurationError("cache_ttl_seconds must be an integer")
    try:
        ttl = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("cache_ttl_seconds must be an integer") from exc
    if ttl < MIN_CACHE_TTL_SECONDS or ttl > MAX_CACHE_TTL_SECONDS:
        raise ConfigurationError(
            f"cache_ttl_seconds must be between {MIN_CACHE_TTL_SECONDS} and {MAX_CACHE_TTL_SECONDS}"
        )
    return ttl


def _ensure_unique_labels(accounts: Tuple[AccountConfig, ...]) -> None:
    seen: set[str] = set()
    for account in accounts:
        if account.label in seen:
            raise ConfigurationError(f"Duplicate account label '{account.label}'")
        seen.add(account.label)


def _apply_env_overrides(raw: Dict[str, object], environ: Mapping[str, str]) -> Dict[str, object]:
    merged = dict(raw)

    log_level = environ.get("PLEX_FINDER_LOG_LEVEL")
    if log_level:
        merged["log_level"] = log_level

    cache_ttl = environ.get("PLEX_FINDER_CACHE_TTL")
    if cache_ttl:
        merged["cache_ttl_seconds"] = cache_ttl

    api_tokens = environ.get(API_TOKENS_ENV)
    if api_tokens and api_tokens.strip():
        merged["api_tokens"] = api_tokens

    token = (environ.get("PLEX_TOKEN") or "").strip()
    if token:
        label = (environ.get("PLEX_ACCOUNT_LABEL") or "default").strip() or "default"
        accounts = [
            item
            for item in (merged.get("accounts") or [])
            if not (isinstance(item, Mapping) and str(item.get("label", "")).strip() == label)
        ]
        accounts.append({"label": label, "token": token})
        merged["accounts"] = accounts

    return merged


def load_config(config_path: Optional[Path], environ: Optional[Mapping[str, str]] = None) -> FinderConfig:
    """Load settings from a YAML file, then apply environment overrides.

    A missing file is not an error; the service starts with defaults and no
    accounts so that tokens can be supplied through the environment.
    """
    env = os.environ if environ is None else environ
    raw: Dict[str, object] = {}
    if config_path is not None and config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ConfigurationError("Configuration file must contain a mapping at the top level")
        raw = loaded

    return FinderConfig.from_dict(_apply_env_overrides(raw, env))


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "plex_finder.yaml").resolve(strict=False)
    return candidate


__all__ = [
    "API_TOKENS_ENV",
    "AccountConfig",
    "ConfigurationError",
    "DEFAULT_CACHE_TTL_SECONDS",
    "FinderConfig",
    "deterministic_identifier",
    "load_config",
    "parse_api_tokens",
    "resolve_config_path",
]
