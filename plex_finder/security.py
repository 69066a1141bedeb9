"""API token guard for the finder's tool routes."""
from __future__ import annotations

import hashlib
import hmac
import logging
import os
from typing import Iterable, Mapping, Optional

from fastapi import HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import API_TOKENS_ENV, FinderConfig, parse_api_tokens

logger = logging.getLogger("plex_finder.security")

_bearer_scheme = HTTPBearer(
    auto_error=False,
    description="Token listed under api_tokens or in PLEX_FINDER_API_TOKENS",
)


def _fingerprint(token: str) -> bytes:
    return hashlib.sha256(token.encode("utf-8")).digest()


class ApiTokenGuard:
    """Reject tool calls that do not present one of the configured API tokens.

    Only SHA-256 fingerprints of the tokens are held. A presented token is
    compared against every fingerprint, so the time taken does not depend on
    which token matched.
    """

    def __init__(self, tokens: Iterable[str]) -> None:
        fingerprints = tuple(_fingerprint(token) for token in parse_api_tokens(list(tokens)))
        if not fingerprints:
            raise ValueError("ApiTokenGuard requires at least one API token")
        self._fingerprints = fingerprints

    @classmethod
    def from_config(cls, config: FinderConfig) -> Optional["ApiTokenGuard"]:
        """Build a guard from ``config.api_tokens``; ``None`` leaves the routes open."""
        return cls(config.api_tokens) if config.api_tokens else None

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> Optional["ApiTokenGuard"]:
        env = os.environ if environ is None else environ
        tokens = parse_api_tokens(env.get(API_TOKENS_ENV))
        return cls(tokens) if tokens else None

    def __len__(self) -> int:
        return len(self._fingerprints)

    def accepts(self, token: str) -> bool:
        presented = _fingerprint(token)
        matched = False
        for fingerprint in self._fingerprints:
            matched |= hmac.compare_digest(presented, fingerprint)
        return matched

    async def __call__(
        self,
        credentials: Optional[HTTPAuthorizationCredentials] = Security(_bearer_scheme),
    ) -> None:
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Plex finder API token required",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if not self.accepts(credentials.credentials):
            logger.warning("Rejected tool call with an unrecognised API token")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Plex finder API token not recognised",
            )


__all__ = ["ApiTokenGuard"]
