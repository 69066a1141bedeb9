"""Identity keys and de-duplication for user access records."""

from __future__ import annotations

from typing import Dict, Iterable, List

from .models import UserAccess


def identity_key(user: UserAccess) -> str:
    """Return the case-insensitive key that identifies ``user`` on its server.

    Preference order is email, uuid, ``<server>-<username>`` and finally
    ``<server>-<id>``. Records with none of these collapse onto
    ``<server>-unknown``.
    """

    if user.email:
        source = user.email
    elif user.uuid:
        source = user.uuid
    elif user.username:
        source = f"{user.server_identifier}-{user.username}"
    else:
        suffix = str(user.id) if user.id is not None else "unknown"
        source = f"{user.server_identifier}-{suffix}"
    return source.lower()


def deduplicate_users(*sources: Iterable[UserAccess]) -> List[UserAccess]:
    """Merge ``sources`` in order; the first record seen for a key wins."""

    merged: Dict[str, UserAccess] = {}
    for source in sources:
        for user in source:
            merged.setdefault(identity_key(user), user)
    return list(merged.values())


__all__ = ["deduplicate_users", "identity_key"]
