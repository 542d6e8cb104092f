from __future__ import annotations

from collections.abc import Iterable

from identity_core.domain.errors import InsufficientPermission

PERM_WILDCARD = "*"
SEGMENT_SEPARATOR = ":"

PERM_SERVICE_READ = "service:read"
PERM_SERVICE_UPDATE = "service:update"
PERM_ADMIN_UPDATE = "admin:update"
PERM_OPERATOR_UPDATE = "operator:update"
PERM_SETTINGS_READ = "settings:read"
PERM_SETTINGS_UPDATE = "settings:update"


def _segment_match(granted: str, required: str) -> bool:
    granted_parts = granted.split(SEGMENT_SEPARATOR)
    required_parts = required.split(SEGMENT_SEPARATOR)
    if len(granted_parts) != len(required_parts):
        return False
    return all(
        granted_part == PERM_WILDCARD or granted_part == required_part
        for granted_part, required_part in zip(granted_parts, required_parts)
    )


def _satisfied(granted: list[str], required: str) -> bool:
    return any(item == required or _segment_match(item, required) for item in granted)


def missing_permissions(granted: Iterable[str], required: Iterable[str]) -> list[str]:
    granted_list = list(granted)
    if PERM_WILDCARD in granted_list:
        return []
    return [item for item in required if not _satisfied(granted_list, item)]


def matches_permission(granted: Iterable[str], required: Iterable[str]) -> bool:
    """Return True when every required permission is covered by a granted one.

    A granted ``*`` is a bypass and allows anything, including an empty
    requirement. Otherwise each ``resource:action`` requirement needs a granted
    entry with the same segments, where a granted ``*`` segment matches any
    value (``service:*``, ``*:read``).
    """
    return not missing_permissions(granted, required)


def check_permissions(granted: Iterable[str], required: Iterable[str]) -> None:
    missing = missing_permissions(granted, required)
    if missing:
        raise InsufficientPermission(missing)
