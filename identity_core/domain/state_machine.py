from __future__ import annotations

from enum import StrEnum


class EntitlementStatus(StrEnum):
    ACTIVE = "ACTIVE"
    WITHDRAWN = "WITHDRAWN"


ALLOWED_TRANSITIONS: dict[EntitlementStatus, set[EntitlementStatus]] = {
    EntitlementStatus.ACTIVE: {EntitlementStatus.WITHDRAWN},
    EntitlementStatus.WITHDRAWN: set(),
}


def can_transition(source: EntitlementStatus, target: EntitlementStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())
