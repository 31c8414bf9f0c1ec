from __future__ import annotations

from enum import StrEnum


class RequestStage(StrEnum):
    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    REPAIRED = "REPAIRED"
    SCRAP = "SCRAP"


ALLOWED_TRANSITIONS: dict[RequestStage, set[RequestStage]] = {
    RequestStage.NEW: {
        RequestStage.NEW,
        RequestStage.IN_PROGRESS,
        RequestStage.REPAIRED,
        RequestStage.SCRAP,
    },
    RequestStage.IN_PROGRESS: {
        RequestStage.IN_PROGRESS,
        RequestStage.REPAIRED,
        RequestStage.SCRAP,
    },
    RequestStage.REPAIRED: set(),
    RequestStage.SCRAP: set(),
}

OPEN_STAGES: frozenset[RequestStage] = frozenset({RequestStage.NEW, RequestStage.IN_PROGRESS})
TERMINAL_STAGES: frozenset[RequestStage] = frozenset({RequestStage.REPAIRED, RequestStage.SCRAP})


def can_transition(source: RequestStage, target: RequestStage) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())


def is_open_stage(stage: RequestStage) -> bool:
    return stage in OPEN_STAGES


def is_terminal_stage(stage: RequestStage) -> bool:
    return stage in TERMINAL_STAGES


class EquipmentStatus(StrEnum):
    ACTIVE = "ACTIVE"
    UNDER_MAINTENANCE = "UNDER_MAINTENANCE"
    SCRAPPED = "SCRAPPED"


# Equipment status each stage pushes onto the linked equipment when entered.
STAGE_EQUIPMENT_STATUS: dict[RequestStage, EquipmentStatus] = {
    RequestStage.IN_PROGRESS: EquipmentStatus.UNDER_MAINTENANCE,
    RequestStage.REPAIRED: EquipmentStatus.ACTIVE,
    RequestStage.SCRAP: EquipmentStatus.SCRAPPED,
}
