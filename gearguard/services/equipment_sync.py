from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from gearguard.domain.errors import EquipmentTerminalError
from gearguard.domain.models import Equipment
from gearguard.domain.state_machine import STAGE_EQUIPMENT_STATUS, EquipmentStatus, RequestStage
from gearguard.infra.gateway import ConditionalUpdate


@dataclass(frozen=True)
class EquipmentEffect:
    """Status a stage transition asks the linked equipment to take."""

    status: EquipmentStatus
    scrap_date: datetime | None = None

    @classmethod
    def for_stage(cls, stage: RequestStage, now: datetime) -> EquipmentEffect | None:
        status = STAGE_EQUIPMENT_STATUS.get(stage)
        if status is None:
            return None
        if status == EquipmentStatus.SCRAPPED:
            return cls(status=status, scrap_date=now)
        return cls(status=status)


class EquipmentSynchronizer:
    def apply_side_effect(self, equipment: Equipment, effect: EquipmentEffect, now: datetime) -> dict[str, Any]:
        """Return the field changes ``effect`` makes to ``equipment``.

        Scrapped equipment is terminal and rejects every effect.
        """
        if equipment.status == EquipmentStatus.SCRAPPED:
            raise EquipmentTerminalError("equipment is scrapped", status=equipment.status)
        changes: dict[str, Any] = {"status": effect.status, "updated_at": now}
        if effect.status == EquipmentStatus.SCRAPPED:
            changes["scrap_date"] = effect.scrap_date or now
        return changes

    def build_write(self, equipment: Equipment, effect: EquipmentEffect, now: datetime) -> ConditionalUpdate:
        changes = self.apply_side_effect(equipment, effect, now)
        return ConditionalUpdate(
            model=Equipment,
            company_id=equipment.company_id,
            entity_id=equipment.id,
            changes=changes,
            expected={"status": equipment.status},
        )
