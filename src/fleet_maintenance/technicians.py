# Module: src/fleet_maintenance/technicians.py
# Description: Workshop technicians that repair orders are assigned to.

import logging
from typing import List, Optional

from .models import Notice, NoticeLevel, Technician, TechnicianRole, TechnicianStatus
from .stock import new_id
from .sync import FleetStore

logger = logging.getLogger(__name__)


class TechnicianService:
    """Adds technicians and tracks their availability."""

    def __init__(self, store: FleetStore):
        self.store = store

    def find(self, technician_id: str) -> Optional[Technician]:
        return next((t for t in self.store.technicians.value if t.id == technician_id), None)

    def list_technicians(self, status: Optional[TechnicianStatus] = None) -> List[Technician]:
        return [t for t in self.store.technicians.value if status is None or t.status == status]

    def add(self, name: str, role: TechnicianRole = TechnicianRole.TECHNICIAN,
            skills: Optional[List[str]] = None) -> Technician:
        """Add a technician. Raises ValueError for a blank name."""
        name = name.strip()
        if not name:
            raise ValueError("Technician name is required")
        technician = Technician(id=new_id("T"), name=name, role=role, skills=skills or [])
        self.store.technicians.set(lambda technicians: technicians + [technician])
        logger.info(f"Added {role.value} {technician.id} '{name}'")
        return technician

    def set_status(self, technician_id: str, status: TechnicianStatus) -> Notice:
        technician = self.find(technician_id)
        if technician is None:
            return Notice(NoticeLevel.ERROR, f"Technician '{technician_id}' not found")
        updated = technician.model_copy(update={"status": status})
        self.store.technicians.set(lambda technicians: [updated if t.id == technician_id else t for t in technicians])
        logger.info(f"Technician {technician_id} is now {status.value}")
        return Notice(NoticeLevel.SUCCESS, f"{technician.name} is now {status.value}")
