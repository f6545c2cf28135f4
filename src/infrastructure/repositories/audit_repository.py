# src/infrastructure/repositories/audit_repository.py

import json

from sqlalchemy import select

from src.infrastructure.db.models import AuditLog
from src.infrastructure.repositories.base import Repository


class AuditRepository(Repository):

    def exists(self, entity_type: str, entity_id: str, action: str) -> bool:
        stmt = (
            select(AuditLog.id)
            .where(AuditLog.entity_type == entity_type)
            .where(AuditLog.entity_id == entity_id)
            .where(AuditLog.action == action)
        )
        return self.db.execute(stmt).first() is not None

    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_type: str,
        tenant_id: str = "system",
        changes: dict | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_type=actor_type,
            tenant_id=tenant_id,
            changes=json.dumps(changes, sort_keys=True) if changes is not None else None,
        )
        self.db.add(entry)
        return entry
