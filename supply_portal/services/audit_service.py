from __future__ import annotations

from sqlalchemy.orm import Session

from supply_portal.models import AuditLog


def log_audit(
    db: Session,
    *,
    actor_user_id: str | None,
    action: str,
    order_id: int | None = None,
    discrepancy_id: int | None = None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_user_id=actor_user_id,
            action=action,
            order_id=order_id,
            discrepancy_id=discrepancy_id,
            ip=ip,
            meta=metadata or {},
        )
    )
