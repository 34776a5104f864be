from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from supply_portal.auth import Claim, Role, is_franchise_role
from supply_portal.errors import AlreadyResolved, Forbidden, InvalidTransition, NotFound, ValidationError
from supply_portal.models import Discrepancy, Order, OrderItem, OrderStatus
from supply_portal.services.access_scope import apply_scope, can_view
from supply_portal.services.audit_service import log_audit
from supply_portal.services.notification_service import (
    NotificationDispatcher,
    discrepancy_new_event,
    discrepancy_resolved_event,
    kitchen_recipients,
    notification_dispatcher,
    publish,
)

logger = logging.getLogger(__name__)

REPORTABLE_STATUSES = frozenset({OrderStatus.DISPATCHED, OrderStatus.DISCREPANCY})


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _item_key(name: str | None) -> str:
    return (name or '').strip().lower()


def _parse_qty(value, *, field_name: str) -> Decimal:
    try:
        qty = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f'Invalid {field_name}') from exc
    if not qty.is_finite():
        raise ValidationError(f'Invalid {field_name}')
    if qty < 0:
        raise ValidationError(f'{field_name} cannot be negative')
    return qty


@dataclass(frozen=True)
class DiscrepancyReportItem:
    item_name: str
    received_qty: Decimal
    ordered_qty: Decimal | None = None
    uom: str = ''
    notes: str = ''
    photos: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class UnresolvedSummary:
    has_unresolved: bool
    unresolved_count: int
    discrepancies: list[dict]

    def to_dict(self) -> dict:
        return {
            'has_unresolved': self.has_unresolved,
            'unresolved_count': self.unresolved_count,
            'discrepancies': self.discrepancies,
        }


def discrepancy_kind(difference: Decimal) -> str:
    if difference > 0:
        return 'SHORTFALL'
    if difference < 0:
        return 'SURPLUS'
    return 'MATCH'


def discrepancy_to_dict(row: Discrepancy) -> dict:
    return {
        'id': row.id,
        'order_id': row.order_id,
        'order_number': row.order_number,
        'franchise_id': row.franchise_id,
        'franchise_name': row.franchise_name,
        'vendor_id': row.vendor_id,
        'item_name': row.item_name,
        'uom': row.uom,
        'ordered_qty': row.ordered_qty,
        'received_qty': row.received_qty,
        'difference': row.difference,
        'kind': discrepancy_kind(row.difference),
        'notes': row.notes,
        'photos': list(row.photos or []),
        'reported_by': row.reported_by,
        'resolved': row.resolved,
        'resolved_by': row.resolved_by,
        'resolved_at': _as_utc(row.resolved_at),
        'resolution_notes': row.resolution_notes,
        'created_at': _as_utc(row.created_at),
    }


def _unresolved_rows(db: Session, order_id: int) -> list[Discrepancy]:
    return db.execute(
        select(Discrepancy)
        .where(Discrepancy.order_id == order_id, Discrepancy.resolved.is_(False))
        .order_by(Discrepancy.created_at.asc())
        .execution_options(populate_existing=True)
    ).scalars().all()


def has_unresolved(db: Session, order_id: int) -> UnresolvedSummary:
    rows = _unresolved_rows(db, order_id)
    return UnresolvedSummary(
        has_unresolved=bool(rows),
        unresolved_count=len(rows),
        discrepancies=[discrepancy_to_dict(row) for row in rows],
    )


def _clean_photos(photos) -> list[str]:
    cleaned: list[str] = []
    for url in photos or ():
        value = str(url or '').strip()
        if not value:
            raise ValidationError('Photo URLs cannot be blank')
        cleaned.append(value)
    return cleaned


def report_discrepancies(
    db: Session,
    claim: Claim,
    order_id: int,
    items: list[DiscrepancyReportItem],
    *,
    ip: str | None = None,
    dispatcher: NotificationDispatcher = notification_dispatcher,
) -> list[Discrepancy]:
    if not is_franchise_role(claim.role):
        raise Forbidden('Only franchises can report discrepancies')

    order = db.execute(
        select(Order).where(Order.id == order_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is None:
        raise NotFound('Order not found')
    if not can_view(claim, order):
        raise Forbidden('Order belongs to another franchise')
    if order.status not in REPORTABLE_STATUSES:
        raise InvalidTransition(f'Discrepancies can only be reported on dispatched orders (order is {order.status.value})')
    if not items:
        raise ValidationError('At least one item is required')

    order_items = {
        _item_key(row.item_name): row
        for row in db.execute(select(OrderItem).where(OrderItem.order_id == order.id)).scalars().all()
    }
    open_rows: dict[str, list[Discrepancy]] = {}
    for row in _unresolved_rows(db, order.id):
        open_rows.setdefault(_item_key(row.item_name), []).append(row)

    created: list[Discrepancy] = []
    reported: list[Discrepancy] = []
    now = _now()
    for entry in items:
        key = _item_key(entry.item_name)
        order_item = order_items.get(key)
        if order_item is None:
            raise ValidationError(f'Item {entry.item_name!r} is not on this order')
        received_qty = _parse_qty(entry.received_qty, field_name='Received quantity')
        # The stored line is authoritative for what was ordered.
        ordered_qty = order_item.ordered_qty
        if received_qty == ordered_qty:
            continue

        duplicate = next((row for row in open_rows.get(key, []) if row.received_qty == received_qty), None)
        if duplicate is not None:
            reported.append(duplicate)
            continue

        row = Discrepancy(
            order_id=order.id,
            order_number=order.order_number,
            franchise_id=order.franchise_id,
            franchise_name=order.franchise_name,
            vendor_id=order.vendor_id,
            item_name=order_item.item_name,
            uom=(entry.uom or order_item.uom or '').strip(),
            ordered_qty=ordered_qty,
            received_qty=received_qty,
            difference=ordered_qty - received_qty,
            notes=(entry.notes or '').strip(),
            photos=_clean_photos(entry.photos),
            reported_by=claim.user_id,
            resolved=False,
            created_at=now,
        )
        open_rows.setdefault(key, []).append(row)
        created.append(row)
        reported.append(row)

    if not reported:
        raise ValidationError('Received quantities match the order; nothing to report')

    db.add_all(created)

    if order.status != OrderStatus.DISCREPANCY:
        result = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status.in_(list(REPORTABLE_STATUSES)))
            .values(status=OrderStatus.DISCREPANCY, updated_at=now)
        )
        if result.rowcount != 1:
            db.rollback()
            raise InvalidTransition('Order changed while reporting discrepancy')

    db.flush()
    for row in created:
        log_audit(
            db,
            actor_user_id=claim.user_id,
            action='DISCREPANCY_REPORTED',
            order_id=order.id,
            discrepancy_id=row.id,
            ip=ip,
            metadata={'item_name': row.item_name, 'difference': str(row.difference)},
        )
    db.commit()
    logger.info('Reported %d discrepancies on %s', len(created), order.order_number, extra={'order_id': order.id})

    for row in created:
        publish(dispatcher, lambda row=row: discrepancy_new_event(row, kitchen_recipients(db, row)), db=db)
    return reported


def resolve_discrepancy(
    db: Session,
    claim: Claim,
    discrepancy_id: int,
    resolution_notes: str | None,
    *,
    ip: str | None = None,
    dispatcher: NotificationDispatcher = notification_dispatcher,
) -> Discrepancy:
    if claim.role != Role.ADMIN:
        raise Forbidden('Only admin can resolve discrepancies')

    row = db.execute(
        select(Discrepancy).where(Discrepancy.id == discrepancy_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if row is None:
        raise NotFound('Discrepancy not found')
    if row.resolved:
        raise AlreadyResolved('Discrepancy is already resolved')

    notes = (resolution_notes or '').strip()
    result = db.execute(
        update(Discrepancy)
        .where(Discrepancy.id == discrepancy_id, Discrepancy.resolved.is_(False))
        .values(resolved=True, resolved_by=claim.user_id, resolved_at=_now(), resolution_notes=notes)
    )
    if result.rowcount != 1:
        db.rollback()
        raise AlreadyResolved('Discrepancy is already resolved')

    log_audit(
        db,
        actor_user_id=claim.user_id,
        action='DISCREPANCY_RESOLVED',
        order_id=row.order_id,
        discrepancy_id=row.id,
        ip=ip,
        metadata={'resolution_notes': notes},
    )
    db.commit()
    logger.info('Resolved discrepancy %s', row.id, extra={'discrepancy_id': row.id, 'order_id': row.order_id})

    publish(dispatcher, lambda: discrepancy_resolved_event(row), db=db)
    return row


def get_discrepancy(db: Session, claim: Claim, discrepancy_id: int) -> Discrepancy:
    row = db.execute(select(Discrepancy).where(Discrepancy.id == discrepancy_id)).scalar_one_or_none()
    if row is None or not can_view(claim, row):
        raise NotFound('Discrepancy not found')
    return row


def list_discrepancies(
    db: Session,
    claim: Claim,
    *,
    order_id: int | None = None,
    resolved: bool | None = None,
) -> list[dict]:
    query = apply_scope(claim, select(Discrepancy), Discrepancy)
    if order_id is not None:
        query = query.where(Discrepancy.order_id == order_id)
    if resolved is not None:
        query = query.where(Discrepancy.resolved.is_(resolved))
    rows = db.execute(query.order_by(Discrepancy.created_at.desc())).scalars().all()
    return [discrepancy_to_dict(row) for row in rows]
