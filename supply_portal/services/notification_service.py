"""Durable per-user notification fan-out.

One domain event becomes one ``Notification`` row per recipient. Writes happen
after the triggering transition has committed and never raise into it: the
order and discrepancy tables are authoritative, notifications are best-effort.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from supply_portal.auth import KITCHEN_ROLES, Claim, Role
from supply_portal.config import settings
from supply_portal.errors import Forbidden, NotFound
from supply_portal.models import Discrepancy, Notification, NotificationType, Order, SupplyUser
from supply_portal.services.access_scope import recipients_for

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _money(value: Decimal | None) -> str:
    return f"{(value or Decimal('0')):.2f}"


@dataclass(frozen=True)
class NotificationEvent:
    type: NotificationType
    title: str
    message: str
    reference_id: str
    link: str = ''
    recipients: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MarkAllReadResult:
    updated: int
    failed: int


class NotificationDispatcher:
    def __init__(self, session_factory: Callable[[], Session] | None = None, max_workers: int | None = None) -> None:
        self._session_factory = session_factory
        self._max_workers = max_workers or settings.notification_fanout_workers

    def _new_session(self) -> Session:
        if self._session_factory is None:
            from supply_portal.db import SessionLocal

            self._session_factory = SessionLocal
        return self._session_factory()

    def _write(self, event: NotificationEvent, user_id: str) -> None:
        with self._new_session() as db:
            db.add(
                Notification(
                    user_id=user_id,
                    type=event.type,
                    title=event.title,
                    message=event.message,
                    link=event.link,
                    reference_id=event.reference_id,
                    is_read=False,
                    created_at=_now(),
                )
            )
            db.commit()

    def dispatch(self, event: NotificationEvent) -> int:
        recipients = list(dict.fromkeys(user_id for user_id in event.recipients if user_id))
        if not recipients:
            logger.debug('No recipients for %s %s', event.type.value, event.reference_id)
            return 0

        delivered = 0
        try:
            with ThreadPoolExecutor(max_workers=min(self._max_workers, len(recipients))) as pool:
                futures = {pool.submit(self._write, event, user_id): user_id for user_id in recipients}
                for future in as_completed(futures):
                    try:
                        future.result()
                        delivered += 1
                    except Exception:
                        logger.exception(
                            'Notification write failed for user %s',
                            futures[future],
                            extra={'event_type': event.type.value},
                        )
        except Exception:
            logger.exception('Notification fan-out aborted', extra={'event_type': event.type.value})

        logger.info(
            'Fan-out %s for %s: %d/%d delivered',
            event.type.value,
            event.reference_id,
            delivered,
            len(recipients),
            extra={'event_type': event.type.value},
        )
        return delivered


notification_dispatcher = NotificationDispatcher()


def publish(
    dispatcher: NotificationDispatcher,
    build_event: Callable[[], NotificationEvent],
    *,
    db: Session | None = None,
) -> int:
    """Builds and dispatches an event; failures are logged, never raised.

    A failed recipient lookup rolls back ``db`` so the caller can keep reading from it.
    """
    try:
        event = build_event()
    except Exception:
        logger.exception('Could not build notification event')
        if db is not None:
            db.rollback()
        return 0
    try:
        return dispatcher.dispatch(event)
    except Exception:
        logger.exception('Notification dispatch failed', extra={'event_type': event.type.value})
        return 0


# Recipient resolution


def kitchen_recipients(db: Session, resource) -> list[str]:
    vendor_id = resource.vendor_id
    if not vendor_id:
        return []
    users = db.execute(
        select(SupplyUser).where(
            SupplyUser.role.in_(list(KITCHEN_ROLES)),
            SupplyUser.active.is_(True),
            or_(SupplyUser.vendor_id == vendor_id, SupplyUser.id == vendor_id),
        )
    ).scalars().all()
    return recipients_for(users, resource, KITCHEN_ROLES)


def franchise_recipients(db: Session, order: Order) -> list[str]:
    owners = db.execute(
        select(SupplyUser).where(
            SupplyUser.role == Role.FRANCHISE,
            SupplyUser.active.is_(True),
            SupplyUser.franchise_id == order.franchise_id,
        )
    ).scalars().all()
    recipients = [order.created_by]
    for user_id in recipients_for(owners, order, {Role.FRANCHISE}):
        if user_id not in recipients:
            recipients.append(user_id)
    return recipients


# Event builders


def order_new_event(order: Order, recipients: list[str]) -> NotificationEvent:
    return NotificationEvent(
        type=NotificationType.ORDER_NEW,
        title='New Order Received',
        message=f'Order {order.order_number} from {order.franchise_name} - Rs.{_money(order.total_vendor_cost)}',
        link='/kitchen/orders',
        reference_id=str(order.id),
        recipients=tuple(recipients),
    )


def order_status_event(order: Order, title: str, message: str, link: str, recipients: list[str]) -> NotificationEvent:
    return NotificationEvent(
        type=NotificationType.ORDER_STATUS,
        title=title,
        message=message,
        link=link,
        reference_id=str(order.id),
        recipients=tuple(recipients),
    )


def discrepancy_new_event(discrepancy: Discrepancy, recipients: list[str]) -> NotificationEvent:
    return NotificationEvent(
        type=NotificationType.DISCREPANCY_NEW,
        title='Discrepancy Reported',
        message=(
            f'{discrepancy.franchise_name} reported discrepancy for {discrepancy.item_name} '
            f'on {discrepancy.order_number}'
        ),
        link='/kitchen/discrepancies',
        reference_id=str(discrepancy.id),
        recipients=tuple(recipients),
    )


def discrepancy_resolved_event(discrepancy: Discrepancy) -> NotificationEvent:
    return NotificationEvent(
        type=NotificationType.DISCREPANCY_RESOLVED,
        title='Discrepancy Resolved',
        message=f'Your discrepancy for {discrepancy.item_name} on {discrepancy.order_number} has been resolved',
        link='/franchise/orders',
        reference_id=str(discrepancy.id),
        recipients=(discrepancy.reported_by,),
    )


# Read side


def notification_to_dict(row: Notification) -> dict:
    created_at = _as_utc(row.created_at)
    return {
        'id': row.id,
        'user_id': row.user_id,
        'type': row.type.value,
        'title': row.title,
        'message': row.message,
        'link': row.link,
        'reference_id': row.reference_id,
        'is_read': row.is_read,
        'created_at': created_at.isoformat() if created_at else None,
    }


def list_notifications(db: Session, claim: Claim, *, unread_only: bool = False, limit: int | None = None) -> dict:
    page_size = limit or settings.notification_page_default
    page_size = max(1, min(page_size, settings.notification_page_max))

    query = select(Notification).where(Notification.user_id == claim.user_id)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))
    rows = db.execute(query.order_by(Notification.created_at.desc()).limit(page_size)).scalars().all()

    notifications = [notification_to_dict(row) for row in rows]
    # Counted over this page only; a global badge count needs its own query.
    unread_count = sum(1 for row in rows if not row.is_read)
    return {
        'notifications': notifications,
        'unread_count': unread_count,
        'total': len(notifications),
    }


def _get_owned(db: Session, claim: Claim, notification_id: int) -> Notification:
    row = db.execute(select(Notification).where(Notification.id == notification_id)).scalar_one_or_none()
    if row is None:
        raise NotFound('Notification not found')
    if row.user_id != claim.user_id:
        raise Forbidden('Notification belongs to another user')
    return row


def mark_read(db: Session, claim: Claim, notification_id: int) -> Notification:
    row = _get_owned(db, claim, notification_id)
    if not row.is_read:
        row.is_read = True
        db.commit()
    return row


def mark_all_read(db: Session, claim: Claim) -> MarkAllReadResult:
    unread_ids = db.execute(
        select(Notification.id).where(
            Notification.user_id == claim.user_id,
            Notification.is_read.is_(False),
        ).order_by(Notification.id.asc())
    ).scalars().all()
    db.commit()

    updated = 0
    failed = 0
    for notification_id in unread_ids:
        try:
            db.execute(
                update(Notification)
                .where(Notification.id == notification_id, Notification.user_id == claim.user_id)
                .values(is_read=True)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            updated += 1
        except SQLAlchemyError:
            db.rollback()
            failed += 1
            logger.exception('Failed to mark notification %s read', notification_id)
    return MarkAllReadResult(updated=updated, failed=failed)


def delete_notification(db: Session, claim: Claim, notification_id: int) -> None:
    row = _get_owned(db, claim, notification_id)
    db.delete(row)
    db.commit()
