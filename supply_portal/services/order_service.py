"""Order lifecycle: PLACED -> ACCEPTED -> DISPATCHED -> RECEIVED.

``DISCREPANCY`` is set by discrepancy reporting on a dispatched order and is
still receivable once every discrepancy on the order is resolved. Every
transition is a conditional update keyed on the expected status, so two
concurrent callers can never both move the same order.
"""
from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supply_portal.auth import Claim, is_franchise_role, is_kitchen_role
from supply_portal.config import settings
from supply_portal.errors import (
    BlockedByDiscrepancy,
    EditWindowExpired,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from supply_portal.models import Franchise, Order, OrderItem, OrderStatus, Vendor
from supply_portal.services.access_scope import apply_scope, can_view
from supply_portal.services.audit_service import log_audit
from supply_portal.services.discrepancy_service import has_unresolved
from supply_portal.services.notification_service import (
    NotificationDispatcher,
    franchise_recipients,
    kitchen_recipients,
    notification_dispatcher,
    order_new_event,
    order_status_event,
    publish,
)

logger = logging.getLogger(__name__)

RECEIVABLE_STATUSES = frozenset({OrderStatus.DISPATCHED, OrderStatus.DISCREPANCY})
_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
_CENT = Decimal('0.01')
ORDER_NUMBER_ATTEMPTS = 10


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _stamp_after(previous: datetime | None) -> datetime:
    now = _now()
    previous = _as_utc(previous)
    if previous is not None and previous >= now:
        return previous + timedelta(microseconds=1)
    return now


def _item_key(name: str | None) -> str:
    return (name or '').strip().lower()


def _parse_decimal(value, *, field_name: str) -> Decimal:
    if value is None:
        raise ValidationError(f'{field_name} is required')
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f'Invalid {field_name}') from exc
    if not parsed.is_finite():
        raise ValidationError(f'Invalid {field_name}')
    return parsed


def _line_amount(qty: Decimal, price: Decimal) -> Decimal:
    return (qty * price).quantize(_CENT)


@dataclass(frozen=True)
class OrderItemInput:
    item_name: str
    ordered_qty: Decimal
    unit_price: Decimal
    uom: str = ''
    vendor_price: Decimal = Decimal('0')
    item_id: str | None = None


@dataclass(frozen=True)
class ReceivedItemInput:
    item_name: str
    received_qty: Decimal


def validate_items(items: list[OrderItemInput]) -> list[OrderItemInput]:
    if not items:
        raise ValidationError('Order must contain at least one item')

    normalized: list[OrderItemInput] = []
    seen: set[str] = set()
    for item in items:
        name = (item.item_name or '').strip()
        if not name:
            raise ValidationError('Item name is required')
        key = _item_key(name)
        if key in seen:
            raise ValidationError(f'Duplicate item {name!r}')
        seen.add(key)

        qty = _parse_decimal(item.ordered_qty, field_name=f'quantity for {name}')
        if qty <= 0:
            raise ValidationError(f'Quantity for {name} must be greater than zero')
        unit_price = _parse_decimal(item.unit_price, field_name=f'unit price for {name}')
        vendor_price = _parse_decimal(
            item.vendor_price if item.vendor_price is not None else 0,
            field_name=f'vendor price for {name}',
        )
        if unit_price < 0 or vendor_price < 0:
            raise ValidationError(f'Prices for {name} cannot be negative')

        normalized.append(
            OrderItemInput(
                item_name=name,
                ordered_qty=qty,
                unit_price=unit_price,
                uom=(item.uom or '').strip(),
                vendor_price=vendor_price,
                item_id=(item.item_id or '').strip() or None,
            )
        )
    return normalized


def resolve_vendor(db: Session, franchise: Franchise, vendor_id: str | None) -> Vendor:
    assigned = [value for value in (franchise.vendor_1_id, franchise.vendor_2_id) if value]
    selected = (vendor_id or '').strip()
    if selected:
        if selected not in assigned:
            raise ValidationError('Selected vendor is not assigned to this franchise')
    elif assigned:
        selected = assigned[0]
    else:
        raise ValidationError('No vendor is assigned to this franchise')

    vendor = db.execute(select(Vendor).where(Vendor.id == selected)).scalar_one_or_none()
    if vendor is None or not vendor.active:
        raise ValidationError('Assigned vendor is not available')
    return vendor


def generate_order_number(now: datetime | None = None) -> str:
    stamp = (now or _now()).strftime('%Y%m%d')
    suffix = ''.join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(4))
    return f'PO-{stamp}-{suffix}'


def _insert_order(db: Session, build_order) -> Order:
    """Inserts the order header, drawing a fresh number when the unique index rejects one."""
    for attempt in range(ORDER_NUMBER_ATTEMPTS):
        order = build_order(generate_order_number())
        db.add(order)
        try:
            db.flush()
        except IntegrityError:
            taken = order.order_number
            db.rollback()
            if attempt == ORDER_NUMBER_ATTEMPTS - 1:
                raise
            logger.warning('Order number %s already taken, retrying', taken)
            continue
        return order
    raise RuntimeError('Could not allocate a unique order number')


def get_order_items(db: Session, order_id: int) -> list[OrderItem]:
    return db.execute(
        select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.position.asc())
    ).scalars().all()


def _build_items(order_id: int, items: list[OrderItemInput]) -> list[OrderItem]:
    rows: list[OrderItem] = []
    for position, item in enumerate(items):
        rows.append(
            OrderItem(
                order_id=order_id,
                position=position,
                item_id=item.item_id,
                item_name=item.item_name,
                uom=item.uom,
                ordered_qty=item.ordered_qty,
                received_qty=item.ordered_qty,
                unit_price=item.unit_price,
                vendor_price=item.vendor_price,
                line_total=_line_amount(item.ordered_qty, item.unit_price),
                vendor_cost_line=_line_amount(item.ordered_qty, item.vendor_price),
            )
        )
    return rows


def compute_totals(items: list[OrderItem]) -> tuple[Decimal, Decimal]:
    total_amount = sum((row.line_total for row in items), Decimal('0.00'))
    total_vendor_cost = sum((row.vendor_cost_line for row in items), Decimal('0.00'))
    return total_amount, total_vendor_cost


def item_to_dict(row: OrderItem) -> dict:
    return {
        'id': row.id,
        'item_id': row.item_id,
        'item_name': row.item_name,
        'uom': row.uom,
        'ordered_qty': row.ordered_qty,
        'received_qty': row.received_qty,
        'unit_price': row.unit_price,
        'vendor_price': row.vendor_price,
        'line_total': row.line_total,
        'vendor_cost_line': row.vendor_cost_line,
    }


def order_to_dict(order: Order, items: list[OrderItem]) -> dict:
    return {
        'id': order.id,
        'order_number': order.order_number,
        'franchise_id': order.franchise_id,
        'franchise_name': order.franchise_name,
        'vendor_id': order.vendor_id,
        'vendor_name': order.vendor_name,
        'status': order.status.value,
        'total_amount': order.total_amount,
        'total_vendor_cost': order.total_vendor_cost,
        'items': [item_to_dict(row) for row in items],
        'created_by': order.created_by,
        'created_by_name': order.created_by_name,
        'created_by_role': order.created_by_role,
        'accepted_by': order.accepted_by,
        'accepted_by_name': order.accepted_by_name,
        'dispatched_by': order.dispatched_by,
        'dispatched_by_name': order.dispatched_by_name,
        'dispatch_notes': order.dispatch_notes,
        'received_by': order.received_by,
        'received_by_name': order.received_by_name,
        'dispatch_photos': list(order.dispatch_photos or []),
        'receive_photos': list(order.receive_photos or []),
        'created_at': _as_utc(order.created_at),
        'accepted_at': _as_utc(order.accepted_at),
        'dispatched_at': _as_utc(order.dispatched_at),
        'received_at': _as_utc(order.received_at),
    }


def order_detail(db: Session, order: Order) -> dict:
    return order_to_dict(order, get_order_items(db, order.id))


def _load_order(db: Session, order_id: int, *, for_update: bool = False) -> Order:
    query = select(Order).where(Order.id == order_id)
    if for_update:
        query = query.with_for_update()
    order = db.execute(query.execution_options(populate_existing=True)).scalar_one_or_none()
    if order is None:
        raise NotFound('Order not found')
    return order


def get_order(db: Session, claim: Claim, order_id: int) -> Order:
    order = _load_order(db, order_id)
    if not can_view(claim, order):
        raise NotFound('Order not found')
    return order


def list_orders(db: Session, claim: Claim, *, status: OrderStatus | None = None) -> list[dict]:
    query = apply_scope(claim, select(Order), Order)
    if status is not None:
        query = query.where(Order.status == status)
    orders = db.execute(query.order_by(Order.created_at.desc())).scalars().all()
    if not orders:
        return []

    items_by_order: dict[int, list[OrderItem]] = {}
    rows = db.execute(
        select(OrderItem)
        .where(OrderItem.order_id.in_([order.id for order in orders]))
        .order_by(OrderItem.order_id.asc(), OrderItem.position.asc())
    ).scalars().all()
    for row in rows:
        items_by_order.setdefault(row.order_id, []).append(row)
    return [order_to_dict(order, items_by_order.get(order.id, [])) for order in orders]


def _require_franchise_owner(claim: Claim, order: Order) -> None:
    if not is_franchise_role(claim.role) or not can_view(claim, order):
        raise Forbidden('Order belongs to another franchise')


def _require_vendor_owner(claim: Claim, order: Order) -> None:
    if not is_kitchen_role(claim.role):
        raise Forbidden('Only the assigned kitchen can act on this order')
    if not can_view(claim, order):
        raise Forbidden('Order is assigned to another kitchen')


def _conditional_update(db: Session, order: Order, *, expected: frozenset[OrderStatus], values: dict) -> None:
    result = db.execute(
        update(Order).where(Order.id == order.id, Order.status.in_(list(expected))).values(**values)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidTransition('Order status changed concurrently; reload and retry')


def _check_edit_window(order: Order) -> None:
    if order.status != OrderStatus.PLACED:
        raise EditWindowExpired('Only orders that have not been accepted can be changed')
    window = timedelta(hours=settings.edit_window_hours)
    if _now() - _as_utc(order.created_at) > window:
        raise EditWindowExpired(f'Orders can only be changed within {settings.edit_window_hours} hours of creation')


def create_order(
    db: Session,
    claim: Claim,
    *,
    items: list[OrderItemInput],
    vendor_id: str | None = None,
    ip: str | None = None,
    dispatcher: NotificationDispatcher = notification_dispatcher,
) -> Order:
    if not is_franchise_role(claim.role):
        raise Forbidden('Only franchises can create orders')
    if not claim.franchise_id:
        raise ValidationError('Franchise login is missing scope')

    franchise = db.execute(select(Franchise).where(Franchise.id == claim.franchise_id)).scalar_one_or_none()
    if franchise is None or not franchise.active:
        raise ValidationError('Franchise not found')

    normalized = validate_items(items)
    vendor = resolve_vendor(db, franchise, vendor_id)

    franchise_id, franchise_name = franchise.id, franchise.name
    vendor_id, vendor_name = vendor.id, vendor.name
    now = _now()
    order = _insert_order(
        db,
        lambda order_number: Order(
            order_number=order_number,
            franchise_id=franchise_id,
            franchise_name=franchise_name,
            vendor_id=vendor_id,
            vendor_name=vendor_name,
            status=OrderStatus.PLACED,
            created_by=claim.user_id,
            created_by_name=claim.display_name,
            created_by_role=claim.role.value,
            dispatch_photos=[],
            receive_photos=[],
            created_at=now,
            updated_at=now,
        ),
    )

    rows = _build_items(order.id, normalized)
    db.add_all(rows)
    order.total_amount, order.total_vendor_cost = compute_totals(rows)
    db.flush()

    log_audit(
        db,
        actor_user_id=claim.user_id,
        action='ORDER_CREATED',
        order_id=order.id,
        ip=ip,
        metadata={'order_number': order.order_number, 'vendor_id': vendor_id, 'items': len(rows)},
    )
    db.commit()
    logger.info('Created order %s', order.order_number, extra={'order_id': order.id})

    publish(dispatcher, lambda: order_new_event(order, kitchen_recipients(db, order)), db=db)
    return order


def accept_order(
    db: Session,
    claim: Claim,
    order_id: int,
    *,
    ip: str | None = None,
    dispatcher: NotificationDispatcher = notification_dispatcher,
) -> Order:
    order = _load_order(db, order_id)
    _require_vendor_owner(claim, order)
    if order.status != OrderStatus.PLACED:
        raise InvalidTransition(f'Only placed orders can be accepted (order is {order.status.value})')

    now = _stamp_after(order.created_at)
    _conditional_update(
        db,
        order,
        expected=frozenset({OrderStatus.PLACED}),
        values={
            'status': OrderStatus.ACCEPTED,
            'accepted_at': now,
            'accepted_by': claim.user_id,
            'accepted_by_name': claim.display_name,
            'updated_at': now,
        },
    )
    log_audit(db, actor_user_id=claim.user_id, action='ORDER_ACCEPTED', order_id=order.id, ip=ip)
    db.commit()
    logger.info('Accepted order %s', order.order_number, extra={'order_id': order.id})

    publish(
        dispatcher,
        lambda: order_status_event(
            order,
            'Order Accepted',
            f'Your order {order.order_number} has been accepted by {order.vendor_name or "the kitchen"}',
            '/franchise/orders',
            franchise_recipients(db, order),
        ),
        db=db,
    )
    return order


def dispatch_order(
    db: Session,
    claim: Claim,
    order_id: int,
    *,
    dispatch_photos: list[str],
    notes: str | None = None,
    ip: str | None = None,
    dispatcher: NotificationDispatcher = notification_dispatcher,
) -> Order:
    order = _load_order(db, order_id)
    _require_vendor_owner(claim, order)
    if order.status != OrderStatus.ACCEPTED:
        raise InvalidTransition(f'Only accepted orders can be dispatched (order is {order.status.value})')

    photos = [str(url).strip() for url in (dispatch_photos or [])]
    if not photos:
        raise ValidationError('At least one dispatch photo is required')
    if any(not url for url in photos):
        raise ValidationError('Dispatch photo URLs cannot be blank')

    now = _stamp_after(order.accepted_at)
    _conditional_update(
        db,
        order,
        expected=frozenset({OrderStatus.ACCEPTED}),
        values={
            'status': OrderStatus.DISPATCHED,
            'dispatched_at': now,
            'dispatched_by': claim.user_id,
            'dispatched_by_name': claim.display_name,
            'dispatch_photos': photos,
            'dispatch_notes': (notes or '').strip() or None,
            'updated_at': now,
        },
    )
    log_audit(
        db,
        actor_user_id=claim.user_id,
        action='ORDER_DISPATCHED',
        order_id=order.id,
        ip=ip,
        metadata={'photos': len(photos)},
    )
    db.commit()
    logger.info('Dispatched order %s', order.order_number, extra={'order_id': order.id})

    publish(
        dispatcher,
        lambda: order_status_event(
            order,
            'Order Dispatched',
            f'Your order {order.order_number} has been dispatched',
            '/franchise/orders',
            franchise_recipients(db, order),
        ),
        db=db,
    )
    return order


def _apply_reconciliation(items: list[OrderItem], received_items: list[ReceivedItemInput] | None) -> None:
    received_by_key: dict[str, Decimal] = {}
    for entry in received_items or []:
        qty = _parse_decimal(entry.received_qty, field_name=f'received quantity for {entry.item_name}')
        if qty < 0:
            raise ValidationError(f'Received quantity for {entry.item_name} cannot be negative')
        received_by_key[_item_key(entry.item_name)] = qty

    known = {_item_key(row.item_name) for row in items}
    unknown = sorted(set(received_by_key) - known)
    if unknown:
        raise ValidationError(f'Items not on this order: {", ".join(unknown)}')

    for row in items:
        qty = received_by_key.get(_item_key(row.item_name), row.ordered_qty)
        row.received_qty = qty
        row.line_total = _line_amount(qty, row.unit_price)
        row.vendor_cost_line = _line_amount(qty, row.vendor_price)


def receive_order(
    db: Session,
    claim: Claim,
    order_id: int,
    *,
    receive_photos: list[str] | None = None,
    received_items: list[ReceivedItemInput] | None = None,
    ip: str | None = None,
    dispatcher: NotificationDispatcher = notification_dispatcher,
) -> Order:
    order = _load_order(db, order_id, for_update=True)
    _require_franchise_owner(claim, order)
    if order.status not in RECEIVABLE_STATUSES:
        raise Forbidden(f'Only dispatched orders can be received (order is {order.status.value})')

    # Checked after taking the row lock so a concurrent report cannot slip in.
    summary = has_unresolved(db, order.id)
    if summary.has_unresolved:
        db.rollback()
        raise BlockedByDiscrepancy(summary.unresolved_count, summary.discrepancies)

    photos = [str(url).strip() for url in (receive_photos or []) if str(url).strip()]
    items = get_order_items(db, order.id)
    _apply_reconciliation(items, received_items)
    total_amount, total_vendor_cost = compute_totals(items)
    db.flush()

    now = _stamp_after(order.dispatched_at)
    _conditional_update(
        db,
        order,
        expected=RECEIVABLE_STATUSES,
        values={
            'status': OrderStatus.RECEIVED,
            'received_at': now,
            'received_by': claim.user_id,
            'received_by_name': claim.display_name,
            'receive_photos': photos,
            'total_amount': total_amount,
            'total_vendor_cost': total_vendor_cost,
            'updated_at': now,
        },
    )
    log_audit(
        db,
        actor_user_id=claim.user_id,
        action='ORDER_RECEIVED',
        order_id=order.id,
        ip=ip,
        metadata={'total_amount': str(total_amount)},
    )
    db.commit()
    logger.info('Received order %s', order.order_number, extra={'order_id': order.id})

    publish(
        dispatcher,
        lambda: order_status_event(
            order,
            'Order Received',
            f'Order {order.order_number} has been received by {order.franchise_name}',
            '/kitchen/orders',
            kitchen_recipients(db, order),
        ),
        db=db,
    )
    return order


def edit_order(
    db: Session,
    claim: Claim,
    order_id: int,
    *,
    items: list[OrderItemInput],
    ip: str | None = None,
) -> Order:
    order = _load_order(db, order_id, for_update=True)
    _require_franchise_owner(claim, order)
    _check_edit_window(order)
    normalized = validate_items(items)

    db.execute(delete(OrderItem).where(OrderItem.order_id == order.id))
    rows = _build_items(order.id, normalized)
    db.add_all(rows)
    total_amount, total_vendor_cost = compute_totals(rows)
    db.flush()

    _conditional_update(
        db,
        order,
        expected=frozenset({OrderStatus.PLACED}),
        values={'total_amount': total_amount, 'total_vendor_cost': total_vendor_cost, 'updated_at': _now()},
    )
    log_audit(
        db,
        actor_user_id=claim.user_id,
        action='ORDER_EDITED',
        order_id=order.id,
        ip=ip,
        metadata={'items': len(rows), 'total_amount': str(total_amount)},
    )
    db.commit()
    logger.info('Edited order %s', order.order_number, extra={'order_id': order.id})
    return order


def delete_order(db: Session, claim: Claim, order_id: int, *, ip: str | None = None) -> None:
    order = _load_order(db, order_id, for_update=True)
    _require_franchise_owner(claim, order)
    _check_edit_window(order)

    order_number = order.order_number
    db.execute(delete(OrderItem).where(OrderItem.order_id == order.id))
    result = db.execute(
        delete(Order)
        .where(Order.id == order.id, Order.status == OrderStatus.PLACED)
        .execution_options(synchronize_session='fetch')
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidTransition('Order status changed concurrently; reload and retry')
    log_audit(
        db,
        actor_user_id=claim.user_id,
        action='ORDER_DELETED',
        order_id=order_id,
        ip=ip,
        metadata={'order_number': order_number},
    )
    db.commit()
    logger.info('Deleted order %s', order_number, extra={'order_id': order_id})
