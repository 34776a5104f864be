from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from supply_portal.auth import Role

# SQLite only autoincrements INTEGER primary keys.
BigId = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


class OrderStatus(str, Enum):
    PLACED = 'PLACED'
    ACCEPTED = 'ACCEPTED'
    DISPATCHED = 'DISPATCHED'
    RECEIVED = 'RECEIVED'
    DISCREPANCY = 'DISCREPANCY'


class NotificationType(str, Enum):
    ORDER_NEW = 'ORDER_NEW'
    ORDER_STATUS = 'ORDER_STATUS'
    DISCREPANCY_NEW = 'DISCREPANCY_NEW'
    DISCREPANCY_RESOLVED = 'DISCREPANCY_RESOLVED'


# Party directory. Maintained by the admin tooling; read-only here.


class Vendor(Base):
    __tablename__ = 'vendors'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Franchise(Base):
    __tablename__ = 'franchises'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    vendor_1_id: Mapped[str | None] = mapped_column(String(64), ForeignKey('vendors.id'))
    vendor_2_id: Mapped[str | None] = mapped_column(String(64), ForeignKey('vendors.id'))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SupplyUser(Base):
    __tablename__ = 'supply_users'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[Role] = mapped_column(SQLEnum(Role, name='supply_role'), nullable=False)
    franchise_id: Mapped[str | None] = mapped_column(String(64), ForeignKey('franchises.id'))
    vendor_id: Mapped[str | None] = mapped_column(String(64), ForeignKey('vendors.id'))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# Order aggregate.


class Order(Base):
    __tablename__ = 'supply_orders'
    __table_args__ = (
        UniqueConstraint('order_number', name='supply_orders_order_number_key'),
        Index('supply_orders_franchise_created_idx', 'franchise_id', 'created_at'),
        Index('supply_orders_vendor_created_idx', 'vendor_id', 'created_at'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False)
    franchise_id: Mapped[str] = mapped_column(String(64), nullable=False)
    franchise_name: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_name: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name='supply_order_status'),
        nullable=False,
        default=OrderStatus.PLACED,
        server_default='PLACED',
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'))
    total_vendor_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'))

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_by_name: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    created_by_role: Mapped[str] = mapped_column(String(32), nullable=False, default='', server_default='')
    accepted_by: Mapped[str | None] = mapped_column(String(64))
    accepted_by_name: Mapped[str | None] = mapped_column(Text)
    dispatched_by: Mapped[str | None] = mapped_column(String(64))
    dispatched_by_name: Mapped[str | None] = mapped_column(Text)
    dispatch_notes: Mapped[str | None] = mapped_column(Text)
    received_by: Mapped[str | None] = mapped_column(String(64))
    received_by_name: Mapped[str | None] = mapped_column(Text)

    dispatch_photos: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    receive_photos: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class OrderItem(Base):
    __tablename__ = 'supply_order_items'
    __table_args__ = (
        UniqueConstraint('order_id', 'position', name='supply_order_items_order_position_key'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        BigId,
        ForeignKey('supply_orders.id', ondelete='CASCADE'),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[str | None] = mapped_column(String(64))
    item_name: Mapped[str] = mapped_column(Text, nullable=False)
    uom: Mapped[str] = mapped_column(String(32), nullable=False, default='', server_default='')
    ordered_qty: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    received_qty: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'))
    vendor_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'))
    line_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'))
    vendor_cost_line: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'))


class Discrepancy(Base):
    __tablename__ = 'supply_discrepancies'
    __table_args__ = (
        Index('supply_discrepancies_order_resolved_idx', 'order_id', 'resolved'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    # Weak reference: orders with discrepancies are never deleted.
    order_id: Mapped[int] = mapped_column(BigId, nullable=False)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False)
    franchise_id: Mapped[str] = mapped_column(String(64), nullable=False)
    franchise_name: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    item_name: Mapped[str] = mapped_column(Text, nullable=False)
    uom: Mapped[str] = mapped_column(String(32), nullable=False, default='', server_default='')
    ordered_qty: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    received_qty: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    difference: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    photos: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    reported_by: Mapped[str] = mapped_column(String(64), nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    resolved_by: Mapped[str | None] = mapped_column(String(64))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolution_notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Notification(Base):
    __tablename__ = 'supply_notifications'
    __table_args__ = (
        Index('supply_notifications_user_read_idx', 'user_id', 'is_read'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[NotificationType] = mapped_column(SQLEnum(NotificationType, name='notification_type'), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False, default='', server_default='')
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    actor_user_id: Mapped[str | None] = mapped_column(String(64))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    order_id: Mapped[int | None] = mapped_column(BigId)
    discrepancy_id: Mapped[int | None] = mapped_column(BigId)
    ip: Mapped[str | None] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
