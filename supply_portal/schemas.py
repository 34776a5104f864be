from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from supply_portal.services.discrepancy_service import DiscrepancyReportItem
from supply_portal.services.order_service import OrderItemInput, ReceivedItemInput


class OrderItemIn(BaseModel):
    item_name: str
    ordered_qty: Decimal = Field(alias='quantity')
    unit_price: Decimal = Decimal('0')
    vendor_price: Decimal = Decimal('0')
    uom: str = ''
    item_id: Optional[str] = None

    model_config = {'populate_by_name': True}

    def to_input(self) -> OrderItemInput:
        return OrderItemInput(
            item_name=self.item_name,
            ordered_qty=self.ordered_qty,
            unit_price=self.unit_price,
            uom=self.uom,
            vendor_price=self.vendor_price,
            item_id=self.item_id,
        )


class OrderCreateIn(BaseModel):
    items: list[OrderItemIn]
    vendor_id: Optional[str] = None


class OrderEditIn(BaseModel):
    items: list[OrderItemIn]


class DispatchIn(BaseModel):
    dispatch_photos: list[str] = Field(default_factory=list)
    notes: Optional[str] = None


class ReceivedItemIn(BaseModel):
    item_name: str
    received_qty: Decimal

    def to_input(self) -> ReceivedItemInput:
        return ReceivedItemInput(item_name=self.item_name, received_qty=self.received_qty)


class ReceiveIn(BaseModel):
    receive_photos: list[str] = Field(default_factory=list)
    received_items: list[ReceivedItemIn] = Field(default_factory=list)


class DiscrepancyItemIn(BaseModel):
    item_name: str
    received_qty: Decimal
    ordered_qty: Optional[Decimal] = None
    uom: str = ''
    notes: str = ''
    photos: list[str] = Field(default_factory=list)

    def to_input(self) -> DiscrepancyReportItem:
        return DiscrepancyReportItem(
            item_name=self.item_name,
            received_qty=self.received_qty,
            ordered_qty=self.ordered_qty,
            uom=self.uom,
            notes=self.notes,
            photos=tuple(self.photos),
        )


class DiscrepancyReportIn(BaseModel):
    order_id: int
    items: list[DiscrepancyItemIn]


class ResolveIn(BaseModel):
    resolution_notes: str = ''
