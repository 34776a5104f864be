from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from supply_portal.auth import Claim, get_current_claim
from supply_portal.db import get_db
from supply_portal.dependencies import get_client_ip
from supply_portal.models import OrderStatus
from supply_portal.schemas import DispatchIn, OrderCreateIn, OrderEditIn, ReceiveIn
from supply_portal.services.discrepancy_service import has_unresolved
from supply_portal.services.order_service import (
    accept_order,
    create_order,
    delete_order,
    dispatch_order,
    edit_order,
    get_order,
    list_orders,
    order_detail,
    receive_order,
)

router = APIRouter(prefix='/orders', tags=['orders'])


@router.post('', status_code=status.HTTP_201_CREATED)
def create(
    payload: OrderCreateIn,
    request: Request,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    order = create_order(
        db,
        claim,
        items=[item.to_input() for item in payload.items],
        vendor_id=payload.vendor_id,
        ip=get_client_ip(request),
    )
    return order_detail(db, order)


@router.get('')
def index(
    status_filter: Optional[OrderStatus] = Query(None, alias='status'),
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    return list_orders(db, claim, status=status_filter)


@router.get('/{order_id}')
def detail(
    order_id: int,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    return order_detail(db, get_order(db, claim, order_id))


@router.get('/{order_id}/unresolved-discrepancies')
def unresolved_discrepancies(
    order_id: int,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    order = get_order(db, claim, order_id)
    return has_unresolved(db, order.id).to_dict()


@router.put('/{order_id}/accept')
def accept(
    order_id: int,
    request: Request,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    order = accept_order(db, claim, order_id, ip=get_client_ip(request))
    return order_detail(db, order)


@router.put('/{order_id}/dispatch')
def dispatch(
    order_id: int,
    payload: DispatchIn,
    request: Request,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    order = dispatch_order(
        db,
        claim,
        order_id,
        dispatch_photos=payload.dispatch_photos,
        notes=payload.notes,
        ip=get_client_ip(request),
    )
    return order_detail(db, order)


@router.put('/{order_id}/receive')
def receive(
    order_id: int,
    payload: ReceiveIn,
    request: Request,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    order = receive_order(
        db,
        claim,
        order_id,
        receive_photos=payload.receive_photos,
        received_items=[item.to_input() for item in payload.received_items],
        ip=get_client_ip(request),
    )
    return order_detail(db, order)


@router.put('/{order_id}')
def edit(
    order_id: int,
    payload: OrderEditIn,
    request: Request,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    order = edit_order(
        db,
        claim,
        order_id,
        items=[item.to_input() for item in payload.items],
        ip=get_client_ip(request),
    )
    return order_detail(db, order)


@router.delete('/{order_id}')
def remove(
    order_id: int,
    request: Request,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    delete_order(db, claim, order_id, ip=get_client_ip(request))
    return {'ok': True, 'id': order_id}
