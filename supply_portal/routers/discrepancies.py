from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from supply_portal.auth import Claim, get_current_claim
from supply_portal.db import get_db
from supply_portal.dependencies import get_client_ip
from supply_portal.schemas import DiscrepancyReportIn, ResolveIn
from supply_portal.services.discrepancy_service import (
    discrepancy_to_dict,
    get_discrepancy,
    list_discrepancies,
    report_discrepancies,
    resolve_discrepancy,
)

router = APIRouter(prefix='/discrepancies', tags=['discrepancies'])


@router.post('', status_code=status.HTTP_201_CREATED)
def report(
    payload: DiscrepancyReportIn,
    request: Request,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    rows = report_discrepancies(
        db,
        claim,
        payload.order_id,
        [item.to_input() for item in payload.items],
        ip=get_client_ip(request),
    )
    return [discrepancy_to_dict(row) for row in rows]


@router.get('')
def index(
    order_id: Optional[int] = None,
    resolved: Optional[bool] = None,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    return list_discrepancies(db, claim, order_id=order_id, resolved=resolved)


@router.get('/{discrepancy_id}')
def detail(
    discrepancy_id: int,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    return discrepancy_to_dict(get_discrepancy(db, claim, discrepancy_id))


@router.put('/{discrepancy_id}/resolve')
def resolve(
    discrepancy_id: int,
    payload: ResolveIn,
    request: Request,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    row = resolve_discrepancy(
        db,
        claim,
        discrepancy_id,
        payload.resolution_notes,
        ip=get_client_ip(request),
    )
    return discrepancy_to_dict(row)
