from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from supply_portal.auth import Claim, get_current_claim
from supply_portal.db import get_db
from supply_portal.services.notification_service import (
    delete_notification,
    list_notifications,
    mark_all_read,
    mark_read,
    notification_to_dict,
)

router = APIRouter(prefix='/notifications', tags=['notifications'])


@router.get('')
def index(
    unread: bool = False,
    limit: Optional[int] = None,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    return list_notifications(db, claim, unread_only=unread, limit=limit)


@router.put('/read-all')
def read_all(
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    result = mark_all_read(db, claim)
    return {'updated': result.updated, 'failed': result.failed}


@router.put('/{notification_id}/read')
def read(
    notification_id: int,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    return notification_to_dict(mark_read(db, claim, notification_id))


@router.delete('/{notification_id}')
def remove(
    notification_id: int,
    claim: Claim = Depends(get_current_claim),
    db: Session = Depends(get_db),
):
    delete_notification(db, claim, notification_id)
    return {'ok': True, 'id': notification_id}
