"""Single authority for which orders and discrepancies a claim may see.

Used both to filter listings and to work out who should be notified about a
resource, so the two can never disagree.
"""
from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import false, or_

from supply_portal.auth import FRANCHISE_ROLES, KITCHEN_ROLES, READ_ALL_ROLES, Claim, Role


def _field(resource, name: str):
    if isinstance(resource, dict):
        return resource.get(name)
    return getattr(resource, name, None)


def vendor_keys(claim: Claim) -> set[str]:
    if claim.role not in KITCHEN_ROLES:
        return set()
    keys = {claim.vendor_id} if claim.vendor_id else set()
    # The kitchen owner account doubles as the vendor record.
    if claim.role == Role.KITCHEN:
        keys.add(claim.user_id)
    return keys


def can_view(claim: Claim, resource) -> bool:
    if claim.role in READ_ALL_ROLES:
        return True
    if claim.role in FRANCHISE_ROLES:
        return bool(claim.franchise_id) and _field(resource, 'franchise_id') == claim.franchise_id
    if claim.role in KITCHEN_ROLES:
        return _field(resource, 'vendor_id') in vendor_keys(claim)
    return False


def filter_visible(claim: Claim, resources: Iterable) -> list:
    return [resource for resource in resources if can_view(claim, resource)]


def scope_clause(claim: Claim, model):
    """Returns a ``where`` criterion for ``model`` or ``None`` when unscoped."""
    if claim.role in READ_ALL_ROLES:
        return None
    if claim.role in FRANCHISE_ROLES:
        if not claim.franchise_id:
            return false()
        return model.franchise_id == claim.franchise_id
    if claim.role in KITCHEN_ROLES:
        keys = sorted(vendor_keys(claim))
        if not keys:
            return false()
        return or_(*[model.vendor_id == key for key in keys])
    return false()


def apply_scope(claim: Claim, stmt, model):
    clause = scope_clause(claim, model)
    if clause is None:
        return stmt
    return stmt.where(clause)


def claim_for_user(user) -> Claim:
    return Claim(
        user_id=user.id,
        role=Role(user.role),
        name=user.name or '',
        franchise_id=user.franchise_id,
        vendor_id=user.vendor_id,
    )


def recipients_for(users: Iterable, resource, roles: Iterable[Role]) -> list[str]:
    """Ids of active users holding one of ``roles`` whose scope covers ``resource``."""
    allowed = set(roles)
    recipients: list[str] = []
    for user in users:
        if not user.active or Role(user.role) not in allowed:
            continue
        if can_view(claim_for_user(user), resource) and user.id not in recipients:
            recipients.append(user.id)
    return recipients
