from dataclasses import dataclass
from enum import Enum

from fastapi import HTTPException, Request, status


class Role(str, Enum):
    ADMIN = "ADMIN"
    FRANCHISE = "FRANCHISE"
    FRANCHISE_STAFF = "FRANCHISE_STAFF"
    KITCHEN = "KITCHEN"
    KITCHEN_STAFF = "KITCHEN_STAFF"
    AUDITOR = "AUDITOR"


FRANCHISE_ROLES = frozenset({Role.FRANCHISE, Role.FRANCHISE_STAFF})
KITCHEN_ROLES = frozenset({Role.KITCHEN, Role.KITCHEN_STAFF})
READ_ALL_ROLES = frozenset({Role.ADMIN, Role.AUDITOR})


@dataclass(frozen=True)
class Claim:
    """Identity already validated by the upstream authenticator."""

    user_id: str
    role: Role
    name: str = ""
    franchise_id: str | None = None
    vendor_id: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.user_id


def is_franchise_role(role: Role) -> bool:
    return role in FRANCHISE_ROLES


def is_kitchen_role(role: Role) -> bool:
    return role in KITCHEN_ROLES


def get_current_claim(request: Request) -> Claim:
    claim = getattr(request.state, "claim", None)
    if not claim:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return claim

