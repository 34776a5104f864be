from sqlalchemy import select

from supply_portal.auth import Role
from supply_portal.db import SessionLocal, engine
from supply_portal.models import Base, Franchise, SupplyUser, Vendor


def _ensure_user(db, *, user_id: str, name: str, role: Role, franchise_id=None, vendor_id=None) -> None:
    user = db.execute(select(SupplyUser).where(SupplyUser.id == user_id)).scalar_one_or_none()
    if user:
        return
    db.add(
        SupplyUser(
            id=user_id,
            name=name,
            role=role,
            franchise_id=franchise_id,
            vendor_id=vendor_id,
            active=True,
        )
    )


def seed() -> None:
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        kitchen = db.execute(select(Vendor).where(Vendor.id == 'kitchen-central')).scalar_one_or_none()
        if not kitchen:
            kitchen = Vendor(id='kitchen-central', name='Central Kitchen', active=True)
            db.add(kitchen)

        backup = db.execute(select(Vendor).where(Vendor.id == 'kitchen-north')).scalar_one_or_none()
        if not backup:
            backup = Vendor(id='kitchen-north', name='North Kitchen', active=True)
            db.add(backup)
        db.flush()

        franchise = db.execute(select(Franchise).where(Franchise.id == 'franchise-downtown')).scalar_one_or_none()
        if not franchise:
            db.add(
                Franchise(
                    id='franchise-downtown',
                    name='Downtown',
                    vendor_1_id=kitchen.id,
                    vendor_2_id=backup.id,
                    active=True,
                )
            )
            db.flush()

        _ensure_user(db, user_id='admin', name='Admin', role=Role.ADMIN)
        _ensure_user(db, user_id='auditor', name='Auditor', role=Role.AUDITOR)
        _ensure_user(db, user_id='downtown-owner', name='Downtown Owner', role=Role.FRANCHISE, franchise_id='franchise-downtown')
        _ensure_user(
            db,
            user_id='downtown-staff',
            name='Downtown Staff',
            role=Role.FRANCHISE_STAFF,
            franchise_id='franchise-downtown',
        )
        _ensure_user(db, user_id='central-chef', name='Central Chef', role=Role.KITCHEN, vendor_id=kitchen.id)
        _ensure_user(db, user_id='central-line', name='Central Line Cook', role=Role.KITCHEN_STAFF, vendor_id=kitchen.id)
        db.commit()


if __name__ == '__main__':
    seed()
