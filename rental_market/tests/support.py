import os
from datetime import date, datetime
from decimal import Decimal

os.environ.setdefault("RENTAL_MARKET_DB_URL", "sqlite+pysqlite:///:memory:")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rental_market.db.base import Base
from rental_market.db.session import engine_options
from rental_market.models import rental_models  # noqa: F401
from rental_market.models.rental_models import AvailabilitySlot, Equipment
from rental_market.services.authorization import Actor
from rental_market.services.availability_service import AvailabilityCache
from rental_market.services.record_store import RentalRecordStore
from rental_market.services.settlement_policy import SettlementPolicy


OWNER = Actor(party_id="owner-1", role="owner")
RENTER = Actor(party_id="renter-1", role="renter")
OTHER_RENTER = Actor(party_id="renter-2", role="renter")
ARBITER = Actor(party_id="arbiter-1", role="arbiter")
POLICY = SettlementPolicy()
NOW = datetime(2024, 6, 1, 9, 0)


def make_session_factory():
    url = "sqlite+pysqlite:///:memory:"
    engine = create_engine(url, poolclass=StaticPool, **engine_options(url))
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


def make_store(db, cache: AvailabilityCache | None = None) -> RentalRecordStore:
    return RentalRecordStore(db, cache=cache or AvailabilityCache())


def add_equipment(db, daily_rate="100.00", deposit="300.00", owner_id="owner-1", **fields) -> Equipment:
    equipment = Equipment(
        owner_id=owner_id,
        title=fields.pop("title", "Cordless drill"),
        daily_rate=Decimal(daily_rate),
        damage_deposit_amount=Decimal(deposit) if deposit is not None else None,
        is_available=fields.pop("is_available", True),
        **fields,
    )
    db.add(equipment)
    db.flush()
    return equipment


def add_slot(db, equipment: Equipment, day: date, custom_rate=None, is_available=True) -> AvailabilitySlot:
    slot = AvailabilitySlot(
        equipment_id=equipment.id,
        date=day,
        is_available=is_available,
        custom_rate=Decimal(custom_rate) if custom_rate is not None else None,
    )
    db.add(slot)
    db.flush()
    return slot
