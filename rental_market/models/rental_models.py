import enum

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rental_market.db.base import Base


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class DepositStatus(str, enum.Enum):
    NONE = "none"
    HELD = "held"
    RELEASED = "released"
    CLAIMED = "claimed"
    REFUNDED = "refunded"


class ClaimStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class Equipment(Base):
    __tablename__ = "equipment"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False)
    title = Column(String(255), nullable=False)
    daily_rate = Column(Numeric(10, 2), nullable=False)
    damage_deposit_amount = Column(Numeric(10, 2))
    damage_deposit_percentage = Column(Integer)
    deposit_refund_timeline_hours = Column(Integer)
    is_available = Column(Boolean, default=True)
    created_at = Column(DateTime, server_default=func.now())

    availability_slots = relationship("AvailabilitySlot", back_populates="equipment", cascade="all, delete-orphan")
    booking_requests = relationship("BookingRequest", back_populates="equipment")


class AvailabilitySlot(Base):
    __tablename__ = "availability_calendar"
    __table_args__ = (UniqueConstraint("equipment_id", "date", name="uq_availability_equipment_date"),)

    id = Column(Integer, primary_key=True)
    equipment_id = Column(Integer, ForeignKey("equipment.id"), nullable=False)
    date = Column(Date, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    custom_rate = Column(Numeric(10, 2))

    equipment = relationship("Equipment", back_populates="availability_slots")


class BookingRequest(Base):
    __tablename__ = "booking_requests"

    id = Column(Integer, primary_key=True)
    equipment_id = Column(Integer, ForeignKey("equipment.id"), nullable=False)
    renter_id = Column(String(64), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    fees = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    insurance_type = Column(String(20), nullable=False, default="none")
    insurance_cost = Column(Numeric(10, 2), nullable=False, default=0)
    damage_deposit_amount = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value)
    message = Column(String(1000))
    version = Column(Integer, nullable=False, default=1)
    approved_at = Column(DateTime)
    activated_at = Column(DateTime)
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())

    equipment = relationship("Equipment", back_populates="booking_requests")
    payment = relationship("Payment", back_populates="booking_request", uselist=False)
    damage_claims = relationship("DamageClaim", back_populates="booking_request")
    events = relationship("RentalEvent", back_populates="booking_request", order_by="RentalEvent.id")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    booking_request_id = Column(Integer, ForeignKey("booking_requests.id"), nullable=False, unique=True)
    rental_amount = Column(Numeric(10, 2), nullable=False, default=0)
    insurance_amount = Column(Numeric(10, 2), nullable=False, default=0)
    deposit_amount = Column(Numeric(10, 2), nullable=False, default=0)
    deposit_status = Column(String(20), nullable=False, default=DepositStatus.NONE.value)
    deposit_claimed_amount = Column(Numeric(10, 2), nullable=False, default=0)
    deposit_refund_amount = Column(Numeric(10, 2))
    deposit_released_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())

    booking_request = relationship("BookingRequest", back_populates="payment")


class DamageClaim(Base):
    __tablename__ = "damage_claims"

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("booking_requests.id"), nullable=False)
    filed_by = Column(String(64), nullable=False)
    filed_at = Column(DateTime, nullable=False)
    damage_description = Column(String(2000), nullable=False)
    evidence_photos = Column(Text)
    estimated_cost = Column(Numeric(10, 2), nullable=False)
    repair_quotes = Column(Text)
    status = Column(String(20), nullable=False, default=ClaimStatus.PENDING.value)
    renter_response = Column(Text)
    resolution = Column(Text)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())

    booking_request = relationship("BookingRequest", back_populates="damage_claims")


class RentalEvent(Base):
    __tablename__ = "rental_events"

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("booking_requests.id"), nullable=False)
    event_type = Column(String(50), nullable=False)
    event_data = Column(String(2000))
    created_by = Column(String(64))
    created_at = Column(DateTime, server_default=func.now())

    booking_request = relationship("BookingRequest", back_populates="events")
