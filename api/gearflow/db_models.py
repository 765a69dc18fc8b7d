# gearflow/db_models.py
"""
SQLAlchemy ORM models for Gearflow - Part 1.

Reference entities (locations, users, assets, bulk SKUs) and the booking
core: bookings, their declared items and the asset allocation ledger.
"""
from __future__ import annotations
from datetime import datetime
from typing import Optional, List
import enum

from sqlalchemy import (
    String, Integer, BigInteger, Boolean, Text, ForeignKey, Index,
    CheckConstraint, UniqueConstraint, Enum as SQLEnum, DDL, event, text
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gearflow.database import Base, IdType, UTCDateTime, utcnow
from gearflow.errors import ALLOCATION_GUARD

# ============================================================================
# ENUMS
# ============================================================================

class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    STUDENT = "STUDENT"


class AssetStatus(str, enum.Enum):
    """Stored asset status. RESERVED / CHECKED_OUT are derived, never stored."""
    AVAILABLE = "AVAILABLE"
    MAINTENANCE = "MAINTENANCE"
    RETIRED = "RETIRED"


class EffectiveStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    CHECKED_OUT = "CHECKED_OUT"
    MAINTENANCE = "MAINTENANCE"
    RETIRED = "RETIRED"


class BookingKind(str, enum.Enum):
    RESERVATION = "RESERVATION"
    CHECKOUT = "CHECKOUT"


class BookingStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    BOOKED = "BOOKED"
    OPEN = "OPEN"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


booking_kind_type = SQLEnum(BookingKind, name="booking_kind")

# statuses whose allocations hold an asset
HOLDING_STATUSES = (BookingStatus.BOOKED, BookingStatus.OPEN)


class ScanPhase(str, enum.Enum):
    CHECKOUT = "CHECKOUT"
    CHECKIN = "CHECKIN"


class ScanType(str, enum.Enum):
    SERIALIZED = "SERIALIZED"
    BULK_BIN = "BULK_BIN"


class ScanSessionStatus(str, enum.Enum):
    OPEN = "OPEN"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class MovementKind(str, enum.Enum):
    CHECKOUT = "CHECKOUT"
    CHECKIN = "CHECKIN"
    ADJUSTMENT = "ADJUSTMENT"


# ============================================================================
# MIXIN for updated_at
# ============================================================================

class TimestampMixin:
    """Mixin for created_at and updated_at columns."""
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


# ============================================================================
# 1. LOCATIONS
# ============================================================================

class Location(TimestampMixin, Base):
    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    assets: Mapped[List["Asset"]] = relationship(back_populates="location")
    bulk_skus: Mapped[List["BulkSku"]] = relationship(back_populates="location")


# ============================================================================
# 2. USERS
# ============================================================================

class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    role: Mapped[Role] = mapped_column(SQLEnum(Role, name="user_role"), default=Role.STUDENT, nullable=False)
    location_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("locations.id", ondelete="SET NULL"))


# ============================================================================
# 3. ASSETS (serialized)
# ============================================================================

class Asset(TimestampMixin, Base):
    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    asset_tag: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    brand: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    serial_number: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    qr_code_value: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    status: Mapped[AssetStatus] = mapped_column(
        SQLEnum(AssetStatus, name="asset_status"),
        default=AssetStatus.AVAILABLE,
        nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    location: Mapped["Location"] = relationship(back_populates="assets")

    __table_args__ = (
        Index("idx_assets_location", "location_id"),
    )


# ============================================================================
# 4. BULK SKUS
# ============================================================================

class BulkSku(TimestampMixin, Base):
    __tablename__ = "bulk_skus"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    unit: Mapped[str] = mapped_column(String(50), nullable=False)
    location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    bin_qr_code_value: Mapped[str] = mapped_column(String(255), nullable=False)
    min_threshold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    location: Mapped["Location"] = relationship(back_populates="bulk_skus")

    __table_args__ = (
        UniqueConstraint("location_id", "bin_qr_code_value", name="uq_bulk_skus_bin"),
        CheckConstraint("min_threshold >= 0", name="chk_bulk_min_threshold_non_negative"),
    )


# ============================================================================
# 5. BOOKINGS
# ============================================================================

class Booking(TimestampMixin, Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    kind: Mapped[BookingKind] = mapped_column(booking_kind_type, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    requester_user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        SQLEnum(BookingStatus, name="booking_status"),
        default=BookingStatus.DRAFT,
        nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    source_reservation_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("bookings.id", ondelete="SET NULL")
    )

    # Relationships
    serialized_items: Mapped[List["BookingSerializedItem"]] = relationship(
        back_populates="booking", cascade="all, delete-orphan", order_by="BookingSerializedItem.id"
    )
    bulk_items: Mapped[List["BookingBulkItem"]] = relationship(
        back_populates="booking", cascade="all, delete-orphan", order_by="BookingBulkItem.id"
    )
    allocations: Mapped[List["AssetAllocation"]] = relationship(
        back_populates="booking", cascade="all, delete-orphan", order_by="AssetAllocation.id"
    )
    requester: Mapped["User"] = relationship(foreign_keys=[requester_user_id])
    location: Mapped["Location"] = relationship()

    __table_args__ = (
        CheckConstraint("ends_at > starts_at", name="chk_booking_window"),
        Index("idx_bookings_kind_status", "kind", "status"),
        Index("idx_bookings_location", "location_id"),
        Index("idx_bookings_starts", "starts_at"),
    )


# ============================================================================
# 6. BOOKING ITEMS
# ============================================================================

class BookingSerializedItem(Base):
    __tablename__ = "booking_serialized_items"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    booking_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    asset_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("assets.id", ondelete="RESTRICT"), nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="serialized_items")
    asset: Mapped["Asset"] = relationship()

    __table_args__ = (
        UniqueConstraint("booking_id", "asset_id", name="uq_booking_serialized_items"),
    )


class BookingBulkItem(Base):
    __tablename__ = "booking_bulk_items"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    booking_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    bulk_sku_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("bulk_skus.id", ondelete="RESTRICT"), nullable=False)
    planned_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    # null until the checkout phase starts counting
    checked_out_quantity: Mapped[Optional[int]] = mapped_column(Integer)
    checked_in_quantity: Mapped[Optional[int]] = mapped_column(Integer)

    booking: Mapped["Booking"] = relationship(back_populates="bulk_items")
    bulk_sku: Mapped["BulkSku"] = relationship()

    __table_args__ = (
        UniqueConstraint("booking_id", "bulk_sku_id", name="uq_booking_bulk_items"),
        CheckConstraint("planned_quantity > 0", name="chk_bulk_item_planned_positive"),
    )


# ============================================================================
# 7. ASSET ALLOCATIONS
# ============================================================================

class AssetAllocation(Base):
    """One row per (booking, asset); active rows never overlap per asset."""
    __tablename__ = "asset_allocations"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    asset_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("assets.id", ondelete="RESTRICT"), nullable=False)
    booking_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    kind: Mapped[BookingKind] = mapped_column(booking_kind_type, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="allocations")
    asset: Mapped["Asset"] = relationship()

    __table_args__ = (
        CheckConstraint("ends_at > starts_at", name="chk_allocation_window"),
        Index("idx_allocations_asset_window", "asset_id", "starts_at", "ends_at",
              postgresql_where=text("active = true"), sqlite_where=text("active = 1")),
        Index("idx_allocations_booking", "booking_id"),
    )


# ----------------------------------------------------------------------------
# Storage-level overlap guard
# ----------------------------------------------------------------------------

_allocations = AssetAllocation.__table__

event.listen(
    _allocations,
    "after_create",
    DDL(
        f"ALTER TABLE asset_allocations ADD CONSTRAINT {ALLOCATION_GUARD} "
        "EXCLUDE USING gist (asset_id WITH =, tstzrange(starts_at, ends_at, '[)') WITH &&) "
        "WHERE (active = true)"
    ).execute_if(dialect="postgresql"),
)

_SQLITE_OVERLAP_EXISTS = (
    "SELECT 1 FROM asset_allocations a "
    "WHERE a.asset_id = NEW.asset_id AND a.active = 1 AND a.id IS NOT NEW.id "
    "AND a.starts_at < NEW.ends_at AND a.ends_at > NEW.starts_at"
)

event.listen(
    _allocations,
    "after_create",
    DDL(
        f"CREATE TRIGGER IF NOT EXISTS {ALLOCATION_GUARD}_insert "
        "BEFORE INSERT ON asset_allocations WHEN NEW.active = 1 "
        f"BEGIN SELECT RAISE(ABORT, '{ALLOCATION_GUARD}') WHERE EXISTS ({_SQLITE_OVERLAP_EXISTS}); END"
    ).execute_if(dialect="sqlite"),
)

event.listen(
    _allocations,
    "after_create",
    DDL(
        f"CREATE TRIGGER IF NOT EXISTS {ALLOCATION_GUARD}_update "
        "BEFORE UPDATE OF asset_id, starts_at, ends_at, active ON asset_allocations WHEN NEW.active = 1 "
        f"BEGIN SELECT RAISE(ABORT, '{ALLOCATION_GUARD}') WHERE EXISTS ({_SQLITE_OVERLAP_EXISTS}); END"
    ).execute_if(dialect="sqlite"),
)
