# gearflow/db_models_ext.py
"""
SQLAlchemy ORM models for Gearflow - Part 2.

Bulk stock ledger, scan verification and the audit trail. Movement, scan,
override and audit rows are append-only.
"""
from __future__ import annotations
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String, Integer, BigInteger, Boolean, Text, ForeignKey, Index,
    CheckConstraint, UniqueConstraint, Enum as SQLEnum, text
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gearflow.database import Base, IdType, JSONType, UTCDateTime, utcnow
from gearflow.db_models import (
    TimestampMixin,
    MovementKind, ScanPhase, ScanType, ScanSessionStatus,
    Booking, BulkSku, Location,
)

scan_phase_type = SQLEnum(ScanPhase, name="scan_phase")


# ============================================================================
# 8. BULK STOCK BALANCES
# ============================================================================

class BulkStockBalance(TimestampMixin, Base):
    __tablename__ = "bulk_stock_balances"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    bulk_sku_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("bulk_skus.id", ondelete="CASCADE"), nullable=False)
    location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    on_hand_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    bulk_sku: Mapped["BulkSku"] = relationship()
    location: Mapped["Location"] = relationship()

    __table_args__ = (
        UniqueConstraint("bulk_sku_id", "location_id", name="uq_bulk_stock_balances"),
        CheckConstraint("on_hand_quantity >= 0", name="chk_on_hand_non_negative"),
    )


# ============================================================================
# 9. BULK STOCK MOVEMENTS (IMMUTABLE LEDGER)
# ============================================================================

class BulkStockMovement(Base):
    __tablename__ = "bulk_stock_movements"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    bulk_sku_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("bulk_skus.id", ondelete="RESTRICT"), nullable=False)
    location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    booking_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("bookings.id", ondelete="SET NULL"))
    actor_user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    kind: Mapped[MovementKind] = mapped_column(SQLEnum(MovementKind, name="bulk_movement_kind"), nullable=False)
    # magnitude; the signed change is in delta
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_movement_quantity_positive"),
        CheckConstraint("delta != 0", name="chk_movement_delta_not_zero"),
        CheckConstraint("balance_after >= 0", name="chk_movement_balance_non_negative"),
        Index("idx_bulk_movements_sku", "bulk_sku_id", "location_id"),
        Index("idx_bulk_movements_booking", "booking_id"),
        Index("idx_bulk_movements_created", "created_at"),
    )


# ============================================================================
# 10. SCAN SESSIONS
# ============================================================================

class ScanSession(Base):
    __tablename__ = "scan_sessions"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    booking_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    actor_user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    phase: Mapped[ScanPhase] = mapped_column(scan_phase_type, nullable=False)
    status: Mapped[ScanSessionStatus] = mapped_column(
        SQLEnum(ScanSessionStatus, name="scan_session_status"),
        default=ScanSessionStatus.OPEN,
        nullable=False
    )
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    booking: Mapped["Booking"] = relationship()

    __table_args__ = (
        Index("idx_scan_sessions_single_open", "booking_id", "phase", unique=True,
              postgresql_where=text("status = 'OPEN'"), sqlite_where=text("status = 'OPEN'")),
    )


# ============================================================================
# 11. SCAN EVENTS (IMMUTABLE)
# ============================================================================

class ScanEvent(Base):
    __tablename__ = "scan_events"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    booking_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    scan_session_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("scan_sessions.id", ondelete="SET NULL"))
    actor_user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    scan_type: Mapped[ScanType] = mapped_column(SQLEnum(ScanType, name="scan_type"), nullable=False)
    scan_value: Mapped[str] = mapped_column(String(255), nullable=False)
    phase: Mapped[ScanPhase] = mapped_column(scan_phase_type, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    asset_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("assets.id", ondelete="SET NULL"))
    bulk_sku_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("bulk_skus.id", ondelete="SET NULL"))
    quantity: Mapped[Optional[int]] = mapped_column(Integer)
    device_context: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_scan_events_booking_phase", "booking_id", "phase"),
    )


# ============================================================================
# 12. OVERRIDE EVENTS (IMMUTABLE)
# ============================================================================

class OverrideEvent(Base):
    __tablename__ = "override_events"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    booking_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    actor_user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_override_events_booking", "booking_id"),
    )


# ============================================================================
# 13. AUDIT LOG
# ============================================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    actor_user_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="SET NULL"))
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    before_json: Mapped[Optional[dict]] = mapped_column(JSONType)
    after_json: Mapped[Optional[dict]] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
    )
