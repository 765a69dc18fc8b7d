from __future__ import annotations
from datetime import datetime
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from gearflow.db_models import (
    AssetStatus, BookingKind, BookingStatus, EffectiveStatus,
    ScanPhase, ScanType, ScanSessionStatus,
)


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------
# Availability
# ---------------------------------------------------------
class BulkItemIn(ApiModel):
    bulk_sku_id: int
    quantity: int = Field(gt=0)

class AvailabilityCheckIn(ApiModel):
    location_id: int
    starts_at: str
    ends_at: str
    serialized_asset_ids: List[int] = Field(default_factory=list)
    bulk_items: List[BulkItemIn] = Field(default_factory=list)
    exclude_booking_id: Optional[int] = None

class SerializedConflict(ApiModel):
    asset_id: int
    conflicting_booking_id: int
    starts_at: datetime
    ends_at: datetime

class BulkShortage(ApiModel):
    bulk_sku_id: int
    requested: int
    available: int

class UnavailableAsset(ApiModel):
    asset_id: int
    status: str  # stored status, or NOT_FOUND

class AvailabilityReport(ApiModel):
    conflicts: List[SerializedConflict] = Field(default_factory=list)
    shortages: List[BulkShortage] = Field(default_factory=list)
    unavailable_assets: List[UnavailableAsset] = Field(default_factory=list)

    @property
    def has_problems(self) -> bool:
        return bool(self.conflicts or self.shortages or self.unavailable_assets)


# ---------------------------------------------------------
# Bookings
# ---------------------------------------------------------
class BookingCreateIn(ApiModel):
    title: str = Field(min_length=1, max_length=255)
    requester_user_id: int
    location_id: int
    starts_at: str
    ends_at: str
    serialized_asset_ids: List[int] = Field(default_factory=list)
    bulk_items: List[BulkItemIn] = Field(default_factory=list)
    notes: Optional[str] = Field(default=None, max_length=2000)

class CheckoutCreateIn(BookingCreateIn):
    source_reservation_id: Optional[int] = None

class ReservationUpdateIn(ApiModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    requester_user_id: Optional[int] = None
    location_id: Optional[int] = None
    starts_at: Optional[str] = None
    ends_at: Optional[str] = None
    serialized_asset_ids: Optional[List[int]] = None
    bulk_items: Optional[List[BulkItemIn]] = None
    notes: Optional[str] = Field(default=None, max_length=2000)

class SerializedItemOut(ApiModel):
    id: int
    asset_id: int

class BulkItemOut(ApiModel):
    id: int
    bulk_sku_id: int
    planned_quantity: int
    checked_out_quantity: Optional[int] = None
    checked_in_quantity: Optional[int] = None

class AllocationOut(ApiModel):
    id: int
    asset_id: int
    starts_at: datetime
    ends_at: datetime
    active: bool
    kind: BookingKind

class BookingOut(ApiModel):
    id: int
    kind: BookingKind
    title: str
    requester_user_id: int
    location_id: int
    starts_at: datetime
    ends_at: datetime
    status: BookingStatus
    notes: Optional[str] = None
    created_by: int
    source_reservation_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    serialized_items: List[SerializedItemOut] = Field(default_factory=list)
    bulk_items: List[BulkItemOut] = Field(default_factory=list)
    allocations: List[AllocationOut] = Field(default_factory=list)


# ---------------------------------------------------------
# Scans & overrides
# ---------------------------------------------------------
class StartScanSessionIn(ApiModel):
    phase: ScanPhase

class ScanIn(ApiModel):
    phase: ScanPhase
    scan_type: ScanType
    scan_value: str = Field(min_length=1, max_length=255)
    quantity: Optional[int] = None
    device_context: Optional[str] = Field(default=None, max_length=500)

class ScanSessionOut(ApiModel):
    id: int
    booking_id: int
    actor_user_id: int
    phase: ScanPhase
    status: ScanSessionStatus
    started_at: datetime
    completed_at: Optional[datetime] = None

class ScanEventOut(ApiModel):
    id: int
    booking_id: int
    scan_session_id: Optional[int] = None
    actor_user_id: int
    scan_type: ScanType
    scan_value: str
    phase: ScanPhase
    success: bool
    asset_id: Optional[int] = None
    bulk_sku_id: Optional[int] = None
    quantity: Optional[int] = None
    device_context: Optional[str] = None
    created_at: datetime

class MissingBulk(ApiModel):
    bulk_sku_id: int
    required: int
    scanned: int

class CompletionState(ApiModel):
    missing_serialized: List[int] = Field(default_factory=list)
    missing_bulk: List[MissingBulk] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not (self.missing_serialized or self.missing_bulk)

class CompletionResult(CompletionState):
    success: bool = True
    override_used: bool = False

class OverrideIn(ApiModel):
    reason: str = Field(min_length=5, max_length=1000)
    details: Optional[Dict[str, Any]] = None

class OverrideEventOut(ApiModel):
    id: int
    booking_id: int
    actor_user_id: int
    reason: str
    details: Optional[Dict[str, Any]] = None
    created_at: datetime


# ---------------------------------------------------------
# Catalog: assets & bulk SKUs
# ---------------------------------------------------------
class AssetIn(ApiModel):
    asset_tag: str = Field(min_length=1, max_length=100)
    type: str = Field(min_length=1, max_length=100)
    brand: str = Field(min_length=1, max_length=100)
    model: str = Field(min_length=1, max_length=255)
    serial_number: str = Field(min_length=1, max_length=255)
    qr_code_value: str = Field(min_length=1, max_length=255)
    location_id: int
    status: AssetStatus = AssetStatus.AVAILABLE
    notes: Optional[str] = None

class AssetOut(AssetIn):
    id: int
    computed_status: Optional[EffectiveStatus] = None

class BulkSkuIn(ApiModel):
    name: str = Field(min_length=1, max_length=255)
    category: str = Field(min_length=1, max_length=100)
    unit: str = Field(min_length=1, max_length=50)
    location_id: int
    bin_qr_code_value: str = Field(min_length=1, max_length=255)
    min_threshold: int = Field(default=0, ge=0)
    active: bool = True
    initial_quantity: int = Field(default=0, ge=0)

class BulkSkuOut(ApiModel):
    id: int
    name: str
    category: str
    unit: str
    location_id: int
    bin_qr_code_value: str
    min_threshold: int
    active: bool
    on_hand_quantity: int = 0

class BulkAdjustIn(ApiModel):
    quantity_delta: int
    reason: str = Field(min_length=3, max_length=500)

    @field_validator("quantity_delta")
    @classmethod
    def _non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("quantityDelta must be non-zero")
        return v
