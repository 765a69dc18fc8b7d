# gearflow/services/__init__.py
"""
Business logic services for the Gearflow booking engine.
"""
from gearflow.services.availability import AvailabilityService
from gearflow.services.bookings import BookingService
from gearflow.services.ledger import BulkStockLedger
from gearflow.services.scans import ScanService

__all__ = [
    "AvailabilityService",
    "BookingService",
    "BulkStockLedger",
    "ScanService",
]
