# backend/app/services/__init__.py
"""
Services layer: stock ledger, availability, reservations and the expiration sweeper.
Keeps API endpoints thin and business logic testable and reusable.
"""

from backend.app.services.ledger import (
    StockLedger,
    LedgerPage,
    LedgerSummary,
    MovementSummary,
    ReconciliationReport,
)
from backend.app.services.availability import (
    AvailabilityCalculator,
    AvailabilityCheck,
    effectively_active,
)
from backend.app.services.reservations import (
    ReservationManager,
    ReservationRequest,
    CancelByOriginResult,
)
from backend.app.services.sweeper import ExpirationSweeper

__all__ = [
    # Ledger
    "StockLedger",
    "LedgerPage",
    "LedgerSummary",
    "MovementSummary",
    "ReconciliationReport",
    # Availability
    "AvailabilityCalculator",
    "AvailabilityCheck",
    "effectively_active",
    # Reservations
    "ReservationManager",
    "ReservationRequest",
    "CancelByOriginResult",
    # Sweeper
    "ExpirationSweeper",
]
