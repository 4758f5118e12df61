from __future__ import annotations

from datetime import datetime
from typing import Any

from compliance.data_models import ClaimReference


class ComplianceError(Exception):
    """Base class for every error raised by the integrity engine."""


class DataUnavailable(ComplianceError):
    """An authoritative store could not be read; the caller must not treat this as 'no data'."""

    def __init__(self, source: str, vehicle_id: str | None = None, cause: BaseException | None = None) -> None:
        self.source = source
        self.vehicle_id = vehicle_id
        self.cause = cause
        target = f" for vehicle {vehicle_id}" if vehicle_id else ""
        super().__init__(f"{source} unavailable{target}: {cause}" if cause else f"{source} unavailable{target}")


class VehicleNotFound(ComplianceError):
    def __init__(self, vehicle_id: str) -> None:
        self.vehicle_id = vehicle_id
        super().__init__(f"Vehicle {vehicle_id} not found")


class ValidationError(ComplianceError):
    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class DataIntegrityError(ComplianceError):
    """A store row could not be decoded into its typed record."""


class DeclarationLocked(ComplianceError):
    def __init__(self, vehicle_id: str, claim: ClaimReference) -> None:
        self.vehicle_id = vehicle_id
        self.claim = claim
        super().__init__(
            f"Declaration for vehicle {vehicle_id} is locked by claim {claim.claim_id} "
            f"({self.claim_status}) filed {claim.filed_at.isoformat()}"
        )

    @property
    def claim_id(self) -> str:
        return self.claim.claim_id

    @property
    def claim_status(self) -> str:
        status = self.claim.status
        return getattr(status, "value", str(status))

    @property
    def filed_at(self) -> datetime:
        return self.claim.filed_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "declaration_locked",
            "vehicle_id": self.vehicle_id,
            "claim_id": self.claim_id,
            "claim_status": self.claim_status,
            "filed_at": self.filed_at.isoformat(),
            "estimated_cost": self.claim.estimated_cost,
        }
