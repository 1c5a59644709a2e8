# backend/booking_core/errors.py
"""
Domain exceptions for the availability & booking core.

Every error carries a machine-readable code so a boundary layer can map it
(e.g. to a UI rollback) without parsing messages.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    kind: str = "internal"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_dict())


class ValidationException(DomainException):
    """Malformed input or a request the catalog does not allow."""

    status_code = status.HTTP_400_BAD_REQUEST
    kind = "validation"


class NonexistentLocalTimeError(ValidationException):
    """Local wall-clock time skipped by a DST transition."""

    def __init__(self, local_time: str, tz_name: str) -> None:
        super().__init__(
            f"Local time {local_time} does not exist in {tz_name}",
            code="nonexistent_local_time",
            details={"local_time": local_time, "timezone": tz_name},
        )


class AmbiguousLocalTimeError(ValidationException):
    """Local wall-clock time that occurs twice around a DST transition."""

    def __init__(self, local_time: str, tz_name: str) -> None:
        super().__init__(
            f"Local time {local_time} is ambiguous in {tz_name}",
            code="ambiguous_local_time",
            details={"local_time": local_time, "timezone": tz_name},
        )


class InvalidTransitionError(ValidationException):
    def __init__(self, reservation_id: int, current: str, target: str) -> None:
        super().__init__(
            f"Reservation {reservation_id} cannot move from {current} to {target}",
            code="invalid_transition",
            details={"reservation_id": reservation_id, "from": current, "to": target},
        )


class NotFoundException(DomainException):
    """Unknown service, resource, location, tenant or reservation."""

    status_code = status.HTTP_404_NOT_FOUND
    kind = "not_found"


class ConflictException(DomainException):
    """Overlap detected at commit time. Always authoritative."""

    status_code = status.HTTP_409_CONFLICT
    kind = "conflict"

    def __init__(self, resource_kind: str, resource_id: Optional[int] = None) -> None:
        super().__init__(
            f"{resource_kind.capitalize()} is already reserved for this time",
            code=f"{resource_kind}_conflict",
            details={"resource_kind": resource_kind, "resource_id": resource_id},
        )
        self.resource_kind = resource_kind
        self.resource_id = resource_id


class StaleSnapshotError(DomainException):
    """The caller's availability view is older than the allowed staleness."""

    status_code = status.HTTP_409_CONFLICT
    kind = "stale_snapshot"

    def __init__(self, age_seconds: float, max_staleness_seconds: int) -> None:
        super().__init__(
            "Availability snapshot is too old, query availability again",
            code="stale_snapshot",
            details={
                "age_seconds": round(age_seconds, 3),
                "max_staleness_seconds": max_staleness_seconds,
            },
        )


class RuleViolationError(DomainException):
    """A policy rule rejected the requested slot."""

    status_code = 422
    kind = "rule_violation"

    def __init__(self, rule_id: int, rule_kind: str, reason: str) -> None:
        super().__init__(
            f"Policy rule {rule_id} ({rule_kind}) rejected the slot: {reason}",
            code="rule_violation",
            details={"rule_id": rule_id, "rule_kind": rule_kind, "reason": reason},
        )
        self.rule_id = rule_id
        self.reason = reason


class TransientInfraError(DomainException):
    """Store or bus unreachable or timed out after bounded retries."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    kind = "transient_infra"
