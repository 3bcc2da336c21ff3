"""Exception hierarchy raised by the Repair Desk engine."""

from __future__ import annotations


class RepairDeskError(Exception):
    """Base class for every error raised by the package."""


class BusinessRuleViolation(RepairDeskError):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when caller input is missing or invalid; nothing was written."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced order, item, stage, or stock record is unknown."""


class ConsistencyViolation(BusinessRuleViolation):
    """Raised when an operation would break a write-once or lifecycle invariant."""


class CollaboratorFailure(RepairDeskError):
    """Raised when persistence or the inventory collaborator fails mid-operation."""


__all__ = [
    "RepairDeskError",
    "BusinessRuleViolation",
    "ValidationError",
    "MissingReferenceError",
    "ConsistencyViolation",
    "CollaboratorFailure",
]
