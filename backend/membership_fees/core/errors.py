"""
Error taxonomy for the fee engine
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Error categories for classification"""
    VALIDATION = "validation"  # Unknown member/schedule, malformed structure
    LOCKED = "locked"  # Mutation of a locked decision tree
    NOT_APPLICABLE = "not_applicable"  # Schedule cannot be priced for this member
    MATCHER = "matcher"  # One malformed branch condition
    CONFLICT = "conflict"  # Concurrent or repeated write


class FeeEngineError(Exception):
    """Base class for all fee engine errors"""

    category: ErrorCategory = ErrorCategory.VALIDATION

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.metadata = metadata or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary"""
        return {
            "error_type": type(self).__name__,
            "category": self.category.value,
            "message": self.message,
            "metadata": self.metadata,
        }


class ValidationError(FeeEngineError):
    """Missing or invalid input; raised before any write"""
    category = ErrorCategory.VALIDATION


class LockedResourceError(FeeEngineError):
    """A locked decision tree cannot be changed; duplicate it instead"""
    category = ErrorCategory.LOCKED


class NotApplicableError(FeeEngineError):
    """The schedule cannot be priced for this member (no age bracket, no amount)"""
    category = ErrorCategory.NOT_APPLICABLE


class MatcherError(FeeEngineError):
    """A branch condition descriptor could not be interpreted"""
    category = ErrorCategory.MATCHER


class ConflictError(FeeEngineError):
    """The write conflicts with existing state"""
    category = ErrorCategory.CONFLICT


class StaleTreeVersionError(ConflictError):
    """The caller priced against a decision tree version that is no longer current"""


class DuplicatePaymentError(ConflictError):
    """A payment already exists for this member, schedule and period"""
