"""
Exception hierarchy for the opportunity engine.

Provides specific exception types for the error categories the dispatch
pipeline distinguishes, so callers can decide between aborting, discarding
an opportunity, or recording a failed outcome.
"""

from typing import Any, Dict, Optional


class OpportunityEngineError(Exception):
    """Base exception for all opportunity engine related errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(OpportunityEngineError):
    """Raised when a required setting, credential or destination is missing."""

    pass


class ValidationError(OpportunityEngineError):
    """Raised when an opportunity or configuration value is malformed."""

    pass


class ExecutionError(OpportunityEngineError):
    """Raised by execution capabilities when running a strategy fails."""

    def __init__(
        self,
        message: str,
        strategy_id: Optional[str] = None,
        opportunity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.strategy_id = strategy_id
        self.opportunity_id = opportunity_id


class TransientExecutionError(ExecutionError):
    """Network, timeout or upstream failure; a later opportunity may succeed."""

    pass


class TerminalExecutionError(ExecutionError):
    """The destination rejected the execution outright."""

    pass


class CapacityError(OpportunityEngineError):
    """Raised (or logged) when the opportunity queue is full."""

    def __init__(
        self,
        message: str,
        capacity: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.capacity = capacity


class DataError(OpportunityEngineError):
    """Raised when price or signal data is unavailable or inconsistent."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        asset: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.source = source
        self.asset = asset
