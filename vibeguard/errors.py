"""Error taxonomy for VibeGuard.

Data reads raise these; execution and risk arbitration report them through
structured results (ExecutionResult.error_kind, RiskVerdict.degraded) instead.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_INPUT = "InvalidInput"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"
    RATE_LIMITED = "RateLimited"
    RISK_ANALYSIS_FAILED = "RiskAnalysisFailed"
    EXECUTION_PRECONDITION = "ExecutionPrecondition"
    EXECUTION_REVERTED = "ExecutionReverted"
    CONFIGURATION_ERROR = "ConfigurationError"


class VibeGuardError(Exception):
    """Base class. Never carries key material in its message."""

    kind: ErrorKind = ErrorKind.UPSTREAM_UNAVAILABLE

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class InvalidInput(VibeGuardError):
    kind = ErrorKind.INVALID_INPUT


class UpstreamUnavailable(VibeGuardError):
    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class RateLimited(UpstreamUnavailable):
    kind = ErrorKind.RATE_LIMITED


class RiskAnalysisFailed(VibeGuardError):
    kind = ErrorKind.RISK_ANALYSIS_FAILED


class ExecutionPrecondition(VibeGuardError):
    kind = ErrorKind.EXECUTION_PRECONDITION


class ExecutionReverted(VibeGuardError):
    kind = ErrorKind.EXECUTION_REVERTED


class ConfigurationError(VibeGuardError):
    kind = ErrorKind.CONFIGURATION_ERROR
