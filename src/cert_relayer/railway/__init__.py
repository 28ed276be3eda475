"""
Railway-Oriented Programming primitives used across cert_relayer.

Explicit, composable error handling — business logic returns Result values
and never raises.

    from cert_relayer.railway import ErrorCode, Result

    def require_credit(account: IssuerAccount) -> Result[IssuerAccount]:
        if account.available_credits < 1:
            return Result.failure(ErrorCode.INSUFFICIENT_RESOURCE_ERROR, "Insufficient credits")
        return Result.success(account)
"""

from cert_relayer.railway.assertions import ResultAssertions
from cert_relayer.railway.execution import (
    ExecutionContext,
    LoggingExecutionContext,
    NoOpExecutionContext,
)
from cert_relayer.railway.failure import ErrorCode, FailureDescription
from cert_relayer.railway.result import Failure, Result, Success

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "ExecutionContext",
    "NoOpExecutionContext",
    "LoggingExecutionContext",
    "ResultAssertions",
]
