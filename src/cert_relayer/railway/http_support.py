"""
HTTP integration — ErrorCode→HTTP status mapping and FastAPI response builders.

    status = HttpStatusMapper.map_error_code(ErrorCode.DUPLICATE_ERROR)  # → 409
    return build_fastapi_response(result, success_status=201)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Callable, TypeVar

from fastapi.responses import JSONResponse

from cert_relayer.railway.failure import ErrorCode, FailureDescription
from cert_relayer.railway.result import Result

T = TypeVar("T")


class HttpStatusMapper:
    """Maps ErrorCode enum values to HTTP status codes."""

    _CODE_TO_STATUS: dict[ErrorCode, int] = {
        # Client errors (4xx)
        ErrorCode.VALIDATION_ERROR: 400,
        ErrorCode.MALFORMED_SIGNATURE: 400,
        ErrorCode.INSUFFICIENT_RESOURCE_ERROR: 402,
        ErrorCode.AUTHORIZATION_ERROR: 403,
        ErrorCode.NOT_FOUND: 404,
        ErrorCode.DUPLICATE_ERROR: 409,
        ErrorCode.SIGNATURE_DECLINED: 409,
        ErrorCode.BUSINESS_RULE_ERROR: 409,
        # Server errors (5xx)
        ErrorCode.TECHNICAL_ERROR: 500,
        ErrorCode.DATABASE_ERROR: 500,
        ErrorCode.CONFIGURATION_ERROR: 500,
        ErrorCode.UNKNOWN_ERROR: 500,
        ErrorCode.LEDGER_REJECTED: 502,
        ErrorCode.EXTERNAL_SERVICE_ERROR: 502,
        ErrorCode.TRANSIENT_SUBMISSION_ERROR: 503,
        ErrorCode.TIMEOUT_ERROR: 504,
    }

    @classmethod
    def map_error_code(cls, code: ErrorCode) -> int:
        return cls._CODE_TO_STATUS.get(code, 500)

    @classmethod
    def map_failure(cls, failure: FailureDescription) -> int:
        return cls.map_error_code(failure.code)


@dataclass(frozen=True, slots=True)
class ErrorResponse:
    """
    Standardized error response body.

        {
            "error_code": "DUPLICATE_ERROR",
            "message": "Certificate already exists",
            "retryable": true,
            "timestamp": "2026-02-17T10:30:00+00:00"
        }
    """

    error_code: str
    message: str
    retryable: bool
    timestamp: str

    @staticmethod
    def from_failure(failure: FailureDescription) -> ErrorResponse:
        return ErrorResponse(
            error_code=failure.code.value,
            message=failure.message,
            retryable=failure.retryable,
            timestamp=failure.timestamp.isoformat(),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_response(
    result: Result[T],
    success_status: int = 200,
    serializer: Callable[[T], Any] | None = None,
) -> tuple[Any, int]:
    """
    Build a (body, status_code) tuple from a Result.

        body, status = build_response(result, success_status=201, serializer=to_json)
    """
    return result.either(
        on_success=lambda value: (
            serializer(value) if serializer is not None else value,
            success_status,
        ),
        on_failure=lambda error: (
            ErrorResponse.from_failure(error).to_dict(),
            HttpStatusMapper.map_failure(error),
        ),
    )


def build_fastapi_response(
    result: Result[T],
    success_status: int = 200,
    serializer: Callable[[T], Any] | None = None,
) -> JSONResponse:
    """Build a FastAPI JSONResponse from a Result."""
    body, status = build_response(result, success_status, serializer)
    return JSONResponse(content=body, status_code=status)
