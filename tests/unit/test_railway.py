"""
Tests for the railway primitives — Result, ErrorCode classification,
execution contexts and HTTP status mapping.
"""

from __future__ import annotations

import asyncio

import pytest
from structlog.testing import capture_logs

from cert_relayer.railway import (
    ErrorCode,
    FailureDescription,
    Failure,
    LoggingExecutionContext,
    NoOpExecutionContext,
    Result,
    ResultAssertions,
    Success,
)
from cert_relayer.railway.http_support import (
    ErrorResponse,
    HttpStatusMapper,
    build_fastapi_response,
    build_response,
)

# ═══════════════════════════════════════════════════════════════
# 1. Result
# ═══════════════════════════════════════════════════════════════


class TestCreation:
    def test_success_wraps_value(self) -> None:
        result = Result.success(42)
        assert result.is_success()
        assert not result.is_failure()
        assert result.value() == 42
        assert result

    def test_success_rejects_none(self) -> None:
        with pytest.raises(TypeError, match="must not be None"):
            Success(None)

    def test_failure_with_exception(self) -> None:
        ex = ValueError("bad value")
        result = Result.failure(ErrorCode.DATABASE_ERROR, "Query failed", ex)
        assert not result
        assert result.error().exception is ex

    def test_value_on_failure_raises(self) -> None:
        with pytest.raises(ValueError, match="Cannot get value from a Failure"):
            Result.failure(ErrorCode.NOT_FOUND, "missing").value()

    def test_error_on_success_raises(self) -> None:
        with pytest.raises(ValueError, match="Cannot get error from a Success"):
            Result.success(1).error()

    def test_has_code(self) -> None:
        assert Result.failure(ErrorCode.DUPLICATE_ERROR, "x").has_code(ErrorCode.DUPLICATE_ERROR)
        assert not Result.failure(ErrorCode.NOT_FOUND, "x").has_code(ErrorCode.DUPLICATE_ERROR)
        assert not Result.success(1).has_code(ErrorCode.NOT_FOUND)


class TestTransformations:
    def test_map_chain(self) -> None:
        assert Result.success(3).map(lambda x: x + 1).map(str).value() == "4"

    def test_flat_map_short_circuits(self) -> None:
        calls: list[int] = []

        def _next(x: int) -> Result[int]:
            calls.append(x)
            return Result.success(x)

        result = Result.failure(ErrorCode.VALIDATION_ERROR, "bad").flat_map(_next)

        ResultAssertions.assert_failure(result, ErrorCode.VALIDATION_ERROR)
        assert calls == []

    def test_ensure(self) -> None:
        ResultAssertions.assert_failure(
            Result.success(0).ensure(
                lambda credits: credits >= 1,
                ErrorCode.INSUFFICIENT_RESOURCE_ERROR,
                "Insufficient credits",
            ),
            ErrorCode.INSUFFICIENT_RESOURCE_ERROR,
        )
        ResultAssertions.assert_success_value(
            Result.success(2).ensure(lambda c: c >= 1, ErrorCode.INSUFFICIENT_RESOURCE_ERROR), 2
        )

    def test_peek_and_peek_failure(self) -> None:
        seen: list[object] = []
        Result.success(1).peek(seen.append).peek_failure(seen.append)
        Result.failure(ErrorCode.NOT_FOUND, "x").peek(seen.append).peek_failure(
            lambda f: seen.append(f.code)
        )
        assert seen == [1, ErrorCode.NOT_FOUND]

    def test_recover_with(self) -> None:
        result = Result.failure(ErrorCode.NOT_FOUND, "x").recover_with(lambda _: Result.success(0))
        ResultAssertions.assert_success_value(result, 0)

    def test_get_or_else(self) -> None:
        assert Result.failure(ErrorCode.NOT_FOUND, "x").get_or_else(7) == 7

    def test_either(self) -> None:
        assert Result.success(2).either(lambda v: v * 2, lambda f: -1) == 4
        assert Result.failure(ErrorCode.NOT_FOUND, "x").either(lambda v: v, lambda f: -1) == -1


class TestFactories:
    def test_from_computation_success(self) -> None:
        ResultAssertions.assert_success_value(
            Result.from_computation(lambda: 5, ErrorCode.DATABASE_ERROR, "db"), 5
        )

    def test_from_computation_captures_exception(self) -> None:
        def _boom() -> int:
            raise RuntimeError("connection refused")

        failure = ResultAssertions.assert_failure(
            Result.from_computation(_boom, ErrorCode.DATABASE_ERROR, "db"),
            ErrorCode.DATABASE_ERROR,
        )
        assert isinstance(failure.exception, RuntimeError)
        assert "connection refused" in failure.full_stack_trace()

    def test_all_of(self) -> None:
        ResultAssertions.assert_success_value(
            Result.all_of([Result.success(1), Result.success(2)]), [1, 2]
        )
        ResultAssertions.assert_failure(
            Result.all_of([Result.success(1), Result.failure(ErrorCode.NOT_FOUND, "x")]),
            ErrorCode.NOT_FOUND,
        )


class TestPatternMatching:
    def test_match_case(self) -> None:
        match Result.failure(ErrorCode.AUTHORIZATION_ERROR, "wrong signer"):
            case Failure(err):
                assert err.code is ErrorCode.AUTHORIZATION_ERROR
            case Success(_):
                pytest.fail("expected failure")

    def test_equality_ignores_timestamp(self) -> None:
        assert Result.failure(ErrorCode.NOT_FOUND, "x") == Result.failure(ErrorCode.NOT_FOUND, "x")
        assert Result.success(1) != Result.failure(ErrorCode.NOT_FOUND, "x")


class TestAsync:
    async def test_flat_map_async(self) -> None:
        async def _double(x: int) -> Result[int]:
            return Result.success(x * 2)

        ResultAssertions.assert_success_value(await Result.success(4).flat_map_async(_double), 8)

    async def test_flat_map_async_does_not_swallow_cancellation(self) -> None:
        async def _cancelled(x: int) -> Result[int]:
            raise asyncio.CancelledError

        with pytest.raises(asyncio.CancelledError):
            await Result.success(1).flat_map_async(_cancelled)


# ═══════════════════════════════════════════════════════════════
# 2. ErrorCode / FailureDescription
# ═══════════════════════════════════════════════════════════════


class TestErrorCodeClassification:
    def test_only_duplicate_and_transient_are_retryable(self) -> None:
        retryable = {code for code in ErrorCode if code.retryable}
        assert retryable == {ErrorCode.DUPLICATE_ERROR, ErrorCode.TRANSIENT_SUBMISSION_ERROR}

    def test_only_duplicate_needs_new_digest(self) -> None:
        assert [code for code in ErrorCode if code.needs_new_digest] == [ErrorCode.DUPLICATE_ERROR]

    def test_authorization_is_security_relevant(self) -> None:
        assert ErrorCode.AUTHORIZATION_ERROR.security_relevant
        assert not ErrorCode.MALFORMED_SIGNATURE.security_relevant

    def test_failure_description_str(self) -> None:
        failure = FailureDescription(ErrorCode.NOT_FOUND, "no such certificate")
        assert "NOT_FOUND" in str(failure)
        assert "no such certificate" in str(failure)
        assert failure.full_stack_trace() == "no such certificate"


# ═══════════════════════════════════════════════════════════════
# 3. Execution contexts
# ═══════════════════════════════════════════════════════════════


class TestExecutionContexts:
    def test_noop_passthrough(self) -> None:
        ResultAssertions.assert_success_value(
            NoOpExecutionContext().execute(lambda: Result.success(1)), 1
        )

    def test_logs_success(self) -> None:
        with capture_logs() as logs:
            LoggingExecutionContext(operation="Reconciliation").execute(
                lambda: Result.success(1)
            )

        completed = [entry for entry in logs if entry["event"] == "execution.completed"]
        assert completed[0]["operation"] == "Reconciliation"
        assert completed[0]["state"] == "SUCCESS"

    def test_logs_failure(self) -> None:
        with capture_logs() as logs:
            LoggingExecutionContext(operation="Reconciliation").execute(
                lambda: Result.failure(ErrorCode.DATABASE_ERROR, "down")
            )

        assert any(e.get("state") == "FAILURE" for e in logs)

    def test_exception_becomes_technical_error(self) -> None:
        def _crash() -> Result[int]:
            raise RuntimeError("boom")

        with capture_logs() as logs:
            result = LoggingExecutionContext(operation="Reconciliation").execute(_crash)

        ResultAssertions.assert_failure(result, ErrorCode.TECHNICAL_ERROR)
        assert any(entry["event"] == "execution.crashed" for entry in logs)


# ═══════════════════════════════════════════════════════════════
# 4. HTTP support
# ═══════════════════════════════════════════════════════════════


class TestHttpStatusMapper:
    @pytest.mark.parametrize(
        ("code", "expected_status"),
        [
            (ErrorCode.VALIDATION_ERROR, 400),
            (ErrorCode.MALFORMED_SIGNATURE, 400),
            (ErrorCode.INSUFFICIENT_RESOURCE_ERROR, 402),
            (ErrorCode.AUTHORIZATION_ERROR, 403),
            (ErrorCode.NOT_FOUND, 404),
            (ErrorCode.DUPLICATE_ERROR, 409),
            (ErrorCode.SIGNATURE_DECLINED, 409),
            (ErrorCode.BUSINESS_RULE_ERROR, 409),
            (ErrorCode.DATABASE_ERROR, 500),
            (ErrorCode.CONFIGURATION_ERROR, 500),
            (ErrorCode.LEDGER_REJECTED, 502),
            (ErrorCode.EXTERNAL_SERVICE_ERROR, 502),
            (ErrorCode.TRANSIENT_SUBMISSION_ERROR, 503),
            (ErrorCode.TIMEOUT_ERROR, 504),
        ],
    )
    def test_error_code_to_http_status(self, code: ErrorCode, expected_status: int) -> None:
        assert HttpStatusMapper.map_error_code(code) == expected_status

    def test_every_code_is_mapped(self) -> None:
        assert all(HttpStatusMapper.map_error_code(code) >= 400 for code in ErrorCode)


class TestBuildResponse:
    def test_success_with_custom_status(self) -> None:
        body, status = build_response(Result.success({"certId": "0x01"}), success_status=201)
        assert status == 201
        assert body == {"certId": "0x01"}

    def test_failure_body(self) -> None:
        body, status = build_response(
            Result.failure(ErrorCode.DUPLICATE_ERROR, "Certificate already exists")
        )
        assert status == 409
        assert body["error_code"] == "DUPLICATE_ERROR"
        assert body["retryable"] is True
        assert "timestamp" in body

    def test_error_response_from_failure(self) -> None:
        response = ErrorResponse.from_failure(FailureDescription(ErrorCode.NOT_FOUND, "missing"))
        assert response.to_dict()["message"] == "missing"
        assert response.retryable is False

    def test_fastapi_response(self) -> None:
        response = build_fastapi_response(
            Result.failure(ErrorCode.AUTHORIZATION_ERROR, "signer mismatch")
        )
        assert response.status_code == 403
        assert b"AUTHORIZATION_ERROR" in response.body
