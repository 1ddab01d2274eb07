"""Unit tests for the error taxonomy and backend error translation."""

import httpx
import pytest

from receiptsync.errors import (
    AccessDeniedError,
    AppError,
    AuthError,
    BackendCondition,
    DatabaseError,
    DataValidationError,
    FileError,
    GatewayError,
    NetworkError,
    ServerError,
    UnknownError,
    classify_backend_error,
    is_missing_procedure,
    is_missing_table,
    to_app_error,
    to_upload_error,
)

pytestmark = pytest.mark.unit


class FakeAPIError(Exception):
    """Mimics the SDK's API error, which carries a code and message."""

    def __init__(self, message, code=None):
        super().__init__(message)
        self.message = message
        self.code = code


class TestGatewayErrorWrap:
    def test_wrap_copies_message_and_code(self):
        original = FakeAPIError("relation does not exist", code="42P01")
        error = GatewayError.wrap(original, "select:claims")
        assert error.message == "relation does not exist"
        assert error.code == "42P01"
        assert error.details == {"exception_type": "FakeAPIError", "operation": "select:claims"}
        assert error.__cause__ is original

    def test_wrap_is_idempotent(self):
        error = GatewayError("boom")
        assert GatewayError.wrap(error) is error

    def test_wrap_uses_status_code(self):
        class StorageError(Exception):
            status_code = 413

        error = GatewayError.wrap(StorageError("Payload too large"))
        assert error.code == "413"


class TestClassifyBackendError:
    """Test cases for mapping backend failures to conditions."""

    @pytest.mark.parametrize(
        "code,condition",
        [
            ("PGRST202", BackendCondition.MISSING_PROCEDURE),
            ("42883", BackendCondition.MISSING_PROCEDURE),
            ("PGRST205", BackendCondition.MISSING_TABLE),
            ("42P01", BackendCondition.MISSING_TABLE),
            ("42501", BackendCondition.ROW_LEVEL_SECURITY),
            ("23505", BackendCondition.DUPLICATE),
            ("413", BackendCondition.PAYLOAD_TOO_LARGE),
            ("PGRST301", BackendCondition.AUTH),
        ],
    )
    def test_code_takes_precedence(self, code, condition):
        """Test that a typed backend code decides the condition."""
        error = GatewayError("something unrelated", code=code)
        assert classify_backend_error(error) is condition

    @pytest.mark.parametrize(
        "message,condition",
        [
            ("Could not find the function public.foo", BackendCondition.MISSING_PROCEDURE),
            ('relation "claims" does not exist', BackendCondition.MISSING_TABLE),
            ("Bucket not found", BackendCondition.BUCKET_NOT_FOUND),
            (
                "new row violates row-level security policy",
                BackendCondition.ROW_LEVEL_SECURITY,
            ),
            ("The resource already exists", BackendCondition.DUPLICATE),
            ("JWT expired", BackendCondition.AUTH),
            ("400 Bad Request", BackendCondition.INVALID_REQUEST),
            ("weird failure", BackendCondition.UNKNOWN),
        ],
    )
    def test_message_fallback(self, message, condition):
        """Test matching on message text when no code is available."""
        assert classify_backend_error(GatewayError(message)) is condition

    def test_network_errors(self):
        assert classify_backend_error(httpx.ConnectError("refused")) is BackendCondition.NETWORK
        wrapped = GatewayError.wrap(httpx.ReadTimeout("timeout"), "select:receipts")
        assert classify_backend_error(wrapped) is BackendCondition.NETWORK
        assert classify_backend_error(NetworkError("offline")) is BackendCondition.NETWORK

    def test_helpers(self):
        assert is_missing_procedure(GatewayError("x", code="PGRST202"))
        assert is_missing_table(GatewayError("x", code="42P01"))
        assert not is_missing_table(GatewayError("x", code="PGRST202"))


class TestToUploadError:
    """Test cases for storage upload error messages."""

    @pytest.mark.parametrize(
        "message,error_type,expected",
        [
            ("Bucket not found", ServerError, "Storage bucket not found. Please contact support."),
            (
                "new row violates row-level security policy",
                AccessDeniedError,
                "Permission denied. Please log in again.",
            ),
            ("Payload too large", FileError, "File too large. Please use a smaller image."),
            (
                "400 Bad Request",
                FileError,
                "Invalid file or request. Please try again with a different image.",
            ),
        ],
    )
    def test_known_conditions(self, message, error_type, expected):
        error = to_upload_error(GatewayError(message))
        assert isinstance(error, error_type)
        assert error.message == expected

    def test_unknown_condition_is_prefixed(self):
        error = to_upload_error(GatewayError("disk on fire"))
        assert error.message == "Storage upload failed: disk on fire"


class TestToAppError:
    def test_app_errors_pass_through(self):
        error = DataValidationError("Merchant name is required")
        assert to_app_error(error) is error

    def test_gateway_error_becomes_database_error(self):
        error = to_app_error(GatewayError("constraint failed", code="23514"))
        assert type(error) is DatabaseError
        assert error.code == "23514"

    def test_network_message(self):
        error = to_app_error(GatewayError.wrap(httpx.ConnectError("refused")))
        assert isinstance(error, NetworkError)
        assert "internet connection" in error.message

    def test_auth_and_permission(self):
        assert isinstance(to_app_error(GatewayError("JWT expired")), AuthError)
        assert isinstance(
            to_app_error(GatewayError("denied", code="42501")), AccessDeniedError
        )

    def test_plain_exception_becomes_unknown(self):
        error = to_app_error(RuntimeError("oops"), prefix="Load failed")
        assert isinstance(error, UnknownError)
        assert isinstance(error, AppError)
        assert error.message == "Load failed: oops"
