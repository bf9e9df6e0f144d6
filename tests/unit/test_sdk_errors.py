"""
Unit tests for SDK error translation.

Tests cover:
- Mapping of the x-error-kind trailer to exception classes
- Status code fallback when the trailer is absent
- Retryability flags
"""

import grpc
import pytest

from sdk.entity_sdk.errors import (
    ConcurrentModificationError,
    ConnectionError,
    DeadlineExceededError,
    EntityClientError,
    IdentityIncompleteError,
    InternalError,
    NotFoundError,
    StoreUnavailableError,
    UnknownTypeError,
    error_from_rpc,
)


def rpc_error(code, details="boom", kind=None):
    trailing = grpc.aio.Metadata(("x-error-kind", kind)) if kind else grpc.aio.Metadata()
    return grpc.aio.AioRpcError(code, grpc.aio.Metadata(), trailing, details=details)


class TestErrorFromRpc:
    """Tests for error_from_rpc."""

    @pytest.mark.parametrize(
        "code,kind,expected",
        [
            (grpc.StatusCode.NOT_FOUND, "NOT_FOUND", NotFoundError),
            (grpc.StatusCode.FAILED_PRECONDITION, "UNKNOWN_TYPE", UnknownTypeError),
            (grpc.StatusCode.INVALID_ARGUMENT, "IDENTITY_INCOMPLETE", IdentityIncompleteError),
            (grpc.StatusCode.ABORTED, "CONCURRENT_MODIFICATION", ConcurrentModificationError),
            (grpc.StatusCode.UNAVAILABLE, "STORE_UNAVAILABLE", StoreUnavailableError),
        ],
    )
    def test_trailer_selects_class(self, code, kind, expected):
        error = error_from_rpc(rpc_error(code, "entity 'x' not found", kind))

        assert isinstance(error, expected)
        assert isinstance(error, EntityClientError)
        assert error.code == kind
        assert error.status == code
        assert error.message == "entity 'x' not found"

    def test_unknown_kind_is_internal(self):
        error = error_from_rpc(rpc_error(grpc.StatusCode.INTERNAL, kind="SOMETHING_NEW"))

        assert isinstance(error, InternalError)

    def test_status_fallback(self):
        """Without a trailer the status code decides."""
        error = error_from_rpc(rpc_error(grpc.StatusCode.DEADLINE_EXCEEDED))

        assert isinstance(error, DeadlineExceededError)
        assert error.code == "DEADLINE_EXCEEDED"

    def test_unavailable_without_trailer_is_connection_error(self):
        error = error_from_rpc(rpc_error(grpc.StatusCode.UNAVAILABLE), address="localhost:1")

        assert isinstance(error, ConnectionError)
        assert error.address == "localhost:1"
        assert error.retryable

    def test_unmapped_status(self):
        error = error_from_rpc(rpc_error(grpc.StatusCode.RESOURCE_EXHAUSTED))

        assert isinstance(error, InternalError)

    def test_retryable_flags(self):
        assert StoreUnavailableError("x").retryable
        assert not NotFoundError("x").retryable
        assert not IdentityIncompleteError("x").retryable
