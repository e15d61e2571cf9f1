"""Tests for kubemeta.errors: classification of remote failures."""

from __future__ import annotations

import aiohttp
import pytest
from kubernetes_asyncio.client.exceptions import ApiException

from kubemeta.errors import ApiErrorKind, MetadataApiError, classify, error_from_status_object, kind_for_status


class TestKindForStatus:
    @pytest.mark.parametrize(
        ("status", "kind"),
        [
            (410, ApiErrorKind.GONE),
            (401, ApiErrorKind.UNAUTHORIZED),
            (404, ApiErrorKind.NOT_FOUND),
            (408, ApiErrorKind.TIMEOUT),
            (504, ApiErrorKind.TIMEOUT),
            (429, ApiErrorKind.TRANSIENT),
            (503, ApiErrorKind.TRANSIENT),
            (507, ApiErrorKind.TRANSIENT),
            (403, ApiErrorKind.FATAL),
        ],
    )
    def test_mapping(self, status: int, kind: ApiErrorKind) -> None:
        assert kind_for_status(status) is kind


class TestClassify:
    def test_api_exception(self) -> None:
        error = classify(ApiException(status=410, reason="Gone"))
        assert error.kind is ApiErrorKind.GONE
        assert error.status == 410
        assert error.message == "Gone"

    def test_passthrough(self) -> None:
        original = MetadataApiError(ApiErrorKind.NOT_FOUND, "missing", status=404)
        assert classify(original) is original

    def test_timeout(self) -> None:
        assert classify(TimeoutError()).kind is ApiErrorKind.TIMEOUT

    def test_transport_errors_are_transient(self) -> None:
        assert classify(aiohttp.ClientConnectionError("reset")).kind is ApiErrorKind.TRANSIENT
        assert classify(ConnectionRefusedError("refused")).kind is ApiErrorKind.TRANSIENT

    def test_unknown_is_fatal(self) -> None:
        error = classify(ValueError("bad"))
        assert error.kind is ApiErrorKind.FATAL
        assert "ValueError" in error.message


class TestStatusObject:
    def test_code_410_is_gone(self) -> None:
        error = error_from_status_object({"code": 410, "message": "too old resource version"})
        assert error.kind is ApiErrorKind.GONE
        assert error.message == "too old resource version"

    def test_expired_reason_without_code(self) -> None:
        assert error_from_status_object({"reason": "Expired"}).kind is ApiErrorKind.GONE

    def test_malformed_payload_is_fatal(self) -> None:
        assert error_from_status_object("nonsense").kind is ApiErrorKind.FATAL

    def test_server_error_is_transient(self) -> None:
        assert error_from_status_object({"code": 500, "message": "internal"}).kind is ApiErrorKind.TRANSIENT
