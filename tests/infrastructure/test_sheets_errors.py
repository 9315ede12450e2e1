from __future__ import annotations

from google.auth.exceptions import TransportError

from dualsync.domain.errors import StoreUnavailableError, StoreWriteError
from dualsync.infrastructure.sheets_errors import classify_api_error, is_transient_api_error, map_gspread_exception


def test_rate_limit_and_backend_errors_are_transient() -> None:
    assert is_transient_api_error("", 429)
    assert is_transient_api_error("", 503)
    assert is_transient_api_error("quota exceeded for quota metric", None)
    assert not is_transient_api_error("permission_denied", 403)


def test_classify_api_error_messages() -> None:
    assert isinstance(classify_api_error("", 429, "read"), StoreUnavailableError)
    disabled = classify_api_error("google sheets api has not been used in project", 403, "read")
    missing = classify_api_error("requested entity was not found", 404, "read")
    forbidden = classify_api_error("[403] permission_denied", 403, "write")

    assert isinstance(disabled, StoreWriteError) and "habilitada" in str(disabled)
    assert isinstance(missing, StoreWriteError) and "no existe" in str(missing)
    assert isinstance(forbidden, StoreWriteError) and "compartida" in str(forbidden)


def test_network_failures_are_transient() -> None:
    assert isinstance(map_gspread_exception(TransportError("dns"), "read"), StoreUnavailableError)
    assert isinstance(map_gspread_exception(TimeoutError("slow"), "read"), StoreUnavailableError)


def test_credentials_problems_are_permanent() -> None:
    missing = map_gspread_exception(FileNotFoundError(2, "No such file", "/tmp/creds.json"), "connect")

    assert isinstance(missing, StoreWriteError)
    assert "/tmp/creds.json" in str(missing)


def test_store_errors_pass_through_unchanged() -> None:
    original = StoreUnavailableError("secondary", "ya mapeado")

    assert map_gspread_exception(original, "read") is original
