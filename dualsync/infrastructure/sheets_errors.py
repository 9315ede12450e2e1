from __future__ import annotations

import json

import gspread
from google.auth.exceptions import DefaultCredentialsError, TransportError

from dualsync.core.errors import AppError
from dualsync.domain.errors import StoreUnavailableError, StoreWriteError

STORE_NAME = "secondary"


def extract_response_status_code(ex: Exception) -> int | None:
    response = getattr(ex, "response", None)
    return getattr(response, "status_code", None)


def _extract_api_error_text(ex: gspread.exceptions.APIError) -> str:
    response = getattr(ex, "response", None)
    if response is not None:
        text = getattr(response, "text", "")
        if text:
            return text
    return str(ex)


def is_transient_api_error(text_lower: str, status_code: int | None) -> bool:
    if status_code in {429, 500, 502, 503, 504}:
        return True
    return any(
        token in text_lower
        for token in (
            "[429]",
            "resource_exhausted",
            "rate_limit_exceeded",
            "quota exceeded",
            "backend error",
        )
    )


def classify_api_error(text_lower: str, status_code: int | None, operation: str) -> AppError:
    if is_transient_api_error(text_lower, status_code):
        return StoreUnavailableError(STORE_NAME, f"{operation}: límite o error temporal de Google Sheets.")
    if "google sheets api has not been used" in text_lower or "it is disabled" in text_lower:
        return StoreWriteError(STORE_NAME, f"{operation}: la API de Google Sheets no está habilitada.")
    if status_code == 404 or "[404]" in text_lower or "requested entity was not found" in text_lower:
        return StoreWriteError(STORE_NAME, f"{operation}: el spreadsheet no existe.")
    if status_code == 403 or "[403]" in text_lower or "permission_denied" in text_lower:
        return StoreWriteError(STORE_NAME, f"{operation}: la hoja no está compartida con la cuenta de servicio.")
    return StoreWriteError(STORE_NAME, f"{operation}: {text_lower}")


def map_gspread_exception(ex: Exception, operation: str) -> Exception:
    """Traduce errores de gspread/google-auth a la jerarquía de stores."""
    if isinstance(ex, AppError):
        return ex
    if isinstance(ex, gspread.exceptions.APIError):
        text = _extract_api_error_text(ex).strip().lower()
        return classify_api_error(text, extract_response_status_code(ex), operation)
    if isinstance(ex, (TransportError, ConnectionError, TimeoutError)):
        return StoreUnavailableError(STORE_NAME, f"{operation}: {ex}")
    if isinstance(ex, FileNotFoundError):
        path = getattr(ex, "filename", None)
        return StoreWriteError(STORE_NAME, f"No se encuentra el fichero de credenciales {path or ''}".strip() + ".")
    if isinstance(ex, (json.JSONDecodeError, DefaultCredentialsError)):
        return StoreWriteError(STORE_NAME, "El fichero de credenciales no es válido.")
    return StoreWriteError(STORE_NAME, f"{operation}: {ex}")
