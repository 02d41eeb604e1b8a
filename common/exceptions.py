from __future__ import annotations

import logging
import traceback
from collections.abc import Mapping, Sequence
from typing import Any

from django.conf import settings
from django.db import DatabaseError, OperationalError
from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    MethodNotAllowed,
    NotAuthenticated,
    NotFound,
    NotAcceptable,
    ParseError,
    PermissionDenied,
    Throttled,
    UnsupportedMediaType,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler
from rest_framework.views import set_rollback

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR_MESSAGE = "An unexpected error occurred. Check the server logs for details."
DUPLICATE_ENTRY_MESSAGE = "Duplicate entry. This record already exists."
REFERENCE_ERROR_MESSAGE = "Referenced record does not exist or record is in use."
CHECK_VIOLATION_MESSAGE = "Operation would break a data integrity rule (for example stock below reserved quantity)."
DATABASE_UNAVAILABLE_MESSAGE = "Database unavailable. Check DATABASE_URL and that PostgreSQL is running."
SCHEMA_MISSING_MESSAGE = "Database schema is missing or out of date. Run `python manage.py migrate`."
DATABASE_PERMISSION_MESSAGE = "Database permission denied. Check the grants of the configured database user."


class BusinessRuleError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "The request violates a business rule."
    default_code = "business_rule_violation"


class ConflictError(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = DUPLICATE_ENTRY_MESSAGE
    default_code = "conflict"


EXCEPTION_CODE_MAP: dict[type[Exception], str] = {
    ValidationError: "validation_error",
    NotAuthenticated: "not_authenticated",
    AuthenticationFailed: "authentication_failed",
    PermissionDenied: "permission_denied",
    NotFound: "not_found",
    MethodNotAllowed: "method_not_allowed",
    NotAcceptable: "not_acceptable",
    UnsupportedMediaType: "unsupported_media_type",
    ParseError: "parse_error",
    Throttled: "throttled",
}

# SQLSTATE -> (status, code, message)
SQLSTATE_MAP: dict[str, tuple[int, str, str]] = {
    "23505": (status.HTTP_409_CONFLICT, "duplicate_entry", DUPLICATE_ENTRY_MESSAGE),
    "23503": (status.HTTP_400_BAD_REQUEST, "invalid_reference", REFERENCE_ERROR_MESSAGE),
    "23514": (status.HTTP_409_CONFLICT, "integrity_violation", CHECK_VIOLATION_MESSAGE),
    "42P01": (status.HTTP_503_SERVICE_UNAVAILABLE, "schema_missing", SCHEMA_MISSING_MESSAGE),
    "42703": (status.HTTP_503_SERVICE_UNAVAILABLE, "schema_missing", SCHEMA_MISSING_MESSAGE),
    "42501": (status.HTTP_503_SERVICE_UNAVAILABLE, "database_permission_denied", DATABASE_PERMISSION_MESSAGE),
}

# Fallback for backends that do not expose SQLSTATE (sqlite).
MESSAGE_SQLSTATE_HINTS = (
    ("unique constraint", "23505"),
    ("foreign key constraint", "23503"),
    ("check constraint", "23514"),
    ("no such table", "42P01"),
    ("no such column", "42703"),
)


def build_error_envelope(
    *,
    code: str,
    message: str,
    detail: Any = None,
) -> dict[str, Any]:
    envelope = {
        "success": False,
        "message": message,
        "code": code,
    }
    if detail is not None:
        envelope["detail"] = detail
    return envelope


def error_response(
    *,
    code: str,
    message: str,
    detail: Any = None,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> Response:
    return Response(
        build_error_envelope(code=code, message=message, detail=detail),
        status=status_code,
    )


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    response = drf_exception_handler(exc, context)

    if response is None:
        if isinstance(exc, DatabaseError):
            return _database_error_response(exc, context)
        return _unhandled_error_response(exc, context)

    errors = _normalize_errors(response.data)
    message = _build_message(exc, response.data)
    code = _build_code(exc)

    response.data = build_error_envelope(code=code, message=message, detail=errors)
    return response


def get_sqlstate(exc: Exception) -> str | None:
    """Return the SQLSTATE for a wrapped driver error, inferring it on sqlite."""
    cause = getattr(exc, "__cause__", None)
    sqlstate = getattr(cause, "sqlstate", None) or getattr(cause, "pgcode", None)
    if sqlstate:
        return sqlstate

    text = str(exc).lower()
    for hint, inferred in MESSAGE_SQLSTATE_HINTS:
        if hint in text:
            return inferred
    return None


def _database_error_response(exc: DatabaseError, context: dict[str, Any]) -> Response:
    set_rollback()
    sqlstate = get_sqlstate(exc)
    mapped = SQLSTATE_MAP.get(sqlstate) if sqlstate else None

    if mapped is None and isinstance(exc, OperationalError):
        mapped = (status.HTTP_503_SERVICE_UNAVAILABLE, "database_unavailable", DATABASE_UNAVAILABLE_MESSAGE)

    if mapped is None:
        return _unhandled_error_response(exc, context)

    status_code, code, message = mapped
    log = logger.error if status_code >= 500 else logger.warning
    log("database_error sqlstate=%s code=%s error=%s", sqlstate, code, exc, extra={"request_id": _request_id(context)})
    return error_response(code=code, message=message, status_code=status_code)


def _unhandled_error_response(exc: Exception, context: dict[str, Any]) -> Response:
    set_rollback()
    view_name = context.get("view").__class__.__name__ if context.get("view") else "unknown"
    logger.exception("Unhandled API exception in %s", view_name, extra={"request_id": _request_id(context)})

    detail = None
    message = GENERIC_SERVER_ERROR_MESSAGE
    if settings.DEBUG:
        message = str(exc) or exc.__class__.__name__
        detail = {"stack": traceback.format_exception(type(exc), exc, exc.__traceback__)}
    return error_response(
        code="internal_server_error",
        message=message,
        detail=detail,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def _request_id(context: dict[str, Any]) -> str | None:
    request = context.get("request")
    return getattr(request, "request_id", None) if request is not None else None


def _build_code(exc: Exception) -> str:
    for exception_type, stable_code in EXCEPTION_CODE_MAP.items():
        if isinstance(exc, exception_type):
            return stable_code

    if isinstance(exc, APIException):
        return str(getattr(exc, "default_code", "api_error"))

    return "internal_server_error"


def _build_message(exc: Exception, data: Any) -> str:
    if isinstance(exc, ValidationError):
        return _first_error_message(data) or "Validation failed."

    detail = None
    if isinstance(data, Mapping):
        detail = data.get("detail")
    elif isinstance(data, str):
        detail = data

    if detail:
        return str(detail)

    if isinstance(exc, Throttled):
        return "Request was throttled."

    if isinstance(exc, APIException):
        return str(getattr(exc, "detail", "Request failed."))

    return GENERIC_SERVER_ERROR_MESSAGE


def _first_error_message(data: Any) -> str | None:
    if isinstance(data, str):
        return data
    if isinstance(data, Mapping):
        for key, value in data.items():
            message = _first_error_message(value)
            if message:
                if key in ("detail", "non_field_errors"):
                    return message
                return f"{key}: {message}"
        return None
    if isinstance(data, Sequence):
        for item in data:
            message = _first_error_message(item)
            if message:
                return message
    return None


def _normalize_errors(data: Any) -> Any:
    if isinstance(data, Mapping):
        if set(data.keys()) == {"detail"}:
            return None
        return data

    if isinstance(data, Sequence) and not isinstance(data, str):
        return data

    return None
