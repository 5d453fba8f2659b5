from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from django.core.exceptions import PermissionDenied as DjangoPermissionDenied
from django.db import DatabaseError
from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import APIException, NotFound, PermissionDenied, ValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred."


class BusinessRuleViolation(APIException):
    """A request that is well-formed but breaks a sales or stock rule."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "The request violates a business rule."
    default_code = "business_rule_violation"


class PersistenceFailure(APIException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "The transaction could not be saved. No changes were made."
    default_code = "persistence_failure"


# DRF codes that differ from the envelope code clients switch on.
ENVELOPE_CODES: dict[str, str] = {
    "invalid": "validation_error",
    "error": "api_error",
}


def error_envelope(*, code: str, message: str, errors: Any = None, status_code: int) -> dict[str, Any]:
    return {"code": code, "message": message, "errors": errors, "status": status_code}


def api_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    """Render every API failure as ``{code, message, errors, status}``.

    Database errors that escape a view are reported as a persistence
    failure; anything else DRF does not recognise becomes a plain 500.
    """
    view_name = context["view"].__class__.__name__ if context.get("view") else "unknown"
    if isinstance(exc, DatabaseError):
        logger.exception("database_error view=%s", view_name)
        exc = PersistenceFailure()
    elif isinstance(exc, Http404):
        exc = NotFound(*exc.args)
    elif isinstance(exc, DjangoPermissionDenied):
        exc = PermissionDenied(*exc.args)

    response = drf_exception_handler(exc, context)
    if response is None:
        logger.exception("unhandled_api_exception view=%s", view_name)
        return Response(
            error_envelope(
                code="internal_server_error",
                message=UNEXPECTED_ERROR_MESSAGE,
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            ),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    response.data = error_envelope(
        code=_envelope_code(exc),
        message=_envelope_message(exc, response.data),
        errors=_field_errors(response.data),
        status_code=response.status_code,
    )
    return response


def _envelope_code(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return "validation_error"
    code = str(getattr(exc, "default_code", "api_error"))
    return ENVELOPE_CODES.get(code, code)


def _envelope_message(exc: Exception, data: Any) -> str:
    if isinstance(exc, ValidationError):
        return "Validation failed."
    if isinstance(data, Mapping) and data.get("detail"):
        return str(data["detail"])
    return str(getattr(exc, "detail", UNEXPECTED_ERROR_MESSAGE))


def _field_errors(data: Any) -> Any:
    if isinstance(data, Mapping):
        return None if set(data) == {"detail"} else data
    if isinstance(data, list):
        return data
    return None
