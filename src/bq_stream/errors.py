"""Error taxonomy for BigQuery REST responses.

Service-reported errors are raised as ``google.api_core.exceptions``
instances so callers can catch ``NotFound``/``Forbidden`` the same way
they would with the official client library.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from google.api_core import exceptions

AUTH_STATUS_CODES = frozenset({401, 403})


class MalformedResponseError(ValueError):
    """A response is missing fields the protocol requires."""


class QueryFailedError(Exception):
    """A query job finished with an ``errorResult``."""

    def __init__(self, job_id: str | None, error_result: Mapping[str, Any]) -> None:
        self.job_id = job_id
        self.error_result = dict(error_result)
        reason = self.error_result.get("reason", "unknown")
        message = self.error_result.get("message", "query job failed")
        super().__init__(f"Job {job_id} failed ({reason}): {message}")


def service_error(payload: Mapping[str, Any]) -> exceptions.GoogleAPICallError:
    """Build an exception from a wire ``error`` object.

    Args:
        payload: The ``error`` member of a response body.

    Returns:
        The ``GoogleAPICallError`` subclass matching ``payload["code"]``,
        carrying the structured sub-errors in ``.errors``.
    """
    code = int(payload.get("code") or 500)
    message = payload.get("message") or "unknown error"
    return exceptions.from_http_status(
        code, message, errors=list(payload.get("errors") or [])
    )


def raise_for_service_error(response: Mapping[str, Any]) -> None:
    """Raise when *response* carries a service-reported error."""
    error = response.get("error")
    if error:
        raise service_error(error)


def status_code(exc: BaseException) -> int | None:
    """Return the HTTP status of *exc*, or ``None`` for non-API errors."""
    if isinstance(exc, exceptions.GoogleAPICallError) and exc.code is not None:
        return int(exc.code)
    return None


def is_auth_error(exc: BaseException) -> bool:
    """Authorization failures are the only retried error class."""
    return status_code(exc) in AUTH_STATUS_CODES


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, exceptions.NotFound)


def is_expired_reference(exc: BaseException) -> bool:
    """A job or table reference the service no longer recognizes."""
    return isinstance(exc, (exceptions.NotFound, exceptions.BadRequest))
