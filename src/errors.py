"""
Error taxonomy for the streaming core.

Every failure that reaches a request boundary is an IPTVError carrying a
stable machine-readable ``kind``, the HTTP status it maps to and a
human-readable message.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class IPTVError(Exception):
    kind = "internal_error"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"success": False, "error": self.kind, "message": self.message}
        payload.update(self.details)
        return payload


class AuthenticationError(IPTVError):
    kind = "authentication_failed"
    status_code = 401
    default_message = "Invalid credentials"


class AuthorizationError(IPTVError):
    kind = "not_authorized"
    status_code = 403
    default_message = "No active subscription"


class NotFoundError(IPTVError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found"


class ConcurrencyLimitError(IPTVError):
    kind = "concurrency_limit"
    status_code = 429
    default_message = "Concurrent stream limit reached"


class UpstreamUnavailableError(IPTVError):
    kind = "upstream_unavailable"
    status_code = 503
    default_message = "Stream unavailable"

    def __init__(self, message: Optional[str] = None, upstream_url: Optional[str] = None, **details: Any):
        super().__init__(message, upstream_url=upstream_url, **details)
        self.upstream_url = upstream_url


class ProcessLaunchError(IPTVError):
    kind = "process_launch_failed"
    status_code = 500
    default_message = "Transcoder failed to start"


class CommandNotAllowedError(IPTVError):
    kind = "command_not_allowed"
    status_code = 403
    default_message = "Command not allowed"


class ConfigurationError(IPTVError):
    kind = "configuration_error"
    status_code = 500
    default_message = "Service is not configured"


class PersistenceError(IPTVError):
    kind = "persistence_error"
    status_code = 500
    default_message = "Failed to persist stream state"


async def iptv_error_handler(request: Request, exc: IPTVError) -> JSONResponse:
    """Render an IPTVError as a structured failure response."""
    if exc.status_code >= 500:
        logger.error(f"{exc.kind} on {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{exc.kind} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
