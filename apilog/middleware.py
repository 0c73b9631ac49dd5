import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any
from urllib.parse import quote

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from apilog.client import Analytics, PrivacyLevel

logger = logging.getLogger(__name__)


def _raw_path(request: Request) -> str:
    """Path as sent on the wire, still percent-encoded."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return raw_path.split(b"?", 1)[0].decode("latin-1")
    # Servers that omit raw_path only give the decoded path
    return quote(request.url.path, safe="/:@!$&'()*+,;=~")


class AnalyticsMiddleware(BaseHTTPMiddleware):
    """
    Logs every request served by a FastAPI/Starlette app.

    Usage:
        app.add_middleware(AnalyticsMiddleware, api_key="...")
    """

    def __init__(
        self,
        app: ASGIApp,
        api_key: str = "",
        privacy_level: PrivacyLevel = PrivacyLevel.P1,
        get_user_id: Callable[[Request], str | None] | None = None,
        analytics: Analytics | None = None,
        framework: str = "FastAPI",
    ) -> None:
        super().__init__(app)
        self.analytics = analytics or Analytics(api_key, framework, privacy_level)
        self.get_user_id = get_user_id

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time_s = time.time()
        status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            response_time_ms = int((time.time() - start_time_s) * 1000)
            try:
                self.analytics.capture(
                    self._request_data(request, status_code, response_time_ms)
                )
            except Exception as e:
                logger.error(f"Failed to capture request for analytics: {e}")

    def _request_data(
        self, request: Request, status_code: int, response_time_ms: int
    ) -> dict[str, Any]:
        ip_address = ""
        if self.analytics.config.privacy_level < PrivacyLevel.P3 and request.client:
            ip_address = request.client.host

        user_id = self.get_user_id(request) if self.get_user_id else None
        return {
            "hostname": request.url.hostname or "",
            "ip_address": ip_address,
            "path": _raw_path(request),
            "user_agent": request.headers.get("user-agent", ""),
            "method": request.method,
            "status": status_code,
            "response_time": response_time_ms,
            "user_id": user_id,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
