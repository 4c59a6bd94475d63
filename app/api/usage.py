# =============================================================================
# Usage Logging Middleware — Per-Key Request Accounting
# =============================================================================
#
# After every request that resolved an API key (request.state.api_key_id,
# set by the auth dependency), schedules UsageRecorder.record() as a
# background task on the response. The client gets its response first;
# the write happens afterwards on its own DB session.
#
# Requests that never resolved a key (bad key, health checks, dashboard
# routes) are not recorded.
# =============================================================================

from __future__ import annotations

import logging

from starlette.background import BackgroundTask, BackgroundTasks
from starlette.middleware.base import (
    BaseHTTPMiddleware,
    RequestResponseEndpoint,
)
from starlette.requests import Request
from starlette.responses import Response

from app.config import settings

logger = logging.getLogger(__name__)


class UsageLoggingMiddleware(BaseHTTPMiddleware):
    """
    Reads the recorder from app.state.usage_recorder so tests can swap it.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        response = await call_next(request)

        if not settings.usage_logging_enabled:
            return response

        api_key_id = getattr(request.state, "api_key_id", None)
        recorder = getattr(request.app.state, "usage_recorder", None)
        if api_key_id is None or recorder is None:
            return response

        task = BackgroundTask(
            recorder.record,
            api_key_id=api_key_id,
            endpoint=request.url.path,
            method=request.method,
            status_code=response.status_code,
        )

        if response.background is None:
            response.background = task
        else:
            # Keep whatever the route scheduled, then record usage
            response.background = BackgroundTasks(tasks=[response.background, task])

        return response
