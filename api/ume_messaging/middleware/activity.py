"""
Presence tracking middleware.

Every authenticated request counts as activity. Writes are debounced by
:meth:`UserRepository.touch_activity`, so the middleware can call it on
every request.
"""

import logging

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ume_messaging.core.security import resolve_user_id

logger = logging.getLogger(__name__)


class ActivityTrackingMiddleware(BaseHTTPMiddleware):
    """Record ``last_active`` for the caller before handling the request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        state = request.app.state
        user_repository = getattr(state, "user_repository", None)
        settings = getattr(state, "settings", None)
        if user_repository is not None and settings is not None:
            user_id = resolve_user_id(request, settings)
            if user_id:
                try:
                    await user_repository.touch_activity(user_id)
                except Exception:
                    logger.exception("Failed to record activity for %s", user_id)
        return await call_next(request)
