"""Request id helper for endpoints and error handlers.

The request id middleware stores the id on ``request.state``; the observability
middleware also binds it into the logging context. Either source is accepted.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from vroom_messaging.obs import logging as obs_logging

REQUEST_ID_ATTR = "request_id"


def get_request_id(request: Optional[Request] = None, default: str = "unknown") -> str:
    if request is not None:
        rid = getattr(request.state, REQUEST_ID_ATTR, None)
        if rid:
            return str(rid)
    return obs_logging.current_request_id() or default
