"""``X-Request-ID`` propagation.

The id is bound into every log line by ``tryon.core.logging.add_correlation_id``
and returned in error bodies next to ``debug_id``, so a failed try-on or
webhook can be traced from the client's response to the server logs.
"""

import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

REQUEST_ID_HEADER = "X-Request-ID"


def setup_correlation_middleware(app: FastAPI) -> None:
    # Gateways send their own ids in other headers; any client-supplied value is kept
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        generator=lambda: uuid.uuid4().hex,
        validator=None,
    )


def get_correlation_id() -> str | None:
    return correlation_id.get(None)
