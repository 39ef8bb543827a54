"""Rate limiting middleware using slowapi."""
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.requests import Request

from accubooks.config import settings
from accubooks.dependencies import TENANT_HEADER


def tenant_or_address(request: Request) -> str:
    """Key requests by tenant so one tenant cannot use up another's budget."""
    tenant_id = request.headers.get(TENANT_HEADER)
    if tenant_id:
        return f"tenant:{tenant_id}"
    return get_remote_address(request)


# Create limiter keyed by tenant, falling back to client address
limiter = Limiter(
    key_func=tenant_or_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=None,  # Use in-memory storage (Redis can be added later)
)


def setup_rate_limiting(app):
    """Configure rate limiting for the FastAPI app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
