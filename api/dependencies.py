"""
Shared FastAPI dependencies.

- get_runtime():  the PoolRuntime attached to the application at startup.
- rate_limit():   per-action rate limit keyed by the caller id header
                  (X-User-Id), falling back to the client address.
- http_error():   maps pool errors to HTTP status codes.
"""

from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, Request

from domain.errors import InvalidQuantity, NotFound, PoolError, RateLimited, Unavailable
from services.runtime import PoolRuntime


def get_runtime(request: Request) -> PoolRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return runtime


def http_error(error: PoolError) -> HTTPException:
    """Convert a pool error to an HTTPException carrying its reason."""

    if isinstance(error, NotFound):
        return HTTPException(status_code=404, detail=error.reason)
    if isinstance(error, InvalidQuantity):
        return HTTPException(status_code=400, detail=error.reason)
    if isinstance(error, RateLimited):
        return HTTPException(
            status_code=429,
            detail=error.reason,
            headers={"Retry-After": str(error.retry_after)},
        )
    if isinstance(error, Unavailable):
        return HTTPException(status_code=503, detail=error.reason)
    return HTTPException(status_code=409, detail=error.reason)


def rate_limit(action: str) -> Callable[..., None]:
    """Dependency factory: reject the call with 429 once the caller exhausts the action's window."""

    def dependency(
        request: Request,
        runtime: PoolRuntime = Depends(get_runtime),
        x_user_id: Optional[str] = Header(None),
    ) -> None:
        subject = x_user_id or (request.client.host if request.client else "anonymous")
        rule = runtime.settings.rate_limit_for(action)
        if not runtime.limiter.check(subject, action, rule.max_attempts, rule.window_ms):
            raise http_error(RateLimited(action, runtime.limiter.remaining_cooldown(subject, action)))

    return dependency
