"""Map Spotify integration errors onto HTTP responses."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from integrations.spotify.exceptions import (
    InsufficientScopeError,
    NoActiveDeviceError,
    NotConnectedError,
    RateLimitedError,
    ReauthRequiredError,
    SpotifyError,
    UpstreamResponseError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)


def _error(status_code: int, exc: SpotifyError, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": type(exc).__name__, **extra},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register handlers for the Spotify error taxonomy.

    Permanent problems carry an ``action`` the client can act on; transient
    ones tell it to try again later.
    """

    @app.exception_handler(NotConnectedError)
    async def not_connected_handler(request: Request, exc: NotConnectedError) -> JSONResponse:
        logger.info("Spotify not connected at %s", request.url.path)
        return _error(status.HTTP_409_CONFLICT, exc, action="connect")

    @app.exception_handler(ReauthRequiredError)
    async def reauth_handler(request: Request, exc: ReauthRequiredError) -> JSONResponse:
        logger.info("Reconnect required at %s", request.url.path)
        return _error(status.HTTP_401_UNAUTHORIZED, exc, action="reconnect")

    @app.exception_handler(InsufficientScopeError)
    async def scope_handler(request: Request, exc: InsufficientScopeError) -> JSONResponse:
        return _error(status.HTTP_403_FORBIDDEN, exc)

    @app.exception_handler(NoActiveDeviceError)
    async def no_device_handler(request: Request, exc: NoActiveDeviceError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(RateLimitedError)
    async def rate_limited_handler(request: Request, exc: RateLimitedError) -> JSONResponse:
        response = _error(
            status.HTTP_429_TOO_MANY_REQUESTS, exc, retry_after=exc.retry_after
        )
        response.headers["Retry-After"] = str(int(exc.retry_after + 0.999))
        return response

    @app.exception_handler(UpstreamUnavailableError)
    async def unavailable_handler(request: Request, exc: UpstreamUnavailableError) -> JSONResponse:
        logger.warning("Spotify unavailable at %s: %s", request.url.path, exc.message)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)

    @app.exception_handler(UpstreamResponseError)
    async def upstream_response_handler(request: Request, exc: UpstreamResponseError) -> JSONResponse:
        logger.error(
            "Unexpected Spotify response at %s: %s (status=%d)",
            request.url.path,
            exc.message,
            exc.status_code,
        )
        return _error(status.HTTP_502_BAD_GATEWAY, exc)
