"""Typed failures of the Spotify integration.

``permanent`` errors need the user to act (connect, reconnect, upgrade) and
halt automatic polling. The others are transient and are absorbed by the
polling backoff.
"""

from typing import Optional


class SpotifyError(Exception):
    """Base class for all Spotify integration errors."""

    permanent = False

    def __init__(self, message: str, user_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.user_id = user_id


class NotConnectedError(SpotifyError):
    """No credential on file for the user."""

    permanent = True

    def __init__(self, user_id: Optional[str] = None) -> None:
        super().__init__("Spotify is not connected", user_id)


class ReauthRequiredError(SpotifyError):
    """The refresh token was rejected; the user must redo the OAuth flow."""

    permanent = True

    def __init__(
        self,
        message: str = "Spotify authorization expired, please reconnect",
        user_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, user_id)


class UpstreamAuthError(ReauthRequiredError):
    """An access token was rejected even after one forced refresh."""

    def __init__(self, user_id: Optional[str] = None) -> None:
        super().__init__("Spotify rejected the refreshed access token", user_id)


class InsufficientScopeError(SpotifyError):
    """403: missing scope or the feature needs a paid Spotify tier."""

    permanent = True

    def __init__(self, message: str = "Spotify denied access to this feature", user_id: Optional[str] = None) -> None:
        super().__init__(message, user_id)


class NoActiveDeviceError(SpotifyError):
    """404 on a player endpoint: no device is currently active."""

    def __init__(self, user_id: Optional[str] = None) -> None:
        super().__init__("No active Spotify device found", user_id)


class RateLimitedError(SpotifyError):
    """429: wait ``retry_after`` seconds before calling again."""

    def __init__(self, retry_after: float, user_id: Optional[str] = None) -> None:
        super().__init__(f"Spotify rate limit hit, retry after {retry_after:g}s", user_id)
        self.retry_after = retry_after


class UpstreamUnavailableError(SpotifyError):
    """5xx or network failure after the retry budget was spent."""

    def __init__(self, message: str = "Spotify is unavailable", user_id: Optional[str] = None) -> None:
        super().__init__(message, user_id)


class UpstreamResponseError(SpotifyError):
    """Any other unexpected non-2xx response."""

    def __init__(self, status_code: int, message: str, user_id: Optional[str] = None) -> None:
        super().__init__(message, user_id)
        self.status_code = status_code
