"""Spotify integration: credentials, API client and typed errors."""

from integrations.spotify.client import SpotifyClient
from integrations.spotify.credentials import CredentialManager, SpotifyTokenEndpoint
from integrations.spotify.exceptions import (
    InsufficientScopeError,
    NoActiveDeviceError,
    NotConnectedError,
    RateLimitedError,
    ReauthRequiredError,
    SpotifyError,
    UpstreamAuthError,
    UpstreamResponseError,
    UpstreamUnavailableError,
)

__all__ = [
    "SpotifyClient",
    "CredentialManager",
    "SpotifyTokenEndpoint",
    "SpotifyError",
    "NotConnectedError",
    "ReauthRequiredError",
    "UpstreamAuthError",
    "InsufficientScopeError",
    "NoActiveDeviceError",
    "RateLimitedError",
    "UpstreamUnavailableError",
    "UpstreamResponseError",
]
