"""Adaptive per-user polling of Spotify listening history.

Each connected client session gets its own cancellable task cycling
IDLE -> POLLING -> INGESTING -> IDLE | BACKED_OFF. Transient failures
(rate limits, Spotify outages, write failures) only stretch the interval;
errors that need the user to act stop the task in HALTED.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from events import SYNC_HALTED, EventBus
from ingest.spotify_sync import HistorySynchronizer, SyncResult
from integrations.spotify.exceptions import RateLimitedError, SpotifyError
from models.base import utcnow

logger = logging.getLogger(__name__)


class PollState(str, Enum):
    """Where a polling session currently is."""

    IDLE = "idle"
    POLLING = "polling"
    INGESTING = "ingesting"
    BACKED_OFF = "backed_off"
    HALTED = "halted"
    STOPPED = "stopped"


@dataclass
class PollingPolicy:
    """Decides how long to wait before the next poll.

    The base interval depends on the activity hint (foreground vs
    background client). Every consecutive failure doubles it up to
    ``max_interval``; a rate-limit hint is a floor, never shortened.
    """

    active_interval: float = 120.0
    background_interval: float = 900.0
    max_interval: float = 3600.0
    max_backoff_level: int = 5

    @classmethod
    def from_settings(cls, settings) -> "PollingPolicy":
        return cls(
            active_interval=settings.poll_active_interval_seconds,
            background_interval=settings.poll_background_interval_seconds,
            max_interval=settings.poll_max_interval_seconds,
            max_backoff_level=settings.poll_max_backoff_level,
        )

    def next_delay(
        self,
        active: bool,
        backoff_level: int = 0,
        retry_after: Optional[float] = None,
    ) -> float:
        base = self.active_interval if active else self.background_interval
        level = min(max(backoff_level, 0), self.max_backoff_level)
        delay = base
        if level:
            delay = min(base * (2**level), max(self.max_interval, base))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


class PollingSession:
    """Background poller for one user while their client is open."""

    def __init__(
        self,
        user_id: str,
        synchronizer: HistorySynchronizer,
        policy: PollingPolicy,
        active: bool = True,
        events: Optional[EventBus] = None,
    ) -> None:
        self.user_id = user_id
        self.synchronizer = synchronizer
        self.policy = policy
        self.events = events

        self.state = PollState.IDLE
        self.backoff_level = 0
        self.current_delay = 0.0
        self.last_result: Optional[SyncResult] = None
        self.last_error: Optional[Exception] = None
        self.halt_reason: Optional[str] = None

        self._active = active
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._last_finished: Optional[float] = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, poll_immediately: bool = True) -> None:
        """Spawn the polling task; no-op if it is already running."""
        if self.running:
            return
        self.state = PollState.IDLE
        self.halt_reason = None
        self._task = asyncio.create_task(
            self._run(poll_immediately), name=f"history-poll-{self.user_id}"
        )
        logger.info("Started history polling for user %s (active=%s)", self.user_id, self._active)

    async def stop(self) -> None:
        """Cancel the task. An in-flight batch is abandoned and rolled back."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        if self.state != PollState.HALTED:
            self.state = PollState.STOPPED
        logger.info("Stopped history polling for user %s", self.user_id)

    def set_active(self, active: bool) -> None:
        """Update the activity hint; reschedules the pending tick when idle."""
        if active == self._active:
            return
        self._active = active
        if self.state == PollState.IDLE:
            self._wake.set()

    async def wait_until_done(self) -> None:
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def _run(self, poll_immediately: bool) -> None:
        delay = 0.0 if poll_immediately else self.policy.next_delay(self._active)
        self.current_delay = delay
        while True:
            if delay > 0:
                await self._sleep(delay)
            state = await self.poll_once()
            if state == PollState.HALTED:
                return
            delay = self.current_delay

    async def _sleep(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return
            if self.state == PollState.IDLE:
                # activity hint changed: rebase the tick on the new interval
                self.current_delay = self.policy.next_delay(self._active)
                start = self._last_finished if self._last_finished is not None else loop.time()
                deadline = start + self.current_delay

    async def poll_once(self) -> PollState:
        """One fetch+ingest cycle, then pick the next state and delay."""
        user_id = self.user_id
        result = SyncResult(user_id=user_id)
        self.state = PollState.POLLING
        try:
            async with self.synchronizer.user_lock(user_id):
                page = await self.synchronizer.fetch(user_id)
                result.fetched = len(page.items)
                self.state = PollState.INGESTING
                result.ingested = await self.synchronizer.ingest(user_id, page.items)
        except RateLimitedError as e:
            self._back_off(e, retry_after=e.retry_after)
        except SpotifyError as e:
            if e.permanent:
                await self._halt(e)
            else:
                self._back_off(e)
        except Exception as e:
            logger.exception("History poll failed for user %s", user_id)
            self._back_off(e)
        else:
            result.completed_at = utcnow()
            self.last_result = result
            self.last_error = None
            self.backoff_level = 0
            self.current_delay = self.policy.next_delay(self._active)
            self.state = PollState.IDLE
            logger.debug(
                "Polled user %s: %d new of %d, next in %.0fs",
                user_id,
                result.ingested,
                result.fetched,
                self.current_delay,
            )

        self._last_finished = asyncio.get_running_loop().time()
        return self.state

    def _back_off(self, error: Exception, retry_after: Optional[float] = None) -> None:
        self.last_error = error
        self.backoff_level = min(self.backoff_level + 1, self.policy.max_backoff_level)
        self.current_delay = self.policy.next_delay(
            self._active, self.backoff_level, retry_after=retry_after
        )
        self.state = PollState.BACKED_OFF
        logger.warning(
            "Backing off history polling for user %s: level %d, next in %.0fs (%s)",
            self.user_id,
            self.backoff_level,
            self.current_delay,
            error,
        )

    async def _halt(self, error: SpotifyError) -> None:
        self.last_error = error
        self.halt_reason = type(error).__name__
        self.state = PollState.HALTED
        logger.warning(
            "Halting history polling for user %s: %s", self.user_id, error.message
        )
        if self.events:
            await self.events.emit(
                SYNC_HALTED, user_id=self.user_id, reason=self.halt_reason
            )


class PollingManager:
    """Owns the polling sessions of the connected clients, keyed by user id."""

    def __init__(
        self,
        synchronizer: HistorySynchronizer,
        policy: PollingPolicy,
        events: Optional[EventBus] = None,
    ) -> None:
        self.synchronizer = synchronizer
        self.policy = policy
        self.events = events
        self._sessions: dict[str, PollingSession] = {}

    def get(self, user_id: str) -> Optional[PollingSession]:
        return self._sessions.get(user_id)

    def start(self, user_id: str, active: bool = True) -> PollingSession:
        """Start (or keep) polling for the user."""
        session = self._sessions.get(user_id)
        if session is not None and session.running:
            session.set_active(active)
            return session

        session = PollingSession(
            user_id, self.synchronizer, self.policy, active=active, events=self.events
        )
        self._sessions[user_id] = session
        session.start()
        return session

    def set_active(self, user_id: str, active: bool) -> Optional[PollingSession]:
        session = self._sessions.get(user_id)
        if session is not None:
            session.set_active(active)
        return session

    async def stop(self, user_id: str) -> bool:
        """Stop and forget the user's session, halted ones included."""
        session = self._sessions.pop(user_id, None)
        if session is None:
            self.synchronizer.release_user(user_id)
            return False
        await session.stop()
        self.synchronizer.release_user(user_id)
        return True

    async def stop_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(s.stop() for s in sessions))
        for session in sessions:
            self.synchronizer.release_user(session.user_id)
