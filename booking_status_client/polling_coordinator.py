import asyncio
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from booking_status_client.callbacks import maybe_await, notify
from booking_status_client.errors import (
    BookingStatusError,
    MalformedStatusError,
    PollingLimitError,
    TransportError,
    UnknownSessionError,
)
from booking_status_client.interval_policy import (
    MIN_INTERVAL_MS,
    compute_interval,
    compute_max_attempts,
)
from booking_status_client.models import (
    BookingStatus,
    PollingConfig,
    PollingItem,
    PollingKey,
    PollingStatusSummary,
    SessionState,
)
from booking_status_client.terminal_states import is_terminal
from loguru import logger

StatusFetcher = Callable[[str], Any]
Sleep = Callable[[float], Awaitable[Any]]


class PollingSession:
    """One running monitor of a single (category, reference) key.

    Fields are only written by the session's own task, apart from ``state``
    which ``stop_polling`` may flip to ``stopped`` from anywhere.
    """

    def __init__(
        self,
        session_id: str,
        key: PollingKey,
        fetcher: StatusFetcher,
        callbacks: dict,
        max_poll_attempts: int,
        interval_override: Optional[int] = None,
        attempts_override: Optional[int] = None,
    ):
        self.id = session_id
        self.key = key
        self.fetcher = fetcher
        self.callbacks = callbacks
        self.max_poll_attempts = max_poll_attempts
        self.interval_override = interval_override
        self.attempts_override = attempts_override
        self.status: Optional[BookingStatus] = None
        self.poll_count = 0
        self.current_interval_ms = 0
        self.state = SessionState.idle
        self.task: Optional[asyncio.Task] = None

    @property
    def is_live(self) -> bool:
        return self.state is SessionState.active

    def snapshot(self) -> PollingItem:
        return PollingItem(
            id=self.id,
            category=self.key.category,
            reference=self.key.reference,
            status=self.status,
            poll_count=self.poll_count,
            max_poll_attempts=self.max_poll_attempts,
            current_interval_ms=self.current_interval_ms,
            state=self.state,
        )


class PollingCoordinator:
    def __init__(
        self,
        config: Optional[PollingConfig] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config or PollingConfig()
        self.logger = logger
        self._sleep = sleep
        self._sessions: dict[str, PollingSession] = {}
        self._active_keys: dict[PollingKey, str] = {}
        self._finished: "OrderedDict[str, PollingSession]" = OrderedDict()

    async def __aenter__(self) -> "PollingCoordinator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        tasks = [s.task for s in self._sessions.values() if s.task is not None]
        self.stop_all_polling()
        if tasks:
            await asyncio.wait(tasks)

    @property
    def active_count(self) -> int:
        return len(self._active_keys)

    def _next_interval_ms(self, session: PollingSession) -> int:
        if session.interval_override is not None:
            return max(session.interval_override, MIN_INTERVAL_MS)
        if not self.config.enable_intelligent_polling:
            return max(self.config.default_poll_interval_ms, MIN_INTERVAL_MS)
        last_status = session.status.status if session.status is not None else None
        return compute_interval(session.key.category, last_status)

    def start_polling(
        self,
        key: Union[PollingKey, tuple],
        status_fetcher: StatusFetcher,
        *,
        on_status_update: Optional[Callable[[BookingStatus], Any]] = None,
        on_error: Optional[Callable[[BookingStatusError], Any]] = None,
        on_complete: Optional[Callable[[BookingStatus], Any]] = None,
        on_timeout: Optional[Callable[[Optional[BookingStatus]], Any]] = None,
        poll_interval_ms: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        """Begin monitoring a resource and return the new session id.

        An active session for the same key is stopped first. The first status
        fetch is scheduled right away on the running event loop.
        """
        loop = asyncio.get_running_loop()
        key = PollingKey.of(*key)
        if max_attempts is not None and max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        if poll_interval_ms is not None and poll_interval_ms <= 0:
            raise ValueError(f"poll_interval_ms must be positive, got {poll_interval_ms}")

        existing = self._active_keys.get(key)
        if existing is not None:
            self.logger.info(f"Superseding polling session {existing}")
            self.stop_polling(existing)

        if self.active_count >= self.config.max_concurrent_polls:
            raise PollingLimitError(
                f"Maximum concurrent polling limit reached ({self.config.max_concurrent_polls})"
            )

        session = PollingSession(
            session_id=f"{key.category.value}-{key.reference}-{uuid.uuid4().hex[:8]}",
            key=key,
            fetcher=status_fetcher,
            callbacks={
                "on_status_update": on_status_update,
                "on_error": on_error,
                "on_complete": on_complete,
                "on_timeout": on_timeout,
            },
            max_poll_attempts=(
                max_attempts
                if max_attempts is not None
                else compute_max_attempts(key.category)
            ),
            interval_override=poll_interval_ms,
            attempts_override=max_attempts,
        )
        session.current_interval_ms = self._next_interval_ms(session)
        session.state = SessionState.active

        self._sessions[session.id] = session
        self._active_keys[key] = session.id
        session.task = loop.create_task(self._run(session), name=f"poll-{session.id}")

        self.logger.info(
            f"Started polling {key.category.value} {key.reference} "
            f"(session={session.id}, max_attempts={session.max_poll_attempts})"
        )
        return session.id

    def stop_polling(self, session_id: str) -> None:
        """Cancel a session; nothing fires for it afterwards, even mid-fetch"""
        session = self._sessions.get(session_id)
        if session is None or not session.is_live:
            return

        session.state = SessionState.stopped
        if session.task is not None and not session.task.done():
            session.task.cancel()
        self._release(session)
        self.logger.info(f"Stopped polling session {session_id}")

    def restart_polling(self, target: Union[str, PollingKey, tuple]) -> str:
        """Stop a session (by id or key) and start it again from attempt zero"""
        session = self._find(target)
        if session is None:
            raise UnknownSessionError(f"No polling session for {target!r}")

        self.stop_polling(session.id)
        return self.start_polling(
            session.key,
            session.fetcher,
            poll_interval_ms=session.interval_override,
            max_attempts=session.attempts_override,
            **session.callbacks,
        )

    def stop_all_polling(self) -> None:
        for session_id in list(self._active_keys.values()):
            self.stop_polling(session_id)

    def get_polling_item(self, session_id: str) -> Optional[PollingItem]:
        session = self._sessions.get(session_id) or self._finished.get(session_id)
        return session.snapshot() if session is not None else None

    def is_polling(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.is_live

    def get_polling_status(self) -> PollingStatusSummary:
        return PollingStatusSummary(
            active_polls=self.active_count,
            max_concurrent_polls=self.config.max_concurrent_polls,
            polling_items=[
                self._sessions[session_id].snapshot()
                for session_id in self._active_keys.values()
            ],
        )

    def update_config(self, **changes: Any) -> PollingConfig:
        self.config = PollingConfig(**{**self.config.model_dump(), **changes})
        return self.config

    async def wait(self, session_id: str) -> PollingItem:
        """Wait for a session's task to finish and return its final snapshot"""
        session = self._sessions.get(session_id) or self._finished.get(session_id)
        if session is None:
            raise UnknownSessionError(f"No polling session {session_id!r}")
        if session.task is not None and not session.task.done():
            await asyncio.wait({session.task})
        return session.snapshot()

    @asynccontextmanager
    async def polling(
        self,
        key: Union[PollingKey, tuple],
        status_fetcher: StatusFetcher,
        **options: Any,
    ) -> AsyncIterator[str]:
        """Scope a session to a block; it is stopped when the block exits"""
        session_id = self.start_polling(key, status_fetcher, **options)
        try:
            yield session_id
        finally:
            self.stop_polling(session_id)

    def _find(self, target: Union[str, PollingKey, tuple]) -> Optional[PollingSession]:
        if isinstance(target, str):
            return self._sessions.get(target) or self._finished.get(target)

        key = PollingKey.of(*target)
        session_id = self._active_keys.get(key)
        if session_id is not None:
            return self._sessions[session_id]
        for session in reversed(self._finished.values()):
            if session.key == key:
                return session
        return None

    def _release(self, session: PollingSession) -> None:
        if self._active_keys.get(session.key) == session.id:
            del self._active_keys[session.key]
        if self._sessions.pop(session.id, None) is None:
            return

        self._finished[session.id] = session
        while len(self._finished) > self.config.max_finished_sessions:
            self._finished.popitem(last=False)

    async def _run(self, session: PollingSession) -> None:
        try:
            while session.is_live:
                await self._tick(session)
                if not session.is_live:
                    break

                self.logger.debug(
                    f"{session.key.category.value} {session.key.reference} still pending, "
                    f"waiting {session.current_interval_ms / 1000:.1f}s before next poll"
                )
                await self._sleep(session.current_interval_ms / 1000)
        except Exception as exc:
            was_live = session.is_live
            session.state = SessionState.errored
            self.logger.exception(f"Polling session {session.id} crashed")
            if was_live:
                error = BookingStatusError(
                    f"Polling {session.key.reference} stopped unexpectedly: {exc}"
                )
                error.__cause__ = exc
                await notify(session.callbacks["on_error"], error)
        finally:
            if session.is_live:
                session.state = SessionState.stopped
            self._release(session)

    async def _tick(self, session: PollingSession) -> None:
        """Fetch once, report, then either finish the session or set the next interval"""
        key = session.key
        callbacks = session.callbacks
        status: Optional[BookingStatus] = None
        error: Optional[TransportError] = None

        try:
            payload = await maybe_await(session.fetcher(key.reference))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = TransportError.wrap(exc)
        else:
            try:
                status = BookingStatus.from_payload(payload)
            except ValueError as exc:
                error = MalformedStatusError(str(exc))
                error.__cause__ = exc

        if not session.is_live:
            self.logger.debug(f"Discarding late result for stopped session {session.id}")
            return

        session.poll_count += 1

        if error is not None:
            self.logger.warning(
                f"Polling error for {key.category.value} {key.reference}: {error}"
            )
            await notify(callbacks["on_error"], error)
        else:
            session.status = status
            self.logger.debug(
                f"{key.category.value} {key.reference} status is {status.status!r} "
                f"(poll {session.poll_count}/{session.max_poll_attempts})"
            )
            await notify(callbacks["on_status_update"], status)

            if session.is_live and is_terminal(status.status):
                session.state = SessionState.completed
                self.logger.info(
                    f"{key.category.value} {key.reference} reached final status {status.status!r}"
                )
                await notify(callbacks["on_complete"], status)
                return

        if not session.is_live:
            return

        if session.poll_count >= session.max_poll_attempts:
            session.state = SessionState.errored
            self.logger.warning(
                f"Gave up polling {key.category.value} {key.reference} after "
                f"{session.poll_count} attempts without a final status"
            )
            await notify(callbacks["on_timeout"], session.status)
            return

        session.current_interval_ms = self._next_interval_ms(session)
