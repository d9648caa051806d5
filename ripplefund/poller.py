"""
Status polling for XUMM payloads.

A payload moves through ``IDLE -> POLLING`` and then into exactly one of the
terminal states ``SIGNED``, ``CANCELLED``, ``EXPIRED``, ``TIMED_OUT`` or
``ABANDONED``. Ticks for one identifier are strictly sequential: the next
sleep starts only after the previous status read has been processed.

Before every tick the run checks that it is still the current one, both by
generation number and by the identifier held in the resumption store. A run
that lost either check stops silently. Terminal handlers are guarded by a
per-identifier latch so that at most one of them fires, even when a tick
resolves while an explicit cancel is being processed. The latch is dropped
again once the run that took it has finished.
"""
from typing import Awaitable, Callable, Optional, Protocol, Set
import asyncio
import logging

from .config import Settings
from .models import PayloadOutcome, PayloadStatus, PollerState, TERMINAL_OUTCOMES
from .resumption import ResumptionStore
from .xumm_service import XummService


logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class TerminalHandler(Protocol):
    async def on_signed(self, identifier: str, status: PayloadStatus) -> None: ...

    async def on_cancelled(self, identifier: str) -> None: ...

    async def on_expired(self, identifier: str) -> None: ...

    async def on_timeout(self, identifier: str, attempts: int) -> None: ...

    async def on_error(self, identifier: str, error: Exception) -> None: ...


class PollRun:
    """Live view of one polling loop, plus the handle used to stop it."""

    def __init__(self, identifier: str, generation: int) -> None:
        self.identifier = identifier
        self.generation = generation
        self.state = PollerState.IDLE
        self.attempts = 0
        self.task: Optional[asyncio.Task] = None

    @property
    def finished(self) -> bool:
        return self.state not in {PollerState.IDLE, PollerState.POLLING}

    def stop(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()


class StatusPoller:
    def __init__(
        self,
        service: XummService,
        store: ResumptionStore,
        settings: Settings,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.service = service
        self.store = store
        self.settings = settings
        self._sleep = sleep
        self.generation = 0
        self._claimed: Set[str] = set()

    def advance(self) -> int:
        """Start a new generation; runs from older generations become stale."""
        self.generation += 1
        return self.generation

    def claim(self, identifier: str) -> bool:
        """Take the single terminal slot for ``identifier``.

        Returns False when a terminal handler, or a cancel, already took it.
        """
        if identifier in self._claimed:
            return False
        self._claimed.add(identifier)
        return True

    def release(self, identifier: str) -> None:
        """Drop the claim once nothing can poll ``identifier`` any more."""
        self._claimed.discard(identifier)

    def is_claimed(self, identifier: str) -> bool:
        return identifier in self._claimed

    def start(
        self, identifier: str, handler: TerminalHandler, generation: Optional[int] = None
    ) -> PollRun:
        run = PollRun(identifier, self.generation if generation is None else generation)
        run.task = asyncio.create_task(self.run(run, handler))
        return run

    async def _is_current(self, run: PollRun) -> bool:
        if run.generation != self.generation:
            return False
        return await self.store.get() == run.identifier

    def _abandon(self, run: PollRun) -> PollerState:
        run.state = PollerState.ABANDONED
        logger.info("Polling for payload %s abandoned", run.identifier)
        return run.state

    async def run(self, run: PollRun, handler: TerminalHandler) -> PollerState:
        run.state = PollerState.POLLING
        delay = self.settings.poll_initial_delay_seconds
        owner = False
        try:
            while True:
                await self._sleep(delay)
                delay = self.settings.poll_interval_seconds

                if not await self._is_current(run):
                    return self._abandon(run)

                if run.attempts >= self.settings.poll_max_attempts:
                    if not self.claim(run.identifier):
                        return self._abandon(run)
                    owner = True
                    run.state = PollerState.TIMED_OUT
                    logger.info(
                        "Payload %s timed out after %s attempts", run.identifier, run.attempts
                    )
                    await self._dispatch(handler, run, None)
                    return run.state

                status = await self._read_status(run)
                run.attempts += 1

                if status.outcome == PayloadOutcome.TRANSPORT_ERROR:
                    logger.debug(
                        "Status check %s for payload %s failed, retrying",
                        run.attempts,
                        run.identifier,
                    )
                    continue
                if not status.is_terminal:
                    continue

                if not self.claim(run.identifier):
                    return self._abandon(run)
                owner = True
                run.state = TERMINAL_OUTCOMES[status.outcome]
                logger.info("Payload %s resolved as %s", run.identifier, run.state.value)
                await self._dispatch(handler, run, status)
                return run.state
        except asyncio.CancelledError:
            if not run.finished:
                self._abandon(run)
            raise
        finally:
            if owner:
                self.release(run.identifier)

    async def _read_status(self, run: PollRun) -> PayloadStatus:
        try:
            return await self.service.get_status(run.identifier)
        except Exception:
            logger.exception("Status check for payload %s raised", run.identifier)
            return PayloadStatus(outcome=PayloadOutcome.TRANSPORT_ERROR)

    async def _dispatch(
        self, handler: TerminalHandler, run: PollRun, status: Optional[PayloadStatus]
    ) -> None:
        try:
            if status is None:
                await handler.on_timeout(run.identifier, run.attempts)
            elif status.outcome == PayloadOutcome.SIGNED:
                await handler.on_signed(run.identifier, status)
            elif status.outcome == PayloadOutcome.CANCELLED:
                await handler.on_cancelled(run.identifier)
            else:
                await handler.on_expired(run.identifier)
        except Exception as exc:
            logger.exception("Terminal handler for payload %s failed", run.identifier)
            await handler.on_error(run.identifier, exc)
