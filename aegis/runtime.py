"""Asynchronous command processing with bounded validation budgets."""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Mapping, Optional, Set

from .crypto import VerificationResult
from .engine import AegisEngine, CommandOutcome
from .envelope import CommandEnvelope
from .scoring import TrustScore
from .state import Failure, VehicleSnapshot

logger = logging.getLogger(__name__)


class AsyncCommandProcessor:
    """Runs each envelope as its own task on top of an :class:`AegisEngine`.

    A single dispatcher verifies envelopes strictly in submission order so
    nonce checks see commands in the order they arrived; feature extraction
    and scoring then proceed concurrently in worker threads. Both stages are
    bounded by ``validation_timeout_s``.
    """

    def __init__(self, engine: AegisEngine, *, timeout: Optional[float] = None) -> None:
        self.engine = engine
        self._timeout = timeout if timeout is not None else engine.settings.validation_timeout_s
        self._signals: Optional[asyncio.Queue[None]] = None
        self._futures: Dict[str, asyncio.Future[CommandOutcome]] = {}
        self._tasks: Set[asyncio.Task[None]] = set()
        self._dispatcher: Optional[asyncio.Task[None]] = None
        self._dwell_handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._dispatcher is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._signals = asyncio.Queue()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="aegis-dispatcher")
        logger.info("AEGIS dispatcher started (validation budget %.2fs)", self._timeout)

    async def stop(self) -> None:
        if self._dispatcher is None:
            return
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._dispatcher.cancel()
        try:
            await self._dispatcher
        except asyncio.CancelledError:
            pass
        self._dispatcher = None
        self._cancel_dwell()
        for future in self._futures.values():
            if not future.done():
                future.cancel()
        self._futures.clear()
        logger.info("AEGIS dispatcher stopped")

    async def __aenter__(self) -> "AsyncCommandProcessor":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def submit(self, raw: Mapping[str, object]) -> "asyncio.Future[CommandOutcome]":
        """Enqueue a raw command; the returned future resolves to its outcome."""

        if self._signals is None or self._loop is None:
            raise RuntimeError("AsyncCommandProcessor is not started")
        envelope = self.engine.submit(raw)
        future: asyncio.Future[CommandOutcome] = self._loop.create_future()
        self._futures[envelope.id] = future
        self._signals.put_nowait(None)
        return future

    async def process(self, raw: Mapping[str, object]) -> CommandOutcome:
        return await self.submit(raw)

    async def drain(self) -> None:
        """Wait until every submitted envelope has a decision."""

        pending = [future for future in self._futures.values() if not future.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _dispatch_loop(self) -> None:
        if self._signals is None:
            raise RuntimeError("AsyncCommandProcessor is not started")
        while True:
            await self._signals.get()
            envelope = self.engine.queue.next_pending()
            if envelope is None:
                continue
            try:
                verification = await self._verify(envelope)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Verification of %s crashed", envelope.id)
                self._fail(envelope, exc)
                continue
            # judge against the vehicle as of this envelope's turn in the order
            snapshot = self.engine.vehicle.snapshot()
            task = asyncio.create_task(self._finish(envelope, verification, snapshot))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _verify(self, envelope: CommandEnvelope) -> VerificationResult:
        self.engine.dispatch(envelope)
        self.engine.begin_validation(envelope)
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.engine.verifier.verify, envelope),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            self.engine.record_timeout(envelope, "verification")
            return VerificationResult.failed(envelope, Failure.VALIDATION_TIMEOUT)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Verifier raised for %s", envelope.id)
            self.engine.record_error(envelope, "verification", exc)
            return VerificationResult.failed(envelope, Failure.VALIDATION_ERROR)
        self.engine.record_verification(envelope, result)
        return result

    async def _finish(
        self,
        envelope: CommandEnvelope,
        verification: VerificationResult,
        vehicle: VehicleSnapshot,
    ) -> None:
        try:
            try:
                features, trust = await asyncio.wait_for(
                    asyncio.to_thread(self.engine.assess, envelope, verification, vehicle),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError:
                self.engine.record_timeout(envelope, "scoring")
                features, trust = None, TrustScore.timed_out()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Scorer raised for %s", envelope.id)
                self.engine.record_error(envelope, "scoring", exc)
                features, trust = None, TrustScore.errored()
            outcome = self.engine.conclude(envelope, verification, features, trust)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Processing of %s failed", envelope.id)
            self._fail(envelope, exc)
            return

        if outcome.decision.rejected:
            self._schedule_dwell()
        future = self._futures.pop(envelope.id, None)
        if future is not None and not future.done():
            future.set_result(outcome)

    def _fail(self, envelope: CommandEnvelope, exc: BaseException) -> None:
        future = self._futures.pop(envelope.id, None)
        if future is not None and not future.done():
            future.set_exception(exc)

    def _schedule_dwell(self) -> None:
        """(Re)arm the recovery event for the machine's current timer generation."""

        machine = self.engine.safe_mode
        remaining = machine.timer.remaining(self.engine.clock.now())
        self._cancel_dwell()
        if remaining is None or self._loop is None:
            return
        generation = machine.timer.generation
        self._dwell_handle = self._loop.call_later(remaining, self._on_dwell_elapsed, generation)

    def _on_dwell_elapsed(self, generation: int) -> None:
        self._dwell_handle = None
        machine = self.engine.safe_mode
        if generation != machine.timer.generation:
            return
        if self.engine.fire_dwell(generation) is None and machine.timer.active:
            # clock and loop disagree slightly; re-arm for the residue
            self._schedule_dwell()

    def _cancel_dwell(self) -> None:
        if self._dwell_handle is not None:
            self._dwell_handle.cancel()
            self._dwell_handle = None


__all__ = ["AsyncCommandProcessor"]
