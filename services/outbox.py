"""Outbox synchronizer: durable write queue drained through a transport.

Operations are persisted before anything else happens, delivered one drain at
a time (single-flight) in priority-then-FIFO order, and moved through
``pending -> in_flight -> deleted | failed``. Transient failures are retried
with capped exponential backoff, conflicts and exhausted operations stay in
the store as ``failed`` until :meth:`OutboxSynchronizer.retry` or
:meth:`OutboxSynchronizer.remove`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from core.settings import LOGGING, OUTBOX, OutboxSettings
from datetime_utils import strictly_after, utc_now
from services.backoff import delay_for
from services.errors import FailureKind, StoreClosedError, classify_failure, describe
from services.network import NetworkObserver
from services.operation import Operation, OperationKind, OperationStatus, drain_order_key
from services.operation_store import OperationStore, SQLiteOperationStore


Transport = Callable[[Operation], Union[None, Awaitable[None]]]
Listener = Callable[[List[Operation]], Union[None, Awaitable[None]]]
ConflictHandler = Callable[[Operation, Any], Union[None, Awaitable[None]]]
ExhaustedHandler = Callable[[Operation, BaseException], Union[None, Awaitable[None]]]
Timer = Callable[[float, Callable[[], None]], Any]

CONFLICT_MESSAGE = "Conflict: the record was changed by another user"


def _ensure_logger() -> logging.Logger:
    logger = logging.getLogger("outbox.sync")
    if LOGGING.enabled and not logger.handlers:
        LOGGING.path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            LOGGING.path,
            maxBytes=LOGGING.max_bytes,
            backupCount=LOGGING.backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(LOGGING.fmt))
        logger.addHandler(handler)
    logger.setLevel(LOGGING.level)
    return logger


async def _maybe_await(result) -> None:
    if inspect.isawaitable(result):
        await result


class OutboxSynchronizer:
    def __init__(
        self,
        store: OperationStore,
        network: Optional[NetworkObserver] = None,
        transport: Optional[Transport] = None,
        *,
        settings: Optional[OutboxSettings] = None,
        on_exhausted: Optional[ExhaustedHandler] = None,
        on_conflict: Optional[ConflictHandler] = None,
        timer: Optional[Timer] = None,
    ) -> None:
        self.store = store
        self.network = network or NetworkObserver()
        self._owns_network = network is None
        self.transport = transport
        self.settings = settings or OUTBOX
        self.on_exhausted = on_exhausted
        self.on_conflict = on_conflict
        self.logger = _ensure_logger()

        self._timer = timer
        self._listeners: List[Listener] = []
        self._processing = False
        self._drain_task: Optional[asyncio.Task] = None
        self._timers: Set[Any] = set()
        self._unsubscribers: List[Callable[[], None]] = []
        self._started = False
        self._stopped = False
        self._last_created_at = None

    async def __aenter__(self) -> "OutboxSynchronizer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        """Recover interrupted deliveries, wire triggers and kick off a drain."""

        self._check_open()
        if self._started:
            return
        self._started = True
        recovered = self._recover_in_flight()
        self._unsubscribers.append(self.network.on_online(self._on_online))
        self._unsubscribers.append(
            self.network.on_tick(self.settings.tick_interval_ms, self._on_tick)
        )
        if recovered:
            await self._notify()
        self._trigger_drain()

    def stop(self) -> None:
        """Detach triggers and release the store.

        A transport call already running is not interrupted; its outcome is
        dropped because the store is gone, and the record is picked up again
        as pending by the next :meth:`start`.
        """

        if self._stopped:
            return
        self._stopped = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        self._listeners.clear()
        if self._owns_network:
            self.network.stop()
        self.store.close()
        self.logger.info("Outbox stopped")

    @property
    def stopped(self) -> bool:
        return self._stopped

    def _check_open(self) -> None:
        if self._stopped:
            raise StoreClosedError("Outbox synchronizer is stopped")

    def _recover_in_flight(self) -> int:
        stale = self.store.list_by_status(OperationStatus.IN_FLIGHT)
        for op in stale:
            op.status = OperationStatus.PENDING
            self.store.put(op)
        if stale:
            self.logger.info("Recovered %d interrupted operations", len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Public API
    async def add(
        self,
        kind: OperationKind,
        entity_type: str,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        concurrency_token: Optional[str] = None,
        priority: int = 0,
    ) -> Operation:
        self._check_open()
        self._last_created_at = strictly_after(self._last_created_at)
        op = Operation(
            kind=OperationKind(kind),
            entity_type=entity_type,
            entity_id=entity_id,
            payload=dict(payload or {}),
            concurrency_token=concurrency_token,
            priority=priority,
            max_attempts=self.settings.max_attempts,
            created_at=self._last_created_at,
        )
        self.store.put(op)
        self.logger.debug("Queued %s %s/%s as %s", op.kind.value, entity_type, op.entity_id, op.id)
        await self._notify()
        self._trigger_drain()
        return op.clone()

    async def retry(self, op_id: str) -> Optional[Operation]:
        self._check_open()
        op = self.store.get(op_id)
        if op is None:
            return None
        if op.status is OperationStatus.IN_FLIGHT:
            self.logger.debug("Retry of %s ignored: delivery in progress", op_id)
            return op.clone()
        op.status = OperationStatus.PENDING
        op.attempt = 0
        op.last_error = None
        self.store.put(op)
        self.logger.info("Operation %s reset for retry", op_id)
        await self._notify()
        self._trigger_drain()
        return op.clone()

    async def remove(self, op_id: str) -> None:
        self._check_open()
        self.store.delete(op_id)
        await self._notify()

    async def sync(self) -> None:
        """Run a drain pass now, or wait for the one already running."""

        self._check_open()
        await asyncio.shield(self._ensure_drain())

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def get(self, op_id: str) -> Optional[Operation]:
        return self.store.get(op_id)

    def get_pending(self) -> List[Operation]:
        return self.store.list_by_status(OperationStatus.PENDING)

    def get_failed(self) -> List[Operation]:
        return self.store.list_by_status(OperationStatus.FAILED)

    def list_by_status(self, status: OperationStatus) -> List[Operation]:
        return self.store.list_by_status(OperationStatus(status))

    def list_all(self) -> List[Operation]:
        return self.store.list_all()

    def list_by_entity(self, entity_type: str, entity_id: Optional[str] = None) -> List[Operation]:
        return self.store.list_by_entity(entity_type, entity_id)

    def status(self) -> dict:
        counts = self.store.count_by_status()
        return {
            "pending": counts[OperationStatus.PENDING],
            "in_flight": counts[OperationStatus.IN_FLIGHT],
            "failed": counts[OperationStatus.FAILED],
            "processing": self._processing,
            "online": self.network.is_online(),
        }

    # ------------------------------------------------------------------
    # Drain scheduling
    def _on_online(self) -> None:
        self._trigger_drain()

    def _on_tick(self) -> None:
        if self.network.is_online():
            self._trigger_drain()

    def _trigger_drain(self) -> Optional[asyncio.Task]:
        if self._stopped:
            return None
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug("No running event loop; drain deferred to next trigger")
            return None
        return self._ensure_drain()

    def _ensure_drain(self) -> asyncio.Task:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._process_queue())
            self._drain_task.add_done_callback(self._drain_done)
        return self._drain_task

    def _drain_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Drain aborted: %s", exc)

    def _schedule_retry(self, delay: float) -> None:
        if self._stopped:
            return

        def _fire() -> None:
            self._timers.discard(handle)
            self._trigger_drain()

        if self._timer is not None:
            handle = self._timer(delay, _fire)
        else:
            handle = asyncio.get_running_loop().call_later(delay, _fire)
        if handle is not None:
            self._timers.add(handle)

    # ------------------------------------------------------------------
    # Drain
    async def _process_queue(self) -> None:
        if self._processing or not self.network.is_online() or self.transport is None:
            return
        self._processing = True
        try:
            pending = sorted(
                self.store.list_by_status(OperationStatus.PENDING), key=drain_order_key
            )
            if self.settings.partition_workers > 1:
                await self._drain_partitioned(pending)
            else:
                for op in pending:
                    if self._stopped:
                        break
                    await self._process_operation(op)
        finally:
            self._processing = False

    async def _drain_partitioned(self, pending: List[Operation]) -> None:
        partitions: Dict[tuple, List[Operation]] = {}
        for op in pending:
            partitions.setdefault((op.entity_type, op.entity_id), []).append(op)
        gate = asyncio.Semaphore(self.settings.partition_workers)

        async def _run(ops: List[Operation]) -> None:
            async with gate:
                for op in ops:
                    if self._stopped:
                        return
                    await self._process_operation(op)

        # Every partition settles before an error leaves the drain.
        results = await asyncio.gather(
            *(_run(ops) for ops in partitions.values()), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _process_operation(self, queued: Operation) -> None:
        op = self.store.get(queued.id)
        if op is None or op.status is not OperationStatus.PENDING:
            # removed or retried while the batch was waiting
            return

        op.status = OperationStatus.IN_FLIGHT
        op.last_attempt_at = utc_now()
        self.store.put(op)
        await self._notify()

        try:
            await _maybe_await(self.transport(op.clone()))
        except Exception as exc:
            if self._detached(op):
                return
            await self._handle_failure(op, exc)
            return

        if self._detached(op):
            return
        self.store.delete(op.id)
        self.logger.info("Delivered %s %s/%s (%s)", op.kind.value, op.entity_type, op.entity_id, op.id)
        await self._notify()

    def _detached(self, op: Operation) -> bool:
        if self.store.closed:
            self.logger.warning("Outcome of %s dropped: store already released", op.id)
            return True
        return False

    async def _handle_failure(self, op: Operation, exc: Exception) -> None:
        kind = classify_failure(exc)
        message = describe(exc)
        op.attempt = min(op.attempt + 1, op.max_attempts)

        if kind is FailureKind.CONFLICT:
            op.status = OperationStatus.FAILED
            op.last_error = CONFLICT_MESSAGE
            self.store.put(op)
            self.logger.warning("Conflict on %s/%s (%s): %s", op.entity_type, op.entity_id, op.id, message)
            await self._notify()
            await self._invoke(self.on_conflict, op.clone(), getattr(exc, "server_state", None))
            return

        if kind is FailureKind.FATAL or op.exhausted:
            op.status = OperationStatus.FAILED
            op.last_error = message
            self.store.put(op)
            self.logger.error(
                "Operation %s failed after %d/%d attempts (%s): %s",
                op.id,
                op.attempt,
                op.max_attempts,
                kind.value,
                message,
            )
            await self._notify()
            await self._invoke(self.on_exhausted, op.clone(), exc)
            return

        op.status = OperationStatus.PENDING
        op.last_error = None
        self.store.put(op)
        delay = delay_for(op.attempt, self.settings)
        self.logger.warning(
            "Operation %s attempt %d/%d failed, retry in %.1fs: %s",
            op.id,
            op.attempt,
            op.max_attempts,
            delay,
            message,
        )
        self._schedule_retry(delay)
        await self._notify()

    # ------------------------------------------------------------------
    # Notifications
    async def _invoke(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            await _maybe_await(callback(*args))
        except Exception:
            self.logger.exception("Outbox callback %r failed", callback)

    async def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.store.list_all()
        for listener in list(self._listeners):
            await self._invoke(listener, [op.clone() for op in snapshot])


def open_outbox(
    transport: Optional[Transport] = None,
    *,
    db_path: Optional[Path] = None,
    network: Optional[NetworkObserver] = None,
    settings: Optional[OutboxSettings] = None,
    on_exhausted: Optional[ExhaustedHandler] = None,
    on_conflict: Optional[ConflictHandler] = None,
) -> OutboxSynchronizer:
    """Build the application's synchronizer over the SQLite store."""

    if settings is None:
        from storage.config import load_settings

        settings = load_settings()
    return OutboxSynchronizer(
        SQLiteOperationStore(path=db_path),
        network,
        transport,
        settings=settings,
        on_exhausted=on_exhausted,
        on_conflict=on_conflict,
    )


__all__ = ["CONFLICT_MESSAGE", "OutboxSynchronizer", "open_outbox"]
