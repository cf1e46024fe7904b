import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Union
from streamrelay.connectors.base import Sink, StreamSource
from streamrelay.errors import ErrorKind, RelayError
from streamrelay.models import NormalizedEvent, SendResult, StreamRecord
from streamrelay.utils.logging import get_logger
from streamrelay.utils.metrics import RelayMetrics

if TYPE_CHECKING:
    from streamrelay.settings import Settings

logger = get_logger("Relay")


class RelayState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class Relay:
    """
    Moves records from a stream consumer group to a sink with at-least-once delivery.

    Features:
    - Batch consumption (fetch -> send_batch -> ack of confirmed records only)
    - Retry with delay on sink or transport failures, never exiting the loop
    - Periodic reclamation of entries left idle by other consumers
    - Dead-lettering of records the sink can never deliver
    - Idempotent, concurrency-safe graceful shutdown

    Attributes:
        source (StreamSource): Where records are read from.
        sink (Sink): Where events are delivered.
        failed (asyncio.Event): Set if the processing loop dies unexpectedly.
        fatal_error (BaseException): The error that killed the processing loop.
    """
    def __init__(self,
                 source: StreamSource,
                 sink: Sink,
                 stream_key: str,
                 group_name: str,
                 consumer_name: str,
                 batch_size: int = 50,
                 poll_timeout_ms: int = 5000,
                 retry_delay_ms: int = 5000,
                 shutdown_grace_period_ms: int = 1000,
                 pending_claim_interval_ms: int = 30_000,
                 pending_min_idle_ms: int = 60_000,
                 dead_letter_enabled: bool = True):
        self.source = source
        self.sink = sink
        self.stream_key = stream_key
        self.group_name = group_name
        self.consumer_name = consumer_name
        self.batch_size = batch_size
        self.poll_timeout_ms = poll_timeout_ms
        self.retry_delay_ms = retry_delay_ms
        self.shutdown_grace_period_ms = shutdown_grace_period_ms
        self.pending_claim_interval_ms = pending_claim_interval_ms
        self.pending_min_idle_ms = pending_min_idle_ms
        self.dead_letter_enabled = dead_letter_enabled

        self.metrics = RelayMetrics(stream_key, group_name, consumer_name)
        self.failed = asyncio.Event()
        self.fatal_error: Optional[BaseException] = None

        self._state = RelayState.STOPPED
        self._state_lock = asyncio.Lock()
        self._stop_requested = asyncio.Event()
        self._stopped = asyncio.Event()
        self._stopped.set()
        self._loop_task: Optional[asyncio.Task] = None
        self._reclaim_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: "Settings", source: StreamSource, sink: Sink) -> "Relay":
        return cls(
            source=source,
            sink=sink,
            stream_key=settings.STREAM_KEY,
            group_name=settings.CONSUMER_GROUP,
            consumer_name=settings.CONSUMER_NAME,
            batch_size=settings.BATCH_SIZE,
            poll_timeout_ms=settings.POLL_TIMEOUT_MS,
            retry_delay_ms=settings.RETRY_DELAY_MS,
            shutdown_grace_period_ms=settings.SHUTDOWN_GRACE_PERIOD_MS,
            pending_claim_interval_ms=settings.PENDING_CLAIM_INTERVAL_MS,
            pending_min_idle_ms=settings.PENDING_MIN_IDLE_MS,
            dead_letter_enabled=settings.DEAD_LETTER_ENABLED,
        )

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is RelayState.RUNNING

    async def __aenter__(self) -> "Relay":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def start(self) -> None:
        """
        Connect source and sink, create the consumer group and launch the
        processing and reclamation tasks.

        Raises:
            RelayError: CONNECTION if either side is unreachable or the group
                cannot be created. The relay is left STOPPED.
        """
        async with self._state_lock:
            if self._state is not RelayState.STOPPED:
                logger.warning(f"Relay is {self._state.value}, ignoring duplicate start call")
                return
            self._state = RelayState.STARTING
            self._stop_requested.clear()
            self._stopped.clear()
            logger.info("Starting Stream Relay...")

            try:
                await self.source.connect()
                await self.sink.connect()
                await self.source.initialize_group(self.stream_key, self.group_name)
            except Exception as e:
                logger.critical(f"Failed to start relay: {e}")
                await self._disconnect_all()
                self._state = RelayState.STOPPED
                self._stopped.set()
                if isinstance(e, RelayError) and e.kind is ErrorKind.CONNECTION:
                    raise
                raise RelayError(ErrorKind.CONNECTION, "Failed to start relay", cause=e) from e

            self._state = RelayState.RUNNING
            self.metrics.set_running(True)
            self._reclaim_task = asyncio.create_task(self._reclaim_loop())
            self._loop_task = asyncio.create_task(self._processing_loop())
            self._loop_task.add_done_callback(self._on_loop_done)

        logger.info(
            "Starting message processing loop.",
            extra={"stream_key": self.stream_key, "group": self.group_name, "consumer": self.consumer_name},
        )

    async def stop(self) -> None:
        """
        Stop consuming, let the in-flight batch finish and disconnect.

        Safe to call repeatedly and concurrently: later callers wait for the
        first shutdown to complete.
        """
        async with self._state_lock:
            if self._state is RelayState.STOPPED:
                return
            owner = self._state is not RelayState.STOPPING
            if owner:
                self._state = RelayState.STOPPING
                self._stop_requested.set()

        if not owner:
            await self._stopped.wait()
            return

        logger.info("Stopping Stream Relay...")
        await self._cancel(self._reclaim_task)
        self._reclaim_task = None

        loop_task, self._loop_task = self._loop_task, None
        if loop_task is not None and not loop_task.done():
            grace = (self.poll_timeout_ms + self.shutdown_grace_period_ms) / 1000.0
            done, _ = await asyncio.wait({loop_task}, timeout=grace)
            if not done:
                logger.warning("Shutdown grace period elapsed, cancelling in-flight batch.")
                await self._cancel(loop_task)

        await self._disconnect_all()
        self.metrics.set_running(False)

        async with self._state_lock:
            self._state = RelayState.STOPPED
        self._stopped.set()
        logger.info("Stream Relay stopped successfully.")

    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "stream_key": self.stream_key,
            "group": self.group_name,
            "consumer": self.consumer_name,
            "fatal_error": str(self.fatal_error) if self.fatal_error else None,
            "metrics": self.metrics.snapshot(),
        }

    async def _processing_loop(self) -> None:
        while self._state is RelayState.RUNNING:
            try:
                records = await self.source.fetch(
                    self.stream_key, self.group_name, self.consumer_name,
                    self.batch_size, self.poll_timeout_ms,
                )
                if not records:
                    # Timeout is the normal idle condition; poll again straight away
                    await asyncio.sleep(0)
                    continue

                await self.process_batch(records)

            except asyncio.CancelledError:
                logger.info("Processing loop cancelled.")
                raise
            except Exception as e:
                logger.error(
                    f"An error occurred in the processing loop. Retrying after delay...: {e}",
                    exc_info=True,
                )
                await self._sleep(self.retry_delay_ms)

    async def process_batch(self, records: Sequence[StreamRecord]) -> int:
        """
        Deliver one fetched batch and acknowledge what the sink confirmed.

        Returns the number of records settled (acknowledged or dead-lettered).
        """
        self.metrics.inc(self.metrics.records_fetched, len(records))
        logger.debug(f"Fetched {len(records)} messages from stream.")
        events = [NormalizedEvent.from_record(r) for r in records]

        try:
            result = self._coerce_result(await self.sink.send_batch(events), events)
        except Exception as e:
            self.metrics.inc(self.metrics.send_failures)
            if isinstance(e, RelayError) and e.kind is ErrorKind.PARTIAL_DELIVERY and e.result is not None:
                logger.error(
                    f"Sink failed after partial delivery. Delivered messages will be acknowledged: {e}",
                    extra={"message_count": len(records), "delivered": e.result.sent_count},
                )
                settled = await self._settle(records, e.result)
            else:
                logger.error(
                    f"Failed to send batch to sink. Messages will not be acknowledged and will be retried: {e}",
                    extra={"message_count": len(records)},
                )
                settled = 0
            await self._sleep(self.retry_delay_ms)
            return settled

        settled = await self._settle(records, result)
        fetched_ids = {r.id for r in records}
        if not settled and not fetched_ids.intersection(result.rejected):
            self.metrics.inc(self.metrics.send_failures)
            logger.warning(
                "Sink delivered none of the batch. Nothing will be acknowledged.",
                extra={"message_count": len(records)},
            )
            await self._sleep(self.retry_delay_ms)
        return settled

    async def _settle(self, records: Sequence[StreamRecord], result: SendResult) -> int:
        delivered = set(result.delivered)
        rejected_ids = set(result.rejected) - delivered
        # Ack in fetch order regardless of the order the sink reported
        ack_ids = [r.id for r in records if r.id in delivered]
        rejected = [r for r in records if r.id in rejected_ids]

        ack_count = 0
        if ack_ids:
            ack_count = await self.source.ack(self.stream_key, self.group_name, ack_ids)
            self.metrics.inc(self.metrics.records_delivered, len(ack_ids))
            self.metrics.inc(self.metrics.records_acked, ack_count)

        dead_lettered = 0
        if rejected:
            self.metrics.inc(self.metrics.records_rejected, len(rejected))
            if self.dead_letter_enabled:
                dead_lettered = await self.source.dead_letter(
                    self.stream_key, self.group_name, rejected, reason=ErrorKind.OVERSIZED.value
                )
            else:
                # Left pending for another consumer to reclaim
                self.source.park(self.stream_key, self.group_name, [r.id for r in rejected])
                logger.warning(
                    f"{len(rejected)} messages can never be delivered and will stay pending.",
                    extra={"ids": [r.id for r in rejected]},
                )

        if ack_ids:
            logger.info(
                "Successfully processed a batch of messages.",
                extra={"sent_count": len(ack_ids), "ack_count": ack_count},
            )

        settled = len(ack_ids) + dead_lettered
        remaining = len(records) - settled
        if settled and remaining:
            logger.warning(
                f"Only {settled} of {len(records)} messages were settled. "
                f"{remaining} will be retried from the pending list.",
            )
        return settled

    @staticmethod
    def _coerce_result(result: Union[SendResult, int], events: List[NormalizedEvent]) -> SendResult:
        if isinstance(result, SendResult):
            return result
        if isinstance(result, int) and not isinstance(result, bool):
            # Sinks reporting a bare count confirm the leading events in input order
            return SendResult.prefix(events, result)
        raise TypeError(f"Sink returned unsupported result type {type(result).__name__}")

    async def _reclaim_loop(self) -> None:
        while not self._stop_requested.is_set():
            if await self._sleep(self.pending_claim_interval_ms):
                break
            try:
                claimed = await self.source.reclaim_idle(
                    self.stream_key, self.group_name, self.consumer_name, self.pending_min_idle_ms
                )
                self.metrics.inc(self.metrics.reclaimed, claimed)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Error claiming pending messages: {e}",
                    extra={"error_kind": ErrorKind.RECLAMATION.value},
                )

    async def _sleep(self, delay_ms: int) -> bool:
        """Sleep for `delay_ms`, waking early on stop. Returns True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout=delay_ms / 1000.0)
            return True
        except asyncio.TimeoutError:
            return False

    def _on_loop_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.fatal_error = exc
            logger.critical("Processing loop crashed. The application will exit.", exc_info=exc)
            self.failed.set()

    async def _disconnect_all(self) -> None:
        for name, resource in (("source", self.source), ("sink", self.sink)):
            try:
                await resource.disconnect()
            except Exception as e:
                logger.error(f"Error disconnecting {name}: {e}")

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
