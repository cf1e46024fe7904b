import asyncio
import unittest
from typing import List
from unittest.mock import AsyncMock, MagicMock, patch
from streamrelay.connectors.base import Sink
from streamrelay.connectors.memory import MemoryStreamSource
from streamrelay.errors import ErrorKind, RelayError
from streamrelay.models import SendResult, StreamRecord
from streamrelay.relay import Relay, RelayState

STREAM = "telemetry:events"
GROUP = "relay-group"
CONSUMER = "relay-1"


class RecordingSink(Sink):
    """Delivers everything unless told otherwise by the queued `responses`."""

    def __init__(self, responses=None):
        super().__init__(name="RecordingSink")
        self.responses = list(responses or [])
        self.batches: List[List[str]] = []
        self.delivered: List[str] = []
        self.connect_count = 0
        self.disconnect_count = 0

    async def connect(self):
        self.connect_count += 1

    async def send_batch(self, events):
        ids = [e.correlation_id for e in events]
        self.batches.append(ids)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            if isinstance(response, SendResult):
                self.delivered.extend(response.delivered)
            elif isinstance(response, int):
                self.delivered.extend(ids[:response])
            return response
        self.delivered.extend(ids)
        return SendResult(delivered=ids)

    async def disconnect(self):
        self.disconnect_count += 1


class RejectingSink(RecordingSink):
    """Rejects events marked `size=big` as too large and delivers the rest."""

    async def send_batch(self, events):
        self.batches.append([e.correlation_id for e in events])
        delivered = [e.correlation_id for e in events if e.body.get("size") != "big"]
        rejected = [e.correlation_id for e in events if e.body.get("size") == "big"]
        self.delivered.extend(delivered)
        return SendResult(delivered=delivered, rejected=rejected)


def make_records(n):
    return [StreamRecord(id=f"1-{i}", fields=["seq", str(i)]) for i in range(n)]


def make_relay(source, sink, **overrides):
    options = dict(
        batch_size=10,
        poll_timeout_ms=50,
        retry_delay_ms=10,
        shutdown_grace_period_ms=50,
        pending_claim_interval_ms=60_000,
        pending_min_idle_ms=60_000,
    )
    options.update(overrides)
    return Relay(source, sink, STREAM, GROUP, CONSUMER, **options)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestProcessBatch(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.source = MagicMock()
        self.source.ack = AsyncMock(side_effect=lambda stream, group, ids: len(ids))
        self.source.dead_letter = AsyncMock(side_effect=lambda stream, group, records, reason: len(records))

    async def test_all_delivered_are_acked(self):
        relay = make_relay(self.source, RecordingSink())
        settled = await relay.process_batch(make_records(3))

        self.assertEqual(settled, 3)
        self.source.ack.assert_awaited_once_with(STREAM, GROUP, ["1-0", "1-1", "1-2"])
        snapshot = relay.metrics.snapshot()
        self.assertEqual(snapshot["streamrelay_records_fetched_total"], 3)
        self.assertEqual(snapshot["streamrelay_records_acked_total"], 3)

    async def test_send_failure_acks_nothing(self):
        sink = RecordingSink([RelayError(ErrorKind.TRANSIENT, "hub unavailable")])
        relay = make_relay(self.source, sink)

        self.assertEqual(await relay.process_batch(make_records(3)), 0)
        self.source.ack.assert_not_awaited()
        self.assertEqual(relay.metrics.snapshot()["streamrelay_send_failures_total"], 1)

    async def test_unexpected_exception_acks_nothing(self):
        relay = make_relay(self.source, RecordingSink([RuntimeError("bug")]))
        self.assertEqual(await relay.process_batch(make_records(2)), 0)
        self.source.ack.assert_not_awaited()

    async def test_count_result_acks_leading_records(self):
        relay = make_relay(self.source, RecordingSink([2]))
        self.assertEqual(await relay.process_batch(make_records(3)), 2)
        self.source.ack.assert_awaited_once_with(STREAM, GROUP, ["1-0", "1-1"])

    async def test_explicit_ids_acked_in_fetch_order(self):
        relay = make_relay(self.source, RecordingSink([SendResult(delivered=["1-2", "1-0"])]))
        self.assertEqual(await relay.process_batch(make_records(3)), 2)
        self.source.ack.assert_awaited_once_with(STREAM, GROUP, ["1-0", "1-2"])

    async def test_zero_delivered_acks_nothing(self):
        relay = make_relay(self.source, RecordingSink([0]))
        self.assertEqual(await relay.process_batch(make_records(3)), 0)
        self.source.ack.assert_not_awaited()
        self.assertEqual(relay.metrics.snapshot()["streamrelay_send_failures_total"], 1)

    async def test_partial_delivery_error_acks_what_was_sent(self):
        error = RelayError(
            ErrorKind.PARTIAL_DELIVERY, "aborted", result=SendResult(delivered=["1-0", "1-1"])
        )
        relay = make_relay(self.source, RecordingSink([error]))

        self.assertEqual(await relay.process_batch(make_records(4)), 2)
        self.source.ack.assert_awaited_once_with(STREAM, GROUP, ["1-0", "1-1"])

    async def test_rejected_records_are_dead_lettered(self):
        records = make_records(3)
        relay = make_relay(self.source, RecordingSink([SendResult(delivered=["1-0", "1-2"], rejected=["1-1"])]))

        self.assertEqual(await relay.process_batch(records), 3)
        self.source.ack.assert_awaited_once_with(STREAM, GROUP, ["1-0", "1-2"])
        self.source.dead_letter.assert_awaited_once_with(STREAM, GROUP, [records[1]], reason="oversized")

    async def test_rejected_records_stay_pending_without_dead_letter(self):
        relay = make_relay(
            self.source,
            RecordingSink([SendResult(delivered=["1-0"], rejected=["1-1"])]),
            dead_letter_enabled=False,
        )
        self.assertEqual(await relay.process_batch(make_records(2)), 1)
        self.source.dead_letter.assert_not_awaited()
        self.source.park.assert_called_once_with(STREAM, GROUP, ["1-1"])
        self.assertEqual(relay.metrics.snapshot()["streamrelay_records_rejected_total"], 1)

    async def test_unsupported_sink_result(self):
        relay = make_relay(self.source, RecordingSink(["three"]))
        self.assertEqual(await relay.process_batch(make_records(3)), 0)
        self.source.ack.assert_not_awaited()


class TestRelayLifecycle(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.now = [1000.0]
        self.source = MemoryStreamSource(clock=lambda: self.now[0])
        self.sink = RecordingSink()

    async def test_relays_and_acks_records(self):
        relay = make_relay(self.source, self.sink)
        await relay.start()
        self.assertEqual(relay.state, RelayState.RUNNING)

        ids = [await self.source.add(STREAM, {"seq": str(i)}) for i in range(3)]
        await wait_until(lambda: len(self.sink.delivered) == 3)
        await wait_until(lambda: relay.metrics.snapshot().get("streamrelay_records_acked_total") == 3)

        self.assertEqual(self.sink.delivered, ids)
        self.assertEqual(await self.source.pending(STREAM, GROUP), [])
        await relay.stop()
        self.assertEqual(relay.state, RelayState.STOPPED)

    async def test_failed_batch_is_redelivered(self):
        self.sink.responses = [RelayError(ErrorKind.TRANSIENT, "hub unavailable")]
        relay = make_relay(self.source, self.sink)
        await relay.start()

        ids = [await self.source.add(STREAM, {"seq": str(i)}) for i in range(2)]
        await wait_until(lambda: self.sink.delivered == ids)
        await relay.stop()

        # First attempt failed, second attempt delivered the same records
        self.assertEqual(self.sink.batches[0], ids)
        self.assertEqual(self.sink.batches[-1], ids)
        await self.source.connect()
        self.assertEqual(await self.source.pending(STREAM, GROUP), [])

    async def test_partially_delivered_batch_retries_the_rest(self):
        self.sink.responses = [1]
        relay = make_relay(self.source, self.sink)
        await relay.start()

        ids = [await self.source.add(STREAM, {"seq": str(i)}) for i in range(3)]
        await wait_until(lambda: len(self.sink.batches) >= 2 and sorted(self.sink.delivered) == sorted(ids))
        await relay.stop()

        self.assertEqual(self.sink.batches[1], ids[1:])

    async def test_with_context_manager(self):
        async with make_relay(self.source, self.sink) as relay:
            self.assertTrue(relay.running)
            await self.source.add(STREAM, {"k": "v"})
            await wait_until(lambda: len(self.sink.delivered) == 1)
        self.assertEqual(relay.state, RelayState.STOPPED)

    async def test_start_failure_leaves_relay_stopped(self):
        self.sink.connect = AsyncMock(side_effect=RelayError(ErrorKind.CONNECTION, "hub unreachable"))
        relay = make_relay(self.source, self.sink)

        with self.assertRaises(RelayError) as ctx:
            await relay.start()

        self.assertEqual(ctx.exception.kind, ErrorKind.CONNECTION)
        self.assertEqual(relay.state, RelayState.STOPPED)
        self.assertFalse(self.source.connected)
        self.assertEqual(self.sink.disconnect_count, 1)

    async def test_unexpected_start_failure_is_wrapped(self):
        self.sink.connect = AsyncMock(side_effect=OSError("no route"))
        relay = make_relay(self.source, self.sink)

        with self.assertRaises(RelayError) as ctx:
            await relay.start()
        self.assertEqual(ctx.exception.kind, ErrorKind.CONNECTION)
        self.assertIsInstance(ctx.exception.cause, OSError)

    async def test_duplicate_start_is_ignored(self):
        relay = make_relay(self.source, self.sink)
        await relay.start()
        await relay.start()
        self.assertEqual(self.sink.connect_count, 1)
        await relay.stop()

    async def test_concurrent_stop_disconnects_once(self):
        relay = make_relay(self.source, self.sink)
        await relay.start()

        await asyncio.gather(relay.stop(), relay.stop())
        await relay.stop()

        self.assertEqual(self.sink.disconnect_count, 1)
        self.assertEqual(relay.state, RelayState.STOPPED)
        self.assertFalse(self.source.connected)

    async def test_stop_before_start_is_a_no_op(self):
        relay = make_relay(self.source, self.sink)
        await relay.stop()
        self.assertEqual(self.sink.disconnect_count, 0)

    async def test_stop_interrupts_retry_delay(self):
        self.sink.responses = [RelayError(ErrorKind.TRANSIENT, "hub unavailable")]
        relay = make_relay(self.source, self.sink, retry_delay_ms=60_000)
        await relay.start()
        await self.source.add(STREAM, {"k": "v"})
        await wait_until(lambda: len(self.sink.batches) == 1)

        await asyncio.wait_for(relay.stop(), timeout=1)
        self.assertEqual(relay.state, RelayState.STOPPED)

    async def test_reclaims_records_of_crashed_consumer(self):
        await self.source.connect()
        await self.source.initialize_group(STREAM, GROUP)
        ids = [await self.source.add(STREAM, {"seq": str(i)}) for i in range(2)]
        await self.source.fetch(STREAM, GROUP, "crashed", 10, 10)
        self.now[0] += 120

        relay = make_relay(self.source, self.sink, pending_claim_interval_ms=20, pending_min_idle_ms=60_000)
        await relay.start()
        await wait_until(lambda: self.sink.delivered == ids)
        await wait_until(lambda: relay.metrics.snapshot().get("streamrelay_reclaimed_total") == 2)
        await relay.stop()

    async def test_stop_halts_reclaim_timer(self):
        relay = make_relay(self.source, self.sink, pending_claim_interval_ms=10)
        with patch.object(self.source, "reclaim_idle", wraps=self.source.reclaim_idle) as reclaim, \
                patch.object(self.source, "disconnect", wraps=self.source.disconnect) as disconnect:
            await relay.start()
            await wait_until(lambda: reclaim.await_count >= 2)

            await asyncio.gather(relay.stop(), relay.stop())
            calls = reclaim.await_count
            await asyncio.sleep(0.05)

            self.assertEqual(reclaim.await_count, calls)
            self.assertIsNone(relay._reclaim_task)
            self.assertEqual(disconnect.await_count, 1)
        self.assertEqual(self.sink.disconnect_count, 1)

    async def test_rejected_record_does_not_block_later_records(self):
        self.sink = RejectingSink()
        relay = make_relay(self.source, self.sink, dead_letter_enabled=False)
        await relay.start()

        big = await self.source.add(STREAM, {"size": "big"})
        ids = [await self.source.add(STREAM, {"seq": str(i)}) for i in range(3)]
        await wait_until(lambda: self.sink.delivered == ids)

        # Stays in the group for another consumer, not resent to this one
        self.assertEqual([p.id for p in await self.source.pending(STREAM, GROUP)], [big])
        self.assertEqual(sum(batch.count(big) for batch in self.sink.batches), 1)
        await relay.stop()

    async def test_status(self):
        relay = make_relay(self.source, self.sink)
        self.assertEqual(relay.status()["state"], "stopped")

        await relay.start()
        status = relay.status()
        self.assertEqual(status["state"], "running")
        self.assertEqual(status["consumer"], CONSUMER)
        self.assertEqual(status["metrics"]["streamrelay_running"], 1)
        self.assertIsNone(status["fatal_error"])
        await relay.stop()
        self.assertEqual(relay.status()["metrics"]["streamrelay_running"], 0)

    async def test_from_settings(self):
        settings = MagicMock(
            STREAM_KEY="s", CONSUMER_GROUP="g", CONSUMER_NAME="c", BATCH_SIZE=7,
            POLL_TIMEOUT_MS=100, RETRY_DELAY_MS=200, SHUTDOWN_GRACE_PERIOD_MS=300,
            PENDING_CLAIM_INTERVAL_MS=4000, PENDING_MIN_IDLE_MS=5000, DEAD_LETTER_ENABLED=False,
        )
        relay = Relay.from_settings(settings, self.source, self.sink)

        self.assertEqual((relay.stream_key, relay.group_name, relay.consumer_name), ("s", "g", "c"))
        self.assertEqual(relay.batch_size, 7)
        self.assertEqual(relay.pending_min_idle_ms, 5000)
        self.assertFalse(relay.dead_letter_enabled)


if __name__ == "__main__":
    unittest.main()
