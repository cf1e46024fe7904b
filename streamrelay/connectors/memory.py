import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from streamrelay.connectors.base import StreamSource
from streamrelay.errors import ErrorKind, RelayError
from streamrelay.models import PendingEntry, StreamRecord


def _parse_id(msg_id: str) -> Tuple[int, int]:
    ts, _, seq = msg_id.partition("-")
    return int(ts), int(seq or 0)


@dataclass
class _Pending:
    consumer: str
    delivered_at_ms: float
    delivery_count: int = 1


@dataclass
class _Group:
    last_delivered: Tuple[int, int]
    # ids are compared as (ms, seq) tuples
    pending: Dict[str, _Pending] = field(default_factory=dict)


class MemoryStreamSource(StreamSource):
    """
    In-memory consumer-group log for testing and local runs.
    Not persistent across restarts. Follows Redis Streams semantics for
    group creation, exclusive delivery, pending entries and claiming.
    """
    def __init__(self,
                 claim_count: int = 100,
                 dead_letter_stream: Optional[str] = None,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(name="MemoryStreamSource")
        self.claim_count = claim_count
        self.dead_letter_stream = dead_letter_stream
        self._clock = clock
        self._last_ts = 0
        self._last_seq = 0

        # stream_key -> records in id order
        self._streams: Dict[str, List[StreamRecord]] = {}
        # (stream_key, group_name) -> group cursor + PEL
        self._groups: Dict[Tuple[str, str], _Group] = {}
        # dead-letter stream -> entries
        self.dead_letters: Dict[str, List[Dict[str, str]]] = {}

        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition(self._lock)
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        self.logger.info("Connected to MemoryStreamSource")

    async def _close(self) -> None:
        if self._connected:
            self._connected = False
            self.logger.info("Closed MemoryStreamSource")

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _check_connected(self) -> None:
        if not self._connected:
            raise RelayError(ErrorKind.TRANSIENT, "MemoryStreamSource is not connected")

    def _group(self, stream_key: str, group_name: str) -> _Group:
        group = self._groups.get((stream_key, group_name))
        if group is None:
            raise RelayError(ErrorKind.TRANSIENT, f"NOGROUP no consumer group '{group_name}' for key '{stream_key}'")
        return group

    async def add(self, stream_key: str, fields: Dict[str, Any]) -> str:
        """Append a record (like XADD *) and wake blocked readers."""
        async with self._changed:
            ts = int(time.time() * 1000)
            if ts <= self._last_ts:
                # Same ms (or clock went back): keep the last ts, bump sequence
                ts = self._last_ts
                self._last_seq += 1
            else:
                self._last_ts = ts
                self._last_seq = 0

            msg_id = f"{ts}-{self._last_seq}"
            flat: List[str] = []
            for k, v in fields.items():
                flat.extend((str(k), str(v)))
            self._streams.setdefault(stream_key, []).append(StreamRecord(id=msg_id, fields=flat))
            self._changed.notify_all()
            return msg_id

    async def initialize_group(self, stream_key: str, group_name: str, start_id: str = "$") -> None:
        self._check_connected()
        async with self._lock:
            if (stream_key, group_name) in self._groups:
                self.logger.info("Consumer group already exists.", extra={"stream_key": stream_key, "group": group_name})
                return
            stream = self._streams.setdefault(stream_key, [])
            if start_id == "$":
                last = _parse_id(stream[-1].id) if stream else (0, 0)
            else:
                last = _parse_id(start_id)
            self._groups[(stream_key, group_name)] = _Group(last_delivered=last)
            self.logger.info("Consumer group created.", extra={"stream_key": stream_key, "group": group_name})

    async def _read_new(self, stream_key: str, group_name: str, consumer_name: str,
                        count: int, block_ms: int) -> List[StreamRecord]:
        self._check_connected()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + block_ms / 1000.0 if block_ms else None
        async with self._changed:
            while True:
                group = self._group(stream_key, group_name)
                batch = [
                    r for r in self._streams.get(stream_key, [])
                    if _parse_id(r.id) > group.last_delivered
                ][:count]
                if batch:
                    now = self._now_ms()
                    group.last_delivered = _parse_id(batch[-1].id)
                    for r in batch:
                        group.pending[r.id] = _Pending(consumer=consumer_name, delivered_at_ms=now)
                    return batch

                if block_ms is None:
                    return []
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    return []
                try:
                    await asyncio.wait_for(self._changed.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    return []

    async def _read_pending(self, stream_key: str, group_name: str, consumer_name: str,
                            count: int) -> List[StreamRecord]:
        self._check_connected()
        async with self._lock:
            group = self._group(stream_key, group_name)
            by_id = {r.id: r for r in self._streams.get(stream_key, [])}
            now = self._now_ms()
            records = []
            for msg_id, entry in sorted(group.pending.items(), key=lambda item: _parse_id(item[0])):
                if entry.consumer != consumer_name or msg_id not in by_id:
                    continue
                entry.delivered_at_ms = now
                entry.delivery_count += 1
                records.append(by_id[msg_id])
                if len(records) >= count:
                    break
            return records

    async def _ack(self, stream_key: str, group_name: str, ids: List[str]) -> int:
        self._check_connected()
        async with self._lock:
            group = self._group(stream_key, group_name)
            return sum(1 for msg_id in ids if group.pending.pop(msg_id, None) is not None)

    async def pending(self, stream_key: str, group_name: str, count: int = 100,
                      min_idle_ms: Optional[int] = None) -> List[PendingEntry]:
        self._check_connected()
        async with self._lock:
            group = self._group(stream_key, group_name)
            now = self._now_ms()
            ordered = sorted(
                (item for item in group.pending.items()
                 if min_idle_ms is None or now - item[1].delivered_at_ms >= min_idle_ms),
                key=lambda item: _parse_id(item[0]),
            )[:count]
            return [
                PendingEntry(
                    id=msg_id,
                    consumer=entry.consumer,
                    idle_ms=int(now - entry.delivered_at_ms),
                    delivery_count=entry.delivery_count,
                )
                for msg_id, entry in ordered
            ]

    async def _claim(self, stream_key: str, group_name: str, consumer_name: str, min_idle_ms: int) -> int:
        entries = await self.pending(stream_key, group_name, count=self.claim_count, min_idle_ms=min_idle_ms)
        async with self._lock:
            group = self._group(stream_key, group_name)
            now = self._now_ms()
            claimed = 0
            for e in entries:
                current = group.pending.get(e.id)
                if current is None or current.consumer == consumer_name:
                    continue
                # Re-check idle under the lock, like XCLAIM's min-idle-time argument
                if now - current.delivered_at_ms < min_idle_ms:
                    continue
                current.consumer = consumer_name
                current.delivered_at_ms = now
                claimed += 1
            return claimed

    async def _dead_letter(self,
                           stream_key: str,
                           group_name: str,
                           records: Sequence[StreamRecord],
                           reason: str) -> int:
        self._check_connected()
        target = self.dead_letter_stream or f"{stream_key}-dlq"
        async with self._lock:
            group = self._group(stream_key, group_name)
            entries = self.dead_letters.setdefault(target, [])
            for record in records:
                payload = record.to_body()
                payload["_error"] = reason
                payload["_source_id"] = record.id
                entries.append(payload)
                group.pending.pop(record.id, None)
        return len(records)
