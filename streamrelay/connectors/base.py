from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union
from streamrelay.errors import ErrorKind
from streamrelay.models import NormalizedEvent, PendingEntry, SendResult, StreamRecord
from streamrelay.utils.logging import get_logger

ConsumerKey = Tuple[str, str, str]


class StreamSource(ABC):
    """Base class for consumer-group stream sources.

    Subclasses provide the transport calls (`_read_pending`, `_read_new`,
    `_claim`, ...). This class owns the delivery bookkeeping shared by all
    transports: a consumer re-reads its own pending entries before asking
    for new ones whenever it may still own unacknowledged records (first
    fetch after connecting, records fetched but not acked, entries
    reclaimed from idle consumers).
    """

    def __init__(self, name: str = "StreamSource"):
        self.name = name
        self.logger = get_logger(name)
        self._outstanding: Dict[ConsumerKey, Set[str]] = {}
        self._replay: Set[ConsumerKey] = set()
        self._seen: Set[ConsumerKey] = set()
        # (stream, group) -> ids left pending on purpose; never replayed
        self._parked: Dict[Tuple[str, str], Set[str]] = {}

    @abstractmethod
    async def connect(self) -> None:
        """Open the transport. Raises RelayError(CONNECTION) on failure."""
        pass

    async def disconnect(self) -> None:
        """Release the transport. Idempotent."""
        self._reset_tracking()
        await self._close()

    @abstractmethod
    async def _close(self) -> None:
        pass

    @abstractmethod
    async def initialize_group(self, stream_key: str, group_name: str) -> None:
        """Create the consumer group; an existing group is not an error."""
        pass

    async def fetch(self,
                    stream_key: str,
                    group_name: str,
                    consumer_name: str,
                    max_count: int,
                    block_timeout_ms: int) -> List[StreamRecord]:
        """
        Fetch up to `max_count` records for this consumer.

        Returns [] when nothing arrives within `block_timeout_ms`.
        """
        key = (stream_key, group_name, consumer_name)
        if self._needs_replay(key):
            parked = self._parked.get((stream_key, group_name), set())
            records = await self._read_pending(stream_key, group_name, consumer_name, max_count + len(parked))
            records = [r for r in records if r.id not in parked]
            if records:
                self._track(key, records)
                return records[:max_count]
            self._seen.add(key)
            self._replay.discard(key)
            self._outstanding.pop(key, None)

        records = await self._read_new(stream_key, group_name, consumer_name, max_count, block_timeout_ms)
        if records:
            self._track(key, records)
        return records[:max_count]

    async def ack(self, stream_key: str, group_name: str, ids: Sequence[str]) -> int:
        """Acknowledge `ids`; returns how many were removed from the pending set."""
        if not ids:
            return 0
        count = await self._ack(stream_key, group_name, list(ids))
        self._forget(stream_key, group_name, ids)
        return count

    async def reclaim_idle(self,
                           stream_key: str,
                           group_name: str,
                           new_consumer_name: str,
                           min_idle_ms: int) -> int:
        """
        Move pending entries idle for at least `min_idle_ms` to `new_consumer_name`.

        Best-effort: failures are logged and reported as 0 reclaimed.
        """
        try:
            claimed = await self._claim(stream_key, group_name, new_consumer_name, min_idle_ms)
        except Exception as e:
            self.logger.error(
                f"Failed to claim pending messages: {e}",
                extra={"error_kind": ErrorKind.RECLAMATION.value, "stream_key": stream_key, "group": group_name},
            )
            return 0

        if claimed:
            self._replay.add((stream_key, group_name, new_consumer_name))
            self.logger.info(
                "Claimed pending messages.",
                extra={"stream_key": stream_key, "group": group_name, "claimed_count": claimed},
            )
        return claimed

    @abstractmethod
    async def pending(self, stream_key: str, group_name: str, count: int = 100,
                      min_idle_ms: Optional[int] = None) -> List[PendingEntry]:
        """List up to `count` pending entries of the group, oldest first, optionally only those idle for `min_idle_ms`."""
        pass

    async def dead_letter(self,
                          stream_key: str,
                          group_name: str,
                          records: Sequence[StreamRecord],
                          reason: str) -> int:
        """Copy `records` to the dead-letter stream and acknowledge them atomically."""
        if not records:
            return 0
        count = await self._dead_letter(stream_key, group_name, records, reason)
        self._forget(stream_key, group_name, [r.id for r in records])
        return count

    @abstractmethod
    async def _dead_letter(self, stream_key: str, group_name: str,
                           records: Sequence[StreamRecord], reason: str) -> int:
        pass

    @abstractmethod
    async def _read_pending(self, stream_key: str, group_name: str, consumer_name: str,
                            count: int) -> List[StreamRecord]:
        pass

    @abstractmethod
    async def _read_new(self, stream_key: str, group_name: str, consumer_name: str,
                        count: int, block_ms: int) -> List[StreamRecord]:
        pass

    @abstractmethod
    async def _ack(self, stream_key: str, group_name: str, ids: List[str]) -> int:
        pass

    @abstractmethod
    async def _claim(self, stream_key: str, group_name: str, consumer_name: str, min_idle_ms: int) -> int:
        pass

    def _needs_replay(self, key: ConsumerKey) -> bool:
        return key not in self._seen or key in self._replay or bool(self._outstanding.get(key))

    def _track(self, key: ConsumerKey, records: Sequence[StreamRecord]) -> None:
        self._outstanding.setdefault(key, set()).update(r.id for r in records)

    def park(self, stream_key: str, group_name: str, ids: Sequence[str]) -> None:
        """
        Leave `ids` pending without replaying them to this consumer.

        They stay in the group's pending list until another consumer
        reclaims them or they are acknowledged.
        """
        if not ids:
            return
        self._parked.setdefault((stream_key, group_name), set()).update(ids)
        for (stream, group, _), outstanding in self._outstanding.items():
            if stream == stream_key and group == group_name:
                outstanding.difference_update(ids)

    def _forget(self, stream_key: str, group_name: str, ids: Sequence[str]) -> None:
        for (stream, group, _), outstanding in self._outstanding.items():
            if stream == stream_key and group == group_name:
                outstanding.difference_update(ids)
        parked = self._parked.get((stream_key, group_name))
        if parked:
            parked.difference_update(ids)

    def _reset_tracking(self) -> None:
        self._outstanding.clear()
        self._replay.clear()
        self._seen.clear()
        self._parked.clear()


class Sink(ABC):
    """Base class for relay sinks.

    `send_batch` reports what it delivered through a SendResult (or, for
    simple sinks, an int counting the leading events delivered in input
    order). It only raises when no further progress is possible.
    """

    def __init__(self, name: str = "Sink"):
        self.name = name
        self.logger = get_logger(name)

    async def connect(self) -> None:
        """Acquire any resources needed before the first send."""
        pass

    @abstractmethod
    async def send_batch(self, events: Sequence[NormalizedEvent]) -> Union[SendResult, int]:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass
