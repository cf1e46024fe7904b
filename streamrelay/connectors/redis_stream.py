import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError, RedisError, ResponseError, TimeoutError as RedisTimeoutError
from typing import Any, Dict, List, Optional, Sequence, Tuple
from streamrelay.connectors.base import StreamSource
from streamrelay.errors import ErrorKind, RelayError
from streamrelay.models import PendingEntry, StreamRecord


class RedisStreamSource(StreamSource):
    """
    Stream source backed by a Redis Stream consumer group.

    Uses a pooled redis.asyncio client, so the blocking XREADGROUP of the
    processing loop and the XPENDING/XCLAIM scan of the reclamation task run
    on separate connections and need no application-level lock.
    """
    def __init__(self,
                 url: str,
                 group_start_id: str = "$",
                 claim_count: int = 100,
                 dead_letter_stream: Optional[str] = None,
                 connect_timeout_s: float = 10.0,
                 max_retries: int = 3):
        super().__init__(name="RedisStreamSource")
        self.url = url
        self.group_start_id = group_start_id
        self.claim_count = claim_count
        self.dead_letter_stream = dead_letter_stream
        self.connect_timeout_s = connect_timeout_s
        self.max_retries = max_retries
        self._client: Optional[aioredis.Redis] = None

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise RelayError(ErrorKind.CONNECTION, "Redis client is not connected")
        return self._client

    async def connect(self) -> None:
        self.logger.info("Connecting to Redis...")
        try:
            if self._client is None:
                self._client = aioredis.from_url(
                    self.url,
                    decode_responses=True,
                    socket_connect_timeout=self.connect_timeout_s,
                    retry=Retry(ExponentialBackoff(cap=2.0, base=0.05), self.max_retries),
                    retry_on_error=[RedisConnectionError, RedisTimeoutError],
                )
            await self._client.ping()
        except Exception as e:
            self.logger.critical(
                f"Failed to connect to Redis: {e}. Please ensure Redis server is running and accessible."
            )
            raise RelayError(ErrorKind.CONNECTION, "Failed to connect to Redis", cause=e) from e
        self.logger.info("Successfully connected to Redis.")

    async def _close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        self.logger.info("Disconnecting from Redis...")
        await client.aclose()
        self.logger.info("Disconnected from Redis.")

    async def initialize_group(self, stream_key: str, group_name: str) -> None:
        try:
            await self.client.xgroup_create(stream_key, group_name, id=self.group_start_id, mkstream=True)
            self.logger.info("Consumer group created.", extra={"stream_key": stream_key, "group": group_name})
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                self.logger.info("Consumer group already exists.", extra={"stream_key": stream_key, "group": group_name})
                return
            self.logger.error(f"Failed to initialize consumer group: {e}")
            raise RelayError(ErrorKind.CONNECTION, "Failed to initialize consumer group", cause=e) from e
        except RedisError as e:
            self.logger.error(f"Failed to initialize consumer group: {e}")
            raise RelayError(ErrorKind.CONNECTION, "Failed to initialize consumer group", cause=e) from e

    async def _read_new(self, stream_key: str, group_name: str, consumer_name: str,
                        count: int, block_ms: int) -> List[StreamRecord]:
        response = await self._xreadgroup(stream_key, group_name, consumer_name, ">", count, block_ms)
        return [StreamRecord(id=msg_id, fields=_flatten(fields)) for msg_id, fields in response]

    async def _read_pending(self, stream_key: str, group_name: str, consumer_name: str,
                            count: int) -> List[StreamRecord]:
        response = await self._xreadgroup(stream_key, group_name, consumer_name, "0", count, None)
        records: List[StreamRecord] = []
        trimmed: List[str] = []
        for msg_id, fields in response:
            if not fields:
                # Entry is still pending but its payload was trimmed from the stream.
                trimmed.append(msg_id)
                continue
            records.append(StreamRecord(id=msg_id, fields=_flatten(fields)))

        if trimmed:
            self.logger.warning(
                f"Dropping {len(trimmed)} pending entries whose payload no longer exists in the stream.",
                extra={"stream_key": stream_key, "ids": trimmed},
            )
            await self._ack(stream_key, group_name, trimmed)
        return records

    async def _xreadgroup(self, stream_key: str, group_name: str, consumer_name: str,
                          stream_id: str, count: int, block_ms: Optional[int]) -> List[Tuple[str, Any]]:
        try:
            results = await self.client.xreadgroup(
                group_name, consumer_name, {stream_key: stream_id}, count=count, block=block_ms
            )
        except RedisError as e:
            raise RelayError(ErrorKind.TRANSIENT, "Failed to read from stream", cause=e) from e

        if not results:
            return []
        # RESP2: [[stream, [(id, fields), ...]]]
        return list(results[0][1])

    async def _ack(self, stream_key: str, group_name: str, ids: List[str]) -> int:
        try:
            return await self.client.xack(stream_key, group_name, *ids)
        except RedisError as e:
            raise RelayError(ErrorKind.TRANSIENT, "Failed to acknowledge messages", cause=e) from e

    async def pending(self, stream_key: str, group_name: str, count: int = 100,
                      min_idle_ms: Optional[int] = None) -> List[PendingEntry]:
        rows = await self.client.xpending_range(
            stream_key, group_name, min="-", max="+", count=count, idle=min_idle_ms
        )
        return [
            PendingEntry(
                id=row["message_id"],
                consumer=row["consumer"],
                idle_ms=int(row["time_since_delivered"]),
                delivery_count=int(row["times_delivered"]),
            )
            for row in rows
        ]

    async def _claim(self, stream_key: str, group_name: str, consumer_name: str, min_idle_ms: int) -> int:
        # IDLE narrows the scan server side
        entries = await self.pending(stream_key, group_name, count=self.claim_count, min_idle_ms=min_idle_ms)
        ids = [e.id for e in entries if e.idle_ms >= min_idle_ms and e.consumer != consumer_name]
        if not ids:
            return 0

        # XCLAIM re-checks min idle server side, so entries touched since XPENDING are skipped.
        claimed = await self.client.xclaim(stream_key, group_name, consumer_name, min_idle_ms, ids, justid=True)
        return len(claimed) if claimed else 0

    async def _dead_letter(self,
                           stream_key: str,
                           group_name: str,
                           records: Sequence[StreamRecord],
                           reason: str) -> int:
        target = self.dead_letter_stream or f"{stream_key}-dlq"
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for record in records:
                    payload: Dict[str, str] = record.to_body()
                    payload["_error"] = reason
                    payload["_source_id"] = record.id
                    pipe.xadd(target, payload)
                pipe.xack(stream_key, group_name, *[r.id for r in records])
                await pipe.execute()
        except RedisError as e:
            raise RelayError(ErrorKind.TRANSIENT, "Failed to move messages to dead-letter stream", cause=e) from e

        self.logger.warning(
            f"Moved {len(records)} messages to dead-letter stream {target}.",
            extra={"reason": reason, "ids": [r.id for r in records]},
        )
        return len(records)


def _flatten(fields: Any) -> List[str]:
    if isinstance(fields, dict):
        flat: List[str] = []
        for k, v in fields.items():
            flat.extend((str(k), str(v)))
        return flat
    return [str(f) for f in fields]
