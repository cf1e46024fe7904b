import asyncio
import datetime
import json
import os
import uuid
from typing import Any, Dict, Sequence

import aiofiles
import aiofiles.os

from streamrelay.connectors.base import Sink
from streamrelay.errors import ErrorKind, RelayError
from streamrelay.models import NormalizedEvent, SendResult


class LocalFileSink(Sink):
    """
    Writes every event to its own JSON file in `directory`.

    Writes are independent: one failed file does not stop the others, and
    failed events are simply not reported as delivered.
    """

    def __init__(self, directory: str):
        super().__init__(name="LocalFileSink")
        self.directory = directory

    async def connect(self) -> None:
        try:
            await aiofiles.os.makedirs(self.directory, exist_ok=True)
        except OSError as e:
            self.logger.error(f"Failed to create output directory: {e}", extra={"directory": self.directory})
            raise RelayError(ErrorKind.CONNECTION, "Failed to create output directory", cause=e) from e
        self.logger.info("Output directory is ready.", extra={"directory": self.directory})

    def _artifact_path(self, now: datetime.datetime, index: int) -> str:
        epoch_ms = int(now.timestamp() * 1000)
        return os.path.join(self.directory, f"{epoch_ms}-{index}-{uuid.uuid4().hex[:8]}.json")

    @staticmethod
    def _render(event: NormalizedEvent, now: datetime.datetime) -> str:
        content: Dict[str, Any] = dict(event.body)
        content["_metadata"] = {
            "correlationId": event.correlation_id,
            "writtenAt": now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        }
        return json.dumps(content, indent=2)

    async def _write_artifact(self, path: str, content: str) -> None:
        temp_path = f"{path}.tmp"
        async with aiofiles.open(temp_path, mode="w") as f:
            await f.write(content)
        # Atomic rename
        await aiofiles.os.replace(temp_path, path)

    async def _write_event(self, index: int, event: NormalizedEvent, now: datetime.datetime) -> bool:
        path = self._artifact_path(now, index)
        try:
            await self._write_artifact(path, self._render(event, now))
        except Exception as e:
            self.logger.error(
                f"Failed to write event to file: {e}",
                extra={"file": path, "event_id": event.correlation_id},
            )
            return False
        return True

    async def send_batch(self, events: Sequence[NormalizedEvent]) -> SendResult:
        if not events:
            return SendResult()

        now = datetime.datetime.now(datetime.timezone.utc)
        results = await asyncio.gather(*(self._write_event(i, e, now) for i, e in enumerate(events)))
        delivered = [e.correlation_id for e, ok in zip(events, results) if ok]

        failed = len(events) - len(delivered)
        if failed:
            self.logger.warning(
                "Some events failed to write to disk.",
                extra={"total": len(events), "successful": len(delivered), "failed": failed},
            )
        return SendResult(delivered=delivered)

    async def disconnect(self) -> None:
        self.logger.info("Local file sink requires no disconnection.")
