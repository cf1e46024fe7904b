"""Azure Event Hubs sink.

Events are packed into size-bounded EventDataBatch objects. When an event
does not fit, the current batch is closed and a fresh one opened; an event
that does not fit even an empty batch is rejected for good and reported in
SendResult.rejected so the relay can dead-letter it.

A transport failure aborts the remaining batches. Batches already sent stay
delivered: the failure is raised as PARTIAL_DELIVERY carrying what went out,
or as TRANSIENT when nothing did.
"""

import json
from typing import List, Optional, Sequence, Tuple

from azure.eventhub import EventData, EventDataBatch, TransportType
from azure.eventhub.aio import EventHubProducerClient

from streamrelay.connectors.base import Sink
from streamrelay.errors import ErrorKind, RelayError
from streamrelay.models import NormalizedEvent, SendResult


class EventHubsSink(Sink):
    """Batching sink for a single Event Hub entity."""

    def __init__(self, connection_string: str, hub_name: str, use_websockets: bool = False):
        super().__init__(name="EventHubsSink")
        self.connection_string = connection_string
        self.hub_name = hub_name
        self.transport_type = TransportType.AmqpOverWebsocket if use_websockets else TransportType.Amqp
        self._producer: Optional[EventHubProducerClient] = None

    async def connect(self) -> None:
        if self._producer is not None:
            return
        self.logger.info("Connecting to Event Hubs...", extra={"hub_name": self.hub_name})
        try:
            self._producer = EventHubProducerClient.from_connection_string(
                conn_str=self.connection_string,
                eventhub_name=self.hub_name,
                transport_type=self.transport_type,
            )
            props = await self._producer.get_eventhub_properties()
        except Exception as e:
            self.logger.critical(f"Failed to connect to Event Hubs: {e}")
            await self.disconnect()
            raise RelayError(ErrorKind.CONNECTION, "Failed to connect to Event Hubs", cause=e) from e

        self.logger.info(
            f"Connected to Event Hub: {props.get('name', self.hub_name)}, "
            f"partitions: {len(props.get('partition_ids', []))}"
        )

    def _require_producer(self) -> EventHubProducerClient:
        if self._producer is None:
            raise RelayError(ErrorKind.CONNECTION, "Event Hubs producer is not connected")
        return self._producer

    @staticmethod
    def _to_event_data(event: NormalizedEvent) -> EventData:
        data = EventData(json.dumps(event.body))
        data.content_type = "application/json"
        data.properties = {"correlationId": event.correlation_id}
        return data

    @staticmethod
    def _try_add(batch: EventDataBatch, data: EventData) -> bool:
        try:
            batch.add(data)
        except ValueError:
            # EventDataBatch.add raises ValueError once max_size_in_bytes would be exceeded
            return False
        return True

    async def _fill_batches(self, events: Sequence[NormalizedEvent]) -> Tuple[List[Tuple[EventDataBatch, List[str]]], List[str]]:
        """Split `events` into batches. Returns (batches with their ids, rejected ids)."""
        producer = self._require_producer()
        batches: List[Tuple[EventDataBatch, List[str]]] = []
        rejected: List[str] = []

        batch = await producer.create_batch()
        ids: List[str] = []
        for event in events:
            data = self._to_event_data(event)
            if self._try_add(batch, data):
                ids.append(event.correlation_id)
                continue

            if ids:
                # Batch full: queue it and retry the event in a fresh one
                batches.append((batch, ids))
                batch = await producer.create_batch()
                ids = []
                if self._try_add(batch, data):
                    ids.append(event.correlation_id)
                    continue

            rejected.append(event.correlation_id)
            self.logger.warning(
                "Event was too large for an empty batch and was skipped.",
                extra={"event_id": event.correlation_id, "error_kind": ErrorKind.OVERSIZED.value},
            )

        if ids:
            batches.append((batch, ids))
        return batches, rejected

    async def send_batch(self, events: Sequence[NormalizedEvent]) -> SendResult:
        if not events:
            return SendResult()
        producer = self._require_producer()

        try:
            batches, rejected = await self._fill_batches(events)
        except RelayError:
            raise
        except Exception as e:
            self.logger.error(f"Failed to build Event Hubs batch: {e}")
            raise RelayError(ErrorKind.TRANSIENT, "Failed to build Event Hubs batch", cause=e) from e

        delivered: List[str] = []
        for index, (batch, ids) in enumerate(batches, start=1):
            try:
                await producer.send_batch(batch)
            except Exception as e:
                self.logger.error(
                    f"Failed to send batch {index}/{len(batches)} to Event Hubs: {e}",
                    extra={"sent_events": len(delivered), "unsent_batches": len(batches) - index + 1},
                )
                if delivered:
                    raise RelayError(
                        ErrorKind.PARTIAL_DELIVERY,
                        "Event Hubs send aborted after partial delivery",
                        cause=e,
                        result=SendResult(delivered=delivered, rejected=rejected),
                    ) from e
                raise RelayError(ErrorKind.TRANSIENT, "Failed to send batch to Event Hubs", cause=e) from e

            delivered.extend(ids)
            self.logger.debug(
                f"Sent batch {index}/{len(batches)} to Event Hubs.",
                extra={"batch_size": len(ids)},
            )

        return SendResult(delivered=delivered, rejected=rejected)

    async def disconnect(self) -> None:
        producer, self._producer = self._producer, None
        if producer is None:
            return
        self.logger.info("Closing Event Hubs producer...")
        try:
            await producer.close()
        except Exception as e:
            self.logger.error(f"Error closing Event Hubs producer: {e}")
            return
        self.logger.info("Event Hubs producer closed.")
