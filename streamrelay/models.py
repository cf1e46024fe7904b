from typing import Dict, List, Sequence
from pydantic import BaseModel, ConfigDict, Field


class StreamRecord(BaseModel):
    """
    An entry read from the stream.
    `fields` is the raw alternating key/value list as stored in the log.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    fields: List[str] = Field(default_factory=list)

    def to_body(self) -> Dict[str, str]:
        body: Dict[str, str] = {}
        for i in range(0, len(self.fields), 2):
            value = self.fields[i + 1] if i + 1 < len(self.fields) else ""
            body[self.fields[i]] = value
        return body


class PendingEntry(BaseModel):
    """A record delivered to a consumer of the group but not yet acknowledged."""
    model_config = ConfigDict(frozen=True)

    id: str
    consumer: str
    idle_ms: int
    delivery_count: int


class NormalizedEvent(BaseModel):
    """
    The relay's representation of a record handed to a sink.
    `correlation_id` is the id of the originating StreamRecord.
    """
    body: Dict[str, str]
    correlation_id: str

    @classmethod
    def from_record(cls, record: StreamRecord) -> "NormalizedEvent":
        return cls(body=record.to_body(), correlation_id=record.id)


class SendResult(BaseModel):
    """
    Outcome of Sink.send_batch.

    delivered: correlation ids confirmed by the sink, in input order.
    rejected: correlation ids the sink can never deliver (e.g. oversized).
    Ids in neither list failed transiently and are left for redelivery.
    """
    delivered: List[str] = Field(default_factory=list)
    rejected: List[str] = Field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return len(self.delivered)

    @classmethod
    def prefix(cls, events: Sequence[NormalizedEvent], count: int) -> "SendResult":
        """Result for sinks that only report how many leading events succeeded."""
        count = max(0, min(count, len(events)))
        return cls(delivered=[e.correlation_id for e in events[:count]])
