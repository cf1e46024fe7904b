from streamrelay.connectors import LocalFileSink, MemoryStreamSource, RedisStreamSource, Sink, StreamSource
from streamrelay.errors import ErrorKind, RelayError
from streamrelay.models import NormalizedEvent, PendingEntry, SendResult, StreamRecord
from streamrelay.relay import Relay, RelayState

__version__ = "0.1.0"

__all__ = [
    "Relay",
    "RelayState",
    "StreamSource",
    "Sink",
    "RedisStreamSource",
    "MemoryStreamSource",
    "LocalFileSink",
    "StreamRecord",
    "PendingEntry",
    "NormalizedEvent",
    "SendResult",
    "ErrorKind",
    "RelayError",
]
