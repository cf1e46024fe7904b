from typing import TYPE_CHECKING
from streamrelay.connectors.base import Sink, StreamSource
from streamrelay.connectors.file import LocalFileSink
from streamrelay.connectors.memory import MemoryStreamSource
from streamrelay.connectors.redis_stream import RedisStreamSource
from streamrelay.errors import ErrorKind, RelayError
from streamrelay.utils.logging import get_logger

if TYPE_CHECKING:
    from streamrelay.settings import Settings

logger = get_logger("connectors")


def create_source(settings: "Settings") -> StreamSource:
    return RedisStreamSource(
        url=settings.REDIS_URL,
        group_start_id=settings.GROUP_START_ID,
        claim_count=settings.PENDING_CLAIM_COUNT,
        dead_letter_stream=settings.dead_letter_stream,
    )


def create_sink(settings: "Settings") -> Sink:
    """Select the sink variant named by OUTPUT_ADAPTER_TYPE."""
    adapter_type = settings.OUTPUT_ADAPTER_TYPE
    logger.info("Initializing output sink...", extra={"adapter": adapter_type})
    if adapter_type == "LOCAL_FILE":
        return LocalFileSink(settings.OUTPUT_DIRECTORY)
    if adapter_type == "EVENT_HUBS":
        # azure-eventhub is only imported when the Event Hubs sink is selected
        from streamrelay.connectors.eventhubs import EventHubsSink
        return EventHubsSink(
            connection_string=settings.EVENT_HUB_CONNECTION_STRING,
            hub_name=settings.EVENT_HUB_NAME,
            use_websockets=settings.EVENT_HUB_USE_WEBSOCKETS,
        )
    raise RelayError(
        ErrorKind.CONFIGURATION,
        f"Invalid OUTPUT_ADAPTER_TYPE: '{adapter_type}'. Must be 'LOCAL_FILE' or 'EVENT_HUBS'.",
    )


__all__ = [
    "StreamSource",
    "Sink",
    "RedisStreamSource",
    "MemoryStreamSource",
    "LocalFileSink",
    "create_source",
    "create_sink",
]
