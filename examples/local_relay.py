import asyncio
from streamrelay import LocalFileSink, MemoryStreamSource, Relay
from streamrelay.cli import sample_event
from streamrelay.utils.logging import setup_logging

# Relays sample telemetry from an in-process stream into ./output without Redis.
async def main():
    setup_logging("info", "text")

    stream_name = "telemetry:events"
    source = MemoryStreamSource()
    sink = LocalFileSink("output")

    async with Relay(source, sink, stream_name, "local-group", "local-1", poll_timeout_ms=500) as relay:
        for _ in range(10):
            await source.add(stream_name, sample_event())
            await asyncio.sleep(0.1)

        # Give the loop time to drain the last batch
        await asyncio.sleep(1)
        print(relay.status())

if __name__ == "__main__":
    asyncio.run(main())
