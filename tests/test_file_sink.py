import json
import pytest
from unittest.mock import patch
from streamrelay.connectors.file import LocalFileSink
from streamrelay.errors import ErrorKind, RelayError
from streamrelay.models import NormalizedEvent


def make_events(n):
    return [NormalizedEvent(body={"deviceId": f"d-{i}"}, correlation_id=f"{i}-0") for i in range(n)]


@pytest.mark.asyncio
async def test_connect_creates_directory(tmp_path):
    target = tmp_path / "nested" / "output"
    sink = LocalFileSink(str(target))
    await sink.connect()
    assert target.is_dir()

    # Already existing directory is fine
    await sink.connect()


@pytest.mark.asyncio
async def test_connect_failure(tmp_path):
    blocker = tmp_path / "file.txt"
    blocker.write_text("not a directory")
    sink = LocalFileSink(str(blocker / "output"))

    with pytest.raises(RelayError) as exc:
        await sink.connect()
    assert exc.value.kind is ErrorKind.CONNECTION


@pytest.mark.asyncio
async def test_writes_one_file_per_event(tmp_path):
    sink = LocalFileSink(str(tmp_path))
    await sink.connect()

    result = await sink.send_batch(make_events(3))

    assert result.delivered == ["0-0", "1-0", "2-0"]
    files = sorted(tmp_path.glob("*.json"))
    assert len(files) == 3
    assert not list(tmp_path.glob("*.tmp"))

    contents = [json.loads(f.read_text()) for f in files]
    assert {c["deviceId"] for c in contents} == {"d-0", "d-1", "d-2"}
    for c in contents:
        assert c["_metadata"]["correlationId"] == f"{c['deviceId'][2:]}-0"
        assert c["_metadata"]["writtenAt"].endswith("Z")


@pytest.mark.asyncio
async def test_file_names_are_unique(tmp_path):
    sink = LocalFileSink(str(tmp_path))
    await sink.connect()
    await sink.send_batch(make_events(2))
    await sink.send_batch(make_events(2))
    assert len(list(tmp_path.glob("*.json"))) == 4


@pytest.mark.asyncio
async def test_partial_write_failure(tmp_path):
    sink = LocalFileSink(str(tmp_path))
    await sink.connect()
    original = sink._write_artifact

    async def flaky(path, content):
        if '"1-0"' in content:
            raise OSError("disk full")
        await original(path, content)

    with patch.object(sink, "_write_artifact", side_effect=flaky):
        result = await sink.send_batch(make_events(3))

    assert result.delivered == ["0-0", "2-0"]
    assert result.rejected == []
    assert len(list(tmp_path.glob("*.json"))) == 2


@pytest.mark.asyncio
async def test_empty_batch(tmp_path):
    sink = LocalFileSink(str(tmp_path))
    result = await sink.send_batch([])
    assert result.sent_count == 0
    assert not list(tmp_path.iterdir())


@pytest.mark.asyncio
async def test_disconnect_is_a_no_op(tmp_path):
    sink = LocalFileSink(str(tmp_path))
    await sink.disconnect()
    await sink.disconnect()
