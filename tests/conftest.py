import asyncio
import os
import stat
import time

import pytest
import pytest_asyncio

from config import Settings
from stream_registry import StreamRegistry
from merge_coordinator import MergeCoordinator


# Stand-in for ffmpeg. Streaming invocations (-stream_loop) write a playlist
# and one segment next to the output path, then sleep until signalled.
# Merge invocations write their last argument and exit with MERGE_EXIT.
FAKE_FFMPEG = """#!/bin/sh
for arg; do last="$arg"; done
case " $* " in
  *" -stream_loop "*)
    out_dir=$(dirname "$last")
    echo "#EXTM3U" > "$last"
    echo "segment" > "$out_dir/segment_00000.ts"
    exec sleep 60
    ;;
esac
if [ "{merge_exit}" != "0" ]; then
  echo "Error while processing the decoded data" >&2
  exit {merge_exit}
fi
echo "merged video" > "$last"
exit 0
"""

# Transcoder that dies right after starting
CRASHING_FFMPEG = """#!/bin/sh
echo "Invalid data found when processing input" >&2
exit 1
"""

# Transcoder that writes one more segment after SIGTERM, re-creating its
# output directory if it was already removed
LATE_WRITER_FFMPEG = """#!/bin/sh
for arg; do last="$arg"; done
out_dir=$(dirname "$last")
echo "#EXTM3U" > "$last"
trap 'sleep 0.3; mkdir -p "$out_dir"; echo late > "$out_dir/segment_00001.ts"; exit 0' TERM
while :; do sleep 0.1; done
"""

# Transcoder that ignores SIGTERM
STUBBORN_FFMPEG = """#!/bin/sh
trap '' TERM
while :; do sleep 0.1; done
"""


def write_script(path, content: str) -> str:
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def make_settings(tmp_path, script: str, **overrides) -> Settings:
    values = dict(
        UPLOAD_DIR=str(tmp_path / "uploads"),
        OUTPUT_DIR=str(tmp_path / "output"),
        FFMPEG_BINARY=script,
        STOP_GRACE_PERIOD=1.0,
        MERGE_EXPIRY_SECONDS=60.0,
        STREAM_CALLBACK_URL=None,
        API_TOKEN=None,
    )
    values.update(overrides)
    os.makedirs(values["UPLOAD_DIR"], exist_ok=True)
    return Settings(**values)


def make_input(settings: Settings, name: str = "input.mp4") -> str:
    path = os.path.join(settings.UPLOAD_DIR, name)
    with open(path, "wb") as fh:
        fh.write(b"not really a video")
    return path


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    """Poll predicate until it is truthy or timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())


def wait_for_sync(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def fake_ffmpeg(tmp_path):
    return write_script(tmp_path / "ffmpeg", FAKE_FFMPEG.format(merge_exit=0))


@pytest.fixture
def failing_ffmpeg(tmp_path):
    return write_script(tmp_path / "ffmpeg-fail", FAKE_FFMPEG.format(merge_exit=1))


@pytest.fixture
def settings(tmp_path, fake_ffmpeg):
    return make_settings(tmp_path, fake_ffmpeg)


@pytest_asyncio.fixture
async def registry(settings):
    manager = StreamRegistry(settings)
    await manager.start()
    yield manager
    await manager.shutdown()


@pytest_asyncio.fixture
async def coordinator(registry, settings):
    merges = MergeCoordinator(registry, settings)
    yield merges
    await merges.shutdown()
