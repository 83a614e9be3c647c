import asyncio

import numpy as np
import pytest

from facegate.app.config import CameraConfig
from facegate.app.errors import CameraInUseError
from facegate.camera import PushFrameSource, StillFrameSource


def test_single_outstanding_handle():
    src = StillFrameSource(np.zeros((4, 4, 3), dtype=np.uint8))
    handle = src.acquire(CameraConfig())
    with pytest.raises(CameraInUseError):
        src.acquire(CameraConfig())
    handle.release()
    handle.release()
    assert not src.in_use
    with src.acquire(CameraConfig()) as again:
        assert again.read().shape == (4, 4, 3)
    assert not src.in_use


def test_released_handle_reads_nothing():
    src = StillFrameSource(np.ones((2, 2, 3), dtype=np.uint8))
    handle = src.acquire(CameraConfig())
    src.release(handle)
    assert handle.read() is None


def test_still_source_needs_an_image():
    with pytest.raises(ValueError):
        StillFrameSource(np.zeros((0,), dtype=np.uint8))


def test_push_source_keeps_only_latest_frame():
    src = PushFrameSource()
    assert not src.push(np.zeros((2, 2, 3), dtype=np.uint8))

    async def main():
        handle = src.acquire(CameraConfig())
        for value in (1, 2, 3):
            assert src.push(np.full((2, 2, 3), value, dtype=np.uint8))
        frame = await src.next_frame(handle)
        src.release(handle)
        after = await src.next_frame(handle)
        return frame, after

    frame, after = asyncio.run(main())
    assert int(frame[0, 0, 0]) == 3
    assert after is None


def test_push_release_wakes_reader():
    src = PushFrameSource()

    async def main():
        handle = src.acquire(CameraConfig())
        reader = asyncio.create_task(src.next_frame(handle))
        await asyncio.sleep(0)
        handle.release()
        return await asyncio.wait_for(reader, timeout=1.0)

    assert asyncio.run(main()) is None
