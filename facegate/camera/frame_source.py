"""Exclusive access to a frame-producing device.

A ``FrameSource`` hands out at most one ``FrameHandle`` at a time. Whoever
acquires the handle owns it and must release it; ``release`` is idempotent so
it can sit in every ``finally`` block without bookkeeping.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
import threading
from typing import Optional

import cv2
import numpy as np

from facegate.app.config import CameraConfig
from facegate.app.errors import CameraInUseError, DeviceBusy, DeviceNotFound, PermissionDenied

logger = logging.getLogger(__name__)


class FrameHandle:
    def __init__(self, source: "FrameSource"):
        self._source = source
        self.released = False

    def read(self) -> Optional[np.ndarray]:
        """Blocking read of one frame; ``None`` when no frame was available."""
        raise NotImplementedError

    async def next_frame(self) -> Optional[np.ndarray]:
        if self.released:
            return None
        return await asyncio.to_thread(self.read)

    def _close(self) -> None:
        pass

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        try:
            self._close()
        finally:
            self._source._handle_released(self)

    def __enter__(self) -> "FrameHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class FrameSource:
    def __init__(self):
        self._lock = threading.RLock()
        self._outstanding: Optional[FrameHandle] = None

    @property
    def in_use(self) -> bool:
        return self._outstanding is not None

    def acquire(self, config: CameraConfig) -> FrameHandle:
        with self._lock:
            if self._outstanding is not None:
                raise CameraInUseError("frame source already has an outstanding handle")
            handle = self._open(config)
            self._outstanding = handle
        logger.debug("Acquired %s", type(handle).__name__)
        return handle

    async def next_frame(self, handle: FrameHandle) -> Optional[np.ndarray]:
        return await handle.next_frame()

    def release(self, handle: FrameHandle) -> None:
        handle.release()

    def _open(self, config: CameraConfig) -> FrameHandle:
        raise NotImplementedError

    def _handle_released(self, handle: FrameHandle) -> None:
        with self._lock:
            if self._outstanding is handle:
                self._outstanding = None
        logger.debug("Released %s", type(handle).__name__)


class CameraHandle(FrameHandle):
    def __init__(self, source: "CameraFrameSource", capture):
        super().__init__(source)
        self._capture = capture
        # VideoCapture is not thread-safe; reads run on worker threads
        self._io_lock = threading.Lock()

    def read(self) -> Optional[np.ndarray]:
        with self._io_lock:
            if self.released or self._capture is None:
                return None
            ok, frame = self._capture.read()
        if not ok or frame is None:
            return None
        return frame

    def _close(self) -> None:
        with self._io_lock:
            capture, self._capture = self._capture, None
            if capture is not None:
                capture.release()


class CameraFrameSource(FrameSource):
    """Local camera through OpenCV, V4L2 first with the default backend as fallback."""

    def _open(self, config: CameraConfig) -> FrameHandle:
        self._check_device_node(config.device_index)
        cap = self._open_capture(config, cv2.CAP_V4L2)
        if cap is None:
            cap = self._open_capture(config, None)
        if cap is None:
            if self._device_node(config.device_index) is not None:
                # Node exists and is accessible, so someone else holds it
                raise DeviceBusy(f"camera {config.device_index} could not be opened")
            raise DeviceNotFound(f"camera {config.device_index} not found")
        logger.info(
            "Camera %s ready: %sx%s",
            config.device_index,
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        return CameraHandle(self, cap)

    @staticmethod
    def _open_capture(config: CameraConfig, api_preference):
        if api_preference is None:
            cap = cv2.VideoCapture(config.device_index)
        else:
            cap = cv2.VideoCapture(config.device_index, api_preference)
        if cap is None or not cap.isOpened():
            if cap is not None:
                cap.release()
            return None
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, config.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, config.height)
        cap.set(cv2.CAP_PROP_FPS, config.fps)
        ok, _ = cap.read()
        if ok:
            return cap
        cap.release()
        return None

    @staticmethod
    def _device_node(index: int) -> Optional[str]:
        if not sys.platform.startswith("linux"):
            return None
        path = f"/dev/video{int(index)}"
        return path if os.path.exists(path) else None

    def _check_device_node(self, index: int) -> None:
        if not sys.platform.startswith("linux"):
            return
        path = self._device_node(index)
        if path is None:
            raise DeviceNotFound(f"/dev/video{int(index)} does not exist")
        if not os.access(path, os.R_OK | os.W_OK):
            raise PermissionDenied(f"no permission to open {path}")


class StillHandle(FrameHandle):
    def __init__(self, source: "StillFrameSource", image: np.ndarray):
        super().__init__(source)
        self._image = image

    def read(self) -> Optional[np.ndarray]:
        if self.released:
            return None
        return self._image.copy()


class StillFrameSource(FrameSource):
    """Serves one decoded image as every frame (single-image enrollment)."""

    def __init__(self, image: np.ndarray):
        super().__init__()
        if image is None or image.size == 0:
            raise ValueError("StillFrameSource needs a non-empty image")
        self.image = image

    def _open(self, config: CameraConfig) -> FrameHandle:
        return StillHandle(self, self.image)


class PushHandle(FrameHandle):
    def __init__(self, source: "PushFrameSource"):
        super().__init__(source)
        self._latest: Optional[np.ndarray] = None
        self._fresh = asyncio.Event()

    def put(self, frame: np.ndarray) -> None:
        # Only the newest frame matters; older ones are dropped
        self._latest = frame
        self._fresh.set()

    def read(self) -> Optional[np.ndarray]:
        return self._latest

    async def next_frame(self) -> Optional[np.ndarray]:
        if self.released:
            return None
        await self._fresh.wait()
        self._fresh.clear()
        frame, self._latest = self._latest, None
        return frame

    def _close(self) -> None:
        self._latest = None
        # Wake a reader blocked in next_frame
        self._fresh.set()


class PushFrameSource(FrameSource):
    """Frames pushed by an external producer, such as a websocket reader."""

    def _open(self, config: CameraConfig) -> FrameHandle:
        return PushHandle(self)

    def push(self, frame: np.ndarray) -> bool:
        handle = self._outstanding
        if not isinstance(handle, PushHandle) or handle.released:
            return False
        handle.put(frame)
        return True
