from .frame_source import (
    FrameHandle,
    FrameSource,
    CameraFrameSource,
    StillFrameSource,
    PushFrameSource,
)

__all__ = ["FrameHandle", "FrameSource", "CameraFrameSource", "StillFrameSource", "PushFrameSource"]
