from .sources import DeviceLost, ReplayFrameSource, WebcamFrameSource, encode_jpeg, timestamp_us

__all__ = [
    "DeviceLost",
    "ReplayFrameSource",
    "WebcamFrameSource",
    "encode_jpeg",
    "timestamp_us",
]
