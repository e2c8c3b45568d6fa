from .bridge_config import BridgeMode, BridgeOptions
from .bridge_process import BridgeSession, BridgeState, BridgeSupervisor, TERMINAL_STATES
from .errors import (
    AlreadyRunning,
    BinaryNotFound,
    BridgeError,
    BuildContextNotFound,
    ImageBuildFailed,
    MissingCredential,
    RuntimeUnavailable,
)
from .frame_writer import FrameWriter, frame_filename
from .notifications import BridgeNotification, ErrorSource, NotificationKind, NotificationQueue
from .protocol import BridgeMessage, EngineErrorKind, FocusData, FocusState, LineDecoder, MessageType
from .shutdown_coordinator import get_shutdown_coordinator, ShutdownCoordinator

__all__ = [
    'AlreadyRunning',
    'BinaryNotFound',
    'BridgeError',
    'BridgeMessage',
    'BridgeMode',
    'BridgeNotification',
    'BridgeOptions',
    'BridgeSession',
    'BridgeState',
    'BridgeSupervisor',
    'BuildContextNotFound',
    'EngineErrorKind',
    'ErrorSource',
    'FocusData',
    'FocusState',
    'FrameWriter',
    'ImageBuildFailed',
    'LineDecoder',
    'MessageType',
    'MissingCredential',
    'NotificationKind',
    'NotificationQueue',
    'RuntimeUnavailable',
    'ShutdownCoordinator',
    'TERMINAL_STATES',
    'frame_filename',
    'get_shutdown_coordinator',
]
