from .bridge_protocol import (
    BridgeMessage,
    EngineErrorKind,
    FocusData,
    FocusState,
    LineDecoder,
    MessageType,
    classify_engine_error,
)

__all__ = [
    'BridgeMessage',
    'EngineErrorKind',
    'FocusData',
    'FocusState',
    'LineDecoder',
    'MessageType',
    'classify_engine_error',
]
