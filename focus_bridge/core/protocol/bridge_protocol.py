import codecs
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..logging_utils import get_module_logger

logger = get_module_logger("BridgeProtocol")


class MessageType(Enum):
    READY = "ready"
    STATUS = "status"
    FOCUS = "focus"
    METRICS = "metrics"
    EDGE = "edge"
    ERROR = "error"


class FocusState(Enum):
    FOCUSED = "focused"
    DISTRACTED = "distracted"
    DROWSY = "drowsy"
    STRESSED = "stressed"
    AWAY = "away"
    TALKING = "talking"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "FocusState":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class FocusData:
    """Typed view over a ``focus`` payload. Missing fields take neutral defaults."""

    state: FocusState = FocusState.UNKNOWN
    focus_score: float = 0.0
    face_detected: bool = False
    is_talking: bool = False
    is_blinking: bool = False
    blink_rate_per_min: float = 0.0
    gaze_x: float = 0.0
    gaze_y: float = 0.0
    has_gaze: bool = False
    pulse_bpm: float = 0.0
    breathing_bpm: float = 0.0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "FocusData":
        return cls(
            state=FocusState.parse(payload.get("state", "unknown")),
            focus_score=_as_float(payload.get("focus_score")),
            face_detected=bool(payload.get("face_detected", False)),
            is_talking=bool(payload.get("is_talking", False)),
            is_blinking=bool(payload.get("is_blinking", False)),
            blink_rate_per_min=_as_float(payload.get("blink_rate_per_min")),
            gaze_x=_as_float(payload.get("gaze_x")),
            gaze_y=_as_float(payload.get("gaze_y")),
            has_gaze=bool(payload.get("has_gaze", False)),
            pulse_bpm=_as_float(payload.get("pulse_bpm")),
            breathing_bpm=_as_float(payload.get("breathing_bpm")),
        )


class EngineErrorKind(Enum):
    USAGE_EXHAUSTED = "usage_exhausted"
    GENERIC = "generic"


# Structured codes the engine may attach as data["code"].
USAGE_EXHAUSTED_CODES = frozenset({"usage_exhausted", "quota_exceeded", "insufficient_credits"})

# Legacy: the engine only sends free text, callers used to match on these.
USAGE_EXHAUSTED_MARKERS = ("credit", "quota", "usage limit", "out of usage")


def classify_engine_error(message: Optional[str], data: Optional[Dict[str, Any]] = None) -> EngineErrorKind:
    """Tell usage/credit exhaustion apart from transient engine errors.

    A structured ``code`` in the payload takes precedence; otherwise the
    message text is matched case-insensitively against known markers.
    """
    code = (data or {}).get("code")
    if code:
        if str(code).lower() in USAGE_EXHAUSTED_CODES:
            return EngineErrorKind.USAGE_EXHAUSTED
        return EngineErrorKind.GENERIC

    text = (message or "").lower()
    if any(marker in text for marker in USAGE_EXHAUSTED_MARKERS):
        return EngineErrorKind.USAGE_EXHAUSTED
    return EngineErrorKind.GENERIC


@dataclass
class BridgeMessage:
    """One decoded event record from the engine's stdout."""

    type_tag: str
    data: Dict[str, Any] = field(default_factory=dict)
    raw: str = ""

    @property
    def message_type(self) -> Optional[MessageType]:
        try:
            return MessageType(self.type_tag)
        except ValueError:
            return None

    def get_status_text(self) -> str:
        return str(self.data.get("status", ""))

    def get_error_message(self) -> str:
        return str(self.data.get("message", ""))

    @classmethod
    def parse(cls, line: str) -> Optional["BridgeMessage"]:
        """Parse one trimmed line; returns None (and logs) when malformed."""
        try:
            decoded = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse line: %s - %s", e, line[:200])
            return None

        if not isinstance(decoded, dict):
            logger.warning("Event is not an object: %s", line[:200])
            return None

        type_tag = decoded.get("type")
        if not isinstance(type_tag, str) or not type_tag:
            logger.warning("Event missing 'type': %s", line[:200])
            return None

        data = decoded.get("data")
        if not isinstance(data, dict):
            data = {}

        return cls(type_tag=type_tag, data=data, raw=line)

    def __repr__(self) -> str:
        return f"BridgeMessage(type={self.type_tag}, data={self.data})"


class LineDecoder:
    """Incremental NDJSON decoder fed with raw stdout chunks.

    Bytes are decoded incrementally, so a multi-byte UTF-8 character split
    across two reads is reassembled. Only the trailing, not yet terminated
    segment is kept between calls.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.malformed_lines = 0

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: Union[bytes, str]) -> List[BridgeMessage]:
        text = self._decoder.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def flush(self) -> List[BridgeMessage]:
        """Decode whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._parse_lines([remainder])

    def _parse_lines(self, lines: List[str]) -> List[BridgeMessage]:
        messages: List[BridgeMessage] = []
        for line in lines:
            trimmed = line.strip()
            if not trimmed:
                continue
            message = BridgeMessage.parse(trimmed)
            if message is None:
                self.malformed_lines += 1
                continue
            messages.append(message)
        return messages


__all__ = [
    "BridgeMessage",
    "EngineErrorKind",
    "FocusData",
    "FocusState",
    "LineDecoder",
    "MessageType",
    "classify_engine_error",
]
