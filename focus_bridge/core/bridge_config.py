"""Session configuration for the analysis engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config_manager import get_config_manager

API_KEY_ENV = "SMARTSPECTRA_API_KEY"
DEFAULT_DOCKER_IMAGE = "focus-wizard-bridge"


class BridgeMode(Enum):
    DOCKER = "docker"
    NATIVE = "native"

    @classmethod
    def parse(cls, value: Any) -> "BridgeMode":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if text == "local":
            return cls.NATIVE
        try:
            return cls(text or cls.DOCKER.value)
        except ValueError:
            raise ValueError(f"Unknown bridge mode '{value}' (expected docker or native)") from None


# Flag name on the engine command line for each threshold field.
THRESHOLD_FLAGS = (
    ("gaze_threshold", "--gaze_threshold"),
    ("blink_threshold", "--blink_threshold"),
    ("pulse_threshold", "--pulse_threshold"),
    ("breathing_threshold", "--breathing_threshold"),
)


@dataclass(frozen=True)
class BridgeOptions:
    """Everything needed to start one bridge session.

    ``None`` means "not configured": the matching engine flag is omitted so
    the engine falls back to its own default.
    """

    api_key: str = ""
    mode: BridgeMode = BridgeMode.DOCKER

    # Docker mode
    docker_image: str = DEFAULT_DOCKER_IMAGE
    container_name: Optional[str] = None
    frame_dir: Optional[Path] = None
    build_context: Optional[Path] = None

    # Native mode
    bridge_path: Optional[Path] = None
    camera_index: Optional[int] = None
    capture_width: Optional[int] = None
    capture_height: Optional[int] = None
    cleanup_orphans: bool = True

    # Analysis thresholds (both modes)
    gaze_threshold: Optional[float] = None
    blink_threshold: Optional[float] = None
    pulse_threshold: Optional[float] = None
    breathing_threshold: Optional[float] = None

    @property
    def resolved_container_name(self) -> str:
        return self.container_name or self.docker_image

    def threshold_args(self) -> List[str]:
        args = []
        for field_name, flag in THRESHOLD_FLAGS:
            value = getattr(self, field_name)
            if value is not None:
                args.append(f"{flag}={value}")
        return args

    def with_overrides(self, **overrides: Any) -> "BridgeOptions":
        """Return a copy with every non-None override applied."""
        applied = {key: value for key, value in overrides.items() if value is not None}
        if "mode" in applied:
            applied["mode"] = BridgeMode.parse(applied["mode"])
        return replace(self, **applied)

    def redacted(self) -> Dict[str, Any]:
        """Field dict safe for logging (the API key is masked)."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["mode"] = self.mode.value
        data["api_key"] = "***" if self.api_key else ""
        return data

    @classmethod
    def from_config(cls, config: Dict[str, str], **overrides: Any) -> "BridgeOptions":
        """Build options from a parsed ``config.txt`` plus CLI overrides.

        The API key falls back to ``$SMARTSPECTRA_API_KEY`` when neither the
        config nor the overrides provide one.
        """
        cm = get_config_manager()
        options = cls(
            api_key=cm.get_str(config, "api_key", ""),
            mode=BridgeMode.parse(cm.get_str(config, "mode", BridgeMode.DOCKER.value)),
            docker_image=cm.get_str(config, "docker_image", DEFAULT_DOCKER_IMAGE) or DEFAULT_DOCKER_IMAGE,
            container_name=cm.get_str(config, "container_name", "") or None,
            frame_dir=cm.get_optional_path(config, "frame_dir"),
            build_context=cm.get_optional_path(config, "build_context"),
            bridge_path=cm.get_optional_path(config, "bridge_path"),
            camera_index=cm.get_optional_int(config, "camera_index"),
            capture_width=cm.get_optional_int(config, "capture_width"),
            capture_height=cm.get_optional_int(config, "capture_height"),
            cleanup_orphans=cm.get_bool(config, "cleanup_orphans", True),
            gaze_threshold=cm.get_optional_float(config, "gaze_threshold"),
            blink_threshold=cm.get_optional_float(config, "blink_threshold"),
            pulse_threshold=cm.get_optional_float(config, "pulse_threshold"),
            breathing_threshold=cm.get_optional_float(config, "breathing_threshold"),
        ).with_overrides(**overrides)

        if not options.api_key:
            env_key = os.environ.get(API_KEY_ENV, "")
            if env_key:
                options = replace(options, api_key=env_key)
        return options


__all__ = [
    "API_KEY_ENV",
    "DEFAULT_DOCKER_IMAGE",
    "THRESHOLD_FLAGS",
    "BridgeMode",
    "BridgeOptions",
]
