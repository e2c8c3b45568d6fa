import asyncio
from pathlib import Path
from typing import Dict, Iterable, Optional

import aiofiles

from .logging_utils import get_module_logger


logger = get_module_logger("ConfigManager")


class ConfigManager:
    """Reader for the flat ``key = value`` config files used by the bridge."""

    def __init__(self):
        self.logger = get_module_logger("ConfigManager")

    # ------------------------------------------------------------------
    # Internal helpers

    @staticmethod
    def parse_config_lines(lines: Iterable[str]) -> Dict[str, str]:
        config: Dict[str, str] = {}

        for raw_line in lines:
            line = raw_line.strip()
            if not line or line.startswith('#'):
                continue
            if '=' not in line:
                continue

            key, value = line.split('=', 1)
            key = key.strip()
            value = value.strip()

            if '#' in value:
                value = value.split('#')[0].strip()

            if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                value = value[1:-1]

            config[key] = value

        return config

    def read_config(self, config_path: Path) -> Dict[str, str]:
        """Synchronous read. Missing files yield an empty config."""
        if not config_path.exists():
            return {}

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                return self.parse_config_lines(f)
        except OSError as e:
            logger.error("Failed to read config %s: %s", config_path, e)
            return {}

    async def read_config_async(self, config_path: Path) -> Dict[str, str]:
        """Async version for use in async contexts."""
        if not await asyncio.to_thread(config_path.exists):
            return {}

        try:
            lines: list[str] = []
            async with aiofiles.open(config_path, 'r', encoding='utf-8') as f:
                async for line in f:
                    lines.append(line)
            return self.parse_config_lines(lines)
        except OSError as e:
            logger.error("Failed to read config %s: %s", config_path, e)
            return {}

    # ------------------------------------------------------------------
    # Typed getters

    def get_bool(self, config: Dict[str, str], key: str, default: bool = False) -> bool:
        if key not in config:
            return default

        value = str(config[key]).lower()
        return value in ('true', '1', 'yes', 'on')

    def get_int(self, config: Dict[str, str], key: str, default: int = 0) -> int:
        value = self.get_optional_int(config, key)
        return default if value is None else value

    def get_float(self, config: Dict[str, str], key: str, default: float = 0.0) -> float:
        value = self.get_optional_float(config, key)
        return default if value is None else value

    def get_str(self, config: Dict[str, str], key: str, default: str = "") -> str:
        return config.get(key, default)

    # A key that is absent or blank is "not configured"; the engine then
    # applies its own default for the corresponding flag.

    def get_optional_int(self, config: Dict[str, str], key: str) -> Optional[int]:
        raw = str(config.get(key, "")).strip()
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning("Invalid int value for %s: %s, ignoring", key, raw)
            return None

    def get_optional_float(self, config: Dict[str, str], key: str) -> Optional[float]:
        raw = str(config.get(key, "")).strip()
        if not raw:
            return None
        try:
            return float(raw)
        except ValueError:
            logger.warning("Invalid float value for %s: %s, ignoring", key, raw)
            return None

    def get_optional_path(self, config: Dict[str, str], key: str) -> Optional[Path]:
        raw = str(config.get(key, "")).strip()
        return Path(raw).expanduser() if raw else None


_config_manager = ConfigManager()


def get_config_manager() -> ConfigManager:
    return _config_manager
