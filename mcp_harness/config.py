from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Default port for the streamable HTTP mode
DEFAULT_PORT = 8902


@dataclass(frozen=True)
class HarnessConfig:
    log_dir: str = "logs"
    log_level: str = "INFO"
    warmup_delay: float = 1.0  # seconds after spawn before deploy returns
    kill_timeout: float = 1.0  # SIGTERM -> SIGKILL escalation
    settle_delay: float = 1.0  # pause after termination for fd/port reclaim
    health_check_timeout: float = 1.0
    port: int = DEFAULT_PORT

    def resolve_log_dir(self) -> Path:
        """Resolve the log directory; relative paths are taken from the cwd."""
        path = Path(self.log_dir).expanduser()
        return path if path.is_absolute() else (Path.cwd() / path).resolve()

    @property
    def log_level_number(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO

    @classmethod
    def from_env(cls, env_path: str | Path | None = None) -> HarnessConfig:
        load_dotenv(env_path)

        return cls(
            log_dir=os.getenv("MCP_HARNESS_LOG_DIR", cls.log_dir),
            log_level=os.getenv("MCP_HARNESS_LOG_LEVEL", cls.log_level),
            warmup_delay=_float_env("MCP_HARNESS_WARMUP_DELAY", cls.warmup_delay),
            kill_timeout=_float_env("MCP_HARNESS_KILL_TIMEOUT", cls.kill_timeout),
            settle_delay=_float_env("MCP_HARNESS_SETTLE_DELAY", cls.settle_delay),
            health_check_timeout=_float_env(
                "MCP_HARNESS_HEALTH_CHECK_TIMEOUT", cls.health_check_timeout
            ),
            port=int(_float_env("MCP_HARNESS_PORT", cls.port)),
        )


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None
    if value < 0:
        raise ValueError(f"{key} must not be negative, got {raw!r}")
    return value
