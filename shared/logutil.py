# shared/logutil.py
from datetime import datetime, UTC
from typing import Dict, Any, Optional
import os

STATUS_EMOJI = {
    "INFO": "ℹ️",
    "WARN": "⚠️",
    "ERROR": "❌",
    "DEBUG": "🔍",
    "OK": "✅",
}

# Lower number = more severe
LOG_LEVELS = {
    "ERROR": 0,
    "WARN": 1,
    "WARNING": 1,
    "INFO": 2,
    "OK": 2,
    "DEBUG": 3,
}


class LogUtil:
    """
    Two-phase logger shared by every TradeMind component.

      - Bootstrap phase: LOG_LEVEL from the environment
      - Configured phase: LOG_LEVEL from the Truth-derived config

    Components get a tagged view of the same logger through child(), so a
    reconciler line reads [ts][trademind:reconciler][INFO].

    Logging must NEVER raise.
    """

    def __init__(self, service_name: str, component: Optional[str] = None, _root: "LogUtil" = None):
        self.service_name = service_name
        self.component = component
        self._root = _root

        if _root is None:
            env_level = os.getenv("LOG_LEVEL", "INFO").upper()
            self._level = LOG_LEVELS.get(env_level, LOG_LEVELS["INFO"])
            self._configured = False

    # -------------------------------------------------
    # Level handling (children defer to the root)
    # -------------------------------------------------

    @property
    def log_level(self) -> int:
        return self._root.log_level if self._root else self._level

    @property
    def debug_enabled(self) -> bool:
        return self.log_level >= LOG_LEVELS["DEBUG"]

    def child(self, component: str) -> "LogUtil":
        root = self._root or self
        return LogUtil(self.service_name, component=component, _root=root)

    def configure_from_config(self, config: Dict[str, Any]) -> None:
        root = self._root or self
        if root._configured:
            return

        try:
            cfg_level = str(config.get("LOG_LEVEL", "")).upper()
            if cfg_level in LOG_LEVELS:
                root._level = LOG_LEVELS[cfg_level]
            root._configured = True

            self.info(
                f"[LOG CONFIGURED] level={self.level_name()}",
                emoji="🧪" if self.debug_enabled else "🔊",
            )
        except Exception:
            # Logging must never break the process
            pass

    def level_name(self) -> str:
        for name, value in LOG_LEVELS.items():
            if value == self.log_level and name not in ("WARNING", "OK"):
                return name
        return "INFO"

    # -------------------------------------------------
    # Internal formatting
    # -------------------------------------------------

    def _tag(self) -> str:
        if self.component:
            return f"{self.service_name}:{self.component}"
        return self.service_name

    def _stamp(self, level: str, message: str, emoji: str):
        now = datetime.now(UTC).isoformat(timespec="seconds")
        symbol = emoji or STATUS_EMOJI.get(level, "")
        return f"[{now}][{self._tag()}][{level}]{symbol} {message}"

    def _emit(self, level: str, message: str, emoji: str = ""):
        try:
            if LOG_LEVELS.get(level, LOG_LEVELS["INFO"]) > self.log_level:
                return
            print(self._stamp(level, message, emoji), flush=True)
        except Exception:
            # Absolute last line of defense
            pass

    # -------------------------------------------------
    # Public API
    # -------------------------------------------------

    def info(self, message: str, emoji: str = STATUS_EMOJI["INFO"]):
        self._emit("INFO", message, emoji)

    def warn(self, message: str, emoji: str = STATUS_EMOJI["WARN"]):
        self._emit("WARN", message, emoji)

    def warning(self, message: str, emoji: str = STATUS_EMOJI["WARN"]):
        # Alias for compatibility with standard logging APIs
        self.warn(message, emoji)

    def error(self, message: str, emoji: str = STATUS_EMOJI["ERROR"]):
        self._emit("ERROR", message, emoji)

    def debug(self, message: str, emoji: str = STATUS_EMOJI["DEBUG"]):
        self._emit("DEBUG", message, emoji)

    def ok(self, message: str, emoji: str = STATUS_EMOJI["OK"]):
        self._emit("OK", message, emoji)
