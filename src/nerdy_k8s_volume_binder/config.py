from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import os
import sys

LOG_FORMAT = "[%(asctime)s] [%(name)s] %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _flag_enabled(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppConfig:
    history_db_path: Path = Path(os.getenv("NKVB_HISTORY_DB_PATH", "./data/bindings.db"))
    record_history: bool = _flag_enabled(os.getenv("NKVB_RECORD_HISTORY", "true"))
    discovery_timeout_seconds: int = int(os.getenv("NKVB_DISCOVERY_TIMEOUT_SECONDS", "20"))
    max_namespace_scan: int = int(os.getenv("NKVB_MAX_NAMESPACE_SCAN", "100"))
    log_level: str = os.getenv("NKVB_LOG_LEVEL", "INFO")


def ensure_directories(config: AppConfig) -> None:
    config.history_db_path.parent.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str | int = "INFO", *, log_file: Path | None = None) -> logging.Logger:
    """Attach a stdout handler (and optionally a file handler) to the package logger."""
    resolved_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(resolved_level, int):
        raise ValueError(f"Unknown log level: {level}")

    package_logger = logging.getLogger("nerdy_k8s_volume_binder")
    package_logger.setLevel(resolved_level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
    return package_logger
