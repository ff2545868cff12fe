# theme_guard/core/logging_config.py
"""Application logging: console plus a rotating file, configured once at startup"""

import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Generic diagnostic channel the audit log falls back to. It must never be
# routed into the audit log itself.
FALLBACK_LOGGER_NAME = "theme_guard.audit.fallback"


def setup_logging():
    """Configures the logging system"""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = Path(os.getenv("LOG_DIR", "logs"))

    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Console handler (attach once)
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    # File handler (rotating, max. 5 MB per file, max. 5 files)
    log_file = log_dir / 'theme_guard.log'
    if not any(isinstance(h, RotatingFileHandler) and h.baseFilename == str(log_file.resolve())
               for h in root_logger.handlers):
        file_handler = RotatingFileHandler(
            filename=str(log_file),
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return root_logger


def get_fallback_logger() -> logging.Logger:
    """Logger used when the audit log destination is unwritable"""
    return logging.getLogger(FALLBACK_LOGGER_NAME)
