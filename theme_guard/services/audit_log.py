# theme_guard/services/audit_log.py
"""
Leveled, append-only security audit log.

Entries are JSON lines written through a dedicated rotating file handler.
The handler is not attached to any logger: the audit log is a sink of its
own, and when its file cannot be written the entry is handed to the generic
application logger instead.
"""
import json
import logging
import os
import re
import time
from datetime import datetime, timezone
from enum import IntEnum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from theme_guard.core.config import Settings
from theme_guard.core.logging_config import get_fallback_logger

AUDIT_LOGGER_NAME = "theme_guard.audit"

REDACTED = "[REDACTED]"

SENSITIVE_CONTEXT_KEYS = ("password", "token", "secret", "api_key", "apikey", "auth", "credential", "cookie")

SECRET_PATTERNS = [
    (re.compile(r"password['\"\s]*[:=]['\"\s]*[^\s'\"]+", re.IGNORECASE), "password=" + REDACTED),
    (re.compile(r"token['\"\s]*[:=]['\"\s]*[^\s'\"]+", re.IGNORECASE), "token=" + REDACTED),
    (re.compile(r"api[_\s]*key['\"\s]*[:=]['\"\s]*[^\s'\"]+", re.IGNORECASE), "api_key=" + REDACTED),
    (re.compile(r"secret['\"\s]*[:=]['\"\s]*[^\s'\"]+", re.IGNORECASE), "secret=" + REDACTED),
]


class LogLevel(IntEnum):
    """Audit levels, numerically aligned with the stdlib logging levels"""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def parse(cls, value: Union["LogLevel", int, str]) -> "LogLevel":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown log level: {value!r}") from None
        return cls(value)


class AuditJsonFormatter(logging.Formatter):
    """One JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "category": getattr(record, "category", "general"),
            "message": record.getMessage(),
            "context": getattr(record, "context", {}),
        }
        return json.dumps(entry, ensure_ascii=False, default=str)


class AuditFileHandler(RotatingFileHandler):
    """
    Rotating handler that rotates *after* a write pushes the file past
    `maxBytes`, renaming it with a timestamp suffix and starting an empty file.

    Writes and rotation both run under the handler lock, so an entry is
    always written whole to exactly one file.
    """

    def __init__(
        self,
        filename: str,
        max_bytes: int,
        retention_days: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(filename, maxBytes=max_bytes, backupCount=0, encoding="utf-8", delay=True)
        self.retention_days = retention_days
        self._clock = clock
        self.degraded = False
        self.last_rotated: Optional[str] = None

    def shouldRollover(self, record: logging.LogRecord) -> bool:
        # Checked after the write in emit(); a pre-write check would start
        # the new file with an entry in it.
        return False

    def emit(self, record: logging.LogRecord) -> None:
        self.degraded = False
        try:
            logging.FileHandler.emit(self, record)
            if self.maxBytes > 0 and self.stream is not None and self.stream.tell() > self.maxBytes:
                self.doRollover()
        except Exception:
            self.handleError(record)

    def rotation_target(self) -> str:
        stamp = datetime.fromtimestamp(self._clock(), tz=timezone.utc).strftime("%Y%m%d-%H%M%S")
        target = f"{self.baseFilename}.{stamp}"
        suffix = 1
        while os.path.exists(target):
            target = f"{self.baseFilename}.{stamp}-{suffix}"
            suffix += 1
        return target

    def doRollover(self) -> None:
        if self.stream:
            self.stream.close()
            self.stream = None

        target = self.rotation_target()
        self.rotate(self.baseFilename, target)
        self.last_rotated = os.path.basename(target)

        # Fresh, empty active file
        self.stream = self._open()
        self.remove_expired(self.retention_days)

    def remove_expired(self, days: int) -> int:
        """Delete rotated files older than `days`; the active file is kept"""
        if days <= 0:
            return 0

        cutoff = self._clock() - days * 86400
        directory = Path(self.baseFilename).parent
        prefix = Path(self.baseFilename).name + "."
        removed = 0

        for path in directory.glob(prefix + "*"):
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as e:
                get_fallback_logger().warning(f"Could not remove rotated audit log {path.name}: {type(e).__name__}")
        return removed

    def handleError(self, record: logging.LogRecord) -> None:
        """Hand the entry to the generic application log; never raise"""
        self.degraded = True
        try:
            get_fallback_logger().log(
                record.levelno,
                "Audit log not writable, entry: %s",
                self.format(record),
            )
        except Exception:
            # The fallback channel failed as well; nothing else to report to
            pass


class AuditLog:
    """
    Security audit log shared by the rate limiter and the sessions.

    Usage:
        audit = AuditLog(settings)
        audit.warning("rate_limit_exceeded", "Rate limit exceeded for action: search",
                      {"action": "search", "limit": 5})
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time):
        self.settings = settings
        self._clock = clock
        self.min_level = LogLevel.parse(settings.AUDIT_LOG_MIN_LEVEL)
        self.max_value_length = settings.AUDIT_CONTEXT_MAX_LENGTH
        self.log_dir = Path(settings.AUDIT_LOG_DIR)
        self.log_file = self.log_dir / Path(settings.AUDIT_LOG_FILE).name
        self._path_prefixes = sorted(
            ((prefix, placeholder) for prefix, placeholder in settings.path_prefixes().items() if len(prefix) > 1),
            key=lambda item: len(item[0]),
            reverse=True,
        )

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            get_fallback_logger().warning(f"Audit log directory unavailable: {type(e).__name__}")

        self._handler = AuditFileHandler(
            str(self.log_file),
            max_bytes=settings.AUDIT_LOG_MAX_BYTES,
            retention_days=settings.AUDIT_LOG_RETENTION_DAYS,
            clock=clock,
        )
        self._handler.setFormatter(AuditJsonFormatter())

    @property
    def degraded(self) -> bool:
        """True while the last write went to the fallback channel"""
        return self._handler.degraded

    def append(
        self,
        level: Union[LogLevel, int, str],
        category: str,
        message: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """
        Write one entry. Never raises.

        Args:
            level: DEBUG, INFO, WARNING, ERROR or CRITICAL
            category: Event type, e.g. "rate_limit_exceeded"
            message: Human-readable text (paths and secrets are scrubbed)
            context: Extra fields; long values are truncated
        """
        try:
            level = LogLevel.parse(level)
            if level < self.min_level:
                return

            record = logging.LogRecord(
                name=AUDIT_LOGGER_NAME,
                level=int(level),
                pathname="",
                lineno=0,
                msg=self._sanitize_text(str(message)),
                args=None,
                exc_info=None,
            )
            record.created = self._clock()
            record.category = self._sanitize_text(str(category))[:64]
            record.context = self._sanitize_context(context or {})
        except Exception as e:
            get_fallback_logger().error(f"Could not build audit entry: {type(e).__name__}")
            return

        self._handler.handle(record)

    def debug(self, category: str, message: str, context: Optional[Mapping[str, Any]] = None) -> None:
        self.append(LogLevel.DEBUG, category, message, context)

    def info(self, category: str, message: str, context: Optional[Mapping[str, Any]] = None) -> None:
        self.append(LogLevel.INFO, category, message, context)

    def warning(self, category: str, message: str, context: Optional[Mapping[str, Any]] = None) -> None:
        self.append(LogLevel.WARNING, category, message, context)

    def error(self, category: str, message: str, context: Optional[Mapping[str, Any]] = None) -> None:
        self.append(LogLevel.ERROR, category, message, context)

    def critical(self, category: str, message: str, context: Optional[Mapping[str, Any]] = None) -> None:
        self.append(LogLevel.CRITICAL, category, message, context)

    def _sanitize_text(self, text: str) -> str:
        for prefix, placeholder in self._path_prefixes:
            text = text.replace(prefix, placeholder)
        for pattern, replacement in SECRET_PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def _sanitize_value(self, value: Any) -> Any:
        if value is None or isinstance(value, (bool, int, float)):
            return value
        if isinstance(value, Mapping):
            return self._sanitize_context(value)
        if isinstance(value, (list, tuple, set)):
            return [self._sanitize_value(item) for item in value]

        text = self._sanitize_text(str(value))
        if len(text) > self.max_value_length:
            text = text[:self.max_value_length]
        return text

    def _sanitize_context(self, context: Mapping[str, Any]) -> Dict[str, Any]:
        safe = {}
        for key, value in context.items():
            key = str(key)
            if any(word in key.lower() for word in SENSITIVE_CONTEXT_KEYS):
                safe[key] = REDACTED
            else:
                safe[key] = self._sanitize_value(value)
        return safe

    def list_files(self) -> List[Dict[str, Any]]:
        """Active and rotated log files, newest first"""
        if not self.log_dir.is_dir():
            return []

        active, rotated = [], []
        name = self.log_file.name
        for path in self.log_dir.iterdir():
            if not path.is_file() or not (path.name == name or path.name.startswith(name + ".")):
                continue
            stat = path.stat()
            info = {
                "path": path.name,
                "size": stat.st_size,
                "modified_at": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            }
            (active if path.name == name else rotated).append(info)

        # Timestamp suffixes sort chronologically
        return active + sorted(rotated, key=lambda f: f["path"], reverse=True)

    def read_entries(self, filters: Optional[Mapping[str, Any]] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Entries of the active file matching every filter field, newest first.

        Lines that are not valid JSON are skipped.
        """
        filters = filters or {}
        self._handler.flush()

        try:
            with open(self.log_file, encoding="utf-8") as fh:
                lines = fh.readlines()
        except OSError:
            return []

        entries = []
        for line in reversed(lines):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if all(entry.get(key) == value for key, value in filters.items()):
                entries.append(entry)
                if len(entries) >= limit:
                    break
        return entries

    def cleanup_old_logs(self, days: Optional[int] = None) -> int:
        """Delete rotated files older than `days` (default: configured retention)"""
        return self._handler.remove_expired(days if days is not None else self.settings.AUDIT_LOG_RETENTION_DAYS)

    def close(self) -> None:
        self._handler.close()
