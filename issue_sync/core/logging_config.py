"""
Clean, minimal logging configuration for Issue Sync.
Console + rotating file, credential masking, quiet third-party libraries.
"""

import logging
import sys
import re
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional

from issue_sync.core.config import get_settings

SERVICE_NAME = "issue-sync"

# Global flag to track if logging has been set up
_logging_configured = False


class CredentialMaskingFilter(logging.Filter):
    """Filter to mask credentials (auth headers, tokens) in log messages."""

    PATTERNS = [
        # Authorization: Bearer xxx / Basic xxx / token xxx
        re.compile(r'((?:Bearer|Basic|token)\s+)([A-Za-z0-9_\-\.=+/:]{8,})'),
        # token=..., apiToken": "...", access_token=...
        re.compile(r'((?:api_?[tT]oken|access_token|refresh_token|token)["\']?\s*[:=]\s*["\']?)([A-Za-z0-9_\-\.=+/]{8,})'),
    ]

    @classmethod
    def _mask(cls, value: str) -> str:
        for pattern in cls.PATTERNS:
            value = pattern.sub(lambda m: f"{m.group(1)}{m.group(2)[:4]}...", value)
        return value

    def filter(self, record):
        """Mask credentials in log message and args."""
        if hasattr(record, 'msg') and isinstance(record.msg, str):
            record.msg = self._mask(record.msg)

        if hasattr(record, 'args') and record.args:
            if isinstance(record.args, tuple):
                record.args = tuple(
                    self._mask(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )
            elif isinstance(record.args, dict):
                record.args = {
                    k: self._mask(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }

        return True


def setup_logging(force_reconfigure=False):
    """
    Clean, minimal logging setup for Issue Sync.

    Rules:
    - DEBUG=true: everything at DEBUG, console and file
    - Otherwise LOG_LEVEL for both handlers
    - File rotation: 10MB max, 5 backups
    - Silence noisy third-party libraries
    """
    global _logging_configured

    if _logging_configured and not force_reconfigure:
        return

    settings = get_settings()
    level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    # Clear any existing handlers
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        log_dir / f"{SERVICE_NAME}.log",
        maxBytes=10*1024*1024,  # 10MB
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    root_logger.setLevel(level)

    masking_filter = CredentialMaskingFilter()
    console_handler.addFilter(masking_filter)
    file_handler.addFilter(masking_filter)

    _silence_third_party_loggers(settings.DEBUG)

    _logging_configured = True


def _silence_third_party_loggers(debug: bool = False):
    """Reduce verbosity of noisy third-party libraries."""

    # HTTP libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    # Database libraries
    logging.getLogger("sqlalchemy").setLevel(logging.CRITICAL)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.CRITICAL)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.CRITICAL)

    # Message queue and key-value store
    logging.getLogger("pika").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)

    if not debug:
        logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a clean logger instance.

    Args:
        name: Logger name. If None, uses calling module name.

    Returns:
        Standard Python logger instance.
    """
    if name is None:
        import inspect
        frame = inspect.currentframe()
        if frame and frame.f_back:
            name = frame.f_back.f_globals.get('__name__', 'unknown')
        else:
            name = 'unknown'

    return logging.getLogger(name)


class TenantLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the tenant id."""

    def process(self, msg, kwargs):
        if self.extra and self.extra.get('tenant'):
            return f"[{self.extra['tenant']}] {msg}", kwargs
        return msg, kwargs


def get_tenant_logger(name: Optional[str] = None, tenant_id: Optional[str] = None):
    """
    Get a tenant-aware logger.

    Args:
        name: Logger name.
        tenant_id: Tenant id for context (added to log messages).

    Returns:
        Logger, or a TenantLoggerAdapter when a tenant id is given.
    """
    logger = get_logger(name)

    if tenant_id:
        return TenantLoggerAdapter(logger, {'tenant': tenant_id})

    return logger


class LoggerMixin:
    """Mixin to add clean logging to classes."""

    @property
    def logger(self) -> logging.Logger:
        """Returns logger for the class."""
        return get_logger(f"{self.__class__.__module__}.{self.__class__.__name__}")
