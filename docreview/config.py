"""
Configuration System

Manages review engine configuration from multiple sources:
1. Default values
2. Configuration file (docreview.yaml)
3. Environment variables (highest priority)

Also owns logging setup, so no module configures logging at import time.
"""

from typing import Any, Dict, Optional
from pathlib import Path
from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict
import json
import logging
import os
import sys
import yaml

logger = logging.getLogger(__name__)


@dataclass
class StoreConfig:
    """Session persistence configuration"""
    backend: str = "memory"  # memory | sqlite
    path: str = ".docreview/sessions.db"


@dataclass
class SchedulerConfig:
    """Escalation scheduler configuration"""
    enabled: bool = True
    max_workers: int = 4


@dataclass
class AuditConfig:
    """Audit logging configuration"""
    enabled: bool = True
    audit_file: str = ".docreview/audit.jsonl"


@dataclass
class NotificationConfig:
    """Notification transport configuration"""
    enabled: bool = True
    webhook_url: Optional[str] = None  # Log-only transport when unset
    timeout_seconds: float = 10.0


@dataclass
class RetryConfig:
    """Retry configuration"""
    max_attempts: int = 3
    initial_delay_ms: int = 100
    max_delay_ms: int = 5000
    exponential_base: float = 2.0
    jitter: bool = True


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "text"  # text | json
    file: Optional[str] = None
    console: bool = True


@dataclass
class EngineConfig:
    """Complete review engine configuration"""
    store: StoreConfig = field(default_factory=StoreConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Create configuration from dictionary"""
        config = cls()

        if "store" in data:
            config.store = StoreConfig(**data["store"])
        if "scheduler" in data:
            config.scheduler = SchedulerConfig(**data["scheduler"])
        if "audit" in data:
            config.audit = AuditConfig(**data["audit"])
        if "notification" in data:
            config.notification = NotificationConfig(**data["notification"])
        if "retry" in data:
            config.retry = RetryConfig(**data["retry"])
        if "logging" in data:
            config.logging = LoggingConfig(**data["logging"])

        return config


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class ConfigManager:
    """
    Configuration manager with multiple source support

    Load priority (highest to lowest):
    1. Environment variables
    2. Configuration file
    3. Defaults
    """

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize configuration manager

        Args:
            config_file: Optional path to configuration file
        """
        self.config_file = Path(config_file) if config_file else Path("docreview.yaml")
        self._config = self._load_config()

    def _load_config(self) -> EngineConfig:
        config = EngineConfig()

        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    file_data = yaml.safe_load(f)
                    if file_data:
                        config = EngineConfig.from_dict(file_data)
            except (OSError, yaml.YAMLError, TypeError) as e:
                logger.warning(f"Failed to load config file {self.config_file}: {e}")

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: EngineConfig) -> EngineConfig:
        """
        Apply environment variable overrides

        Environment variables format: DOCREVIEW_<SECTION>_<KEY>
        Example: DOCREVIEW_SCHEDULER_MAX_WORKERS=8

        Args:
            config: Base configuration

        Returns:
            Configuration with environment overrides applied
        """
        # Store overrides
        if backend := os.getenv("DOCREVIEW_STORE_BACKEND"):
            config.store.backend = backend
        if store_path := os.getenv("DOCREVIEW_STORE_PATH"):
            config.store.path = store_path

        # Scheduler overrides
        if enabled := os.getenv("DOCREVIEW_SCHEDULER_ENABLED"):
            config.scheduler.enabled = _env_bool(enabled)
        if workers := os.getenv("DOCREVIEW_SCHEDULER_MAX_WORKERS"):
            config.scheduler.max_workers = int(workers)

        # Audit overrides
        if enabled := os.getenv("DOCREVIEW_AUDIT_ENABLED"):
            config.audit.enabled = _env_bool(enabled)
        if audit_file := os.getenv("DOCREVIEW_AUDIT_FILE"):
            config.audit.audit_file = audit_file

        # Notification overrides
        if enabled := os.getenv("DOCREVIEW_NOTIFICATION_ENABLED"):
            config.notification.enabled = _env_bool(enabled)
        if webhook_url := os.getenv("DOCREVIEW_NOTIFICATION_WEBHOOK_URL"):
            config.notification.webhook_url = webhook_url
        if timeout := os.getenv("DOCREVIEW_NOTIFICATION_TIMEOUT_SECONDS"):
            config.notification.timeout_seconds = float(timeout)

        # Logging overrides
        if log_level := os.getenv("DOCREVIEW_LOG_LEVEL"):
            config.logging.level = log_level
        if log_format := os.getenv("DOCREVIEW_LOG_FORMAT"):
            config.logging.format = log_format
        if log_file := os.getenv("DOCREVIEW_LOG_FILE"):
            config.logging.file = log_file

        return config

    def get(self, section: Optional[str] = None) -> Any:
        """
        Get configuration section or entire config

        Args:
            section: Optional section name (store, scheduler, etc.)

        Returns:
            Configuration section or entire config
        """
        if section is None:
            return self._config

        return getattr(self._config, section, None)

    def update(self, section: str, key: str, value: Any) -> None:
        """Update configuration value at runtime"""
        section_obj = getattr(self._config, section, None)
        if section_obj is None:
            raise ValueError(f"Unknown configuration section: {section}")

        if not hasattr(section_obj, key):
            raise ValueError(f"Unknown configuration key: {section}.{key}")

        setattr(section_obj, key, value)

    def save(self, file_path: Optional[Path] = None) -> None:
        """Save configuration to file"""
        save_path = Path(file_path) if file_path else self.config_file
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, 'w') as f:
            yaml.dump(self._config.to_dict(), f, default_flow_style=False)

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate configuration

        Returns:
            Tuple of (is_valid, errors)
        """
        errors = []

        if self._config.store.backend not in ("memory", "sqlite"):
            errors.append("Store backend must be 'memory' or 'sqlite'")
        if self._config.store.backend == "sqlite" and not self._config.store.path:
            errors.append("SQLite store requires a path")

        if self._config.scheduler.max_workers < 1:
            errors.append("Scheduler max workers must be at least 1")

        if self._config.notification.timeout_seconds <= 0:
            errors.append("Notification timeout must be positive")
        webhook_url = self._config.notification.webhook_url
        if webhook_url and not webhook_url.startswith(("http://", "https://")):
            errors.append("Notification webhook URL must be http(s)")

        if self._config.retry.max_attempts < 1:
            errors.append("Retry max attempts must be at least 1")
        if self._config.retry.initial_delay_ms < 0:
            errors.append("Retry initial delay must be non-negative")
        if self._config.retry.max_delay_ms < self._config.retry.initial_delay_ms:
            errors.append("Retry max delay must be >= initial delay")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self._config.logging.level.upper() not in valid_levels:
            errors.append(f"Logging level must be one of: {', '.join(valid_levels)}")
        if self._config.logging.format not in ("text", "json"):
            errors.append("Logging format must be 'text' or 'json'")

        return len(errors) == 0, errors

    def reload(self) -> None:
        """Reload configuration from file"""
        self._config = self._load_config()


# ============================================================================
# LOGGING SETUP
# ============================================================================

class JSONFormatter(logging.Formatter):
    """JSON log formatter for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in ("session_id", "rule_id", "reviewer_id"):
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry, ensure_ascii=False)


TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(config: Optional[LoggingConfig] = None) -> logging.Logger:
    """
    Configure the `docreview` logger tree.

    Replaces previously installed handlers so repeated calls do not
    duplicate output.
    """
    config = config or LoggingConfig()
    level = getattr(logging, config.level.upper(), logging.INFO)

    if config.format == "json":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger("docreview")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    handlers: list[logging.Handler] = []
    if config.console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.file))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        root.addHandler(handler)
    root.setLevel(level)

    return root
