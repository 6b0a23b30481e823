"""
Tenant Jobs Configuration Management.

Handles loading, saving, and validating configuration from various sources:
- Default values
- Configuration files (TOML)
- Environment variables
- Command-line arguments
"""

from __future__ import annotations

import json
import os
import socket
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional, List

# tomllib ships with Python 3.11+, tomli provides the same API before that
try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore

import tomli_w
import yaml


# Configuration directory and file constants
CONFIG_DIR = Path.home() / ".config" / "tenant-jobs"
CONFIG_FILE = "config.toml"

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "tenant-jobs"
DEFAULT_CONFIG_FILE = "config.toml"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "tenant-jobs"

ENV_PREFIX = "TENANT_JOBS_"

_TRUE_VALUES = ("true", "1", "yes", "on")


@dataclass
class ValidationError:
    """Validation error for configuration."""
    field: str
    message: str
    severity: str  # "error" or "warning"

    def __str__(self) -> str:
        return f"[{self.severity.upper()}] {self.field}: {self.message}"


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class SchedulerConfig:
    """Configuration for the cron dispatcher and maintenance loop."""

    enabled: bool = True
    poll_interval: int = 30  # seconds between dispatcher ticks
    maintenance_interval: int = 60  # seconds between maintenance passes
    batch_size: int = 100  # due definitions handled per tick

    # Claim lease and crash recovery
    claim_lease_seconds: int = 120
    abandon_grace_seconds: int = 60

    # Broken schedules are retried this far out and flagged degraded
    invalid_schedule_fallback_seconds: int = 3600
    default_timezone: str = "UTC"


@dataclass
class ExecutorConfig:
    """Configuration for workers executing claimed jobs."""

    enabled: bool = True
    worker_id: str = field(default_factory=_default_worker_id)
    max_concurrent_jobs: int = 4
    idle_sleep: float = 2.0
    accepted_types: list[str] = field(default_factory=list)  # empty = all

    # Job defaults (a registered job type may override these)
    default_timeout_seconds: int = 300
    default_max_retries: int = 3

    # Retry backoff: base * 2 ** (retry - 1), capped
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 1800.0

    # Pending jobs waiting longer than this gain one priority level (0 = off)
    priority_aging_seconds: int = 0


@dataclass
class DefinitionDefaults:
    """Defaults applied to new cron definitions."""

    max_failures: int = 5


@dataclass
class RetentionConfig:
    """History retention windows."""

    job_history_days: int = 30
    prune_enabled: bool = True


@dataclass
class HttpConfig:
    """Settings for the built-in HTTP job types."""

    api_base_url: str = "http://localhost:3000"
    api_token: Optional[str] = None
    user_agent: str = "tenant-jobs/0.1"
    request_timeout: float = 30.0


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[Path] = None


@dataclass
class TenantJobsConfig:
    """Main configuration container for Tenant Jobs."""

    # Paths
    config_dir: Path = DEFAULT_CONFIG_DIR
    data_dir: Path = DEFAULT_DATA_DIR

    # Sub-configurations
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    definitions: DefinitionDefaults = field(default_factory=DefinitionDefaults)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Database
    database_url: str = ""

    def __post_init__(self):
        """Initialize derived values."""
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir}/tenant_jobs.db"


# Names of the dataclass sections, in file order
SECTIONS = ("scheduler", "executor", "definitions", "retention", "http", "logging")


def load_config(
    config_path: Optional[Path] = None,
    env_prefix: str = ENV_PREFIX,
) -> TenantJobsConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file
    3. Default values

    Args:
        config_path: Path to config file (default: ~/.config/tenant-jobs/config.toml)
        env_prefix: Prefix for environment variables

    Returns:
        Loaded configuration
    """
    config = TenantJobsConfig()

    if config_path is None:
        env_config_dir = os.environ.get(f"{env_prefix}CONFIG_DIR")
        if env_config_dir:
            config_path = Path(env_config_dir) / DEFAULT_CONFIG_FILE
        else:
            config_path = DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE

    if config_path.exists():
        config = _load_from_file(config_path, config)

    config = _load_from_env(config, env_prefix)

    return config


def _apply_section(section_obj: Any, values: dict[str, Any]) -> None:
    for key, value in values.items():
        if hasattr(section_obj, key):
            if key == "file" and value:
                value = Path(value)
            setattr(section_obj, key, value)


def _load_from_file(path: Path, config: TenantJobsConfig) -> TenantJobsConfig:
    """Load configuration from a TOML file."""
    with open(path, "rb") as f:
        data = tomllib.load(f)

    for section in SECTIONS:
        if section in data and isinstance(data[section], dict):
            _apply_section(getattr(config, section), data[section])

    # Top-level settings
    if "config_dir" in data:
        config.config_dir = Path(data["config_dir"])
    if "data_dir" in data:
        config.data_dir = Path(data["data_dir"])
        if "database_url" not in data:
            config.database_url = f"sqlite:///{config.data_dir}/tenant_jobs.db"
    if data.get("database_url"):
        config.database_url = data["database_url"]

    return config


def _load_from_env(config: TenantJobsConfig, prefix: str) -> TenantJobsConfig:
    """Load configuration from environment variables."""

    # Scheduler settings
    if env_val := os.environ.get(f"{prefix}SCHEDULER_ENABLED"):
        config.scheduler.enabled = env_val.lower() in _TRUE_VALUES
    if env_val := os.environ.get(f"{prefix}POLL_INTERVAL"):
        config.scheduler.poll_interval = int(env_val)
    if env_val := os.environ.get(f"{prefix}CLAIM_LEASE_SECONDS"):
        config.scheduler.claim_lease_seconds = int(env_val)

    # Executor settings
    if env_val := os.environ.get(f"{prefix}EXECUTOR_ENABLED"):
        config.executor.enabled = env_val.lower() in _TRUE_VALUES
    if env_val := os.environ.get(f"{prefix}WORKER_ID"):
        config.executor.worker_id = env_val
    if env_val := os.environ.get(f"{prefix}MAX_CONCURRENT_JOBS"):
        config.executor.max_concurrent_jobs = int(env_val)
    if env_val := os.environ.get(f"{prefix}ACCEPTED_TYPES"):
        config.executor.accepted_types = [t.strip() for t in env_val.split(",") if t.strip()]

    # HTTP job types
    if env_val := os.environ.get(f"{prefix}API_BASE_URL"):
        config.http.api_base_url = env_val
    if env_val := os.environ.get(f"{prefix}API_TOKEN"):
        config.http.api_token = env_val

    # Logging settings
    if env_val := os.environ.get(f"{prefix}LOG_LEVEL"):
        config.logging.level = env_val.upper()

    # Paths
    if env_val := os.environ.get(f"{prefix}CONFIG_DIR"):
        config.config_dir = Path(env_val)
    if env_val := os.environ.get(f"{prefix}DATA_DIR"):
        config.data_dir = Path(env_val)
        config.database_url = f"sqlite:///{config.data_dir}/tenant_jobs.db"
    if env_val := os.environ.get(f"{prefix}DATABASE_URL"):
        config.database_url = env_val

    return config


def _section_to_toml(section_obj: Any) -> dict[str, Any]:
    """Convert a section dataclass to TOML-safe values (no None, Paths as str)."""
    result: dict[str, Any] = {}
    for f in fields(section_obj):
        value = getattr(section_obj, f.name)
        if value is None:
            continue
        if isinstance(value, Path):
            value = str(value)
        result[f.name] = value
    return result


def save_config(config: TenantJobsConfig, path: Optional[Path] = None) -> None:
    """
    Save configuration to a TOML file.

    Args:
        config: Configuration to save
        path: Path to save to (default: config.config_dir / config.toml)
    """
    if path is None:
        path = config.config_dir / DEFAULT_CONFIG_FILE

    path.parent.mkdir(parents=True, exist_ok=True)

    document: dict[str, Any] = {
        "config_dir": str(config.config_dir),
        "data_dir": str(config.data_dir),
        "database_url": config.database_url,
    }
    for section in SECTIONS:
        document[section] = _section_to_toml(getattr(config, section))

    with open(path, "wb") as f:
        tomli_w.dump(document, f)


def ensure_directories(config: TenantJobsConfig) -> None:
    """Ensure all required directories exist."""
    config.config_dir.mkdir(parents=True, exist_ok=True)
    config.data_dir.mkdir(parents=True, exist_ok=True)


# Global configuration instance (lazy-loaded)
_global_config: Optional[TenantJobsConfig] = None


def get_config() -> TenantJobsConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config


def set_config(config: TenantJobsConfig) -> None:
    """Set the global configuration instance."""
    global _global_config
    _global_config = config


def clear_config_cache() -> None:
    """Clear the global configuration cache."""
    global _global_config
    _global_config = None


def _convert_value(current_value: Any, value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if isinstance(current_value, bool):
        return value.lower() in _TRUE_VALUES
    if isinstance(current_value, int):
        return int(value)
    if isinstance(current_value, float):
        return float(value)
    if isinstance(current_value, Path):
        return Path(value)
    if isinstance(current_value, list):
        return [v.strip() for v in value.split(",") if v.strip()]
    return value


def set_config_value(section: str, key: str, value: Any, config_path: Optional[Path] = None) -> None:
    """
    Set a single configuration value and persist to file.

    Args:
        section: Configuration section (e.g., 'scheduler', 'executor')
        key: Configuration key within the section
        value: Value to set (converted to the type of the current value)
        config_path: Path to config file (default: CONFIG_DIR / CONFIG_FILE)
    """
    if config_path is None:
        config_path = CONFIG_DIR / CONFIG_FILE

    config = load_config(config_path)

    section_obj = getattr(config, section, None) if section in SECTIONS else None
    if section_obj is None:
        raise ValueError(f"Unknown configuration section: {section}")

    if not hasattr(section_obj, key):
        raise ValueError(f"Unknown configuration key: {section}.{key}")

    setattr(section_obj, key, _convert_value(getattr(section_obj, key), value))

    save_config(config, config_path)


def validate_config(config: Optional[TenantJobsConfig] = None) -> List[ValidationError]:
    """
    Validate configuration and return list of errors.

    Args:
        config: Configuration to validate (default: loaded from file)

    Returns:
        List of validation errors (empty if valid)
    """
    from tenant_jobs.scheduler.exceptions import InvalidScheduleError
    from tenant_jobs.scheduler.schedule import get_timezone

    if config is None:
        config = load_config()

    errors: List[ValidationError] = []

    # Scheduler validation
    for name in ("poll_interval", "maintenance_interval", "claim_lease_seconds", "batch_size"):
        if getattr(config.scheduler, name) <= 0:
            errors.append(ValidationError(
                field=f"scheduler.{name}",
                message="Must be greater than zero.",
                severity="error",
            ))

    if config.scheduler.claim_lease_seconds < config.scheduler.poll_interval:
        errors.append(ValidationError(
            field="scheduler.claim_lease_seconds",
            message="Claim lease is shorter than the poll interval; claims may be reclaimed early.",
            severity="warning",
        ))

    try:
        get_timezone(config.scheduler.default_timezone)
    except InvalidScheduleError:
        errors.append(ValidationError(
            field="scheduler.default_timezone",
            message=f"Unknown timezone: {config.scheduler.default_timezone}",
            severity="error",
        ))

    # Executor validation
    if config.executor.max_concurrent_jobs < 1:
        errors.append(ValidationError(
            field="executor.max_concurrent_jobs",
            message="At least one concurrent job is required.",
            severity="error",
        ))

    if config.executor.default_timeout_seconds <= 0:
        errors.append(ValidationError(
            field="executor.default_timeout_seconds",
            message="Must be greater than zero.",
            severity="error",
        ))

    if config.executor.default_max_retries < 0:
        errors.append(ValidationError(
            field="executor.default_max_retries",
            message="Must not be negative.",
            severity="error",
        ))

    if config.executor.backoff_base_seconds <= 0:
        errors.append(ValidationError(
            field="executor.backoff_base_seconds",
            message="Must be greater than zero.",
            severity="error",
        ))
    elif config.executor.backoff_max_seconds < config.executor.backoff_base_seconds:
        errors.append(ValidationError(
            field="executor.backoff_max_seconds",
            message="Backoff cap is below the base delay.",
            severity="error",
        ))

    # Definition defaults
    if config.definitions.max_failures < 1:
        errors.append(ValidationError(
            field="definitions.max_failures",
            message="Must be at least 1.",
            severity="error",
        ))

    # HTTP job types
    if not config.http.api_base_url.startswith(("http://", "https://")):
        errors.append(ValidationError(
            field="http.api_base_url",
            message=f"Invalid URL format: {config.http.api_base_url}",
            severity="error",
        ))
    if not config.http.api_token:
        errors.append(ValidationError(
            field="http.api_token",
            message="API token not set. api_call jobs will be unauthenticated.",
            severity="warning",
        ))

    # Path validation
    if not config.data_dir.exists():
        errors.append(ValidationError(
            field="data_dir",
            message=f"Data directory does not exist: {config.data_dir}",
            severity="warning",
        ))
    else:
        try:
            test_file = config.data_dir / ".write_test"
            test_file.touch()
            test_file.unlink()
        except OSError:
            errors.append(ValidationError(
                field="data_dir",
                message=f"Data directory is not writable: {config.data_dir}",
                severity="error",
            ))

    return errors


def config_to_dict(config: TenantJobsConfig, mask_secrets: bool = True) -> dict[str, Any]:
    """
    Convert configuration to dictionary.

    Args:
        config: Configuration to convert
        mask_secrets: If True, mask sensitive values like API tokens

    Returns:
        Dictionary representation of config
    """
    sensitive_keys = {"api_key", "token", "password", "secret"}

    def mask_value(key: str, value: Any) -> Any:
        if isinstance(value, Path):
            return str(value)
        if not mask_secrets:
            return value
        if value and any(sk in key.lower() for sk in sensitive_keys):
            if isinstance(value, str) and len(value) > 4:
                return value[:4] + "****"
            return "****"
        return value

    result: dict[str, Any] = {
        "config_dir": str(config.config_dir),
        "data_dir": str(config.data_dir),
        "database_url": config.database_url,
    }
    for section in SECTIONS:
        section_obj = getattr(config, section)
        result[section] = {
            f.name: mask_value(f.name, getattr(section_obj, f.name))
            for f in fields(section_obj)
        }

    return result


def export_config_yaml(config: TenantJobsConfig, mask_secrets: bool = True) -> str:
    """
    Export configuration as YAML string.

    Args:
        config: Configuration to export
        mask_secrets: If True, mask sensitive values

    Returns:
        YAML string representation of config
    """
    config_dict = config_to_dict(config, mask_secrets)
    return yaml.dump(config_dict, default_flow_style=False, sort_keys=False, allow_unicode=True)


def export_config_json(config: TenantJobsConfig, mask_secrets: bool = True) -> str:
    """
    Export configuration as JSON string.

    Args:
        config: Configuration to export
        mask_secrets: If True, mask sensitive values

    Returns:
        JSON string representation of config
    """
    config_dict = config_to_dict(config, mask_secrets)
    return json.dumps(config_dict, indent=2)
