"""Configuration for the synchronization engine."""

import os
from dataclasses import dataclass, fields
from typing import Optional, Dict, Any, Mapping, Tuple
from pathlib import Path

from .exceptions import ConfigurationError


# Option names accepted by from_options in the camelCase form used by
# browser-side callers.
_CAMEL_CASE_OPTIONS = {
    "appName": "app_name",
    "version": "version",
    "enableRemote": "enable_remote",
    "enableCaching": "enable_caching",
    "enableOfflineQueue": "enable_offline_queue",
}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_tuple(name: str, default: str) -> Tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    return int(raw) if raw else None


@dataclass
class EngineConfig:
    """Configuration settings for the synchronization engine."""

    # Application identity
    app_name: str = "localsync"
    version: str = "1.0"

    # Subsystem toggles
    enable_remote: bool = True
    enable_caching: bool = True
    enable_offline_queue: bool = True

    # Remote settings
    remote_url: Optional[str] = None
    remote_collection: str = "user_data"
    remote_timeout_seconds: float = 5.0

    # Cache settings
    cache_ttl_seconds: float = 300.0  # 5 minutes
    cache_max_entries: int = 1000

    # Retry settings
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 60.0

    # Connectivity settings
    connectivity_poll_interval_seconds: float = 30.0

    # Local storage settings
    storage_path: Optional[str] = None
    storage_quota_bytes: Optional[int] = None
    legacy_keys: Tuple[str, ...] = ()
    non_critical_prefixes: Tuple[str, ...] = (
        "nav_telemetry_", "blog_analytics_", "onboarding_analytics_"
    )
    critical_prefixes: Tuple[str, ...] = ("user_profile", "research_consent_", "app_settings")

    # Logging settings
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.legacy_keys = tuple(self.legacy_keys)
        self.non_critical_prefixes = tuple(self.non_critical_prefixes)
        self.critical_prefixes = tuple(self.critical_prefixes)
        self.validate()

    def validate(self) -> None:
        """Validate configuration parameters."""
        errors = []

        if not self.app_name:
            errors.append("App name must not be empty")

        for name in ("enable_remote", "enable_caching", "enable_offline_queue"):
            if not isinstance(getattr(self, name), bool):
                errors.append(f"{name} must be a boolean, got {getattr(self, name)!r}")

        # Validate timeouts
        if self.remote_timeout_seconds <= 0:
            errors.append(f"Remote timeout must be positive, got {self.remote_timeout_seconds}")

        if self.cache_ttl_seconds <= 0:
            errors.append(f"Cache TTL must be positive, got {self.cache_ttl_seconds}")

        if self.cache_max_entries <= 0:
            errors.append(f"Cache size must be positive, got {self.cache_max_entries}")

        # Validate retry settings
        if self.retry_base_delay_seconds <= 0:
            errors.append(f"Retry base delay must be positive, got {self.retry_base_delay_seconds}")

        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            errors.append(
                f"Retry max delay must be at least the base delay, got {self.retry_max_delay_seconds}"
            )

        if self.connectivity_poll_interval_seconds <= 0:
            errors.append(
                f"Connectivity poll interval must be positive, got {self.connectivity_poll_interval_seconds}"
            )

        if self.storage_quota_bytes is not None and self.storage_quota_bytes <= 0:
            errors.append(f"Storage quota must be positive, got {self.storage_quota_bytes}")

        # Validate log level
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            errors.append(f"Log level must be one of {valid_log_levels}, got {self.log_level}")

        if errors:
            raise ConfigurationError(errors)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_options(cls, options: Optional[Mapping[str, Any]] = None) -> "EngineConfig":
        """Create configuration from an options record.

        Accepts the camelCase names (``appName``, ``enableRemote``...) as
        well as the snake_case field names. Unknown options are rejected.
        """
        if options is None:
            return cls()
        if isinstance(options, EngineConfig):
            return options

        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        unknown = []
        for name, value in options.items():
            field_name = _CAMEL_CASE_OPTIONS.get(name, name)
            if field_name not in known:
                unknown.append(name)
                continue
            values[field_name] = value

        if unknown:
            raise ConfigurationError([f"Unknown option(s): {', '.join(sorted(unknown))}"])

        return cls(**values)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create configuration from environment variables with validation."""
        try:
            return cls(
                app_name=os.getenv("LOCALSYNC_APP_NAME", "localsync"),
                version=os.getenv("LOCALSYNC_VERSION", "1.0"),

                enable_remote=_env_bool("LOCALSYNC_ENABLE_REMOTE", "true"),
                enable_caching=_env_bool("LOCALSYNC_ENABLE_CACHING", "true"),
                enable_offline_queue=_env_bool("LOCALSYNC_ENABLE_OFFLINE_QUEUE", "true"),

                remote_url=os.getenv("LOCALSYNC_REMOTE_URL") or None,
                remote_collection=os.getenv("LOCALSYNC_REMOTE_COLLECTION", "user_data"),
                remote_timeout_seconds=float(os.getenv("LOCALSYNC_REMOTE_TIMEOUT", "5.0")),

                cache_ttl_seconds=float(os.getenv("LOCALSYNC_CACHE_TTL", "300")),
                cache_max_entries=int(os.getenv("LOCALSYNC_CACHE_MAX_ENTRIES", "1000")),

                retry_base_delay_seconds=float(os.getenv("LOCALSYNC_RETRY_BASE_DELAY", "1.0")),
                retry_max_delay_seconds=float(os.getenv("LOCALSYNC_RETRY_MAX_DELAY", "60.0")),

                connectivity_poll_interval_seconds=float(
                    os.getenv("LOCALSYNC_CONNECTIVITY_POLL_INTERVAL", "30.0")
                ),

                storage_path=os.getenv("LOCALSYNC_STORAGE_PATH") or None,
                storage_quota_bytes=_env_optional_int("LOCALSYNC_STORAGE_QUOTA_BYTES"),
                legacy_keys=_env_tuple("LOCALSYNC_LEGACY_KEYS", ""),
                non_critical_prefixes=_env_tuple(
                    "LOCALSYNC_NON_CRITICAL_PREFIXES",
                    "nav_telemetry_,blog_analytics_,onboarding_analytics_"
                ),
                critical_prefixes=_env_tuple(
                    "LOCALSYNC_CRITICAL_PREFIXES", "user_profile,research_consent_,app_settings"
                ),

                log_level=os.getenv("LOCALSYNC_LOG_LEVEL", "INFO"),
            )
        except ConfigurationError:
            raise
        except ValueError as e:
            raise ConfigurationError([f"Invalid environment variable format: {e}"])

    @classmethod
    def from_file(cls, config_path: str) -> "EngineConfig":
        """Load configuration from a .env file."""
        from dotenv import load_dotenv

        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        # Load environment variables from file
        load_dotenv(config_file, override=True)

        return cls.from_env()
