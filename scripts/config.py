"""
Centralized configuration management for the channel sync pipeline.

Configuration is loaded from multiple sources with the following priority:
1. Config file (settings.yaml settings section) - highest priority for non-secrets
2. Environment variables - required for secrets, fallback for other settings
3. Default values - lowest priority

Secrets (API key, database tokens) ALWAYS come from environment variables.

Usage:
    from config import get_config

    config = get_config()
    db_url = config.database_url
    page_size = config.video_page_size
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml


# Default configuration values
DEFAULTS = {
    # Database settings
    "database_backend": "turso",
    "database_url": "file:data/channel_sync.db",

    # Logging settings
    "log_dir": "logs",
    "log_level": "DEBUG",
    "console_log_level": "INFO",

    # API retry settings
    "api_max_retries": 3,
    "api_base_delay": 1.0,
    "api_max_delay": 60.0,
    "api_requests_per_second": 2.0,

    # Database retry settings
    "db_max_retries": 5,
    "db_base_delay": 1.0,
    "db_max_delay": 30.0,
    "db_exponential_base": 2.0,

    # Quota settings
    "quota_limit": 10000,
    "quota_warn_threshold": 0.8,
    "quota_abort_threshold": 0.95,
    "quota_checkpoint_threshold": 500,

    # API constants
    "video_page_size": 50,
    "video_batch_size": 50,
    "comment_page_size": 100,
    "max_comments_per_video": 100,
    "video_page_limit": 0,  # 0 = follow continuation tokens until exhausted
}

SETTINGS_CANDIDATES = [
    "config/settings.yaml",
    "../config/settings.yaml",
    "settings.yaml",
]


@dataclass
class Config:
    """
    Configuration container with typed access to all settings.

    Settings are loaded from config file with environment variable fallbacks.
    Secrets always come from environment variables.
    """

    # Database settings
    database_backend: str = DEFAULTS["database_backend"]
    database_url: str = DEFAULTS["database_url"]
    database_auth_token: str = ""  # Always from env var
    postgres_url: str = ""  # Always from env var when using postgres

    # Upstream API
    youtube_api_key: str = ""  # Always from env var

    # Identity the CLI runs as when --user is not given
    user_id: str = ""

    # Logging settings
    log_dir: str = DEFAULTS["log_dir"]
    log_level: str = DEFAULTS["log_level"]
    console_log_level: str = DEFAULTS["console_log_level"]

    # API retry settings
    api_max_retries: int = DEFAULTS["api_max_retries"]
    api_base_delay: float = DEFAULTS["api_base_delay"]
    api_max_delay: float = DEFAULTS["api_max_delay"]
    api_requests_per_second: float = DEFAULTS["api_requests_per_second"]

    # Database retry settings
    db_max_retries: int = DEFAULTS["db_max_retries"]
    db_base_delay: float = DEFAULTS["db_base_delay"]
    db_max_delay: float = DEFAULTS["db_max_delay"]
    db_exponential_base: float = DEFAULTS["db_exponential_base"]

    # Quota settings
    quota_limit: int = DEFAULTS["quota_limit"]
    quota_warn_threshold: float = DEFAULTS["quota_warn_threshold"]
    quota_abort_threshold: float = DEFAULTS["quota_abort_threshold"]
    quota_checkpoint_threshold: int = DEFAULTS["quota_checkpoint_threshold"]

    # API constants
    video_page_size: int = DEFAULTS["video_page_size"]
    video_batch_size: int = DEFAULTS["video_batch_size"]
    comment_page_size: int = DEFAULTS["comment_page_size"]
    max_comments_per_video: int = DEFAULTS["max_comments_per_video"]
    video_page_limit: int = DEFAULTS["video_page_limit"]

    # Source tracking (for debugging)
    _config_file: Optional[str] = None


# Global config instance (singleton pattern)
_config: Optional[Config] = None


def _load_yaml_settings(config_path: str) -> dict:
    """Load settings section from YAML config file."""
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        return config.get("settings") or {}
    except FileNotFoundError:
        return {}
    except (OSError, yaml.YAMLError) as e:
        print(f"Warning: Could not load config file {config_path}: {e}")
        return {}


def _get_env_or_default(key: str, default, cast_type=None):
    """Get value from environment variable or return default."""
    env_value = os.environ.get(key)
    if env_value is None:
        return default
    if cast_type is not None:
        try:
            return cast_type(env_value)
        except (ValueError, TypeError):
            return default
    return env_value


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from file and environment variables.

    Args:
        config_path: Path to YAML config file (optional).
                    If not provided, tries default locations.

    Returns:
        Config object with all settings loaded.
    """
    if config_path is None:
        for candidate in SETTINGS_CANDIDATES:
            if Path(candidate).exists():
                config_path = candidate
                break

    yaml_settings = {}
    if config_path and Path(config_path).exists():
        yaml_settings = _load_yaml_settings(config_path)

    # Priority: yaml > env > default
    def get_setting(yaml_key: str, env_key: str, default, cast_type=None):
        if yaml_key in yaml_settings:
            value = yaml_settings[yaml_key]
            if cast_type is not None:
                try:
                    return cast_type(value)
                except (ValueError, TypeError):
                    pass
            return value
        return _get_env_or_default(env_key, default, cast_type)

    return Config(
        database_backend=get_setting("database_backend", "DATABASE_BACKEND", DEFAULTS["database_backend"]),
        database_url=get_setting("database_url", "TURSO_DATABASE_URL", DEFAULTS["database_url"]),
        database_auth_token=os.environ.get("TURSO_AUTH_TOKEN", ""),
        postgres_url=os.environ.get("POSTGRES_URL", ""),

        youtube_api_key=os.environ.get("YOUTUBE_API_KEY", ""),
        user_id=get_setting("user_id", "CHANNEL_SYNC_USER_ID", ""),

        log_dir=get_setting("log_dir", "LOG_DIR", DEFAULTS["log_dir"]),
        log_level=get_setting("log_level", "LOG_LEVEL", DEFAULTS["log_level"]),
        console_log_level=get_setting("console_log_level", "CONSOLE_LOG_LEVEL", DEFAULTS["console_log_level"]),

        api_max_retries=get_setting("api_max_retries", "API_MAX_RETRIES", DEFAULTS["api_max_retries"], int),
        api_base_delay=get_setting("api_base_delay", "API_BASE_DELAY", DEFAULTS["api_base_delay"], float),
        api_max_delay=get_setting("api_max_delay", "API_MAX_DELAY", DEFAULTS["api_max_delay"], float),
        api_requests_per_second=get_setting(
            "api_requests_per_second", "API_REQUESTS_PER_SECOND", DEFAULTS["api_requests_per_second"], float
        ),

        db_max_retries=get_setting("db_max_retries", "DB_MAX_RETRIES", DEFAULTS["db_max_retries"], int),
        db_base_delay=get_setting("db_base_delay", "DB_BASE_DELAY", DEFAULTS["db_base_delay"], float),
        db_max_delay=get_setting("db_max_delay", "DB_MAX_DELAY", DEFAULTS["db_max_delay"], float),
        db_exponential_base=get_setting("db_exponential_base", "DB_EXPONENTIAL_BASE", DEFAULTS["db_exponential_base"], float),

        quota_limit=get_setting("quota_limit", "YOUTUBE_QUOTA_LIMIT", DEFAULTS["quota_limit"], int),
        quota_warn_threshold=get_setting("quota_warn_threshold", "QUOTA_WARN_THRESHOLD", DEFAULTS["quota_warn_threshold"], float),
        quota_abort_threshold=get_setting("quota_abort_threshold", "QUOTA_ABORT_THRESHOLD", DEFAULTS["quota_abort_threshold"], float),
        quota_checkpoint_threshold=get_setting(
            "quota_checkpoint_threshold", "QUOTA_CHECKPOINT_THRESHOLD", DEFAULTS["quota_checkpoint_threshold"], int
        ),

        video_page_size=get_setting("video_page_size", "VIDEO_PAGE_SIZE", DEFAULTS["video_page_size"], int),
        video_batch_size=get_setting("video_batch_size", "VIDEO_BATCH_SIZE", DEFAULTS["video_batch_size"], int),
        comment_page_size=get_setting("comment_page_size", "COMMENT_PAGE_SIZE", DEFAULTS["comment_page_size"], int),
        max_comments_per_video=get_setting(
            "max_comments_per_video", "MAX_COMMENTS_PER_VIDEO", DEFAULTS["max_comments_per_video"], int
        ),
        video_page_limit=get_setting("video_page_limit", "VIDEO_PAGE_LIMIT", DEFAULTS["video_page_limit"], int),

        _config_file=config_path,
    )


def get_config(config_path: Optional[str] = None, reload: bool = False) -> Config:
    """
    Get the global configuration instance.

    Uses singleton pattern - loads config once and reuses it.

    Args:
        config_path: Path to config file (only used on first load or reload)
        reload: If True, force reload of configuration
    """
    global _config

    if _config is None or reload:
        _config = load_config(config_path)

    return _config


def set_config(config: Config) -> None:
    """
    Set the global configuration instance.

    Useful for testing or when config needs to be set programmatically.
    """
    global _config
    _config = config
