#!/usr/bin/env python3
"""
Configuration management for Battle Notifier.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional secrets file, and provides a
clean interface for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

DEFAULT_BATTLES_ENDPOINT = "https://gameinfo.albiononline.com/api/gameinfo/battles"


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # aiohttp access/client chatter is only useful when debugging
    getLogger("aiohttp").setLevel(level_map.get(environ.get("AIOHTTP_LOG_LEVEL", "WARNING").upper(), WARNING))

    return getLogger("BattleNotifier")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "notifier", "models")

    Returns:
        A logger instance named "BattleNotifier.{name}"
    """
    return getLogger(f"BattleNotifier.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager for Battle Notifier.

    Values are loaded from, in increasing order of precedence:
    1. Environment variables
    2. .env file (if present next to this module)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    Example secrets.yaml format:
    ```yaml
    DATABASE_PATH: "/data/battles.db"
    APPLICATIONINSIGHTS_CONNECTION_STRING: "InstrumentationKey=..."
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "battles.db")
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)

        # Gameinfo API
        self.BATTLES_ENDPOINT = environ.get("BATTLES_ENDPOINT", DEFAULT_BATTLES_ENDPOINT)
        self.BATTLES_PAGE_SIZE = self._validate_positive_int("BATTLES_PAGE_SIZE", 51, 1)
        self.BATTLES_SORT = environ.get("BATTLES_SORT", "recent")
        self.BATTLES_MAX_OFFSET = self._validate_positive_int("BATTLES_MAX_OFFSET", 1000, 1)
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; BattleNotifier/1.0)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 60, 5)

        # Fetch retries: 0 means retry the same page forever
        self.FETCH_RETRY_DELAY = self._validate_positive_float("FETCH_RETRY_DELAY", 5.0, 0.0)
        self.FETCH_MAX_RETRIES = self._validate_positive_int("FETCH_MAX_RETRIES", 0, 0)

        # Notification
        self.UNREAD_BATCH_LIMIT = self._validate_positive_int("UNREAD_BATCH_LIMIT", 1000, 1)
        self.DELIVERY_TIMEOUT = self._validate_positive_float("DELIVERY_TIMEOUT", 7.0, 0.1)
        self.NOTIFY_CHANNEL = environ.get("NOTIFY_CHANNEL", "battles")
        self.KILLBOARD_BASE_URL = environ.get("KILLBOARD_BASE_URL", "https://albiononline.com")

        # Loop mode cadence
        self.SCAN_INTERVAL_SECONDS = self._validate_positive_int("SCAN_INTERVAL_SECONDS", 60, 5)

        # File paths
        self.SUBSCRIBERS_CONFIG_PATH = environ.get("SUBSCRIBERS_CONFIG_PATH", path.join(base_dir, "subscribers.yaml"))
        self.TEMPLATES_PATH = path.join(base_dir, "templates")

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Supports a top-level mapping or a mapping nested under `environment`.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self.read_yaml_file(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def read_yaml_file(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'subscribers')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "battles_endpoint": self.BATTLES_ENDPOINT,
            "page_size": self.BATTLES_PAGE_SIZE,
            "max_offset": self.BATTLES_MAX_OFFSET,
            "http_timeout": self.HTTP_TIMEOUT,
            "fetch_retry_delay": self.FETCH_RETRY_DELAY,
            "fetch_max_retries": self.FETCH_MAX_RETRIES or "unlimited",
            "unread_batch_limit": self.UNREAD_BATCH_LIMIT,
            "delivery_timeout": self.DELIVERY_TIMEOUT,
            "subscribers_config": self.SUBSCRIBERS_CONFIG_PATH,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
