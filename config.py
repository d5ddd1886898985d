#!/usr/bin/env python3
"""
Configuration management for the Feed Aggregator.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional secrets file and feeds.yaml, and
provides a clean interface for accessing configuration values throughout the
application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
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

    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except AttributeError:
        # Captured streams (e.g. under pytest) may not support reconfigure
        pass

    # aiohttp access/client chatter is rarely useful at INFO
    getLogger("aiohttp").setLevel(WARNING)

    return getLogger("FeedAggregator")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "aggregator", "scheduler")

    Returns:
        A logger instance named "FeedAggregator.{name}"
    """
    return getLogger(f"FeedAggregator.{name}")

logger = _setup_global_logger()

class Config:
    """Configuration manager for the Feed Aggregator.

    Configuration is loaded from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml configuration file (sources and thresholds)

    Example feeds.yaml:
    ```yaml
    feeds:
      sciencemag:
        url: "http://science.sciencemag.org/rss/twis.xml"
      bbc_latam:
        url: "http://feeds.bbci.co.uk/news/world/latin_america/rss.xml"
    thresholds:
      retention_days: 7
    ```

    A plain list of URLs under `feeds:` is accepted as well.
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _env_number(self, env_var: str, default, min_val, cast=int):
        """Parse a numeric environment variable, falling back to default when invalid or below min_val."""
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw)
        except ValueError:
            logger.warning(f"Invalid {env_var} value {raw!r}, using default {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
            return default
        return value

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        return self._env_number(env_var, default, min_val, int)

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        return self._env_number(env_var, default, min_val, float)

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "aggregator.db")

        # HTTP request configuration
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedAggregator/1.0)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 5, 1)

        # Timing configuration: a short tick and a longer per-source recheck interval
        self.CHECK_INTERVAL_SECONDS = self._validate_positive_float("CHECK_INTERVAL_SECONDS", 5.0, 0.1)
        self.AGGREGATE_INTERVAL_MINUTES = self._validate_positive_int("AGGREGATE_INTERVAL_MINUTES", 15, 1)
        if self.AGGREGATE_INTERVAL_MINUTES * 60 <= self.CHECK_INTERVAL_SECONDS:
            logger.warning(
                "AGGREGATE_INTERVAL_MINUTES (%sm) should be longer than CHECK_INTERVAL_SECONDS (%ss)",
                self.AGGREGATE_INTERVAL_MINUTES,
                self.CHECK_INTERVAL_SECONDS,
            )

        # Notifications
        self.NOTIFY_WEBHOOK_URL = environ.get("NOTIFY_WEBHOOK_URL") or None

        # Source discovery
        self.SOURCES_FILE = environ.get("SOURCES_FILE") or None
        # An installed command reads feeds.yaml from the working directory
        default_feeds = path.abspath("feeds.yaml")
        if not path.isfile(default_feeds):
            default_feeds = path.join(base_dir, "feeds.yaml")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", default_feeds)

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the specified YAML file and sets environment
        variables from it. Both a top-level mapping and a mapping nested under
        `environment` are accepted:

        ```yaml
        NOTIFY_WEBHOOK_URL: "https://ntfy.sh/my-topic"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}={value}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feeds')

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

    def _load_feed_sources(self) -> None:
        """Populate FEED_SOURCES and RETENTION_DAYS from feeds.yaml.

        Any failure results in an empty source mapping and default thresholds.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        self.FEED_SOURCES: Dict[str, str] = {}
        self.RETENTION_DAYS = self._validate_positive_int("RETENTION_DAYS", 7, 1)

        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        if not isinstance(config_data, dict):
            if config_data is not None:
                logger.warning(f"{feeds_path} must be a YAML mapping at the top level")
            return

        feeds_section = config_data.get('feeds')
        new_sources: Dict[str, str] = {}
        if isinstance(feeds_section, dict):
            for feed_slug, feed_cfg in feeds_section.items():
                if isinstance(feed_cfg, dict) and isinstance(feed_cfg.get('url'), str):
                    new_sources[str(feed_slug)] = feed_cfg['url'].strip()
                elif isinstance(feed_cfg, str):
                    new_sources[str(feed_slug)] = feed_cfg.strip()
                else:
                    logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")
        elif isinstance(feeds_section, list):
            for index, feed_url in enumerate(feeds_section):
                if isinstance(feed_url, str) and feed_url.strip():
                    new_sources[f"feed{index + 1}"] = feed_url.strip()
                else:
                    logger.warning(f"Skipping invalid feed entry #{index + 1}: {feed_url}")
        else:
            logger.warning(f"No valid feeds found in {feeds_path}")

        self.FEED_SOURCES = new_sources
        logger.info(f"Successfully loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

        thresholds_section = config_data.get('thresholds')
        if isinstance(thresholds_section, dict) and thresholds_section.get('retention_days') is not None:
            rd_raw = thresholds_section.get('retention_days')
            try:
                rd_val = int(str(rd_raw).strip())
                if rd_val >= 1:
                    self.RETENTION_DAYS = rd_val
                else:
                    logger.warning(f"retention_days must be >=1; keeping {self.RETENTION_DAYS} (got {rd_raw})")
            except ValueError:
                logger.warning(f"Invalid retention_days value '{rd_raw}' in feeds.yaml; keeping {self.RETENTION_DAYS}")
        logger.debug("Loaded thresholds: RETENTION_DAYS=%s", self.RETENTION_DAYS)

    def reload_feed_sources(self):
        """Reload feed sources from configuration file."""
        logger.debug("Reloading feed sources configuration")
        self._load_feed_sources()

    def feed_urls(self) -> List[str]:
        """Return the configured feed URLs in declaration order."""
        return list(self.FEED_SOURCES.values())

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "check_interval_seconds": self.CHECK_INTERVAL_SECONDS,
            "aggregate_interval_minutes": self.AGGREGATE_INTERVAL_MINUTES,
            "retention_days": self.RETENTION_DAYS,
            "http_timeout": self.HTTP_TIMEOUT,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "feed_count": len(self.FEED_SOURCES),
            "sources_file": self.SOURCES_FILE,
            "has_webhook": bool(self.NOTIFY_WEBHOOK_URL),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
