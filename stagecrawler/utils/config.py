"""
Configuration management for the crawler stages.
"""

import os
import re
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..errors import ConfigError
from ..messaging.messages import (
    CANDIDATES_QUEUE, FETCH_JOBS_QUEUE, PARSE_JOBS_QUEUE, ANALYTICS_QUEUE
)


@dataclass
class FrontierConfig:
    """Configuration for the frontier coordinator."""
    host_pattern: str = ""
    seed_urls: List[str] = field(default_factory=list)
    prefetch: int = 1
    ack_delay: float = 5.0


@dataclass
class StoreConfig:
    """Configuration for the identifier store."""
    url: str = "redis://localhost:6379/0"
    operation_timeout: float = 5.0


@dataclass
class QueueNames:
    """Names of the bus queues."""
    candidates: str = CANDIDATES_QUEUE
    fetch_jobs: str = FETCH_JOBS_QUEUE
    parse_jobs: str = PARSE_JOBS_QUEUE
    analytics: str = ANALYTICS_QUEUE


@dataclass
class BusConfig:
    """Configuration for the message bus."""
    url: str = "redis://localhost:6379/1"
    operation_timeout: float = 5.0
    poll_interval: float = 1.0
    consumer_id: Optional[str] = None
    queues: QueueNames = field(default_factory=QueueNames)


@dataclass
class FetcherConfig:
    """Configuration for the fetch stage."""
    user_agent: str = "stagecrawler/1.0"
    request_timeout: int = 30
    max_concurrent_requests: int = 10
    max_content_size: int = 10 * 1024 * 1024
    storage_directory: str = "websites"


@dataclass
class ParserConfig:
    """Configuration for the parse stage."""
    max_concurrent_jobs: int = 10


@dataclass
class AnalyzerConfig:
    """Configuration for the analytics sink."""
    report_interval: float = 30.0


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    directory: str = "logs"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    metrics_enabled: bool = False
    prometheus_port: int = 8000


@dataclass
class Config:
    """Main configuration class."""
    frontier: FrontierConfig = field(default_factory=FrontierConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    bus: BusConfig = field(default_factory=BusConfig)
    fetcher: FetcherConfig = field(default_factory=FetcherConfig)
    parser: ParserConfig = field(default_factory=ParserConfig)
    analyzer: AnalyzerConfig = field(default_factory=AnalyzerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


# Environment variables that override file settings: (section, attribute)
ENV_OVERRIDES = {
    'CRAWLER_HOST_PATTERN': ('frontier', 'host_pattern'),
    'CRAWLER_STORE_URL': ('store', 'url'),
    'CRAWLER_BUS_URL': ('bus', 'url'),
    'CRAWLER_LOG_LEVEL': ('logging', 'level'),
}


def _build_section(cls, data: Optional[Dict[str, Any]], section: str):
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{section}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown keys in section '{section}': {', '.join(sorted(unknown))}")

    return cls(**data)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = "config.yaml"):
        self.config_path = Path(config_path) if config_path else None
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file, then apply environment overrides."""
        config_data: Dict[str, Any] = {}
        if self.config_path is not None:
            if not self.config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

            with open(self.config_path, 'r') as file:
                config_data = yaml.safe_load(file) or {}

        if not isinstance(config_data, dict):
            raise ConfigError("Configuration root must be a mapping")

        self._config = self.from_dict(config_data)
        self._apply_env_overrides(os.environ)
        self._validate_config()
        return self._config

    @staticmethod
    def from_dict(config_data: Dict[str, Any]) -> Config:
        unknown = set(config_data) - {f.name for f in fields(Config)}
        if unknown:
            raise ConfigError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

        bus_data = dict(config_data.get('bus') or {})
        queues = _build_section(QueueNames, bus_data.pop('queues', None), 'bus.queues')

        try:
            return Config(
                frontier=_build_section(FrontierConfig, config_data.get('frontier'), 'frontier'),
                store=_build_section(StoreConfig, config_data.get('store'), 'store'),
                bus=BusConfig(queues=queues, **bus_data),
                fetcher=_build_section(FetcherConfig, config_data.get('fetcher'), 'fetcher'),
                parser=_build_section(ParserConfig, config_data.get('parser'), 'parser'),
                analyzer=_build_section(AnalyzerConfig, config_data.get('analyzer'), 'analyzer'),
                logging=_build_section(LoggingConfig, config_data.get('logging'), 'logging'),
                monitoring=_build_section(MonitoringConfig, config_data.get('monitoring'), 'monitoring'),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def _apply_env_overrides(self, environ):
        for variable, (section, attribute) in ENV_OVERRIDES.items():
            value = environ.get(variable)
            if value:
                setattr(getattr(self._config, section), attribute, value)
                logging.info(f"Configuration {section}.{attribute} overridden by {variable}")

    @staticmethod
    def _number(name: str, value: Any, integer: bool = False):
        """Return ``value`` if it is a number (an integer when asked), else raise ConfigError."""
        expected = int if integer else (int, float)
        if isinstance(value, bool) or not isinstance(value, expected):
            kind = "an integer" if integer else "a number"
            raise ConfigError(f"{name} must be {kind}, got {value!r}")
        return value

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ConfigError("Configuration not loaded")

        config = self._config
        frontier = config.frontier

        if not isinstance(frontier.host_pattern, str):
            raise ConfigError("frontier.host_pattern must be a string")
        if frontier.host_pattern:
            try:
                re.compile(frontier.host_pattern)
            except re.error as e:
                raise ConfigError(f"host_pattern is not a valid regular expression: {e}") from e

        if not isinstance(frontier.seed_urls, list) or \
                not all(isinstance(url, str) for url in frontier.seed_urls):
            raise ConfigError("frontier.seed_urls must be a list of URLs")

        # (name, value, integer only, lower bound, bound inclusive)
        limits = [
            ('frontier.prefetch', frontier.prefetch, True, 1, True),
            ('frontier.ack_delay', frontier.ack_delay, False, 0, True),
            ('store.operation_timeout', config.store.operation_timeout, False, 0, False),
            ('bus.operation_timeout', config.bus.operation_timeout, False, 0, False),
            ('bus.poll_interval', config.bus.poll_interval, False, 0, False),
            ('fetcher.request_timeout', config.fetcher.request_timeout, False, 0, False),
            ('fetcher.max_concurrent_requests', config.fetcher.max_concurrent_requests, True, 1, True),
            ('fetcher.max_content_size', config.fetcher.max_content_size, True, 1, True),
            ('parser.max_concurrent_jobs', config.parser.max_concurrent_jobs, True, 1, True),
            ('analyzer.report_interval', config.analyzer.report_interval, False, 0, False),
            ('monitoring.prometheus_port', config.monitoring.prometheus_port, True, 1, True),
        ]
        for name, value, integer, minimum, inclusive in limits:
            value = self._number(name, value, integer)
            if value < minimum or (value == minimum and not inclusive):
                bound = "at least" if inclusive else "greater than"
                raise ConfigError(f"{name} must be {bound} {minimum}")

        level = config.logging.level
        if not isinstance(level, str) or level.upper() not in logging.getLevelNamesMapping():
            raise ConfigError(f"Unknown log level: {level}")

        logging.info("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ConfigError("Configuration not loaded. Call load_config() first.")
        return self._config


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: Optional[str] = "config.yaml") -> Config:
    """Load configuration from file."""
    global config_manager
    config_manager = ConfigManager(config_path)
    return config_manager.load_config()
