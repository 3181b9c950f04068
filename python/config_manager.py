"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class MatchingConfig:
    """Matching configuration parameters"""
    name_weight: float = 0.8
    location_weight: float = 0.2
    # Sub-weights of the location similarity (must sum to 1.0)
    city_weight: float = 0.4
    country_weight: float = 0.4
    address_weight: float = 0.2
    # Name similarities below this are treated as no similarity at all
    min_name_similarity: float = 0.5


@dataclass
class IngestionConfig:
    """Watchlist ingestion settings"""
    min_entry_count: int = 1
    entry_count_variance_threshold: float = 0.5


@dataclass
class ScoringConfig:
    """Batch scoring settings"""
    batch_size: int = 1000
    max_workers: Optional[int] = None
    max_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    retry_backoff_max_seconds: float = 8.0
    customer_timeout_seconds: float = 5.0
    store_failure_threshold: int = 50

    @property
    def worker_count(self) -> int:
        """Effective worker pool size"""
        if self.max_workers:
            return self.max_workers
        return min(32, (os.cpu_count() or 1) + 4)


@dataclass
class JobsConfig:
    """Job scheduler settings"""
    max_attempts: int = 3
    max_workers: int = 2
    retry_backoff_seconds: float = 1.0


@dataclass
class DatabaseConfig:
    """Database configuration"""
    url: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    user: str = "sdnscore_user"
    password: str = "sdnscore_password"
    name: str = "sdnscore"
    pool_size: int = 5
    echo: bool = False


@dataclass
class ApiConfig:
    """Read-only API settings"""
    default_page_size: int = 50
    max_page_size: int = 500


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class AlgorithmConfig:
    """Algorithm version information"""
    version: str = "1.0.0"
    name: str = "Token/Edit-Distance Hybrid Matcher"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.matching: MatchingConfig = MatchingConfig()
        self.ingestion: IngestionConfig = IngestionConfig()
        self.scoring: ScoringConfig = ScoringConfig()
        self.jobs: JobsConfig = JobsConfig()
        self.database: DatabaseConfig = DatabaseConfig()
        self.api: ApiConfig = ApiConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.algorithm: AlgorithmConfig = AlgorithmConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        self._parse_matching()
        self._parse_ingestion()
        self._parse_scoring()
        self._parse_jobs()
        self._parse_database()
        self._parse_api()
        self._parse_logging()
        self._parse_algorithm()
        self._validate()

    def _parse_matching(self) -> None:
        """Parse matching configuration"""
        cfg = self._raw_config.get('matching', {})
        defaults = MatchingConfig()
        self.matching = MatchingConfig(
            name_weight=cfg.get('name_weight', defaults.name_weight),
            location_weight=cfg.get('location_weight', defaults.location_weight),
            city_weight=cfg.get('city_weight', defaults.city_weight),
            country_weight=cfg.get('country_weight', defaults.country_weight),
            address_weight=cfg.get('address_weight', defaults.address_weight),
            min_name_similarity=cfg.get('min_name_similarity', defaults.min_name_similarity)
        )

    def _parse_ingestion(self) -> None:
        """Parse ingestion configuration"""
        cfg = self._raw_config.get('ingestion', {})
        self.ingestion = IngestionConfig(
            min_entry_count=cfg.get('min_entry_count', 1),
            entry_count_variance_threshold=cfg.get('entry_count_variance_threshold', 0.5)
        )

    def _parse_scoring(self) -> None:
        """Parse scoring configuration"""
        cfg = self._raw_config.get('scoring', {})
        self.scoring = ScoringConfig(
            batch_size=cfg.get('batch_size', 1000),
            max_workers=cfg.get('max_workers'),
            max_attempts=cfg.get('max_attempts', 3),
            retry_backoff_seconds=cfg.get('retry_backoff_seconds', 0.5),
            retry_backoff_max_seconds=cfg.get('retry_backoff_max_seconds', 8.0),
            customer_timeout_seconds=cfg.get('customer_timeout_seconds', 5.0),
            store_failure_threshold=cfg.get('store_failure_threshold', 50)
        )

    def _parse_jobs(self) -> None:
        """Parse job scheduler configuration"""
        cfg = self._raw_config.get('jobs', {})
        self.jobs = JobsConfig(
            max_attempts=cfg.get('max_attempts', 3),
            max_workers=cfg.get('max_workers', 2),
            retry_backoff_seconds=cfg.get('retry_backoff_seconds', 1.0)
        )

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            url=cfg.get('url', self.database.url),
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name),
            pool_size=cfg.get('pool_size', self.database.pool_size),
            echo=cfg.get('echo', self.database.echo)
        )

    def _parse_api(self) -> None:
        """Parse API configuration"""
        cfg = self._raw_config.get('api', {})
        self.api = ApiConfig(
            default_page_size=cfg.get('default_page_size', 50),
            max_page_size=cfg.get('max_page_size', 500)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_algorithm(self) -> None:
        """Parse algorithm configuration"""
        cfg = self._raw_config.get('algorithm', {})
        self.algorithm = AlgorithmConfig(
            version=cfg.get('version', self.algorithm.version),
            name=cfg.get('name', self.algorithm.name)
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (database password omitted)"""
        return {
            'matching': {
                'name_weight': self.matching.name_weight,
                'location_weight': self.matching.location_weight,
                'city_weight': self.matching.city_weight,
                'country_weight': self.matching.country_weight,
                'address_weight': self.matching.address_weight,
                'min_name_similarity': self.matching.min_name_similarity
            },
            'ingestion': {
                'min_entry_count': self.ingestion.min_entry_count,
                'entry_count_variance_threshold': self.ingestion.entry_count_variance_threshold
            },
            'scoring': {
                'batch_size': self.scoring.batch_size,
                'max_workers': self.scoring.worker_count,
                'max_attempts': self.scoring.max_attempts,
                'customer_timeout_seconds': self.scoring.customer_timeout_seconds,
                'store_failure_threshold': self.scoring.store_failure_threshold
            },
            'jobs': {
                'max_attempts': self.jobs.max_attempts,
                'max_workers': self.jobs.max_workers
            },
            'algorithm': {
                'version': self.algorithm.version,
                'name': self.algorithm.name
            },
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            }
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: If any section holds inconsistent values
        """
        m = self.matching
        if abs((m.name_weight + m.location_weight) - 1.0) > 0.01:
            raise ConfigurationError(
                f"name_weight + location_weight must equal 1.0 "
                f"(got {m.name_weight + m.location_weight:.2f})"
            )
        location_total = m.city_weight + m.country_weight + m.address_weight
        if abs(location_total - 1.0) > 0.01:
            raise ConfigurationError(
                f"city/country/address weights must sum to 1.0 (got {location_total:.2f})"
            )
        if not 0.0 <= m.min_name_similarity <= 1.0:
            raise ConfigurationError("min_name_similarity must be between 0 and 1")

        if self.ingestion.min_entry_count < 1:
            raise ConfigurationError("ingestion.min_entry_count must be at least 1")

        s = self.scoring
        if s.batch_size < 1:
            raise ConfigurationError("scoring.batch_size must be positive")
        if s.max_workers is not None and s.max_workers < 1:
            raise ConfigurationError("scoring.max_workers must be positive")
        if s.max_attempts < 1:
            raise ConfigurationError("scoring.max_attempts must be at least 1")
        if s.customer_timeout_seconds <= 0:
            raise ConfigurationError("scoring.customer_timeout_seconds must be positive")
        if s.store_failure_threshold < 1:
            raise ConfigurationError("scoring.store_failure_threshold must be positive")

        if self.jobs.max_attempts < 1:
            raise ConfigurationError("jobs.max_attempts must be at least 1")
        if self.jobs.max_workers < 1:
            raise ConfigurationError("jobs.max_workers must be positive")

        if self.logging.level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigurationError(f"Unknown logging level: {self.logging.level}")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Install root handlers according to the logging section

    Args:
        config: Logging settings (defaults when omitted)
    """
    config = config or LoggingConfig()
    root = logging.getLogger()
    root.setLevel(config.level.upper())
    root.handlers.clear()

    formatter = logging.Formatter(config.format)

    if config.console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
