"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """Database configuration (environment variables take precedence)"""
    host: str = "localhost"
    port: int = 5432
    user: str = "minutebook"
    password: str = "minutebook"
    name: str = "minutebook"


@dataclass
class ApiConfig:
    """HTTP API configuration"""
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: [
        "http://localhost:3000",
        "http://localhost:5173",
    ])
    actor_header: str = "X-Actor-ID"
    default_page_size: int = 50
    max_page_size: int = 500


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = "logs/minutebook.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class CapTableConfig:
    """Cap table presentation settings"""
    percentage_places: int = 2


@dataclass
class DocumentsConfig:
    """Object storage key layout for rendered artifacts"""
    generated_prefix: str = "generated"
    minute_book_prefix: str = "minute-books"
    document_extension: str = "docx"
    bundle_extension: str = "zip"


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
        self.database: DatabaseConfig = DatabaseConfig()
        self.api: ApiConfig = ApiConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.cap_table: CapTableConfig = CapTableConfig()
        self.documents: DocumentsConfig = DocumentsConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
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

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_database()
        self._parse_api()
        self._parse_logging()
        self._parse_cap_table()
        self._parse_documents()
        self._validate()

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name)
        )

    def _parse_api(self) -> None:
        """Parse API configuration"""
        cfg = self._raw_config.get('api', {})
        self.api = ApiConfig(
            host=cfg.get('host', self.api.host),
            port=cfg.get('port', self.api.port),
            cors_origins=cfg.get('cors_origins', self.api.cors_origins),
            actor_header=cfg.get('actor_header', self.api.actor_header),
            default_page_size=cfg.get('default_page_size', self.api.default_page_size),
            max_page_size=cfg.get('max_page_size', self.api.max_page_size)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', 'logs/minutebook.log'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_cap_table(self) -> None:
        cfg = self._raw_config.get('cap_table', {})
        self.cap_table = CapTableConfig(
            percentage_places=cfg.get('percentage_places', 2)
        )

    def _parse_documents(self) -> None:
        cfg = self._raw_config.get('documents', {})
        self.documents = DocumentsConfig(
            generated_prefix=cfg.get('generated_prefix', 'generated'),
            minute_book_prefix=cfg.get('minute_book_prefix', 'minute-books'),
            document_extension=cfg.get('document_extension', 'docx'),
            bundle_extension=cfg.get('bundle_extension', 'zip')
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
        """Export configuration as dictionary (password omitted)"""
        return {
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            },
            'api': {
                'host': self.api.host,
                'port': self.api.port,
                'cors_origins': self.api.cors_origins,
                'actor_header': self.api.actor_header,
                'default_page_size': self.api.default_page_size,
                'max_page_size': self.api.max_page_size
            },
            'logging': {
                'level': self.logging.level,
                'file': self.logging.file,
                'console': self.logging.console
            },
            'cap_table': {
                'percentage_places': self.cap_table.percentage_places
            },
            'documents': {
                'generated_prefix': self.documents.generated_prefix,
                'minute_book_prefix': self.documents.minute_book_prefix
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        if self.logging.level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigurationError(f"Invalid logging level: {self.logging.level}")

        places = self.cap_table.percentage_places
        if not isinstance(places, int) or not 0 <= places <= 10:
            raise ConfigurationError(
                f"cap_table.percentage_places must be an integer between 0 and 10, got {places}"
            )

        if not isinstance(self.api.port, int) or not 0 < self.api.port < 65536:
            raise ConfigurationError(f"Invalid API port: {self.api.port}")

        if self.api.default_page_size < 1 or self.api.default_page_size > self.api.max_page_size:
            raise ConfigurationError(
                "api.default_page_size must be between 1 and api.max_page_size"
            )

        if not self.api.actor_header:
            raise ConfigurationError("api.actor_header must not be empty")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
