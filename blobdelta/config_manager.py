"""
Configuration Manager Module
Handles loading and accessing sync configuration from YAML files and environment variables.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv


DEFAULT_BATCH_SIZE = 500
DEFAULT_MAX_PARALLELISM = 2
DEFAULT_LEASE_MINUTES = 60


class ConfigManager:
    """Manages application configuration from YAML files and environment variables."""

    _instance = None
    _config: Dict = None

    def __new__(cls):
        """Singleton pattern for configuration."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        """Initialize configuration if not already loaded."""
        if self._config is None:
            self._load_configuration()

    def _load_configuration(self) -> None:
        """Load the main configuration file."""
        load_dotenv()

        self._config_dir = self._find_config_dir()

        config_path = self._config_dir / 'config.yaml'
        self._config = self._load_yaml_with_env(config_path)

    def _find_config_dir(self) -> Path:
        """Find the configuration directory."""
        env_config_dir = os.getenv('CONFIG_DIR')
        if env_config_dir:
            return Path(env_config_dir)

        possible_paths = [
            Path(__file__).parent.parent / 'config',  # Project root
            Path.cwd() / 'config',
            Path('/app/config'),  # Docker container
        ]

        for path in possible_paths:
            if path.exists():
                return path

        raise FileNotFoundError("Configuration directory not found")

    def _load_yaml_with_env(self, file_path: Path) -> Dict:
        """
        Load YAML file with environment variable substitution.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} syntax.
        """
        if not file_path.exists():
            return {}

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        content = self._substitute_env_vars(content)

        return yaml.safe_load(content) or {}

    def _substitute_env_vars(self, content: str) -> str:
        """
        Substitute environment variables in string.

        Supports:
        - ${VAR_NAME} - Required variable
        - ${VAR_NAME:-default} - Variable with default value
        """
        pattern = r'\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}'

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2)

            value = os.getenv(var_name)
            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                return match.group(0)  # Leave unresolved placeholders visible

        return re.sub(pattern, replacer, content)

    # ========================================
    # Configuration Getters
    # ========================================

    def get_database_config(self) -> Dict:
        """Get database configuration."""
        return self._config.get('database', {})

    def get_sync_config(self) -> Dict:
        """Get sync engine configuration."""
        return self._config.get('sync', {})

    def get_logging_config(self) -> Dict:
        """Get logging configuration."""
        return self._config.get('logging', {})

    def get_scheduler_config(self) -> Dict:
        """Get scheduler configuration."""
        return self._config.get('scheduler', {})

    def get_api_config(self) -> Dict:
        """Get HTTP API configuration."""
        return self._config.get('api', {})

    # ========================================
    # Sync Defaults
    # ========================================

    def get_batch_size(self) -> int:
        """Get the default number of records per batch."""
        return int(self.get_sync_config().get('batch_size', DEFAULT_BATCH_SIZE))

    def get_max_parallelism(self) -> int:
        """Get the default intra-statement parallelism for the Roots phase."""
        return int(self.get_sync_config().get('max_parallelism', DEFAULT_MAX_PARALLELISM))

    def get_lease_minutes(self) -> int:
        """Get the table lease duration in minutes."""
        return int(self.get_sync_config().get('lease_minutes', DEFAULT_LEASE_MINUTES))

    def get_excluded_record_ids(self) -> List[str]:
        """Get record IDs that must never be copied."""
        return [str(r) for r in self.get_sync_config().get('excluded_record_ids', []) or []]

    def get_tenant_resolver_config(self) -> Optional[Dict]:
        """Get the tenant lookup table settings, if any."""
        return self.get_sync_config().get('tenant_resolver')

    # ========================================
    # Table Definitions
    # ========================================

    def get_table_definitions(self) -> List[Dict[str, Any]]:
        """Get all configured table definitions."""
        return self._config.get('tables', []) or []

    def get_table_definition(self, table_name: str) -> Optional[Dict[str, Any]]:
        """Get a table definition by logical name."""
        for table in self.get_table_definitions():
            if table.get('table_name') == table_name:
                return table
        return None
