"""
Table Catalog
Resolves which table configurations a run covers and seeds them from the
``tables`` section of the configuration file.
"""

from typing import Any, Dict, Iterable, List, Optional

from blobdelta.database.connection import DatabaseConnection
from blobdelta.database.models import TableSyncConfig
from blobdelta.sync.exceptions import ConfigurationError
from blobdelta.sync.watermarks import get_or_create_watermark
from blobdelta.utils.logger import LoggerMixin

# Keys a configured table definition may set
CONFIG_FIELDS = (
    'source_table', 'target_table', 'metadata_table',
    'metadata_id_column', 'metadata_modified_column',
    'record_id_column', 'parent_id_column', 'tenant_column',
    'target_group', 'safety_buffer_minutes', 'include_deletes', 'is_active',
)

REQUIRED_FIELDS = ('source_table', 'target_table', 'metadata_table', 'metadata_id_column')


class TableCatalog(LoggerMixin):

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def get(self, table_name: str) -> Optional[TableSyncConfig]:
        with self.db.session_scope() as session:
            return session.get(TableSyncConfig, table_name)

    def resolve_tables(self, table_name: Optional[str] = None,
                       target_group: Optional[str] = None) -> List[TableSyncConfig]:
        """
        Table configurations a run should process, in table-name order.

        Args:
            table_name: Single table to process, or None for all active tables
            target_group: Optional grouping key restricting the tables

        Raises:
            ConfigurationError: if a named table is unknown, inactive or
                outside the requested target group
        """
        with self.db.session_scope() as session:
            query = session.query(TableSyncConfig)

            if table_name is not None:
                config = query.filter(TableSyncConfig.table_name == table_name).first()
                if config is None:
                    raise ConfigurationError(f"Table {table_name} is not configured", table_name)
                if not config.is_active:
                    raise ConfigurationError(f"Table {table_name} is inactive", table_name)
                if target_group is not None and config.target_group != target_group:
                    raise ConfigurationError(
                        f"Table {table_name} belongs to group {config.target_group!r}, not {target_group!r}",
                        table_name
                    )
                return [config]

            query = query.filter(TableSyncConfig.is_active.is_(True))
            if target_group is not None:
                query = query.filter(TableSyncConfig.target_group == target_group)
            tables = query.order_by(TableSyncConfig.table_name).all()

        if not tables:
            self.logger.warning("No active tables configured" + (f" in group {target_group}" if target_group else ''))
        return tables

    def seed_from_config(self, definitions: Iterable[Dict[str, Any]]) -> int:
        """
        Insert or update table configurations and make sure each has a watermark.

        Watermarks that already exist are left untouched.

        Returns:
            Number of definitions applied
        """
        applied = 0
        with self.db.session_scope() as session:
            for definition in definitions:
                name = definition.get('table_name')
                if not name:
                    raise ConfigurationError(f"Table definition without table_name: {definition}")

                missing = [key for key in REQUIRED_FIELDS if not definition.get(key)]
                if missing:
                    raise ConfigurationError(f"Table {name} is missing {', '.join(missing)}", name)

                unknown = set(definition) - set(CONFIG_FIELDS) - {'table_name'}
                if unknown:
                    self.logger.warning(f"Ignoring unknown keys for {name}: {', '.join(sorted(unknown))}")

                config = session.get(TableSyncConfig, name)
                if config is None:
                    config = TableSyncConfig(table_name=name)
                    session.add(config)
                    self.logger.info(f"Adding table configuration {name}")
                else:
                    self.logger.info(f"Updating table configuration {name}")

                for key in CONFIG_FIELDS:
                    if key in definition:
                        setattr(config, key, definition[key])

                session.flush()
                get_or_create_watermark(session, name)
                applied += 1

        return applied
