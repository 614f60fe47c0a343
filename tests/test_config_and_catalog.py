"""
Unit Tests for Configuration and the Table Catalog
"""

import logging
import os
import tempfile
import unittest
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import patch

from blobdelta.config_manager import ConfigManager
from blobdelta.database.models import TableSyncConfig
from blobdelta.sync.catalog import TableCatalog
from blobdelta.sync.exceptions import ConfigurationError
from blobdelta.sync.watermarks import WatermarkStore
from blobdelta.utils.logger import setup_logging

from sync_fixtures import TABLE_DEFINITION, TABLE_NAME, RecordFixture

CONFIG_YAML = """
database:
  url: ${TEST_DB_URL:-sqlite://}
sync:
  batch_size: ${TEST_BATCH_SIZE:-250}
  excluded_record_ids: [abc, 42]
  tenant_resolver:
    table: org.business_unit
tables:
  - table_name: notes
    source_table: src.notes
    target_table: dst.notes
    metadata_table: crm.notes
    metadata_id_column: note_id
"""


class TestConfigManager(unittest.TestCase):
    """Test YAML loading with environment substitution."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        Path(self.tmp.name, 'config.yaml').write_text(CONFIG_YAML, encoding='utf-8')
        ConfigManager._instance = None

    def tearDown(self):
        ConfigManager._instance = None
        self.tmp.cleanup()

    def _load(self, **env):
        with patch.dict(os.environ, dict(CONFIG_DIR=self.tmp.name, **env)):
            return ConfigManager()

    def test_defaults_and_substitution(self):
        """Test placeholders fall back to their defaults."""
        config = self._load()

        self.assertEqual(config.get_database_config()['url'], 'sqlite://')
        self.assertEqual(config.get_batch_size(), 250)
        self.assertEqual(config.get_max_parallelism(), 2)
        self.assertEqual(config.get_lease_minutes(), 60)
        self.assertEqual(config.get_excluded_record_ids(), ['abc', '42'])
        self.assertEqual(config.get_tenant_resolver_config()['table'], 'org.business_unit')

    def test_environment_overrides(self):
        """Test environment variables replace placeholders."""
        config = self._load(TEST_BATCH_SIZE='1000')
        self.assertEqual(config.get_batch_size(), 1000)

    def test_singleton(self):
        """Test the manager is shared."""
        self.assertIs(self._load(), self._load())

    def test_table_definitions(self):
        """Test table definitions are looked up by name."""
        config = self._load()

        self.assertEqual(len(config.get_table_definitions()), 1)
        self.assertEqual(config.get_table_definition('notes')['metadata_id_column'], 'note_id')
        self.assertIsNone(config.get_table_definition('missing'))


LOGGING_YAML = """
logging:
  level: warning
  file: ''
  loggers:
    blobdelta.sync: DEBUG
"""


class TestSetupLogging(unittest.TestCase):
    """Test handler and level setup from configuration."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        Path(self.tmp.name, 'config.yaml').write_text(LOGGING_YAML, encoding='utf-8')
        ConfigManager._instance = None
        root = logging.getLogger()
        self.saved = (root.level, list(root.handlers))

    def tearDown(self):
        root = logging.getLogger()
        root.setLevel(self.saved[0])
        root.handlers[:] = self.saved[1]
        logging.getLogger('blobdelta.sync').setLevel(logging.NOTSET)
        ConfigManager._instance = None
        self.tmp.cleanup()

    def _setup(self, level=None):
        with patch.dict(os.environ, {'CONFIG_DIR': self.tmp.name}):
            setup_logging(level)

    def test_console_only_with_logger_levels(self):
        """Test an empty file setting skips the file handler and per-logger levels apply."""
        self._setup()

        root = logging.getLogger()
        self.assertEqual(len(root.handlers), 1)
        self.assertNotIsInstance(root.handlers[0], RotatingFileHandler)
        self.assertEqual(root.level, logging.WARNING)
        self.assertEqual(logging.getLogger('blobdelta.sync').level, logging.DEBUG)
        self.assertEqual(logging.getLogger('sqlalchemy.engine').level, logging.WARNING)

    def test_level_override(self):
        """Test an explicit level wins and unknown names are rejected."""
        self._setup('debug')
        self.assertEqual(logging.getLogger().level, logging.DEBUG)

        with self.assertRaises(ValueError):
            self._setup('LOUD')


class TestTableCatalog(unittest.TestCase):
    """Test table resolution and seeding."""

    def setUp(self):
        self.fixture = RecordFixture()
        self.catalog = TableCatalog(self.fixture.db)
        self.fixture.configure()

    def test_seed_applies_defaults_and_watermark(self):
        """Test seeding fills column defaults and creates a watermark row."""
        self.catalog.seed_from_config([{
            'table_name': 'notes',
            'source_table': 'src.notes',
            'target_table': 'dst.notes',
            'metadata_table': 'crm.notes',
            'metadata_id_column': 'note_id',
        }])

        config = self.catalog.get('notes')
        self.assertEqual(config.record_id_column, 'record_id')
        self.assertEqual(config.safety_buffer_minutes, 240)
        self.assertTrue(config.is_active)
        self.assertIsNotNone(WatermarkStore(self.fixture.db).get('notes'))

    def test_seed_updates_existing(self):
        """Test seeding twice updates the stored definition."""
        self.catalog.seed_from_config([dict(TABLE_DEFINITION, safety_buffer_minutes=30)])
        self.assertEqual(self.catalog.get(TABLE_NAME).safety_buffer_minutes, 30)

    def test_seed_rejects_incomplete_definition(self):
        """Test required locations must be present."""
        with self.assertRaises(ConfigurationError):
            self.catalog.seed_from_config([{'table_name': 'notes', 'source_table': 'src.notes'}])
        with self.assertRaises(ConfigurationError):
            self.catalog.seed_from_config([{'source_table': 'src.notes'}])

    def test_resolve_all_active_in_name_order(self):
        """Test all active tables are returned sorted by name."""
        self.fixture.configure(table_name='zeta')
        self.fixture.configure(table_name='alpha', target_group='other')
        self.fixture.configure(table_name='off', is_active=False)

        self.assertEqual(
            [t.table_name for t in self.catalog.resolve_tables()],
            ['alpha', TABLE_NAME, 'zeta']
        )
        self.assertEqual(
            [t.table_name for t in self.catalog.resolve_tables(target_group='dst_blob')],
            [TABLE_NAME, 'zeta']
        )

    def test_resolve_single_table(self):
        """Test a named table must exist and be active."""
        self.fixture.configure(table_name='off', is_active=False)

        tables = self.catalog.resolve_tables(TABLE_NAME)
        self.assertIsInstance(tables[0], TableSyncConfig)

        with self.assertRaises(ConfigurationError):
            self.catalog.resolve_tables('missing')
        with self.assertRaises(ConfigurationError):
            self.catalog.resolve_tables('off')
        with self.assertRaises(ConfigurationError):
            self.catalog.resolve_tables(TABLE_NAME, target_group='other')


if __name__ == '__main__':
    unittest.main()
