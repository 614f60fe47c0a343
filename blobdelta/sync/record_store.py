"""
Record Store
Boundary to the source and target record tables. The engine only ever asks
for bounded insert-if-absent operations; how records are matched and copied
lives here.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Tuple

from sqlalchemy import MetaData, Table, exists, func, insert, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from blobdelta.database.models import TableSyncConfig
from blobdelta.sync.exceptions import ConfigurationError
from blobdelta.sync.window import SyncWindow
from blobdelta.utils.logger import LoggerMixin


@dataclass(frozen=True)
class RecordFilter:
    """Exclusion and tenant constraints applied to every candidate query."""
    excluded_ids: FrozenSet[str] = field(default_factory=frozenset)
    tenant_id: Optional[str] = None


def split_location(location: str) -> Tuple[Optional[str], str]:
    """Split ``schema.table`` (or ``db.schema.table``) into (schema, table)."""
    parts = location.rsplit('.', 1)
    if len(parts) == 1:
        return None, parts[0]
    return parts[0], parts[1]


class RecordStore(ABC):
    """Contract of the external record source."""

    @abstractmethod
    def validate(self, config: TableSyncConfig) -> None:
        """Raise ConfigurationError if the table's stores are unusable."""

    @abstractmethod
    def copy_batch(self, config: TableSyncConfig, roots: bool, window: SyncWindow,
                   record_filter: RecordFilter, limit: int, parallelism: int = 1) -> List[str]:
        """
        Copy up to ``limit`` in-window records absent from the target.

        Candidates are taken in record-ID order. Returns the copied IDs.
        """

    @abstractmethod
    def insert_records(self, config: TableSyncConfig, record_ids: List[str],
                       parallelism: int = 1) -> List[str]:
        """Copy the given records unless already present. Returns the copied IDs."""

    @abstractmethod
    def find_missing_parents(self, config: TableSyncConfig, window: SyncWindow,
                             record_filter: RecordFilter) -> List[Tuple[str, Optional[str]]]:
        """Immediate parents of in-window children that are absent from the target."""

    @abstractmethod
    def count_pending(self, config: TableSyncConfig, roots: bool, window: SyncWindow,
                      record_filter: RecordFilter) -> int:
        """Number of records copy_batch would still copy."""


class TenantResolver(LoggerMixin):
    """
    Tenant (business unit) lookup table.

    Records are only eligible when their owning tenant appears in this table;
    an optional tenant ID narrows them to a single tenant.
    """

    def __init__(self, engine: Engine, table: str, key_column: str = 'business_unit_id'):
        self.engine = engine
        self.location = table
        self.key_column = key_column
        self._table: Optional[Table] = None

    def validate(self) -> None:
        """Fail fast if the lookup table is unreachable or misshapen."""
        try:
            units = self.table()
        except NoSuchTableError as e:
            raise ConfigurationError(f"Tenant lookup table {self.location} does not exist") from e
        except SQLAlchemyError as e:
            raise ConfigurationError(f"Tenant lookup table {self.location} is unreachable: {e}") from e

        if self.key_column not in units.c:
            raise ConfigurationError(
                f"Tenant lookup table {self.location} has no column {self.key_column!r}"
            )

    def table(self) -> Table:
        if self._table is None:
            schema, name = split_location(self.location)
            self._table = Table(name, MetaData(), schema=schema, autoload_with=self.engine)
        return self._table

    def scope(self, joined, tenant_column, tenant_id: Optional[str]):
        """
        Add the tenant join to a FROM clause.

        Returns:
            (joined FROM clause, list of extra WHERE conditions)
        """
        units = self.table()
        key = units.c[self.key_column]
        joined = joined.join(units, key == tenant_column)
        conditions = [key == tenant_id] if tenant_id is not None else []
        return joined, conditions


class SqlRecordStore(RecordStore, LoggerMixin):
    """
    Record store over SQL tables reachable through one engine.

    Source, metadata and target tables may sit in different schemas of the
    same server. Parent links are plain parent-ID columns on the source table;
    the modification time and owning tenant live on the metadata table.
    """

    def __init__(self, engine: Engine, tenant_resolver: Optional[TenantResolver] = None):
        self.engine = engine
        self.tenant_resolver = tenant_resolver
        self._metadata = MetaData()
        self._tables = {}

    # ========================================
    # Reflection
    # ========================================

    def _table(self, location: str) -> Table:
        if location not in self._tables:
            schema, name = split_location(location)
            self._tables[location] = Table(name, self._metadata, schema=schema, autoload_with=self.engine)
        return self._tables[location]

    def _tables_for(self, config: TableSyncConfig) -> Tuple[Table, Table, Table]:
        return (
            self._table(config.source_table),
            self._table(config.metadata_table),
            self._table(config.target_table),
        )

    def validate(self, config: TableSyncConfig) -> None:
        try:
            source, meta, target = self._tables_for(config)
        except NoSuchTableError as e:
            raise ConfigurationError(f"Table {e} not found", config.table_name) from e
        except SQLAlchemyError as e:
            raise ConfigurationError(f"Record store unreachable: {e}", config.table_name) from e

        required = [
            (source, config.record_id_column),
            (source, config.parent_id_column),
            (meta, config.metadata_id_column),
            (meta, config.metadata_modified_column),
            (target, config.record_id_column),
        ]
        if self.tenant_resolver is not None:
            required.append((meta, config.tenant_column))

        for table, column in required:
            if column not in table.c:
                raise ConfigurationError(
                    f"Column {column!r} missing from {table.fullname}", config.table_name
                )

        if not self._copy_columns(source, target):
            raise ConfigurationError(
                f"{config.source_table} and {config.target_table} share no columns", config.table_name
            )

    @staticmethod
    def _copy_columns(source: Table, target: Table) -> List[str]:
        return [c.name for c in target.columns if c.name in source.c]

    # ========================================
    # Query building
    # ========================================

    def _scoped(self, joined, meta: Table, config: TableSyncConfig, record_filter: RecordFilter):
        tenant_column = meta.c.get(config.tenant_column)
        if self.tenant_resolver is not None:
            return self.tenant_resolver.scope(joined, tenant_column, record_filter.tenant_id)

        if record_filter.tenant_id is None:
            return joined, []
        if tenant_column is None:
            raise ConfigurationError(
                f"Tenant filter requested but {meta.fullname} has no {config.tenant_column!r} column",
                config.table_name
            )
        return joined, [tenant_column == record_filter.tenant_id]

    def _pending(self, config: TableSyncConfig, roots: bool, window: SyncWindow,
                 record_filter: RecordFilter):
        """FROM clause, record-ID column and WHERE conditions for pending records."""
        source, meta, target = self._tables_for(config)
        record_id = source.c[config.record_id_column]
        parent_id = source.c[config.parent_id_column]
        modified = meta.c[config.metadata_modified_column]

        joined = source.join(meta, meta.c[config.metadata_id_column] == record_id)
        joined, conditions = self._scoped(joined, meta, config, record_filter)

        conditions = conditions + [
            parent_id.is_(None) if roots else parent_id.isnot(None),
            modified >= window.start,
            modified < window.end,
            ~exists().where(target.c[config.record_id_column] == record_id),
        ]
        if record_filter.excluded_ids:
            conditions.append(record_id.notin_(sorted(record_filter.excluded_ids)))

        return joined, record_id, conditions

    def _apply_parallelism(self, conn: Connection, query, parallelism: int):
        """Cap intra-statement parallelism for the current transaction/statement."""
        dialect = self.engine.dialect.name
        if dialect == 'postgresql':
            conn.execute(text(f"SET LOCAL max_parallel_workers_per_gather = {int(parallelism)}"))
        return query.with_statement_hint(f"OPTION (MAXDOP {int(parallelism)})", dialect_name='mssql')

    def _insert_from_source(self, conn: Connection, config: TableSyncConfig, record_ids: List[str]) -> int:
        source, _, target = self._tables_for(config)
        columns = self._copy_columns(source, target)
        record_id = source.c[config.record_id_column]

        rows = (
            select(*[source.c[name] for name in columns])
            .where(record_id.in_(record_ids))
            .where(~exists().where(target.c[config.record_id_column] == record_id))
        )
        result = conn.execute(insert(target).from_select(columns, rows))
        return result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(record_ids)

    # ========================================
    # Operations
    # ========================================

    def copy_batch(self, config: TableSyncConfig, roots: bool, window: SyncWindow,
                   record_filter: RecordFilter, limit: int, parallelism: int = 1) -> List[str]:
        joined, record_id, conditions = self._pending(config, roots, window, record_filter)
        query = (
            select(record_id)
            .select_from(joined)
            .where(*conditions)
            .distinct()
            .order_by(record_id)
            .limit(limit)
        )

        with self.engine.begin() as conn:
            query = self._apply_parallelism(conn, query, parallelism)
            record_ids = [str(r) for r in conn.execute(query).scalars()]
            if record_ids:
                self._insert_from_source(conn, config, record_ids)

        return record_ids

    def insert_records(self, config: TableSyncConfig, record_ids: List[str],
                       parallelism: int = 1) -> List[str]:
        if not record_ids:
            return []

        source, _, target = self._tables_for(config)
        record_id = source.c[config.record_id_column]
        query = (
            select(record_id)
            .where(record_id.in_(record_ids))
            .where(~exists().where(target.c[config.record_id_column] == record_id))
            .order_by(record_id)
        )

        with self.engine.begin() as conn:
            query = self._apply_parallelism(conn, query, parallelism)
            present_in_source = [str(r) for r in conn.execute(query).scalars()]
            if present_in_source:
                self._insert_from_source(conn, config, present_in_source)

        missing = set(record_ids) - set(present_in_source)
        if missing:
            self.logger.debug(f"{config.table_name}: {len(missing)} requested records already present or not in source")
        return present_in_source

    def find_missing_parents(self, config: TableSyncConfig, window: SyncWindow,
                             record_filter: RecordFilter) -> List[Tuple[str, Optional[str]]]:
        source, meta, target = self._tables_for(config)
        child = source.alias('child')
        parent = source.alias('parent')

        child_id = child.c[config.record_id_column]
        parent_ref = child.c[config.parent_id_column]
        parent_id = parent.c[config.record_id_column]
        modified = meta.c[config.metadata_modified_column]
        tenant_column = meta.c.get(config.tenant_column)

        joined = (
            child
            .join(meta, meta.c[config.metadata_id_column] == child_id)
            .join(parent, parent_id == parent_ref)
        )
        joined, conditions = self._scoped(joined, meta, config, record_filter)

        conditions = conditions + [
            parent_ref.isnot(None),
            modified >= window.start,
            modified < window.end,
            ~exists().where(target.c[config.record_id_column] == parent_id),
        ]
        if record_filter.excluded_ids:
            excluded = sorted(record_filter.excluded_ids)
            conditions.append(child_id.notin_(excluded))
            conditions.append(parent_id.notin_(excluded))

        columns = [parent_id] if tenant_column is None else [parent_id, tenant_column]
        query = select(*columns).select_from(joined).where(*conditions).distinct().order_by(*columns)

        # A parent referenced by children of several tenants keeps the first tenant
        parents = {}
        with self.engine.connect() as conn:
            for row in conn.execute(query):
                group_tag = row[1] if len(row) > 1 else None
                parents.setdefault(str(row[0]), None if group_tag is None else str(group_tag))

        return list(parents.items())

    def count_pending(self, config: TableSyncConfig, roots: bool, window: SyncWindow,
                      record_filter: RecordFilter) -> int:
        joined, record_id, conditions = self._pending(config, roots, window, record_filter)
        query = select(func.count(func.distinct(record_id))).select_from(joined).where(*conditions)

        with self.engine.connect() as conn:
            return int(conn.execute(query).scalar() or 0)
