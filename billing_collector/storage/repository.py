"""
Repository pattern for the billing ledger.

Seeds the rule catalog, resolves records against it and ratchets facts.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

import structlog

from ..core.catalog import Catalog, Discount, Product, Query, TimeRange, as_utc
from ..core.tokens import TokenizedSource, find_best_match
from .db import DEFAULT_DB_PATH, get_connection
from .models import DateTimeRow, DimensionRow, ExportedFact, FactRow, Record

logger = structlog.get_logger(__name__)


class CatalogSeedFailure(RuntimeError):
    """Raised when the catalog cannot be seeded; nothing was written."""


class RecordReconciliationFailure(RuntimeError):
    """Raised when a record cannot be resolved against the catalog."""
    def __init__(self, record: Record, reason: str):
        super().__init__(f"{reason} (tenant={record.tenant_source}, category={record.category_source})")
        self.record = record
        self.reason = reason


class EnsureStatus(Enum):
    """Result of ensuring a catalog or dimension row."""
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class FactOutcome(Enum):
    """Result of a ratcheted fact write."""
    CREATED = "created"
    ADVANCED = "advanced"
    NOT_ADVANCED = "not_advanced"  # equal or lower quantity already recorded


SCHEMA = """
    CREATE TABLE IF NOT EXISTS products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source TEXT NOT NULL UNIQUE,
        target TEXT,
        amount REAL NOT NULL,
        unit TEXT NOT NULL,
        during_start TEXT,
        during_end TEXT
    );
    CREATE TABLE IF NOT EXISTS discounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source TEXT NOT NULL UNIQUE,
        discount REAL NOT NULL,
        during_start TEXT,
        during_end TEXT
    );
    CREATE TABLE IF NOT EXISTS queries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        parent_id INTEGER REFERENCES queries (id),
        name TEXT NOT NULL UNIQUE,
        description TEXT NOT NULL,
        query TEXT NOT NULL DEFAULT '',
        unit TEXT NOT NULL,
        during_start TEXT,
        during_end TEXT
    );
    CREATE TABLE IF NOT EXISTS tenants (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source TEXT NOT NULL UNIQUE,
        target TEXT
    );
    CREATE TABLE IF NOT EXISTS categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source TEXT NOT NULL UNIQUE,
        target TEXT
    );
    CREATE TABLE IF NOT EXISTS date_times (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL UNIQUE,
        year INTEGER NOT NULL,
        month INTEGER NOT NULL,
        day INTEGER NOT NULL,
        hour INTEGER NOT NULL
    );
    CREATE TABLE IF NOT EXISTS facts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        date_time_id INTEGER NOT NULL REFERENCES date_times (id),
        query_id INTEGER NOT NULL REFERENCES queries (id),
        tenant_id INTEGER NOT NULL REFERENCES tenants (id),
        category_id INTEGER NOT NULL REFERENCES categories (id),
        product_id INTEGER NOT NULL REFERENCES products (id),
        discount_id INTEGER NOT NULL REFERENCES discounts (id),
        quantity REAL NOT NULL,
        UNIQUE (date_time_id, query_id, tenant_id, category_id, product_id, discount_id)
    );
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the catalog, dimension and fact tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


def _format_ts(timestamp: Optional[datetime]) -> Optional[str]:
    if timestamp is None:
        return None
    return as_utc(timestamp).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return as_utc(datetime.fromisoformat(value))


def _during(row: sqlite3.Row) -> TimeRange:
    return TimeRange(start=_parse_ts(row["during_start"]), end=_parse_ts(row["during_end"]))


def _product_from_row(row: sqlite3.Row) -> Product:
    return Product(
        source=row["source"],
        target=row["target"],
        amount=row["amount"],
        unit=row["unit"],
        during=_during(row)
    )


def _discount_from_row(row: sqlite3.Row) -> Discount:
    return Discount(source=row["source"], discount=row["discount"], during=_during(row))


# Dimensions: get or create, never updated

def _ensure_dimension(conn: sqlite3.Connection, table: str, source: str) -> DimensionRow:
    row = conn.execute(f"SELECT id, source, target FROM {table} WHERE source = ?", (source,)).fetchone()
    if row is None:
        cursor = conn.execute(f"INSERT INTO {table} (source) VALUES (?)", (source,))
        logger.debug("dimension_created", table=table, source=source, id=cursor.lastrowid)
        return DimensionRow(id=cursor.lastrowid, source=source)
    return DimensionRow(id=row["id"], source=row["source"], target=row["target"])


def ensure_tenant(conn: sqlite3.Connection, source: str) -> DimensionRow:
    """Get or create the tenant row for an organization."""
    return _ensure_dimension(conn, "tenants", source)


def ensure_category(conn: sqlite3.Connection, source: str) -> DimensionRow:
    """Get or create the category row, e.g. ``exoscale:my-namespace``."""
    return _ensure_dimension(conn, "categories", source)


def ensure_date_time(conn: sqlite3.Connection, timestamp: datetime) -> DateTimeRow:
    """Get or create the hour bucket containing a timestamp.

    The timestamp is normalized to UTC and truncated to the full hour.
    """
    bucket = as_utc(timestamp).replace(minute=0, second=0, microsecond=0)
    row = conn.execute("SELECT id FROM date_times WHERE timestamp = ?", (bucket.isoformat(),)).fetchone()
    if row is not None:
        date_time_id = row["id"]
    else:
        cursor = conn.execute(
            "INSERT INTO date_times (timestamp, year, month, day, hour) VALUES (?, ?, ?, ?, ?)",
            (bucket.isoformat(), bucket.year, bucket.month, bucket.day, bucket.hour)
        )
        date_time_id = cursor.lastrowid
    return DateTimeRow(
        id=date_time_id,
        timestamp=bucket,
        year=bucket.year,
        month=bucket.month,
        day=bucket.day,
        hour=bucket.hour
    )


# Rules: get, create, or update in place when the definition changed

def ensure_product(conn: sqlite3.Connection, product: Product) -> Tuple[int, EnsureStatus]:
    """Make the stored product match the given definition.

    Args:
        conn: Connection inside an open transaction
        product: Desired product definition, looked up by source

    Returns:
        Tuple of the product id and what was done
    """
    row = conn.execute("SELECT * FROM products WHERE source = ?", (product.source,)).fetchone()
    values = (
        product.target,
        product.amount,
        product.unit,
        _format_ts(product.during.start),
        _format_ts(product.during.end),
    )
    if row is None:
        cursor = conn.execute(
            "INSERT INTO products (source, target, amount, unit, during_start, during_end) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (product.source,) + values
        )
        return cursor.lastrowid, EnsureStatus.CREATED

    if _product_from_row(row) == product:
        return row["id"], EnsureStatus.UNCHANGED

    logger.info("updating_product", id=row["id"], source=product.source)
    conn.execute(
        "UPDATE products SET target = ?, amount = ?, unit = ?, during_start = ?, during_end = ? "
        "WHERE id = ?",
        values + (row["id"],)
    )
    return row["id"], EnsureStatus.UPDATED


def ensure_discount(conn: sqlite3.Connection, discount: Discount) -> Tuple[int, EnsureStatus]:
    """Make the stored discount match the given definition."""
    row = conn.execute("SELECT * FROM discounts WHERE source = ?", (discount.source,)).fetchone()
    values = (discount.discount, _format_ts(discount.during.start), _format_ts(discount.during.end))
    if row is None:
        cursor = conn.execute(
            "INSERT INTO discounts (source, discount, during_start, during_end) VALUES (?, ?, ?, ?)",
            (discount.source,) + values
        )
        return cursor.lastrowid, EnsureStatus.CREATED

    if _discount_from_row(row) == discount:
        return row["id"], EnsureStatus.UNCHANGED

    logger.info("updating_discount", id=row["id"], source=discount.source)
    conn.execute(
        "UPDATE discounts SET discount = ?, during_start = ?, during_end = ? WHERE id = ?",
        values + (row["id"],)
    )
    return row["id"], EnsureStatus.UPDATED


def get_query_by_name(conn: sqlite3.Connection, name: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM queries WHERE name = ?", (name,)).fetchone()


def ensure_query(conn: sqlite3.Connection, query: Query) -> Tuple[int, EnsureStatus]:
    """Make the stored query match the given definition.

    A parent query, if named, must already exist.

    Raises:
        ValueError: If the parent query is unknown
    """
    parent_id = None
    if query.parent is not None:
        parent = get_query_by_name(conn, query.parent)
        if parent is None:
            raise ValueError(f"parent query {query.parent!r} of {query.name!r} does not exist")
        parent_id = parent["id"]

    values = (
        parent_id,
        query.description,
        query.query,
        query.unit,
        _format_ts(query.during.start),
        _format_ts(query.during.end),
    )
    row = get_query_by_name(conn, query.name)
    if row is None:
        cursor = conn.execute(
            "INSERT INTO queries (name, parent_id, description, query, unit, during_start, during_end) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (query.name,) + values
        )
        return cursor.lastrowid, EnsureStatus.CREATED

    stored = (
        row["parent_id"],
        row["description"],
        row["query"],
        row["unit"],
        row["during_start"],
        row["during_end"],
    )
    if stored == values:
        return row["id"], EnsureStatus.UNCHANGED

    logger.info("updating_query", id=row["id"], name=query.name)
    conn.execute(
        "UPDATE queries SET parent_id = ?, description = ?, query = ?, unit = ?, "
        "during_start = ?, during_end = ? WHERE id = ?",
        values + (row["id"],)
    )
    return row["id"], EnsureStatus.UPDATED


# Best match resolution

def _candidate_rows(
    conn: sqlite3.Connection,
    table: str,
    reference: TokenizedSource,
    at: datetime
) -> List[sqlite3.Row]:
    """Rules sharing the reference's query token and effective at `at`."""
    query_token = reference.tokens[0]
    prefix = query_token + ":"
    rows = conn.execute(
        f"SELECT * FROM {table} WHERE source = ? OR substr(source, 1, ?) = ? ORDER BY id",
        (query_token, len(prefix), prefix)
    ).fetchall()
    return [row for row in rows if _during(row).contains(at)]


def _best_matching_row(
    conn: sqlite3.Connection,
    table: str,
    source: str,
    at: datetime
) -> Optional[sqlite3.Row]:
    reference = TokenizedSource.parse(source)
    rows = _candidate_rows(conn, table, reference, at)
    match = find_best_match(reference, [TokenizedSource.parse(row["source"]) for row in rows])
    if match is None:
        return None
    wanted = str(match)
    for row in rows:
        if row["source"] == wanted:
            return row
    return None


def get_best_matching_product(
    conn: sqlite3.Connection,
    source: str,
    at: datetime
) -> Optional[Tuple[int, Product]]:
    """Resolve the most specific product effective at a point in time.

    Args:
        conn: Open connection
        source: Fully specified source string of the usage
        at: Billing timestamp

    Returns:
        Tuple of product id and product, or None if no rule applies

    Raises:
        UnsupportedCardinality: If the source has too many tokens
    """
    row = _best_matching_row(conn, "products", source, at)
    if row is None:
        return None
    return row["id"], _product_from_row(row)


def get_best_matching_discount(
    conn: sqlite3.Connection,
    source: str,
    at: datetime
) -> Optional[Tuple[int, Discount]]:
    """Resolve the most specific discount effective at a point in time."""
    row = _best_matching_row(conn, "discounts", source, at)
    if row is None:
        return None
    return row["id"], _discount_from_row(row)


# Facts

def get_fact(conn: sqlite3.Connection, fact: FactRow) -> Optional[FactRow]:
    """Look up the fact with the same dimensions, ignoring quantity."""
    row = conn.execute(
        """
        SELECT * FROM facts
        WHERE date_time_id = ? AND query_id = ? AND tenant_id = ?
          AND category_id = ? AND product_id = ? AND discount_id = ?
        """,
        (fact.date_time_id, fact.query_id, fact.tenant_id,
         fact.category_id, fact.product_id, fact.discount_id)
    ).fetchone()
    if row is None:
        return None
    return FactRow(
        id=row["id"],
        date_time_id=row["date_time_id"],
        query_id=row["query_id"],
        tenant_id=row["tenant_id"],
        category_id=row["category_id"],
        product_id=row["product_id"],
        discount_id=row["discount_id"],
        quantity=row["quantity"]
    )


def upsert_fact(conn: sqlite3.Connection, fact: FactRow) -> FactOutcome:
    """Insert a fact or raise its quantity, never lowering it.

    Only missing facts and strictly higher quantities are written so that an
    already billed value cannot regress to a later, smaller recomputation.

    Args:
        conn: Connection inside an open transaction
        fact: Fact with resolved dimension ids

    Returns:
        What happened to the ledger
    """
    existing = get_fact(conn, fact)
    if existing is None:
        conn.execute(
            "INSERT INTO facts (date_time_id, query_id, tenant_id, category_id, product_id, "
            "discount_id, quantity) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (fact.date_time_id, fact.query_id, fact.tenant_id, fact.category_id,
             fact.product_id, fact.discount_id, fact.quantity)
        )
        return FactOutcome.CREATED

    if fact.quantity <= existing.quantity:
        logger.info(
            "fact_not_advanced",
            id=existing.id,
            saved=existing.quantity,
            new=fact.quantity
        )
        return FactOutcome.NOT_ADVANCED

    conn.execute("UPDATE facts SET quantity = ? WHERE id = ?", (fact.quantity, existing.id))
    logger.info("fact_advanced", id=existing.id, saved=existing.quantity, new=fact.quantity)
    return FactOutcome.ADVANCED


class ReconciliationStore:
    """Owns the rule catalog and the fact ledger.

    Every public operation runs in its own transaction on a fresh connection.
    """

    def __init__(self, catalog: Catalog, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store.

        Args:
            catalog: Rules seeded on every run
            db_path: Path to SQLite database file
        """
        self.catalog = catalog
        self.db_path = db_path

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block in a transaction, rolling back on any error."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    def seed(self) -> Dict[str, int]:
        """Ensure every catalog rule in a single transaction.

        Returns:
            Number of rows per EnsureStatus value

        Raises:
            CatalogSeedFailure: If any rule cannot be ensured; nothing is kept
        """
        counts = {status.value: 0 for status in EnsureStatus}
        try:
            with self.transaction() as conn:
                for product in self.catalog.products:
                    _, status = ensure_product(conn, product)
                    counts[status.value] += 1
                for discount in self.catalog.discounts:
                    _, status = ensure_discount(conn, discount)
                    counts[status.value] += 1
                for query in self.catalog.queries:
                    _, status = ensure_query(conn, query)
                    counts[status.value] += 1
        except (sqlite3.Error, ValueError) as e:
            raise CatalogSeedFailure(f"cannot seed catalog: {e}") from e

        logger.info("catalog_seeded", **counts)
        return counts

    def write_record(self, record: Record) -> FactOutcome:
        """Resolve a record against the catalog and ratchet its fact.

        Args:
            record: Aggregated usage line

        Returns:
            Outcome of the fact write

        Raises:
            RecordReconciliationFailure: If no product, discount or query applies
            UnsupportedCardinality: If a source string has too many tokens
            sqlite3.Error: On database failures
        """
        with self.transaction() as conn:
            tenant = ensure_tenant(conn, record.tenant_source)
            category = ensure_category(conn, record.category_source)
            date_time = ensure_date_time(conn, record.billing_date)

            product = get_best_matching_product(conn, record.product_source, record.billing_date)
            if product is None:
                raise RecordReconciliationFailure(record, f"no product matches {record.product_source!r}")

            discount = get_best_matching_discount(conn, record.discount_source, record.billing_date)
            if discount is None:
                raise RecordReconciliationFailure(record, f"no discount matches {record.discount_source!r}")

            query = get_query_by_name(conn, record.query_name)
            if query is None:
                raise RecordReconciliationFailure(record, f"unknown query {record.query_name!r}")

            fact = FactRow(
                date_time_id=date_time.id,
                query_id=query["id"],
                tenant_id=tenant.id,
                category_id=category.id,
                product_id=product[0],
                discount_id=discount[0],
                quantity=record.value
            )
            return upsert_fact(conn, fact)

    def exported_facts(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None
    ) -> List[ExportedFact]:
        """List recorded facts for export, oldest first.

        Args:
            since: Optional inclusive lower bound on the hour bucket
            until: Optional inclusive upper bound on the hour bucket

        Returns:
            Facts with their product, category, tenant and query sources
        """
        query = """
            SELECT products.source AS product_source,
                   categories.source AS category_source,
                   tenants.source AS tenant_source,
                   queries.name AS query_name,
                   facts.quantity AS quantity,
                   date_times.timestamp AS timestamp
            FROM facts
            JOIN products ON products.id = facts.product_id
            JOIN categories ON categories.id = facts.category_id
            JOIN tenants ON tenants.id = facts.tenant_id
            JOIN queries ON queries.id = facts.query_id
            JOIN date_times ON date_times.id = facts.date_time_id
        """
        params = []
        conditions = []
        if since is not None:
            conditions.append("date_times.timestamp >= ?")
            params.append(_format_ts(as_utc(since).replace(minute=0, second=0, microsecond=0)))
        if until is not None:
            conditions.append("date_times.timestamp <= ?")
            params.append(_format_ts(as_utc(until).replace(minute=0, second=0, microsecond=0)))
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY date_times.timestamp, products.source, categories.source"

        conn = get_connection(self.db_path)
        try:
            return [
                ExportedFact(
                    product_source=row["product_source"],
                    category_source=row["category_source"],
                    tenant_source=row["tenant_source"],
                    query_name=row["query_name"],
                    quantity=row["quantity"],
                    start=_parse_ts(row["timestamp"])
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()
