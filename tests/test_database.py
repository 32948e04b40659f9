"""Tests for schema definitions and SQL builders."""

from contextlib import asynccontextmanager

import pytest

from database import _get_connection_kwargs
from database.lib.schema_manager import (
    SchemaManager,
    build_constraints,
    build_create_table,
    build_trigger,
    render_drop,
    render_schema,
)
from database.exceptions import DatabaseSchemaError
from database.lib.search import build_search_query, escape_like

def test_schema_files_load():
    schema_files = SchemaManager(pool=None).load_schema_files()

    assert list(schema_files) == [1]
    tables = [table['name'] for table in schema_files[1]['tables']]
    assert tables == ['users', 'categories', 'products', 'product_reviews', 'orders', 'order_items']

def test_products_table_enforces_stock_floor():
    schema = SchemaManager(pool=None).load_schema_files()[1]
    products = next(table for table in schema['tables'] if table['name'] == 'products')

    sql = build_create_table(products)

    assert sql.startswith('CREATE TABLE products (')
    assert 'price DECIMAL(10,2) NOT NULL' in sql
    assert 'stock INT4 DEFAULT 0 NOT NULL' in sql
    assert 'PRIMARY KEY (id)' in sql
    assert 'CHECK (stock >= 0)' in sql

def test_build_constraints():
    table = {
        'name': 'order_items',
        'columns': [],
        'foreign_keys': [{'columns': ['order_id'], 'references': 'orders(id)'}],
        'indexes': [{'name': 'idx_order_items_order', 'columns': ['order_id']}]
    }

    assert build_constraints(table) == [
        'ALTER TABLE order_items ADD CONSTRAINT fk_order_items_order_id '
        'FOREIGN KEY (order_id) REFERENCES orders(id)',
        'CREATE INDEX idx_order_items_order ON order_items(order_id)'
    ]

def test_escape_like():
    assert escape_like('100%_cotton\\') == '100\\%\\_cotton\\\\'

def test_search_query_without_filters():
    query, count_query, params, page_params = build_search_query('', None, 20, 40)

    assert params == []
    assert page_params == [20, 40]
    assert "WHERE p.status = 'active'" in query
    assert 'ILIKE' not in query
    assert 'ORDER BY p.sales_count DESC, p.created_at DESC, p.id DESC' in query
    assert 'LIMIT $1 OFFSET $2' in query
    assert 'LIMIT' not in count_query

def test_search_query_with_term_and_category():
    """Test the term and category become numbered parameters shared with the count."""
    query, count_query, params, page_params = build_search_query('50%', 3, 10, 0)

    assert params == ['%50\\%%', 3]
    assert 'p.name ILIKE $1' in query
    assert 'p.description ILIKE $1' in query
    assert 'p.category_id = $2' in query
    assert 'LIMIT $3 OFFSET $4' in query
    assert 'p.category_id = $2' in count_query

@pytest.mark.parametrize("url, expect_ssl", [
    ('postgresql://u:p@localhost:5432/store_db', False),
    ('postgresql://u:p@db.example.com:5432/store_db?sslmode=require', True),
])
def test_connection_kwargs(url, expect_ssl):
    kwargs = _get_connection_kwargs(url, 30000)

    assert kwargs['server_settings']['statement_timeout'] == '30000'
    assert ('ssl' in kwargs) is expect_ssl

def test_render_schema_order():
    """Test tables come before constraints and shared trigger functions render once."""
    schema = SchemaManager(pool=None).load_schema_files()[1]

    statements = render_schema(schema)

    creates = [i for i, s in enumerate(statements) if s.startswith('CREATE TABLE')]
    alters = [i for i, s in enumerate(statements) if s.startswith('ALTER TABLE')]
    assert len(creates) == 6
    assert max(creates) < min(alters)
    assert sum(s.startswith('CREATE OR REPLACE FUNCTION set_updated_at') for s in statements) == 1
    assert any(s.startswith('CREATE TRIGGER trg_products_updated_at') for s in statements)
    assert any(s.startswith('CREATE TRIGGER trg_orders_updated_at') for s in statements)

def test_render_drop_dependents_first():
    schema = SchemaManager(pool=None).load_schema_files()[1]

    statements = render_drop(schema)

    assert statements[0] == 'DROP TABLE IF EXISTS order_items CASCADE'
    assert statements[-1] == 'DROP TABLE IF EXISTS users CASCADE'
    assert len(statements) == 6

def test_build_trigger_without_function():
    trigger = {
        'name': 'trg_orders_updated_at',
        'table': 'orders',
        'timing': 'BEFORE',
        'event': 'UPDATE',
        'function_name': 'set_updated_at',
        'function_body': 'BEGIN NEW.updated_at = now(); RETURN NEW; END;'
    }

    assert build_trigger(trigger, with_function=False) == [
        'DROP TRIGGER IF EXISTS trg_orders_updated_at ON orders',
        'CREATE TRIGGER trg_orders_updated_at BEFORE UPDATE ON orders '
        'FOR EACH ROW EXECUTE FUNCTION set_updated_at()'
    ]
    assert len(build_trigger(trigger)) == 3

class RecordingConnection:
    """Connection double that records executed SQL."""

    def __init__(self, version=0, fail_on=None):
        self.version = version
        self.fail_on = fail_on
        self.executed = []

    async def execute(self, sql, *args):
        if self.fail_on and self.fail_on in sql:
            raise RuntimeError('syntax error')
        self.executed.append((sql.strip(), args))

    async def fetchval(self, sql):
        return self.version

    @asynccontextmanager
    async def transaction(self):
        yield

class RecordingPool:
    def __init__(self, conn):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn

@pytest.mark.asyncio
async def test_initialize_fresh_install():
    conn = RecordingConnection(version=0)
    manager = SchemaManager(RecordingPool(conn))

    await manager.initialize()

    sql = [statement for statement, _ in conn.executed]
    assert sql[0].startswith('CREATE TABLE IF NOT EXISTS schema_version')
    assert 'DROP TABLE IF EXISTS order_items CASCADE' in sql
    assert sql.index('DROP TABLE IF EXISTS users CASCADE') < sql.index(next(s for s in sql if s.startswith('CREATE TABLE users')))
    assert conn.executed[-1] == ('INSERT INTO schema_version (version) VALUES ($1)', (1,))
    assert manager.current_version == 1

@pytest.mark.asyncio
async def test_initialize_up_to_date_does_nothing():
    conn = RecordingConnection(version=1)
    manager = SchemaManager(RecordingPool(conn))

    await manager.initialize()

    assert len(conn.executed) == 1
    assert manager.current_version == 1

@pytest.mark.asyncio
async def test_initialize_force_recreate_drops_first():
    conn = RecordingConnection(version=0)

    await SchemaManager(RecordingPool(conn)).initialize(force_recreate=True)

    sql = [statement for statement, _ in conn.executed]
    assert sql[1] == 'DROP TABLE IF EXISTS order_items CASCADE'
    assert 'DELETE FROM schema_version' in sql

@pytest.mark.asyncio
async def test_initialize_wraps_failures():
    conn = RecordingConnection(version=0, fail_on='CREATE TABLE products')

    with pytest.raises(DatabaseSchemaError):
        await SchemaManager(RecordingPool(conn)).initialize()
