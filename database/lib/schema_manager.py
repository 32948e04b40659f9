"""Storefront schema installation and versioning.

Schema versions live as declarative dicts in the database.schema package
(v1.py, v2.py, ...). A fresh database gets the latest definition rendered in
one pass; an existing one runs the raw SQL migrations of every newer version.
Either way the work happens in a single transaction, and schema_version records
what was applied.
"""
import importlib
import logging
import pkgutil
from typing import Dict, Any, List, Optional

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_PACKAGE = 'database.schema'

VERSION_TABLE = '''
    CREATE TABLE IF NOT EXISTS schema_version (
        version INT8 PRIMARY KEY,
        applied_at TIMESTAMP NOT NULL DEFAULT now()
    )
'''

class SchemaManager:
    """Brings the storefront tables up to the latest schema version."""

    def __init__(self, pool, package: str = SCHEMA_PACKAGE) -> None:
        self.pool = pool
        self.package = package
        self.current_version = 0

    async def initialize(self, force_recreate: bool = False) -> None:
        """Install or upgrade the schema.

        Args:
            force_recreate: Drop the storefront tables and install the latest version

        Raises:
            DatabaseSchemaError: If no schema versions exist or applying them fails
        """
        schemas = self.load_schema_files()
        if not schemas:
            raise DatabaseSchemaError(f"No schema versions found in {self.package}")
        latest = schemas[max(schemas)]

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(VERSION_TABLE)

                    if force_recreate:
                        logger.info("Force recreate requested, dropping storefront tables")
                        for statement in render_drop(latest):
                            await conn.execute(statement)
                        await conn.execute('DELETE FROM schema_version')

                    self.current_version = await conn.fetchval(
                        'SELECT COALESCE(MAX(version), 0) FROM schema_version'
                    )
                    await self._upgrade(conn, schemas)

        except DatabaseSchemaError:
            raise
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseSchemaError(f"Failed to initialize schema: {e}")

    async def _upgrade(self, conn, schemas: Dict[int, Dict[str, Any]]) -> None:
        latest_version = max(schemas)
        if self.current_version >= latest_version:
            logger.info(f"Schema is up to date at version {self.current_version}")
            return

        if self.current_version == 0:
            # Nothing recorded, so leftover tables are from an unfinished install
            for statement in render_drop(schemas[latest_version]) + render_schema(schemas[latest_version]):
                await conn.execute(statement)
            applied = [latest_version]
        else:
            applied = [v for v in schemas if v > self.current_version]
            for version in applied:
                for migration in schemas[version].get('migrations', []):
                    await conn.execute(migration)

        for version in applied:
            await conn.execute('INSERT INTO schema_version (version) VALUES ($1)', version)
        logger.info(f"Schema moved from version {self.current_version} to {latest_version}")
        self.current_version = latest_version

    def load_schema_files(self) -> Dict[int, Dict[str, Any]]:
        """Import every vN module of the schema package.

        Returns:
            Dict mapping version numbers to schema definitions, ordered by version

        Raises:
            DatabaseSchemaError: If a module lacks a schema or its version disagrees with its name
        """
        package = importlib.import_module(self.package)
        schemas = {}

        for module_info in pkgutil.iter_modules(package.__path__):
            name = module_info.name
            if not (name.startswith('v') and name[1:].isdigit()):
                continue

            module = importlib.import_module(f"{self.package}.{name}")
            schema: Optional[Dict[str, Any]] = getattr(module, 'schema', None)
            if schema is None:
                raise DatabaseSchemaError(f"Schema module {name} has no 'schema' definition")
            if schema['version'] != int(name[1:]):
                raise DatabaseSchemaError(
                    f"Schema module {name} declares version {schema['version']}"
                )
            schemas[schema['version']] = schema

        return dict(sorted(schemas.items()))

def render_schema(schema: Dict[str, Any]) -> List[str]:
    """Render every statement of a fresh install, in execution order.

    All tables are created before any foreign key so declaration order is free.
    """
    tables = schema.get('tables', [])
    statements = [build_create_table(table) for table in tables]
    for table in tables:
        statements.extend(build_constraints(table))

    functions_done = set()
    for trigger in schema.get('triggers', []):
        statements.extend(build_trigger(trigger, with_function=trigger['function_name'] not in functions_done))
        functions_done.add(trigger['function_name'])
    return statements

def render_drop(schema: Dict[str, Any]) -> List[str]:
    """Drop the tables a schema defines, dependents first."""
    return [
        f'DROP TABLE IF EXISTS {table["name"]} CASCADE'
        for table in reversed(schema.get('tables', []))
    ]

def build_create_table(table: Dict[str, Any]) -> str:
    """Render the CREATE TABLE statement for a table definition (no foreign keys)."""
    lines = []
    keys = []

    for col in table['columns']:
        parts = [col['name'], col['type']]
        if 'default' in col:
            parts.append(f"DEFAULT {col['default']}")
        if col.get('nullable') is False:
            parts.append('NOT NULL')
        lines.append(' '.join(parts))

        if col.get('primary_key'):
            keys.append(f"PRIMARY KEY ({col['name']})")
        elif col.get('unique'):
            keys.append(f"UNIQUE ({col['name']})")

    keys.extend(f"CHECK ({check})" for check in table.get('checks', []))

    body = ',\n    '.join(lines + keys)
    return f"CREATE TABLE {table['name']} (\n    {body}\n)"

def build_constraints(table: Dict[str, Any]) -> List[str]:
    """Render foreign key and index statements for a table definition."""
    name = table['name']
    statements = [
        f"ALTER TABLE {name} ADD CONSTRAINT fk_{name}_{fk['columns'][0]} "
        f"FOREIGN KEY ({', '.join(fk['columns'])}) REFERENCES {fk['references']}"
        for fk in table.get('foreign_keys', [])
    ]

    for idx in table.get('indexes', []):
        unique = 'UNIQUE ' if idx.get('unique') else ''
        where = f" WHERE {idx['where']}" if 'where' in idx else ''
        statements.append(
            f"CREATE {unique}INDEX {idx['name']} ON {name}({', '.join(idx['columns'])}){where}"
        )

    return statements

def build_trigger(trigger: Dict[str, Any], with_function: bool = True) -> List[str]:
    """Render a row trigger and, optionally, the plpgsql function it calls."""
    statements = []
    if with_function:
        statements.append(
            f"CREATE OR REPLACE FUNCTION {trigger['function_name']}() RETURNS TRIGGER "
            f"AS $${trigger['function_body']}$$ LANGUAGE plpgsql"
        )
    statements.append(f"DROP TRIGGER IF EXISTS {trigger['name']} ON {trigger['table']}")
    statements.append(
        f"CREATE TRIGGER {trigger['name']} {trigger['timing']} {trigger['event']} "
        f"ON {trigger['table']} FOR EACH ROW EXECUTE FUNCTION {trigger['function_name']}()"
    )
    return statements
