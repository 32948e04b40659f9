"""Database module for managing connections to the relational store.

This module handles:
- Database connection pool initialization
- Schema management
- Connection lifecycle

The pool returned by init_db() is owned by the caller (the API lifespan) and
handed to PostgresStore explicitly; nothing in this module keeps it around.
"""

import logging
import ssl
from typing import Optional, Dict, Any
import backoff
import asyncpg
from urllib.parse import urlparse, parse_qs

from .lib.schema_manager import SchemaManager
from .exceptions import (
    DatabaseError,
    DatabaseSchemaError,
    InvalidReferenceError,
    TransactionConflictError,
)
from .store import PostgresStore, StoreTransaction

logger = logging.getLogger(__name__)

def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for managed database connections."""
    ssl_context = ssl.create_default_context()
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    return ssl_context

def _get_connection_kwargs(db_url: str, statement_timeout: Optional[int] = None) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    Args:
        db_url: Database connection URL
        statement_timeout: Optional server-side statement timeout in milliseconds

    Returns:
        Dict of connection parameters
    """
    parsed = urlparse(db_url)
    params = parse_qs(parsed.query)

    kwargs: Dict[str, Any] = {'server_settings': {}}

    if statement_timeout:
        kwargs['server_settings']['statement_timeout'] = str(statement_timeout)

    sslmode = params.get('sslmode', ['disable'])[0]
    if sslmode in ('require', 'verify-ca', 'verify-full'):
        kwargs['ssl'] = _get_ssl_context()

    return kwargs

def _strip_query(db_url: str) -> str:
    """Drop query parameters that asyncpg would reject as server settings."""
    return db_url.split('?', 1)[0]

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def create_database_if_not_exists(db_url: str) -> None:
    """Create the database if it doesn't exist.

    Args:
        db_url: Database connection URL

    Raises:
        Exception: If database creation fails after retries
    """
    try:
        parsed = urlparse(db_url)
        db_name = parsed.path.strip('/') or 'postgres'
        if db_name == 'postgres':
            return

        # Connect to the maintenance database
        base_url = parsed._replace(path='/postgres').geturl()
        logger.info(f"Connecting to postgres to create {db_name} if needed")

        conn = await asyncpg.connect(_strip_query(base_url), **_get_connection_kwargs(base_url))

        try:
            exists = await conn.fetchval(
                'SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)',
                db_name
            )

            if not exists:
                await conn.execute(f'CREATE DATABASE "{db_name}"')
                logger.info(f"Created database {db_name}")

        finally:
            await conn.close()

    except Exception as e:
        logger.error(f"Error creating database: {e}")
        raise

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def init_db(
    db_url: Optional[str] = None,
    statement_timeout: Optional[int] = None,
    force_recreate: bool = False
) -> asyncpg.Pool:
    """Create the database connection pool and bring the schema up to date.

    Args:
        db_url: Optional database URL. If not provided, will use settings.
        statement_timeout: Optional statement timeout (ms). Defaults to settings.
        force_recreate: If True, drop and recreate all tables

    Returns:
        The connection pool

    Raises:
        ValueError: If database URL is not provided
        Exception: If initialization fails after retries
    """
    # Import here to avoid circular imports
    from config import settings_conf

    url = db_url or settings_conf.get('db_url')
    if not url:
        raise ValueError("Database URL not provided")
    if statement_timeout is None:
        statement_timeout = settings_conf.get('statement_timeout')

    try:
        await create_database_if_not_exists(url)

        pool = await asyncpg.create_pool(
            _strip_query(url),
            min_size=2,          # Minimum idle connections
            max_size=10,         # Maximum connections
            max_queries=10000,   # Reset connection after this many queries
            max_inactive_connection_lifetime=300.0,  # 5 minutes
            command_timeout=60.0,  # 1 minute command timeout
            **_get_connection_kwargs(url, statement_timeout)
        )

        schema_manager = SchemaManager(pool)
        await schema_manager.initialize(force_recreate=force_recreate)
        return pool

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

async def close(pool: Optional[asyncpg.Pool]) -> None:
    """Close a database connection pool."""
    if pool is not None:
        await pool.close()

# Export public interface
__all__ = [
    'init_db',
    'close',
    'PostgresStore',
    'StoreTransaction',
    'DatabaseError',
    'DatabaseSchemaError',
    'TransactionConflictError',
    'InvalidReferenceError',
]
