# db_utils.py – Postgres helpers for the killmail ingest worker.
# Pool management, transaction context, small query helpers and schema bootstrap.

from __future__ import annotations
import logging
import atexit
from contextlib import contextmanager
from typing import Any, Dict, List

import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor

logger = logging.getLogger("db_utils")

# ---------------------------------------------------------------------
# Connection Pool Management
# ---------------------------------------------------------------------

_connection_pool = None

def get_connection_pool():
    """Get or create the global connection pool."""
    global _connection_pool
    if _connection_pool is None:
        from config import CONFIG

        if CONFIG is None or not CONFIG.database.url:
            raise RuntimeError("DATABASE_URL not set")
        try:
            _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=CONFIG.database.pool_min_size,
                maxconn=CONFIG.database.pool_max_size,
                dsn=CONFIG.database.url
            )
            atexit.register(close_connection_pool)
            logger.info("Connection pool initialized (min=%s, max=%s)",
                       CONFIG.database.pool_min_size,
                       CONFIG.database.pool_max_size)
        except Exception as e:
            logger.error("Failed to create connection pool: %s", e)
            raise
    return _connection_pool

def close_connection_pool():
    """Close all connections in the pool."""
    global _connection_pool
    if _connection_pool:
        try:
            _connection_pool.closeall()
            logger.info("Connection pool closed")
        except Exception as e:
            logger.error("Error closing connection pool: %s", e)
        finally:
            _connection_pool = None

def _conn():
    """Get connection from pool."""
    try:
        return get_connection_pool().getconn()
    except Exception as e:
        logger.error("Failed to get connection from pool: %s", e)
        raise

def _release_conn(conn):
    """Return connection to pool."""
    if conn:
        try:
            get_connection_pool().putconn(conn)
        except Exception as e:
            logger.error("Failed to return connection to pool: %s", e)

@contextmanager
def _get_db_connection():
    """Context manager that guarantees connection return and proper transaction handling"""
    conn = _conn()
    try:
        yield conn
        # Only commit if no exceptions occurred
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        _release_conn(conn)

def fetch_one(query: str, params: tuple = ()):
    """Fetch a single row as a dict (or None)"""
    with _get_db_connection() as conn:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            return cur.fetchone()

def fetch_all(query: str, params: tuple = ()) -> List[Dict[str, Any]]:
    """Fetch all rows as dicts with guaranteed connection return"""
    with _get_db_connection() as conn:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            return cur.fetchall()

# ---------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS tracked_characters (
      character_id BIGINT PRIMARY KEY,
      name TEXT,
      added_at TIMESTAMPTZ DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS kill_facts (
      killmail_id BIGINT PRIMARY KEY,
      kill_time TIMESTAMPTZ NOT NULL,
      hash TEXT,
      npc BOOLEAN NOT NULL DEFAULT false,
      solo BOOLEAN NOT NULL DEFAULT false,
      awox BOOLEAN NOT NULL DEFAULT false,
      ship_type_id INTEGER,
      system_id INTEGER,
      labels TEXT[] NOT NULL DEFAULT '{}',
      total_value BIGINT NOT NULL DEFAULT 0,
      points INTEGER NOT NULL DEFAULT 0,
      fully_populated BOOLEAN NOT NULL DEFAULT false,
      enrich_attempts INTEGER NOT NULL DEFAULT 0,
      last_enrich_attempt_at TIMESTAMPTZ,
      updated_at TIMESTAMPTZ DEFAULT now()
    )
    """,
    "ALTER TABLE kill_facts ADD COLUMN IF NOT EXISTS enrich_attempts INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE kill_facts ADD COLUMN IF NOT EXISTS last_enrich_attempt_at TIMESTAMPTZ",
    "CREATE INDEX IF NOT EXISTS idx_kill_facts_partial ON kill_facts (kill_time DESC) WHERE NOT fully_populated",
    """
    CREATE TABLE IF NOT EXISTS kill_victims (
      killmail_id BIGINT PRIMARY KEY REFERENCES kill_facts(killmail_id) ON DELETE CASCADE,
      character_id BIGINT,
      corporation_id BIGINT,
      alliance_id BIGINT,
      ship_type_id INTEGER,
      damage_taken INTEGER NOT NULL DEFAULT 0,
      items JSONB NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS kill_attackers (
      id BIGSERIAL PRIMARY KEY,
      killmail_id BIGINT NOT NULL REFERENCES kill_facts(killmail_id) ON DELETE CASCADE,
      character_id BIGINT,
      corporation_id BIGINT,
      alliance_id BIGINT,
      damage_done INTEGER NOT NULL DEFAULT 0,
      final_blow BOOLEAN NOT NULL DEFAULT false,
      security_status DOUBLE PRECISION,
      ship_type_id INTEGER,
      weapon_type_id INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_kill_attackers_killmail ON kill_attackers (killmail_id)",
    """
    CREATE TABLE IF NOT EXISTS kill_characters (
      killmail_id BIGINT NOT NULL REFERENCES kill_facts(killmail_id) ON DELETE CASCADE,
      character_id BIGINT NOT NULL,
      role TEXT NOT NULL CHECK (role IN ('attacker', 'victim')),
      PRIMARY KEY (killmail_id, character_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_kill_characters_character ON kill_characters (character_id)",
    """
    CREATE TABLE IF NOT EXISTS loss_facts (
      killmail_id BIGINT PRIMARY KEY REFERENCES kill_facts(killmail_id) ON DELETE CASCADE,
      character_id BIGINT NOT NULL,
      kill_time TIMESTAMPTZ NOT NULL,
      ship_type_id INTEGER,
      system_id INTEGER,
      total_value BIGINT NOT NULL DEFAULT 0,
      attacker_count INTEGER NOT NULL DEFAULT 0,
      labels TEXT[] NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_loss_facts_character ON loss_facts (character_id, kill_time)",
    """
    CREATE TABLE IF NOT EXISTS ingestion_checkpoints (
      stream_name TEXT PRIMARY KEY,
      last_seen_id BIGINT NOT NULL,
      last_seen_time TIMESTAMPTZ NOT NULL,
      updated_at TIMESTAMPTZ DEFAULT now()
    )
    """,
)

def ensure_tables() -> None:
    """Create the ingest schema if missing. Safe to run repeatedly."""
    with _get_db_connection() as conn:
        with conn.cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
    logger.info("Ingest tables ensured (%d statements)", len(SCHEMA_STATEMENTS))
