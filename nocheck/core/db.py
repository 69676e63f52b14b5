"""
SQLite foundation: connections and schema for the authoritative store
and for the device-local offline queue.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from .config import DB_PATH, OFFLINE_DB_PATH, ensure_db_directory


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    path = db_path or DB_PATH
    conn = sqlite3.connect(path, timeout=10)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Connection that commits on success and rolls back on any exception."""
    with get_db(db_path) as conn:
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def init_db(db_path: str = None):
    """Initialize the authoritative database with required tables."""
    path = db_path or DB_PATH
    if path != ":memory:":
        ensure_db_directory(path)

    with get_db(path) as conn:
        cursor = conn.cursor()

        # Reference data owned by external admin screens
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS stores (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT,
                full_name TEXT,
                function_name TEXT,
                is_admin BOOLEAN DEFAULT FALSE,
                is_active BOOLEAN DEFAULT TRUE
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS templates (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                category TEXT
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS template_fields (
                id INTEGER PRIMARY KEY,
                template_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                field_type TEXT NOT NULL,
                options TEXT
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS field_conditions (
                id INTEGER PRIMARY KEY,
                field_id INTEGER NOT NULL,
                condition_type TEXT NOT NULL,
                condition_value TEXT,
                severity TEXT NOT NULL,
                default_assignee_id TEXT,
                deadline_days INTEGER NOT NULL DEFAULT 7,
                description_template TEXT,
                is_active BOOLEAN DEFAULT TRUE
            )
        ''')

        # Committed submissions; local_id uniqueness makes drain replay idempotent
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS submissions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                local_id TEXT UNIQUE,
                template_id INTEGER NOT NULL,
                store_id INTEGER NOT NULL,
                sector_id INTEGER,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'concluido',
                media_complete BOOLEAN DEFAULT TRUE,
                created_at TIMESTAMP NOT NULL,
                completed_at TIMESTAMP,
                processed_at TIMESTAMP
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS submission_responses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                submission_id INTEGER NOT NULL,
                field_id INTEGER NOT NULL,
                value_text TEXT,
                value_number REAL,
                value_json TEXT
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS submission_sections (
                submission_id INTEGER NOT NULL,
                section_id INTEGER NOT NULL,
                status TEXT NOT NULL,
                completed_at TIMESTAMP,
                PRIMARY KEY (submission_id, section_id)
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS activity_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                store_id INTEGER,
                submission_id INTEGER,
                action TEXT NOT NULL,
                details TEXT,
                ts TIMESTAMP NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS cross_validations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                store_id INTEGER NOT NULL,
                document_number TEXT NOT NULL,
                estoquista_submission_id INTEGER,
                aprendiz_submission_id INTEGER,
                estoquista_value REAL,
                aprendiz_value REAL,
                difference REAL,
                status TEXT NOT NULL DEFAULT 'pendente',
                validated_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL,
                linked_pair_id INTEGER,
                match_reason TEXT,
                is_primary BOOLEAN NOT NULL DEFAULT TRUE
            )
        ''')
        # At most one primary pair per document number and store
        cursor.execute('''
            CREATE UNIQUE INDEX IF NOT EXISTS ux_cross_validations_primary
            ON cross_validations(store_id, document_number) WHERE is_primary = 1
        ''')
        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_cross_validations_store_status
            ON cross_validations(store_id, status, created_at)
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS action_plans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                submission_id INTEGER NOT NULL,
                field_id INTEGER NOT NULL,
                field_condition_id INTEGER NOT NULL,
                template_id INTEGER NOT NULL,
                store_id INTEGER NOT NULL,
                sector_id INTEGER,
                title TEXT NOT NULL,
                description TEXT,
                severity TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'aberto',
                assigned_to TEXT NOT NULL,
                assigned_by TEXT NOT NULL,
                deadline DATE NOT NULL,
                is_reincidencia BOOLEAN DEFAULT FALSE,
                reincidencia_count INTEGER DEFAULT 0,
                parent_action_plan_id INTEGER,
                non_conformity_value TEXT,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP,
                resolved_at TIMESTAMP
            )
        ''')
        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_action_plans_recurrence
            ON action_plans(field_id, store_id, template_id, created_at)
        ''')
        # One plan per condition per submission; replayed engines never duplicate
        cursor.execute('''
            CREATE UNIQUE INDEX IF NOT EXISTS ux_action_plans_submission_condition
            ON action_plans(submission_id, field_condition_id)
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT,
                link TEXT,
                metadata TEXT,
                read BOOLEAN DEFAULT FALSE,
                created_at TIMESTAMP NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at DESC)')

        conn.commit()


def init_offline_db(db_path: str = None):
    """Initialize the device-local queue database."""
    path = db_path or OFFLINE_DB_PATH
    if path != ":memory:":
        ensure_db_directory(path)

    with get_db(path) as conn:
        conn.execute('''
            CREATE TABLE IF NOT EXISTS pending_submissions (
                local_id TEXT PRIMARY KEY,
                sync_status TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                payload TEXT NOT NULL
            )
        ''')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_pending_sync_status ON pending_submissions(sync_status)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_pending_created_at ON pending_submissions(created_at)')
        conn.commit()


def health_check(db_path: str = None) -> bool:
    """Check if database is accessible."""
    try:
        with get_db(db_path) as conn:
            conn.execute("SELECT 1")
            return True
    except Exception:
        return False
