"""
Database Manager Module - QR Attendance Gate

This module handles all database operations for the attendance system.
It manages SQLite connections, schema creation and the uniqueness constraints
that the session and admission managers rely on for their "check-then-create"
guarantees. Every server instance pointed at the same database file agrees on
which session is live and which student has already been admitted, without
sharing any memory.

Features:
- Thread-local SQLite connections (WAL journal for file databases)
- Idempotent schema creation
- Partial unique index: one active session per class configuration
- Unique (session, student) attendance outcomes
- Transaction support
- System settings storage
- UTC timestamp encoding helpers
"""

import sqlite3
import logging
from datetime import datetime, timezone
from contextlib import contextmanager
import threading
from werkzeug.security import generate_password_hash
import os

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S.%f'


def to_db_timestamp(value: datetime) -> str:
    """Encode an aware datetime as a sortable UTC string."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def from_db_timestamp(value: str) -> datetime:
    """Decode a string written by ``to_db_timestamp``."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class DatabaseManager:
    """
    Database management class for the QR attendance system.
    Handles connection management, schema creation and query execution with
    proper error handling and transaction support.
    """

    def __init__(self, db_path, default_admin_password=None):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file
            default_admin_password (str): Password for the seeded admin account,
                or None to skip seeding an admin
        """
        self.db_path = str(db_path)
        self.default_admin_password = default_admin_password
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()

        # Ensure database directory exists
        directory = os.path.dirname(self.db_path)
        if directory and self.db_path != ':memory:':
            os.makedirs(directory, exist_ok=True)

        self.initialize_database()

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.
        Provides thread-local connections for thread safety.

        Yields:
            sqlite3.Connection: Database connection object
        """
        if not hasattr(self._local, 'connection'):
            connection = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=30.0
            )
            connection.row_factory = sqlite3.Row
            connection.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ':memory:':
                connection.execute("PRAGMA journal_mode = WAL")
                connection.execute("PRAGMA synchronous = NORMAL")
            self._local.connection = connection

        try:
            yield self._local.connection
        except Exception as e:
            self._local.connection.rollback()
            self.logger.error(f"Database operation failed: {str(e)}")
            raise

    def initialize_database(self):
        """
        Create all tables and indexes. Safe to call repeatedly.
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()

                # Users (students, teachers, admins)
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS users (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        email VARCHAR(100) UNIQUE NOT NULL,
                        password_hash VARCHAR(255) NOT NULL,
                        full_name VARCHAR(100) NOT NULL,
                        role VARCHAR(20) NOT NULL DEFAULT 'student',
                        department VARCHAR(100),
                        batch VARCHAR(20),
                        section VARCHAR(5),
                        student_number VARCHAR(30),
                        is_active BOOLEAN DEFAULT 1,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                # Class configurations (reusable teacher/course/cohort templates)
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS class_configurations (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        owner_id INTEGER NOT NULL,
                        department VARCHAR(100) NOT NULL,
                        batch VARCHAR(20) NOT NULL,
                        course VARCHAR(100) NOT NULL,
                        class_type VARCHAR(20) NOT NULL,
                        section VARCHAR(5) NOT NULL DEFAULT '',
                        is_active BOOLEAN DEFAULT 1,
                        total_sessions INTEGER DEFAULT 0,
                        last_used_at TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        FOREIGN KEY (owner_id) REFERENCES users(id),
                        UNIQUE(owner_id, department, batch, course, class_type, section)
                    )
                """)

                # Attendance sessions (one QR validity window each)
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS sessions (
                        id VARCHAR(32) PRIMARY KEY,
                        configuration_id INTEGER NOT NULL,
                        owner_id INTEGER NOT NULL,
                        token TEXT UNIQUE NOT NULL,
                        created_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        is_active BOOLEAN DEFAULT 1,
                        total_scans INTEGER DEFAULT 0,
                        unique_attendees INTEGER DEFAULT 0,
                        FOREIGN KEY (configuration_id) REFERENCES class_configurations(id)
                    )
                """)

                # Attendance outcomes (no foreign key to sessions; outcomes outlive session purges)
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS attendance (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        session_id VARCHAR(32) NOT NULL,
                        configuration_id INTEGER NOT NULL,
                        student_id INTEGER NOT NULL,
                        student_name VARCHAR(100) NOT NULL,
                        student_email VARCHAR(100),
                        student_number VARCHAR(30),
                        department VARCHAR(100) NOT NULL,
                        batch VARCHAR(20) NOT NULL,
                        section VARCHAR(5),
                        course VARCHAR(100) NOT NULL,
                        marked_at TEXT NOT NULL,
                        status VARCHAR(20) NOT NULL DEFAULT 'present',
                        device_fingerprint VARCHAR(64) NOT NULL,
                        ip_address VARCHAR(64) NOT NULL,
                        latitude REAL,
                        longitude REAL,
                        accuracy REAL,
                        is_verified BOOLEAN DEFAULT 1,
                        verification_flags TEXT NOT NULL DEFAULT '[]',
                        notes TEXT,
                        FOREIGN KEY (configuration_id) REFERENCES class_configurations(id),
                        UNIQUE(session_id, student_id)
                    )
                """)

                # Append-only audit trail
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS activity_logs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id INTEGER,
                        action VARCHAR(50) NOT NULL,
                        details TEXT NOT NULL DEFAULT '{}',
                        ip_address VARCHAR(64) NOT NULL DEFAULT 'unknown',
                        device_fingerprint VARCHAR(64) NOT NULL DEFAULT 'unknown',
                        user_agent TEXT,
                        suspicious_flag BOOLEAN DEFAULT 0,
                        risk_score INTEGER DEFAULT 0 CHECK (risk_score BETWEEN 0 AND 100),
                        created_at TEXT NOT NULL
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS system_settings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        setting_key VARCHAR(100) UNIQUE NOT NULL,
                        setting_value TEXT,
                        description TEXT,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                # At most one active session per configuration
                cursor.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_sessions_live
                    ON sessions(configuration_id) WHERE is_active = 1
                """)

                cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_expiry ON sessions(expires_at)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_student ON attendance(student_id, marked_at)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_device ON attendance(device_fingerprint, marked_at)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_config ON attendance(configuration_id, marked_at)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_activity_suspicious ON activity_logs(suspicious_flag, created_at)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_activity_user ON activity_logs(user_id, created_at)")

                conn.commit()

                self._insert_default_data(cursor)
                conn.commit()

                self.logger.info("Database initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise

    def _insert_default_data(self, cursor):
        """
        Insert default system settings and, when configured, an admin account.

        Args:
            cursor: Database cursor object
        """
        if self.default_admin_password:
            cursor.execute("SELECT COUNT(*) FROM users WHERE role = 'admin'")
            if cursor.fetchone()[0] == 0:
                cursor.execute("""
                    INSERT INTO users (email, password_hash, full_name, role, department)
                    VALUES (?, ?, ?, ?, ?)
                """, ('admin@attendance.local', generate_password_hash(self.default_admin_password),
                      'System Administrator', 'admin', 'Administration'))

        cursor.execute("""
            INSERT OR IGNORE INTO system_settings (setting_key, setting_value, description)
            VALUES ('system_name', 'QR Attendance Gate', 'Name shown in operator alerts')
        """)

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Execute a SELECT query and return results.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params or ())

                if fetch_all:
                    return [dict(row) for row in cursor.fetchall()]
                result = cursor.fetchone()
                return dict(result) if result else None

        except Exception as e:
            self.logger.error(f"Query execution failed: {str(e)}")
            raise

    def execute_update(self, query, params=None):
        """
        Execute an INSERT, UPDATE, or DELETE query.

        Constraint violations propagate as ``sqlite3.IntegrityError`` so that
        callers can translate them into domain responses.

        Returns:
            int: Last inserted row ID for INSERT, affected rows otherwise
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params or ())
                conn.commit()

                if query.strip().upper().startswith('INSERT'):
                    return cursor.lastrowid
                return cursor.rowcount

        except sqlite3.IntegrityError:
            raise
        except Exception as e:
            self.logger.error(f"Update execution failed: {str(e)}")
            raise

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions with automatic rollback on error.

        Yields:
            sqlite3.Connection: Database connection within transaction
        """
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def get_system_setting(self, key, default_value=None):
        """
        Get a system setting value by key.

        Args:
            key (str): Setting key
            default_value: Default value if setting not found

        Returns:
            str: Setting value
        """
        try:
            result = self.execute_query(
                "SELECT setting_value FROM system_settings WHERE setting_key = ?",
                (key,),
                fetch_all=False
            )
            return result['setting_value'] if result else default_value

        except Exception as e:
            self.logger.error(f"Failed to get system setting {key}: {str(e)}")
            return default_value

    def update_system_setting(self, key, value, description=None):
        """
        Update or insert a system setting.

        Returns:
            bool: Success status
        """
        try:
            self.execute_update("""
                INSERT INTO system_settings (setting_key, setting_value, description)
                VALUES (?, ?, ?)
                ON CONFLICT(setting_key) DO UPDATE SET
                    setting_value = excluded.setting_value,
                    description = COALESCE(excluded.description, system_settings.description),
                    updated_at = CURRENT_TIMESTAMP
            """, (key, str(value), description))
            return True

        except Exception as e:
            self.logger.error(f"Failed to update system setting {key}: {str(e)}")
            return False

    def close_all_connections(self):
        """Close the calling thread's connection."""
        try:
            if hasattr(self._local, 'connection'):
                self._local.connection.close()
                del self._local.connection
        except Exception as e:
            self.logger.error(f"Error closing connections: {str(e)}")
