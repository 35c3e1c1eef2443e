"""
SQLite database integration and simple migration system.

This module provides functions for obtaining a database connection
(``get_connection``), applying migrations on application start
(``init_db``) and a couple of helpers for timestamps and JSON columns.

The migration mechanism stores applied migration versions in the
``migrations`` table and executes new migrations in order.

All money columns hold integer cents.  Timestamps are stored as
``YYYY-MM-DD HH:MM:SS`` strings in UTC, the same shape SQLite's
``CURRENT_TIMESTAMP`` produces, so values written by Python and by
column defaults compare correctly as text.
"""

import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import settings


TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_database_path() -> str:
    """Compute the path to the SQLite database file.

    If ``settings.database_url`` is an absolute path, use it directly.
    Otherwise resolve it relative to the project root.
    """
    db_url = settings.database_url
    if os.path.isabs(db_url):
        return db_url
    base_dir = Path(__file__).resolve().parent.parent.parent  # league_registry_api/
    return str((base_dir / db_url).resolve())


def get_connection() -> sqlite3.Connection:
    """Create and return a new SQLite connection.

    Rows are returned as ``sqlite3.Row`` so columns can be read by
    name, and foreign key enforcement is switched on for the lifetime
    of the connection.
    """
    conn = sqlite3.connect(get_database_path())
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_cursor() -> Iterator[sqlite3.Cursor]:
    """Context manager that yields a cursor and closes the connection on exit."""
    conn = get_connection()
    try:
        yield conn.cursor()
        conn.commit()
    finally:
        conn.close()


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def timestamp(value: Optional[datetime] = None, **delta: float) -> str:
    """Format ``value`` (default: now) plus an optional offset for storage.

    ``timestamp(minutes=5)`` is five minutes from now,
    ``timestamp(hours=-24)`` a day ago.
    """
    moment = value or utc_now()
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    if delta:
        moment = moment + timedelta(**delta)
    return moment.strftime(TIMESTAMP_FORMAT)


def to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def from_json(value: Optional[str]) -> Any:
    """Decode a JSON text column, returning ``{}`` for empty values."""
    if not value:
        return {}
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return {}


def init_db() -> None:
    """Initialise the database and apply pending migrations.

    Creates the ``migrations`` table if it does not exist, checks the
    current schema version, and applies any new migrations defined in
    the ``migrations`` list.  If you add a new migration, append it
    with an incremented version number.
    """
    migrations: list[tuple[int, str]] = [
        # Migration 1: users, roles, settings, audit and the season catalogue
        (
            1,
            """
            CREATE TABLE IF NOT EXISTS roles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                permissions TEXT
            );

            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE COLLATE NOCASE,
                first_name TEXT,
                last_name TEXT,
                password TEXT,
                role_id INTEGER,
                disabled INTEGER DEFAULT 0,
                stripe_customer_id TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(role_id) REFERENCES roles(id)
            );

            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                type TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER,
                action TEXT NOT NULL,
                object_type TEXT,
                object_id INTEGER,
                timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                details TEXT,
                FOREIGN KEY(user_id) REFERENCES users(id)
            );

            CREATE TABLE IF NOT EXISTS seasons (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                type TEXT NOT NULL CHECK (type IN ('fall_winter', 'spring_summer')),
                start_date DATE NOT NULL,
                end_date DATE NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS memberships (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                price_monthly INTEGER NOT NULL,
                price_annual INTEGER NOT NULL,
                accounting_code TEXT,
                allow_discounts INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK (price_annual <= price_monthly * 12)
            );

            CREATE TABLE IF NOT EXISTS registrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                season_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL CHECK (type IN ('team', 'scrimmage', 'event')),
                is_active INTEGER NOT NULL DEFAULT 0,
                presale_start_at TIMESTAMP,
                regular_start_at TIMESTAMP,
                registration_end_at TIMESTAMP,
                presale_code TEXT,
                start_date TIMESTAMP,
                end_date TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(season_id) REFERENCES seasons(id)
            );

            CREATE TABLE IF NOT EXISTS registration_categories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                registration_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                price INTEGER NOT NULL DEFAULT 0,
                max_capacity INTEGER,
                accounting_code TEXT,
                required_membership_id INTEGER,
                sort_order INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY(registration_id) REFERENCES registrations(id) ON DELETE CASCADE,
                FOREIGN KEY(required_membership_id) REFERENCES memberships(id)
            );
            """,
        ),
        # Migration 2: payments, purchases, holds and discounts
        (
            2,
            """
            CREATE TABLE IF NOT EXISTS payments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                total_amount INTEGER NOT NULL,
                discount_amount INTEGER NOT NULL DEFAULT 0,
                final_amount INTEGER NOT NULL,
                stripe_payment_intent_id TEXT UNIQUE,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'completed', 'failed', 'refunded')),
                payment_method TEXT NOT NULL DEFAULT 'stripe',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                completed_at TIMESTAMP,
                FOREIGN KEY(user_id) REFERENCES users(id)
            );

            CREATE TABLE IF NOT EXISTS user_memberships (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                membership_id INTEGER NOT NULL,
                valid_from DATE NOT NULL,
                valid_until DATE NOT NULL,
                months_purchased INTEGER NOT NULL,
                payment_status TEXT NOT NULL DEFAULT 'paid',
                stripe_payment_intent_id TEXT UNIQUE,
                payment_id INTEGER,
                amount_paid INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(user_id) REFERENCES users(id),
                FOREIGN KEY(membership_id) REFERENCES memberships(id),
                FOREIGN KEY(payment_id) REFERENCES payments(id)
            );

            CREATE TABLE IF NOT EXISTS user_registrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                registration_id INTEGER NOT NULL,
                registration_category_id INTEGER,
                payment_status TEXT NOT NULL DEFAULT 'processing'
                    CHECK (payment_status IN ('processing', 'paid', 'failed', 'refunded')),
                processing_expires_at TIMESTAMP,
                registration_fee INTEGER NOT NULL DEFAULT 0,
                amount_paid INTEGER NOT NULL DEFAULT 0,
                presale_code_used TEXT,
                payment_id INTEGER,
                stripe_payment_intent_id TEXT,
                registered_at TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, registration_id),
                FOREIGN KEY(user_id) REFERENCES users(id),
                FOREIGN KEY(registration_id) REFERENCES registrations(id),
                FOREIGN KEY(registration_category_id) REFERENCES registration_categories(id),
                FOREIGN KEY(payment_id) REFERENCES payments(id)
            );

            CREATE TABLE IF NOT EXISTS discount_categories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                accounting_code TEXT,
                max_discount_per_user_per_season INTEGER,
                is_active INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS discount_codes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                discount_category_id INTEGER NOT NULL,
                code TEXT NOT NULL UNIQUE COLLATE NOCASE,
                percentage INTEGER NOT NULL CHECK (percentage BETWEEN 1 AND 100),
                is_active INTEGER NOT NULL DEFAULT 1,
                valid_from TIMESTAMP,
                valid_until TIMESTAMP,
                usage_limit INTEGER,
                FOREIGN KEY(discount_category_id) REFERENCES discount_categories(id)
            );

            CREATE TABLE IF NOT EXISTS discount_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                discount_code_id INTEGER NOT NULL,
                discount_category_id INTEGER NOT NULL,
                season_id INTEGER NOT NULL,
                amount_saved INTEGER NOT NULL,
                registration_id INTEGER,
                used_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(user_id) REFERENCES users(id),
                FOREIGN KEY(discount_code_id) REFERENCES discount_codes(id)
            );

            CREATE INDEX IF NOT EXISTS idx_payments_user_id ON payments(user_id);
            CREATE INDEX IF NOT EXISTS idx_user_registrations_category
                ON user_registrations(registration_category_id, payment_status);
            CREATE INDEX IF NOT EXISTS idx_discount_usage_lookup
                ON discount_usage(user_id, discount_category_id, season_id);
            """,
        ),
        # Migration 3: accounting staging and sync bookkeeping
        (
            3,
            """
            CREATE TABLE IF NOT EXISTS xero_oauth_tokens (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL UNIQUE,
                tenant_name TEXT,
                access_token TEXT NOT NULL,
                refresh_token TEXT NOT NULL,
                expires_at TIMESTAMP NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS xero_contacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                tenant_id TEXT NOT NULL,
                xero_contact_id TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, tenant_id),
                FOREIGN KEY(user_id) REFERENCES users(id)
            );

            CREATE TABLE IF NOT EXISTS xero_invoices (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                payment_id INTEGER,
                tenant_id TEXT,
                xero_invoice_id TEXT,
                invoice_number TEXT,
                invoice_type TEXT NOT NULL DEFAULT 'ACCREC',
                invoice_status TEXT NOT NULL DEFAULT 'DRAFT',
                total_amount INTEGER NOT NULL,
                discount_amount INTEGER NOT NULL DEFAULT 0,
                net_amount INTEGER NOT NULL,
                sync_status TEXT NOT NULL DEFAULT 'staged',
                staged_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                staging_metadata TEXT,
                sync_error TEXT,
                last_synced_at TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(payment_id) REFERENCES payments(id)
            );

            CREATE TABLE IF NOT EXISTS xero_invoice_line_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                xero_invoice_id INTEGER NOT NULL,
                line_item_type TEXT NOT NULL
                    CHECK (line_item_type IN ('membership', 'registration', 'discount', 'donation')),
                item_id INTEGER,
                discount_code_id INTEGER,
                description TEXT NOT NULL,
                quantity INTEGER NOT NULL DEFAULT 1,
                unit_amount INTEGER NOT NULL,
                account_code TEXT NOT NULL,
                tax_type TEXT NOT NULL DEFAULT 'NONE',
                line_amount INTEGER NOT NULL,
                FOREIGN KEY(xero_invoice_id) REFERENCES xero_invoices(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS xero_payments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                xero_invoice_id INTEGER NOT NULL,
                tenant_id TEXT,
                xero_payment_id TEXT,
                bank_account_code TEXT,
                amount_paid INTEGER NOT NULL,
                reference TEXT,
                sync_status TEXT NOT NULL DEFAULT 'pending',
                staged_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                staging_metadata TEXT,
                sync_error TEXT,
                last_synced_at TIMESTAMP,
                FOREIGN KEY(xero_invoice_id) REFERENCES xero_invoices(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS xero_sync_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT,
                operation_type TEXT NOT NULL
                    CHECK (operation_type IN ('contact_sync', 'invoice_sync', 'payment_sync', 'token_refresh')),
                record_type TEXT,
                record_id INTEGER,
                xero_id TEXT,
                status TEXT NOT NULL CHECK (status IN ('success', 'error', 'warning')),
                error_message TEXT,
                request_data TEXT,
                response_data TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_xero_invoices_sync_status ON xero_invoices(sync_status, staged_at);
            CREATE INDEX IF NOT EXISTS idx_xero_payments_sync_status ON xero_payments(sync_status);
            """,
        ),
        # Migration 4: outbound email log
        (
            4,
            """
            CREATE TABLE IF NOT EXISTS email_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER,
                email_address TEXT NOT NULL,
                event_type TEXT NOT NULL,
                subject TEXT NOT NULL,
                template_id TEXT,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'sent', 'failed', 'bounced')),
                email_data TEXT,
                triggered_by TEXT NOT NULL DEFAULT 'automated',
                loops_event_id TEXT,
                sent_at TIMESTAMP,
                bounce_reason TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(user_id) REFERENCES users(id)
            );

            CREATE INDEX IF NOT EXISTS idx_email_logs_status ON email_logs(status, created_at);
            """,
        ),
        # Migration 5: saved cards, waitlists and alternates
        (
            5,
            """
            ALTER TABLE users ADD COLUMN stripe_payment_method_id TEXT;
            ALTER TABLE users ADD COLUMN setup_intent_id TEXT;
            ALTER TABLE users ADD COLUMN setup_intent_status TEXT;

            ALTER TABLE registrations ADD COLUMN allow_alternates INTEGER NOT NULL DEFAULT 0;
            ALTER TABLE registrations ADD COLUMN alternate_price INTEGER;
            ALTER TABLE registrations ADD COLUMN alternate_accounting_code TEXT;

            CREATE TABLE IF NOT EXISTS waitlists (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                registration_id INTEGER NOT NULL,
                registration_category_id INTEGER NOT NULL,
                position INTEGER NOT NULL,
                discount_code_id INTEGER,
                removed_at TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, registration_id, registration_category_id),
                FOREIGN KEY(user_id) REFERENCES users(id),
                FOREIGN KEY(registration_id) REFERENCES registrations(id),
                FOREIGN KEY(registration_category_id) REFERENCES registration_categories(id)
            );

            CREATE TABLE IF NOT EXISTS user_alternate_registrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                registration_id INTEGER NOT NULL,
                discount_code_id INTEGER,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, registration_id),
                FOREIGN KEY(user_id) REFERENCES users(id),
                FOREIGN KEY(registration_id) REFERENCES registrations(id)
            );

            CREATE TABLE IF NOT EXISTS registration_captains (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                registration_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(registration_id, user_id),
                FOREIGN KEY(user_id) REFERENCES users(id),
                FOREIGN KEY(registration_id) REFERENCES registrations(id)
            );

            CREATE TABLE IF NOT EXISTS alternate_registrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                registration_id INTEGER NOT NULL,
                game_description TEXT NOT NULL,
                game_date TIMESTAMP,
                created_by INTEGER,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(registration_id) REFERENCES registrations(id),
                FOREIGN KEY(created_by) REFERENCES users(id)
            );

            CREATE TABLE IF NOT EXISTS alternate_selections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alternate_registration_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                discount_code_id INTEGER,
                payment_id INTEGER,
                amount_charged INTEGER NOT NULL DEFAULT 0,
                selected_by INTEGER,
                selected_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(alternate_registration_id, user_id),
                FOREIGN KEY(alternate_registration_id) REFERENCES alternate_registrations(id),
                FOREIGN KEY(user_id) REFERENCES users(id),
                FOREIGN KEY(payment_id) REFERENCES payments(id)
            );

            CREATE INDEX IF NOT EXISTS idx_waitlists_category ON waitlists(registration_category_id, position);
            """,
        ),
        # Migration 6: payment plan installments live on xero_payments
        (
            6,
            """
            ALTER TABLE xero_invoices ADD COLUMN is_payment_plan INTEGER NOT NULL DEFAULT 0;
            ALTER TABLE xero_payments ADD COLUMN payment_type TEXT NOT NULL DEFAULT 'full';
            ALTER TABLE xero_payments ADD COLUMN installment_number INTEGER;
            ALTER TABLE xero_payments ADD COLUMN planned_payment_date DATE;
            ALTER TABLE xero_payments ADD COLUMN attempt_count INTEGER NOT NULL DEFAULT 0;
            ALTER TABLE xero_payments ADD COLUMN last_attempt_at TIMESTAMP;
            ALTER TABLE xero_payments ADD COLUMN failure_reason TEXT;
            """,
        ),
    ]

    with get_cursor() as cursor:
        cursor.execute(
            "CREATE TABLE IF NOT EXISTS migrations (version INTEGER PRIMARY KEY)"
        )
        cursor.execute("SELECT MAX(version) as version FROM migrations")
        row = cursor.fetchone()
        current_version = row["version"] if row and row["version"] is not None else 0

        for version, sql in migrations:
            if version > current_version:
                cursor.executescript(sql)
                cursor.execute(
                    "INSERT INTO migrations (version) VALUES (?)", (version,)
                )
                current_version = version

        # Default roles: super_admin (1), admin (2), user (3)
        cursor.executemany(
            "INSERT OR IGNORE INTO roles (id, name, permissions) VALUES (?, ?, '[]')",
            [(1, "super_admin"), (2, "admin"), (3, "user")],
        )
        # Accounting defaults, editable through /settings
        cursor.executemany(
            "INSERT OR IGNORE INTO settings (key, value, type) VALUES (?, ?, 'string')",
            [("stripe_bank_account", "090"), ("donation_accounting_code", "")],
        )
