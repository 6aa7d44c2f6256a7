"""
SQLite connection management and schema initialisation.
Uses synchronous sqlite3; get_db() hands out one connection per operation.
"""

import os
import sqlite3
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/marketpay.db")


def get_db() -> sqlite3.Connection:
    """Open a SQLite connection with WAL journaling and foreign keys enabled."""
    conn = sqlite3.connect(DB_PATH, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── Tables ────────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS stores (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    slug                 VARCHAR(128) NOT NULL UNIQUE,
    title                VARCHAR(256),
    connected_account_id VARCHAR(64),
    settings             TEXT         DEFAULT '{}',
    fee_overrides        TEXT,
    created_at           DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at           DATETIME     NOT NULL DEFAULT (datetime('now')),
    published_at         DATETIME
);

CREATE TABLE IF NOT EXISTS store_users (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    store_id        INTEGER      NOT NULL REFERENCES stores(id),
    email           VARCHAR(128) NOT NULL,
    confirmed       INTEGER      DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    published_at    DATETIME
);

CREATE TABLE IF NOT EXISTS products (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    store_id        INTEGER      REFERENCES stores(id),
    name            VARCHAR(256) NOT NULL,
    prices          TEXT         DEFAULT '[]',
    amount_sold     INTEGER      DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    published_at    DATETIME
);

CREATE TABLE IF NOT EXISTS orders (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    store_id          INTEGER      REFERENCES stores(id),
    stripe_payment_id VARCHAR(128),
    amount            INTEGER      NOT NULL DEFAULT 0,
    currency          VARCHAR(8)   DEFAULT 'USD',
    status            VARCHAR(16)  DEFAULT 'open',
    payment_attempts  TEXT         DEFAULT '[]',
    line_items        TEXT         DEFAULT '[]',
    shipping_address  TEXT         DEFAULT '{}',
    buyer_email       VARCHAR(128),
    extra             TEXT         DEFAULT '{}',
    created_at        DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at        DATETIME     NOT NULL DEFAULT (datetime('now')),
    published_at      DATETIME
);
"""

# ── Indexes ───────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_orders_stripe_payment_id
    ON orders(stripe_payment_id);
CREATE INDEX IF NOT EXISTS idx_orders_store_status
    ON orders(store_id, status);
CREATE INDEX IF NOT EXISTS idx_products_store
    ON products(store_id);
CREATE INDEX IF NOT EXISTS idx_store_users_store
    ON store_users(store_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_stores_slug
    ON stores(slug);
"""


# ── Initialisation ────────────────────────────────────────

def init_db() -> None:
    """Create the data directory, tables and indexes."""
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)
        conn.commit()
    finally:
        conn.close()

