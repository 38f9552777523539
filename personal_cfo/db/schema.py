"""SQLite schema definitions for the personal CFO service."""

SCHEMA_SQL = """
-- Users are provisioned by the identity provider; we only keep the plan
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT,
    plan TEXT NOT NULL DEFAULT 'free',  -- free, plus, pro, admin
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

-- Cards (one statement stream per card)
CREATE TABLE IF NOT EXISTS cards (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    last_four TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

-- Categories; presets have no owner and are shared by every user
CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT,
    name TEXT NOT NULL,
    color TEXT DEFAULT '#6B7280',
    is_preset INTEGER DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

-- Keyword rules; status tracks the background categorization run
CREATE TABLE IF NOT EXISTS category_keywords (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    category_id INTEGER NOT NULL,
    keyword TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'categorizing',  -- categorizing, completed, failed
    failure_reason TEXT,
    categorized_count INTEGER DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE CASCADE
);

-- Denylist that suppresses keyword matches
CREATE TABLE IF NOT EXISTS excluded_keywords (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    keyword TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

-- Monthly budgets per category
CREATE TABLE IF NOT EXISTS budgets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    category_id INTEGER NOT NULL,
    amount_cents INTEGER NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE CASCADE
);

-- Uploaded statements; the PDF itself is never stored
CREATE TABLE IF NOT EXISTS statements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    card_id INTEGER NOT NULL,
    file_name TEXT NOT NULL,
    file_type TEXT DEFAULT 'application/pdf',
    status TEXT NOT NULL DEFAULT 'processing',  -- processing, completed, failed
    failure_reason TEXT,
    retry_count INTEGER DEFAULT 0,
    transaction_count INTEGER DEFAULT 0,
    uploaded_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (card_id) REFERENCES cards(id) ON DELETE CASCADE
);

-- Transactions; amount_cents is negative for expenses
CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    statement_id INTEGER,
    card_id INTEGER,
    date TEXT NOT NULL,
    description TEXT NOT NULL,
    merchant TEXT,
    category_id INTEGER,
    currency TEXT NOT NULL DEFAULT 'USD',
    amount_cents INTEGER NOT NULL,
    type TEXT NOT NULL DEFAULT 'expense',  -- income, expense
    occurrence INTEGER NOT NULL DEFAULT 0,  -- Numbers identical lines within one statement
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (statement_id) REFERENCES statements(id) ON DELETE CASCADE,
    FOREIGN KEY (card_id) REFERENCES cards(id) ON DELETE CASCADE,
    FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE SET NULL
);

-- Durable job outbox drained by the worker
CREATE TABLE IF NOT EXISTS job_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    payload TEXT NOT NULL,  -- JSON
    status TEXT NOT NULL DEFAULT 'pending',  -- pending, running, done, dead
    attempts INTEGER DEFAULT 0,
    last_error TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

-- Uniqueness
CREATE UNIQUE INDEX IF NOT EXISTS uq_categories_owner_name
    ON categories(COALESCE(user_id, ''), lower(name));
CREATE UNIQUE INDEX IF NOT EXISTS uq_keywords_user_keyword
    ON category_keywords(user_id, lower(keyword));
CREATE UNIQUE INDEX IF NOT EXISTS uq_excluded_user_keyword
    ON excluded_keywords(user_id, lower(keyword));
CREATE UNIQUE INDEX IF NOT EXISTS uq_budgets_user_category
    ON budgets(user_id, category_id);
-- Natural key that keeps statement ingestion idempotent
CREATE UNIQUE INDEX IF NOT EXISTS uq_transactions_statement_line
    ON transactions(statement_id, date, amount_cents, description, occurrence);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_cards_user ON cards(user_id);
CREATE INDEX IF NOT EXISTS idx_keywords_user_created ON category_keywords(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_keywords_status ON category_keywords(status);
CREATE INDEX IF NOT EXISTS idx_statements_user ON statements(user_id, uploaded_at);
CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions(user_id, date);
CREATE INDEX IF NOT EXISTS idx_transactions_category ON transactions(category_id);
CREATE INDEX IF NOT EXISTS idx_transactions_statement ON transactions(statement_id);
CREATE INDEX IF NOT EXISTS idx_job_events_status ON job_events(status, id);
"""
