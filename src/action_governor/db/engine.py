"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'approved', 'denied', 'edited', 'auto_approved')),
    risk_level TEXT NOT NULL CHECK (risk_level IN ('low', 'medium', 'high')),
    action_data TEXT NOT NULL,
    context_data TEXT,
    edited_data TEXT,
    confidence REAL,
    rule_id INTEGER REFERENCES auto_approve_rules(id) ON DELETE SET NULL,
    user_feedback TEXT,
    execution_error TEXT,
    executing_since TEXT,
    reviewed_at TEXT,
    executed_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS auto_approve_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action_type TEXT NOT NULL,
    conditions TEXT NOT NULL,
    description TEXT,
    enabled INTEGER NOT NULL DEFAULT 1,
    priority INTEGER NOT NULL DEFAULT 3,
    trigger_count INTEGER NOT NULL DEFAULT 0,
    success_rate REAL,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS action_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action_id INTEGER NOT NULL REFERENCES actions(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS action_outcomes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action_id INTEGER NOT NULL REFERENCES actions(id) ON DELETE CASCADE,
    rule_id INTEGER REFERENCES auto_approve_rules(id) ON DELETE SET NULL,
    outcome TEXT NOT NULL
        CHECK (outcome IN ('executed', 'execution_failed', 'denied', 'edited')),
    detail TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'worker',
    workspace_id TEXT DEFAULT 'default',
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT DEFAULT 'planning' CHECK (status IN (
        'planning', 'pending_dispatch', 'inbox', 'assigned',
        'in_progress', 'testing', 'review', 'done'
    )),
    assigned_agent_id TEXT REFERENCES agents(id),
    workspace_id TEXT DEFAULT 'default',
    planning_complete INTEGER NOT NULL DEFAULT 0,
    planning_dispatch_error TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_actions_status ON actions(status);
CREATE INDEX IF NOT EXISTS idx_actions_type ON actions(action_type);
CREATE INDEX IF NOT EXISTS idx_rules_type ON auto_approve_rules(action_type);
CREATE INDEX IF NOT EXISTS idx_outcomes_rule ON action_outcomes(rule_id);
"""


def init_db(db_path: Path) -> sqlite3.Connection:
    """Open the governor database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Yield an initialized connection and close it afterwards."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
