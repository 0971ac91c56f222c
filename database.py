import os
import sqlite3
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from data_paths import DATA_ROOT, ensure_data_root

ensure_data_root()

DATA_DIR = DATA_ROOT
DATABASE_FILE = Path(os.getenv('DATABASE_FILE') or (DATA_DIR / 'social_balance.db'))

# Child tables owned by an indicator, deleted with it.
INDICATOR_CHILD_TABLES = (
    'historical_data',
    'goals',
    'observations',
    'risks',
    'attachments',
    'audit_logs',
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY NOT NULL,
        name TEXT,
        role TEXT,
        area TEXT,
        password TEXT,
        readThreadIds TEXT DEFAULT '[]'
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_users_name ON users(name)",
    """
    CREATE TABLE IF NOT EXISTS strategic_goals (
        id TEXT PRIMARY KEY NOT NULL,
        title TEXT,
        description TEXT,
        targetDate TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS indicators (
        id TEXT PRIMARY KEY NOT NULL,
        principle TEXT,
        name TEXT,
        calculation TEXT,
        purpose TEXT,
        responsibleArea TEXT,
        strategicGoalId TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS historical_data (
        indicator_id TEXT NOT NULL REFERENCES indicators(id) ON DELETE CASCADE,
        year INTEGER,
        value REAL,
        formattedValue TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS goals (
        indicator_id TEXT NOT NULL REFERENCES indicators(id) ON DELETE CASCADE,
        year INTEGER,
        target REAL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS observations (
        id TEXT PRIMARY KEY NOT NULL,
        indicator_id TEXT NOT NULL REFERENCES indicators(id) ON DELETE CASCADE,
        author TEXT,
        role TEXT,
        date TEXT,
        text TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS risks (
        id TEXT PRIMARY KEY NOT NULL,
        indicator_id TEXT NOT NULL REFERENCES indicators(id) ON DELETE CASCADE,
        title TEXT,
        description TEXT,
        impact TEXT,
        probability TEXT,
        riskScore REAL,
        mitigationPlan TEXT,
        status TEXT,
        owner TEXT,
        createdDate TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS action_plans (
        id TEXT PRIMARY KEY NOT NULL,
        indicator_id TEXT NOT NULL REFERENCES indicators(id) ON DELETE CASCADE,
        title TEXT,
        description TEXT,
        owner TEXT,
        status TEXT,
        dueDate TEXT,
        createdDate TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS action_plan_updates (
        id TEXT NOT NULL,
        action_plan_id TEXT NOT NULL REFERENCES action_plans(id) ON DELETE CASCADE,
        date TEXT,
        author TEXT,
        text TEXT,
        statusChange TEXT,
        attachmentId TEXT,
        PRIMARY KEY (action_plan_id, id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS attachments (
        indicator_id TEXT NOT NULL REFERENCES indicators(id) ON DELETE CASCADE,
        id TEXT NOT NULL,
        fileName TEXT,
        fileType TEXT,
        fileSize INTEGER,
        dataUrl TEXT,
        uploadedBy TEXT,
        uploadDate TEXT,
        PRIMARY KEY (indicator_id, id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id TEXT NOT NULL,
        indicator_id TEXT NOT NULL REFERENCES indicators(id) ON DELETE CASCADE,
        timestamp TEXT,
        user TEXT,
        action TEXT,
        details TEXT,
        PRIMARY KEY (indicator_id, id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS meetings (
        id TEXT PRIMARY KEY NOT NULL,
        date TEXT,
        attendees TEXT,
        agenda TEXT,
        minutes TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS decisions (
        id TEXT PRIMARY KEY NOT NULL,
        meeting_id TEXT NOT NULL REFERENCES meetings(id) ON DELETE CASCADE,
        text TEXT,
        responsibleUserId TEXT,
        dueDate TEXT,
        status TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS discussion_threads (
        id TEXT PRIMARY KEY NOT NULL,
        title TEXT,
        content TEXT,
        authorId TEXT,
        timestamp TEXT,
        principleTag TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS thread_replies (
        id TEXT PRIMARY KEY NOT NULL,
        thread_id TEXT NOT NULL REFERENCES discussion_threads(id) ON DELETE CASCADE,
        authorId TEXT,
        timestamp TEXT,
        content TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY NOT NULL,
        userId TEXT,
        type TEXT,
        message TEXT,
        relatedIndicatorId TEXT,
        relatedMeetingId TEXT,
        relatedThreadId TEXT,
        isRead INTEGER DEFAULT 0,
        timestamp TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_historical_data_indicator ON historical_data(indicator_id)",
    "CREATE INDEX IF NOT EXISTS idx_goals_indicator ON goals(indicator_id)",
    "CREATE INDEX IF NOT EXISTS idx_observations_indicator ON observations(indicator_id)",
    "CREATE INDEX IF NOT EXISTS idx_risks_indicator ON risks(indicator_id)",
    "CREATE INDEX IF NOT EXISTS idx_action_plans_indicator ON action_plans(indicator_id)",
    "CREATE INDEX IF NOT EXISTS idx_action_plan_updates_plan ON action_plan_updates(action_plan_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_indicator ON audit_logs(indicator_id)",
    "CREATE INDEX IF NOT EXISTS idx_decisions_meeting ON decisions(meeting_id)",
    "CREATE INDEX IF NOT EXISTS idx_thread_replies_thread ON thread_replies(thread_id)",
)


def get_db_connection(database_file: Optional[Union[str, Path]] = None):
    """Establishes a connection to the SQLite database."""
    target = database_file or DATABASE_FILE
    if database_file is None:
        ensure_data_root()
    conn = sqlite3.connect(str(target), timeout=30.0, isolation_level='DEFERRED')
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA cache_size=10000;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.Error as e:
        logger.warning(f"Could not set PRAGMA settings: {e}")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed statements as one unit of work.

    ``BEGIN IMMEDIATE`` takes the write lock up front so concurrent saves queue
    behind each other instead of failing mid-way. Any exception rolls back.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        try:
            conn.rollback()
        except sqlite3.Error as e_rb:
            logger.error(f"Error during rollback: {e_rb}")
        raise
    else:
        conn.commit()


def init_db(database_file: Optional[Union[str, Path]] = None):
    """Initializes the database schema."""
    conn = get_db_connection(database_file)
    try:
        cursor = conn.cursor()
        for statement in SCHEMA_STATEMENTS:
            cursor.execute(statement)

        # Older databases stored readThreadIds without a default
        cursor.execute("PRAGMA table_info(users)")
        user_columns = {row[1] for row in cursor.fetchall()}
        if 'readThreadIds' not in user_columns:
            cursor.execute("ALTER TABLE users ADD COLUMN readThreadIds TEXT DEFAULT '[]'")

        conn.commit()
        logger.info("Database schema ensured at %s", database_file or DATABASE_FILE)
    finally:
        conn.close()
