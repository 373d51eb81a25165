"""
Database connection management.

Provides SQLite connection for sample and ping history persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ping_scheduler.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection with name-addressable rows.
    
    Args:
        db_path: Path to SQLite database file
        
    Returns:
        SQLite connection whose rows can be read by column name
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    return conn
