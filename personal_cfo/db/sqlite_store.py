"""SQLite store for users, cards, categories, keywords, statements, transactions and jobs."""
import sqlite3
import json
import logging
from pathlib import Path
from typing import List, Dict, Any, Optional, Sequence, Tuple
from contextlib import contextmanager

from personal_cfo.config import PRESET_CATEGORIES
from personal_cfo.errors import Conflict, InternalError
from .schema import SCHEMA_SQL


logger = logging.getLogger(__name__)


class SQLiteStore:
    """SQLite storage. Every user-owned read and write is scoped by user_id."""

    def __init__(self, db_path: Path):
        """Initialize the store with database path."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        # Enable WAL mode for better concurrency
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    def _init_schema(self) -> None:
        """Initialize database schema and seed preset categories."""
        cursor = self.conn.cursor()
        cursor.executescript(SCHEMA_SQL)
        cursor.executemany(
            "INSERT OR IGNORE INTO categories (user_id, name, color, is_preset) VALUES (NULL, ?, ?, 1)",
            PRESET_CATEGORIES
        )
        self.conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self.conn:
            self.conn.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    @contextmanager
    def _write(self, conflict_message: str = "Resource already exists"):
        """Run writes in one transaction, translating sqlite errors.

        Unique-constraint violations become Conflict; anything else is logged
        and surfaced as a generic InternalError.
        """
        try:
            with self.conn:
                yield self.conn
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise Conflict(conflict_message) from e
            logger.error(f"db.integrity_error: {e}")
            raise InternalError() from e
        except sqlite3.Error as e:
            logger.error(f"db.error: {e}")
            raise InternalError() from e

    def _one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    def _all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.conn.execute(sql, params).fetchall()]

    def _count(self, sql: str, params: Sequence[Any] = ()) -> int:
        return self.conn.execute(sql, params).fetchone()[0]

    def get_tables(self) -> List[str]:
        """Get list of table names."""
        cursor = self.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        return [row[0] for row in cursor.fetchall()]

    # === Users ===

    def ensure_user(self, user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        """Get a user, provisioning it on the free plan on first sight."""
        with self._write():
            self.conn.execute(
                "INSERT OR IGNORE INTO users (id, email) VALUES (?, ?)", (user_id, email)
            )
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM users WHERE id = ?", (user_id,))

    def set_user_plan(self, user_id: str, plan: str) -> bool:
        with self._write():
            cursor = self.conn.execute("UPDATE users SET plan = ? WHERE id = ?", (plan, user_id))
        return cursor.rowcount > 0

    # === Cards ===

    def add_card(self, user_id: str, name: str, last_four: Optional[str] = None) -> int:
        with self._write():
            cursor = self.conn.execute(
                "INSERT INTO cards (user_id, name, last_four) VALUES (?, ?, ?)",
                (user_id, name, last_four)
            )
        return cursor.lastrowid

    def get_cards(self, user_id: str) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM cards WHERE user_id = ? ORDER BY id", (user_id,))

    def get_card(self, user_id: str, card_id: int) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM cards WHERE id = ? AND user_id = ?", (card_id, user_id))

    def count_cards(self, user_id: str) -> int:
        return self._count("SELECT COUNT(*) FROM cards WHERE user_id = ?", (user_id,))

    def delete_card(self, user_id: str, card_id: int) -> bool:
        """Delete a card; its statements and transactions cascade."""
        with self._write():
            cursor = self.conn.execute(
                "DELETE FROM cards WHERE id = ? AND user_id = ?", (card_id, user_id)
            )
        return cursor.rowcount > 0

    # === Categories ===

    def get_categories(self, user_id: str) -> List[Dict[str, Any]]:
        """Presets first, then the user's own categories."""
        return self._all(
            """SELECT * FROM categories
               WHERE user_id IS NULL OR user_id = ?
               ORDER BY is_preset DESC, name""",
            (user_id,)
        )

    def get_category(self, user_id: str, category_id: int) -> Optional[Dict[str, Any]]:
        """Get a category visible to the user (preset or owned)."""
        return self._one(
            "SELECT * FROM categories WHERE id = ? AND (user_id IS NULL OR user_id = ?)",
            (category_id, user_id)
        )

    def count_user_categories(self, user_id: str) -> int:
        """Count user-created categories; presets are not counted."""
        return self._count(
            "SELECT COUNT(*) FROM categories WHERE user_id = ? AND is_preset = 0", (user_id,)
        )

    def add_category(self, user_id: str, name: str, color: Optional[str] = None) -> int:
        with self._write(f"Category '{name}' already exists"):
            cursor = self.conn.execute(
                "INSERT INTO categories (user_id, name, color) VALUES (?, ?, COALESCE(?, '#6B7280'))",
                (user_id, name, color)
            )
        return cursor.lastrowid

    # === Category keywords ===

    def add_keyword(self, user_id: str, category_id: int, keyword: str) -> Dict[str, Any]:
        """Insert a keyword in 'categorizing' state."""
        with self._write("Duplicate keyword"):
            cursor = self.conn.execute(
                """INSERT INTO category_keywords (user_id, category_id, keyword, status)
                   VALUES (?, ?, ?, 'categorizing')""",
                (user_id, category_id, keyword)
            )
        return self.get_keyword(user_id, cursor.lastrowid)

    def get_keyword(self, user_id: str, keyword_id: int) -> Optional[Dict[str, Any]]:
        return self._one(
            "SELECT * FROM category_keywords WHERE id = ? AND user_id = ?", (keyword_id, user_id)
        )

    def get_keywords(self, user_id: str, category_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Keywords in priority order (first created first)."""
        query = "SELECT * FROM category_keywords WHERE user_id = ?"
        params: List[Any] = [user_id]
        if category_id is not None:
            query += " AND category_id = ?"
            params.append(category_id)
        query += " ORDER BY created_at, id"
        return self._all(query, params)

    def mark_keyword_categorizing(
        self,
        user_id: str,
        keyword_id: int,
        category_id: Optional[int] = None
    ) -> bool:
        """Reset a keyword to 'categorizing' and clear its failure reason.

        Optionally moves it to another category in the same write.
        """
        with self._write():
            cursor = self.conn.execute(
                """UPDATE category_keywords
                   SET status = 'categorizing', failure_reason = NULL,
                       category_id = COALESCE(?, category_id), updated_at = CURRENT_TIMESTAMP
                   WHERE id = ? AND user_id = ?""",
                (category_id, keyword_id, user_id)
            )
        return cursor.rowcount > 0

    def mark_keyword_completed(self, keyword_id: int, categorized_count: int) -> bool:
        with self._write():
            cursor = self.conn.execute(
                """UPDATE category_keywords
                   SET status = 'completed', failure_reason = NULL, categorized_count = ?,
                       updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?""",
                (categorized_count, keyword_id)
            )
        return cursor.rowcount > 0

    def mark_keyword_failed(self, keyword_id: int, reason: str) -> bool:
        with self._write():
            cursor = self.conn.execute(
                """UPDATE category_keywords
                   SET status = 'failed', failure_reason = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?""",
                (reason, keyword_id)
            )
        return cursor.rowcount > 0

    def delete_keyword(self, user_id: str, keyword_id: int) -> bool:
        with self._write():
            cursor = self.conn.execute(
                "DELETE FROM category_keywords WHERE id = ? AND user_id = ?", (keyword_id, user_id)
            )
        return cursor.rowcount > 0

    def sweep_stale_keywords(self, max_age_seconds: int, reason: str = "Categorization timed out") -> int:
        """Fail keywords stuck in 'categorizing' longer than `max_age_seconds`."""
        with self._write():
            cursor = self.conn.execute(
                """UPDATE category_keywords
                   SET status = 'failed', failure_reason = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE status = 'categorizing' AND updated_at < datetime('now', ?)""",
                (reason, f"-{int(max_age_seconds)} seconds")
            )
        return cursor.rowcount

    # === Excluded keywords ===

    def add_excluded_keywords(self, user_id: str, keywords: Sequence[str]) -> List[Dict[str, Any]]:
        """Insert excluded keywords all-or-nothing."""
        with self._write("Some keywords already exist"):
            ids = [
                self.conn.execute(
                    "INSERT INTO excluded_keywords (user_id, keyword) VALUES (?, ?)",
                    (user_id, keyword)
                ).lastrowid
                for keyword in keywords
            ]
        placeholders = ",".join("?" for _ in ids)
        return self._all(
            f"SELECT * FROM excluded_keywords WHERE id IN ({placeholders}) ORDER BY id", ids
        )

    def get_excluded_keywords(self, user_id: str) -> List[Dict[str, Any]]:
        return self._all(
            "SELECT * FROM excluded_keywords WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,)
        )

    def delete_excluded_keyword(self, user_id: str, excluded_id: int) -> bool:
        with self._write():
            cursor = self.conn.execute(
                "DELETE FROM excluded_keywords WHERE id = ? AND user_id = ?", (excluded_id, user_id)
            )
        return cursor.rowcount > 0

    # === Budgets ===

    def add_budget(self, user_id: str, category_id: int, amount_cents: int) -> int:
        with self._write("Budget for this category already exists"):
            cursor = self.conn.execute(
                "INSERT INTO budgets (user_id, category_id, amount_cents) VALUES (?, ?, ?)",
                (user_id, category_id, amount_cents)
            )
        return cursor.lastrowid

    def get_budgets(self, user_id: str) -> List[Dict[str, Any]]:
        return self._all(
            """SELECT b.*, c.name AS category_name FROM budgets b
               JOIN categories c ON c.id = b.category_id
               WHERE b.user_id = ? ORDER BY b.id""",
            (user_id,)
        )

    def count_budgets(self, user_id: str) -> int:
        return self._count("SELECT COUNT(*) FROM budgets WHERE user_id = ?", (user_id,))

    # === Statements ===

    def add_statement(
        self,
        user_id: str,
        card_id: int,
        file_name: str,
        file_type: str = "application/pdf"
    ) -> Dict[str, Any]:
        """Create a statement in 'processing' state."""
        with self._write():
            cursor = self.conn.execute(
                """INSERT INTO statements (user_id, card_id, file_name, file_type, status, retry_count)
                   VALUES (?, ?, ?, ?, 'processing', 0)""",
                (user_id, card_id, file_name, file_type)
            )
        return self.get_statement(cursor.lastrowid, user_id)

    def get_statement(self, statement_id: int, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if user_id is None:
            return self._one("SELECT * FROM statements WHERE id = ?", (statement_id,))
        return self._one(
            "SELECT * FROM statements WHERE id = ? AND user_id = ?", (statement_id, user_id)
        )

    def get_statements(
        self,
        user_id: str,
        search: Optional[str] = None,
        status: Optional[str] = None,
        card_id: Optional[int] = None,
        page: int = 1,
        page_size: int = 25
    ) -> Tuple[List[Dict[str, Any]], int]:
        """List statements newest first, returns (rows, total)."""
        where = ["s.user_id = ?"]
        params: List[Any] = [user_id]
        if search:
            where.append("s.file_name LIKE ?")
            params.append(f"%{search}%")
        if status:
            where.append("s.status = ?")
            params.append(status)
        if card_id is not None:
            where.append("s.card_id = ?")
            params.append(card_id)
        clause = " AND ".join(where)

        total = self._count(f"SELECT COUNT(*) FROM statements s WHERE {clause}", params)
        rows = self._all(
            f"""SELECT s.*, c.name AS card_name FROM statements s
                LEFT JOIN cards c ON c.id = s.card_id
                WHERE {clause}
                ORDER BY s.uploaded_at DESC, s.id DESC
                LIMIT ? OFFSET ?""",
            params + [page_size, (page - 1) * page_size]
        )
        return rows, total

    def count_statements_this_month(self, user_id: str) -> int:
        return self._count(
            """SELECT COUNT(*) FROM statements
               WHERE user_id = ? AND uploaded_at >= datetime('now', 'start of month')""",
            (user_id,)
        )

    def mark_statement_processing(self, statement_id: int) -> bool:
        with self._write():
            cursor = self.conn.execute(
                """UPDATE statements SET status = 'processing', updated_at = CURRENT_TIMESTAMP
                   WHERE id = ? AND status != 'completed'""",
                (statement_id,)
            )
        return cursor.rowcount > 0

    def mark_statement_completed(self, statement_id: int, transaction_count: int) -> bool:
        with self._write():
            cursor = self.conn.execute(
                """UPDATE statements
                   SET status = 'completed', failure_reason = NULL, transaction_count = ?,
                       updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?""",
                (transaction_count, statement_id)
            )
        return cursor.rowcount > 0

    def mark_statement_failed(self, statement_id: int, reason: str) -> bool:
        """Fail a statement and bump its retry count; completed ones are left alone."""
        with self._write():
            cursor = self.conn.execute(
                """UPDATE statements
                   SET status = 'failed', failure_reason = ?, retry_count = retry_count + 1,
                       updated_at = CURRENT_TIMESTAMP
                   WHERE id = ? AND status != 'completed'""",
                (reason, statement_id)
            )
        return cursor.rowcount > 0

    def delete_statements(self, user_id: str, statement_ids: Sequence[int]) -> int:
        """Delete statements; their transactions cascade."""
        if not statement_ids:
            return 0
        placeholders = ",".join("?" for _ in statement_ids)
        with self._write():
            cursor = self.conn.execute(
                f"DELETE FROM statements WHERE user_id = ? AND id IN ({placeholders})",
                [user_id, *statement_ids]
            )
        return cursor.rowcount

    # === Transactions ===

    def add_statement_transactions(
        self,
        user_id: str,
        statement_id: int,
        card_id: int,
        transactions: Sequence[Dict[str, Any]]
    ) -> int:
        """Bulk insert a statement's transactions, skipping rows already present.

        Rows are keyed by (statement_id, date, amount_cents, description,
        occurrence), so re-running the insert never duplicates. Returns the
        number of newly inserted rows.
        """
        rows = [
            (
                user_id, statement_id, card_id, txn["date"], txn["description"],
                txn.get("merchant"), txn.get("category_id"), txn["currency"],
                txn["amount_cents"], txn["type"], txn.get("occurrence", 0)
            )
            for txn in transactions
        ]
        with self._write():
            cursor = self.conn.executemany(
                """INSERT OR IGNORE INTO transactions
                   (user_id, statement_id, card_id, date, description, merchant, category_id,
                    currency, amount_cents, type, occurrence)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                rows
            )
        # Summed over the batch; ignored rows count zero
        return cursor.rowcount

    def count_statement_transactions(self, statement_id: int) -> int:
        return self._count(
            "SELECT COUNT(*) FROM transactions WHERE statement_id = ?", (statement_id,)
        )

    def add_transaction(
        self,
        user_id: str,
        date: str,
        description: str,
        amount_cents: int,
        type: str = "expense",
        merchant: Optional[str] = None,
        card_id: Optional[int] = None,
        category_id: Optional[int] = None,
        currency: str = "USD"
    ) -> int:
        """Add a manually entered transaction."""
        with self._write():
            cursor = self.conn.execute(
                """INSERT INTO transactions
                   (user_id, card_id, date, description, merchant, category_id, currency,
                    amount_cents, type)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (user_id, card_id, date, description, merchant, category_id, currency,
                 amount_cents, type)
            )
        return cursor.lastrowid

    def get_transaction(self, user_id: str, txn_id: int) -> Optional[Dict[str, Any]]:
        return self._one(
            "SELECT * FROM transactions WHERE id = ? AND user_id = ?", (txn_id, user_id)
        )

    def get_transactions(
        self,
        user_id: str,
        category_id: Optional[int] = None,
        uncategorized: bool = False,
        card_id: Optional[int] = None,
        statement_id: Optional[int] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> Tuple[List[Dict[str, Any]], int]:
        """List transactions newest first, returns (rows, total)."""
        where = ["t.user_id = ?"]
        params: List[Any] = [user_id]
        if uncategorized:
            where.append("t.category_id IS NULL")
        elif category_id is not None:
            where.append("t.category_id = ?")
            params.append(category_id)
        if card_id is not None:
            where.append("t.card_id = ?")
            params.append(card_id)
        if statement_id is not None:
            where.append("t.statement_id = ?")
            params.append(statement_id)
        if date_from:
            where.append("t.date >= ?")
            params.append(date_from)
        if date_to:
            where.append("t.date <= ?")
            params.append(date_to)
        clause = " AND ".join(where)

        total = self._count(f"SELECT COUNT(*) FROM transactions t WHERE {clause}", params)
        rows = self._all(
            f"""SELECT t.*, c.name AS category_name FROM transactions t
                LEFT JOIN categories c ON c.id = t.category_id
                WHERE {clause}
                ORDER BY t.date DESC, t.id DESC
                LIMIT ? OFFSET ?""",
            params + [limit, offset]
        )
        return rows, total

    def get_uncategorized_transactions(self, user_id: str) -> List[Dict[str, Any]]:
        return self._all(
            """SELECT id, description, merchant, category_id FROM transactions
               WHERE user_id = ? AND category_id IS NULL ORDER BY id""",
            (user_id,)
        )

    def get_user_transactions(self, user_id: str) -> List[Dict[str, Any]]:
        return self._all(
            """SELECT id, description, merchant, category_id FROM transactions
               WHERE user_id = ? ORDER BY id""",
            (user_id,)
        )

    def get_transactions_by_ids(self, user_id: str, txn_ids: Sequence[int]) -> List[Dict[str, Any]]:
        if not txn_ids:
            return []
        placeholders = ",".join("?" for _ in txn_ids)
        return self._all(
            f"""SELECT id, description, merchant, category_id FROM transactions
                WHERE user_id = ? AND id IN ({placeholders}) ORDER BY id""",
            [user_id, *txn_ids]
        )

    def update_transaction_category(
        self,
        user_id: str,
        txn_id: int,
        category_id: Optional[int]
    ) -> bool:
        with self._write():
            cursor = self.conn.execute(
                "UPDATE transactions SET category_id = ? WHERE id = ? AND user_id = ?",
                (category_id, txn_id, user_id)
            )
        return cursor.rowcount > 0

    def assign_categories(
        self,
        user_id: str,
        assignments: Sequence[Dict[str, Any]],
        only_uncategorized: bool = False
    ) -> int:
        """Apply [{id, category_id}] in one transaction, returns rows updated.

        With `only_uncategorized`, rows that gained a category in the meantime
        are left alone.
        """
        query = "UPDATE transactions SET category_id = ? WHERE id = ? AND user_id = ?"
        if only_uncategorized:
            query += " AND category_id IS NULL"
        updated = 0
        with self._write():
            for item in assignments:
                cursor = self.conn.execute(query, (item["category_id"], item["id"], user_id))
                updated += cursor.rowcount
        return updated

    def get_transactions_in_range(
        self,
        user_id: str,
        date_from: str,
        date_to: str,
        card_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Transactions in [date_from, date_to] with their category name and color."""
        query = """SELECT t.id, t.date, t.amount_cents, t.currency, t.type, t.category_id,
                          c.name AS category_name, c.color AS category_color
                   FROM transactions t
                   LEFT JOIN categories c ON c.id = t.category_id
                   WHERE t.user_id = ? AND t.date >= ? AND t.date <= ?"""
        params: List[Any] = [user_id, date_from, date_to]
        if card_id is not None:
            query += " AND t.card_id = ?"
            params.append(card_id)
        return self._all(query + " ORDER BY t.date", params)

    # === Job events ===

    def add_job_event(self, name: str, payload: Dict[str, Any]) -> int:
        with self._write():
            cursor = self.conn.execute(
                "INSERT INTO job_events (name, payload) VALUES (?, ?)",
                (name, json.dumps(payload))
            )
        return cursor.lastrowid

    def claim_job_event(self) -> Optional[Dict[str, Any]]:
        """Move the oldest pending event to 'running'.

        The status check in the UPDATE makes concurrent workers claim
        distinct events.
        """
        while True:
            row = self._one(
                "SELECT id FROM job_events WHERE status = 'pending' ORDER BY id LIMIT 1"
            )
            if row is None:
                return None
            with self._write():
                cursor = self.conn.execute(
                    """UPDATE job_events
                       SET status = 'running', attempts = attempts + 1,
                           updated_at = CURRENT_TIMESTAMP
                       WHERE id = ? AND status = 'pending'""",
                    (row["id"],)
                )
            if cursor.rowcount == 1:
                event = self.get_job_event(row["id"])
                event["payload"] = json.loads(event["payload"])
                return event

    def get_job_event(self, event_id: int) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM job_events WHERE id = ?", (event_id,))

    def get_job_events(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        if status is None:
            events = self._all("SELECT * FROM job_events ORDER BY id")
        else:
            events = self._all("SELECT * FROM job_events WHERE status = ? ORDER BY id", (status,))
        for event in events:
            event["payload"] = json.loads(event["payload"])
        return events

    def finish_job_event(self, event_id: int, status: str, error: Optional[str] = None) -> None:
        """Set an event to 'done', 'pending' (retry) or 'dead'."""
        with self._write():
            self.conn.execute(
                """UPDATE job_events SET status = ?, last_error = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?""",
                (status, error, event_id)
            )

    def requeue_stale_job_events(self, visibility_timeout_seconds: int) -> int:
        """Put events left 'running' by a crashed worker back to 'pending'."""
        with self._write():
            cursor = self.conn.execute(
                """UPDATE job_events SET status = 'pending', updated_at = CURRENT_TIMESTAMP
                   WHERE status = 'running' AND updated_at < datetime('now', ?)""",
                (f"-{int(visibility_timeout_seconds)} seconds",)
            )
        return cursor.rowcount
