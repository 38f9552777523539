"""Background job: parse extracted statement text into categorized transactions."""
import logging
from typing import Dict, Any, Optional

from personal_cfo.cache import TTLCache, invalidate_user_analytics
from personal_cfo.db.sqlite_store import SQLiteStore
from personal_cfo.ingestion.statement_parser import StatementTextParser
from personal_cfo.intelligence.categorizer import categorize_transaction
from personal_cfo.jobs.categorize_by_keyword import excluded_keywords_for
from personal_cfo.jobs.queue import StatementProcessEvent


logger = logging.getLogger(__name__)

NO_TRANSACTIONS_MESSAGE = "No transactions found in statement"


class StatementProcessingError(Exception):
    """Raised inside the job for failures that become the statement's failure_reason."""


def process_statement(
    store: SQLiteStore,
    event: StatementProcessEvent,
    cache: Optional[TTLCache] = None,
    parser: Optional[StatementTextParser] = None
) -> Dict[str, Any]:
    """Parse, categorize and insert a statement's transactions.

    A completed statement is never re-entered. Inserts are keyed on the
    statement line, so a re-run after a partial failure adds only missing
    rows. Failures are recorded on the statement instead of raised.
    """
    statement_id = event.statement_id
    user_id = event.user_id
    logger.info(
        f"statement.process.start statement_id={statement_id} "
        f"text_len={len(event.extracted_text)}"
    )

    statement = store.get_statement(statement_id, user_id)
    if statement is None:
        logger.warning(f"statement.process.not_found statement_id={statement_id}")
        return {"statement_id": statement_id, "status": "skipped", "transaction_count": 0}
    if statement["status"] == "completed":
        logger.info(f"statement.process.already_completed statement_id={statement_id}")
        return {
            "statement_id": statement_id,
            "status": "completed",
            "transaction_count": statement["transaction_count"],
        }

    try:
        parsed = (parser or StatementTextParser()).parse(event.extracted_text)
        if not parsed:
            raise StatementProcessingError(NO_TRANSACTIONS_MESSAGE)

        keywords = store.get_keywords(user_id)
        excluded = excluded_keywords_for(store, user_id)
        categorized = 0
        for txn in parsed:
            txn["category_id"] = categorize_transaction(txn, keywords, excluded)
            if txn["category_id"] is not None:
                categorized += 1
        logger.info(
            f"statement.process.categorization_stats statement_id={statement_id} "
            f"parsed={len(parsed)} categorized={categorized}"
        )

        inserted = store.add_statement_transactions(user_id, statement_id, statement["card_id"], parsed)
        transaction_count = store.count_statement_transactions(statement_id)
        store.mark_statement_completed(statement_id, transaction_count)
    except Exception as e:
        reason = str(e) or type(e).__name__
        logger.error(f"statement.process.failed statement_id={statement_id}: {reason}")
        store.mark_statement_failed(statement_id, reason)
        return {"statement_id": statement_id, "status": "failed", "error": reason}

    if cache is not None:
        invalidate_user_analytics(cache, user_id)

    logger.info(
        f"statement.process.completed statement_id={statement_id} "
        f"inserted={inserted} transaction_count={transaction_count}"
    )
    return {"statement_id": statement_id, "status": "completed", "transaction_count": transaction_count}


def on_dead_letter(store: SQLiteStore, event: StatementProcessEvent, error: str) -> None:
    store.mark_statement_failed(event.statement_id, f"Processing failed after retries: {error}")
