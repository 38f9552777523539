"""Background job: re-run keyword matching over selected transactions."""
import logging
from typing import Dict, Any, Optional

from personal_cfo.cache import TTLCache, invalidate_user_analytics
from personal_cfo.db.sqlite_store import SQLiteStore
from personal_cfo.intelligence.categorizer import categorize_transaction
from personal_cfo.jobs.categorize_by_keyword import assign_in_chunks, excluded_keywords_for
from personal_cfo.jobs.queue import RecategorizeEvent


logger = logging.getLogger(__name__)


def recategorize(
    store: SQLiteStore,
    event: RecategorizeEvent,
    cache: Optional[TTLCache] = None
) -> Dict[str, Any]:
    """Overwrite the category of each listed transaction with its first keyword match.

    Transactions no keyword matches keep their current category. Errors
    propagate so the worker retries the event.
    """
    user_id = event.user_id
    transactions = store.get_transactions_by_ids(user_id, event.transaction_ids)
    keywords = store.get_keywords(user_id)
    excluded = excluded_keywords_for(store, user_id)
    logger.info(
        f"transactions.recategorize.start user={user_id} "
        f"requested={len(event.transaction_ids)} found={len(transactions)}"
    )

    assignments = []
    for txn in transactions:
        category_id = categorize_transaction(txn, keywords, excluded)
        if category_id is not None and category_id != txn["category_id"]:
            assignments.append({"id": txn["id"], "category_id": category_id})

    updated = assign_in_chunks(store, user_id, assignments, log_prefix="transactions.recategorize")
    if cache is not None and updated:
        invalidate_user_analytics(cache, user_id)

    logger.info(f"transactions.recategorize.completed user={user_id} updated={updated}")
    return {"updated": updated, "unchanged": len(transactions) - updated}
