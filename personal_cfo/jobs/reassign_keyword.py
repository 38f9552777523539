"""Background job: move every transaction matching a keyword to the keyword's new category."""
import logging
from typing import Dict, Any, Optional

from personal_cfo.cache import TTLCache, invalidate_user_analytics
from personal_cfo.db.sqlite_store import SQLiteStore
from personal_cfo.intelligence.categorizer import find_matching_transactions_for_keyword
from personal_cfo.jobs.categorize_by_keyword import assign_in_chunks, excluded_keywords_for
from personal_cfo.jobs.queue import ReassignKeywordEvent


logger = logging.getLogger(__name__)


def reassign_keyword(
    store: SQLiteStore,
    event: ReassignKeywordEvent,
    cache: Optional[TTLCache] = None
) -> Dict[str, Any]:
    """Re-assign all of the user's transactions matching the keyword.

    Unlike the categorize job this ignores the current category of each
    transaction.
    """
    user_id = event.user_id
    keyword_id = event.keyword_id
    logger.info(
        f"keyword.reassign.start user={user_id} keyword_id={keyword_id} "
        f"from={event.old_category_id} to={event.new_category_id}"
    )

    if store.get_keyword(user_id, keyword_id) is None:
        logger.info(f"keyword.reassign.keyword_deleted keyword_id={keyword_id}")
        return {"keyword_id": keyword_id, "reassigned_count": 0, "status": "skipped"}

    try:
        matches = find_matching_transactions_for_keyword(
            store.get_user_transactions(user_id),
            event.keyword,
            event.new_category_id,
            excluded_keywords_for(store, user_id)
        )
        reassigned = assign_in_chunks(store, user_id, matches, log_prefix="keyword.reassign")
        store.mark_keyword_completed(keyword_id, reassigned)
    except Exception as e:
        logger.error(f"keyword.reassign.failed keyword_id={keyword_id}: {e}")
        store.mark_keyword_failed(keyword_id, f"Reassignment failed: {e}")
        return {"keyword_id": keyword_id, "reassigned_count": 0, "status": "failed"}

    if cache is not None and reassigned:
        invalidate_user_analytics(cache, user_id)

    logger.info(f"keyword.reassign.completed keyword_id={keyword_id} reassigned={reassigned}")
    return {"keyword_id": keyword_id, "reassigned_count": reassigned, "status": "completed"}


def on_dead_letter(store: SQLiteStore, event: ReassignKeywordEvent, error: str) -> None:
    store.mark_keyword_failed(event.keyword_id, f"Reassignment failed after retries: {error}")
