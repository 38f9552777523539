"""Background job: apply a new (or retried) keyword to uncategorized transactions."""
import logging
from typing import List, Dict, Any, Optional, Sequence

from personal_cfo.cache import TTLCache, invalidate_user_analytics
from personal_cfo.config import KEYWORD_UPDATE_CHUNK_SIZE
from personal_cfo.db.sqlite_store import SQLiteStore
from personal_cfo.intelligence.categorizer import find_matching_transactions_for_keyword
from personal_cfo.jobs.queue import CategorizeByKeywordEvent


logger = logging.getLogger(__name__)


def excluded_keywords_for(store: SQLiteStore, user_id: str) -> List[str]:
    return [row["keyword"] for row in store.get_excluded_keywords(user_id)]


def assign_in_chunks(
    store: SQLiteStore,
    user_id: str,
    assignments: Sequence[Dict[str, Any]],
    only_uncategorized: bool = False,
    chunk_size: int = KEYWORD_UPDATE_CHUNK_SIZE,
    log_prefix: str = "keyword.categorize"
) -> int:
    """Write category assignments in chunks, returns rows updated."""
    updated = 0
    for start in range(0, len(assignments), chunk_size):
        chunk = assignments[start:start + chunk_size]
        updated += store.assign_categories(user_id, chunk, only_uncategorized=only_uncategorized)
        logger.info(
            f"{log_prefix}.chunk_completed user={user_id} "
            f"chunk={start}-{start + len(chunk)} updated={updated}"
        )
    return updated


def categorize_by_keyword(
    store: SQLiteStore,
    event: CategorizeByKeywordEvent,
    cache: Optional[TTLCache] = None
) -> Dict[str, Any]:
    """Categorize the user's uncategorized transactions matching one keyword.

    Only rows still uncategorized are touched, so running it twice is
    harmless. Failures are recorded on the keyword instead of raised.

    Returns:
        Dict with keyword_id, categorized_count and status
    """
    user_id = event.user_id
    keyword_id = event.keyword_id
    logger.info(f"keyword.categorize.start user={user_id} keyword_id={keyword_id}")

    if store.get_keyword(user_id, keyword_id) is None:
        logger.info(f"keyword.categorize.keyword_deleted keyword_id={keyword_id}")
        return {"keyword_id": keyword_id, "categorized_count": 0, "status": "skipped"}

    try:
        transactions = store.get_uncategorized_transactions(user_id)
        matches = find_matching_transactions_for_keyword(
            transactions,
            event.keyword,
            event.category_id,
            excluded_keywords_for(store, user_id)
        )
        logger.info(
            f"keyword.categorize.found_matches keyword_id={keyword_id} "
            f"candidates={len(transactions)} matches={len(matches)}"
        )
        categorized = assign_in_chunks(store, user_id, matches, only_uncategorized=True)
        store.mark_keyword_completed(keyword_id, categorized)
    except Exception as e:
        reason = f"Categorization failed: {e}"
        logger.error(f"keyword.categorize.failed keyword_id={keyword_id}: {e}")
        store.mark_keyword_failed(keyword_id, reason)
        return {"keyword_id": keyword_id, "categorized_count": 0, "status": "failed"}

    if cache is not None and categorized:
        invalidate_user_analytics(cache, user_id)

    logger.info(f"keyword.categorize.completed keyword_id={keyword_id} categorized={categorized}")
    return {"keyword_id": keyword_id, "categorized_count": categorized, "status": "completed"}


def on_dead_letter(store: SQLiteStore, event: CategorizeByKeywordEvent, error: str) -> None:
    store.mark_keyword_failed(event.keyword_id, f"Categorization failed after retries: {error}")
