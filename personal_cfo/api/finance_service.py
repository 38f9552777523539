"""Finance service - main orchestration layer."""
from datetime import date
from pathlib import Path
from typing import Callable, List, Dict, Any, Optional, Sequence
import logging
import math

from personal_cfo.cache import TTLCache, analytics_cache_key, invalidate_user_analytics, with_cache
from personal_cfo.config import (
    ANALYTICS_CACHE_TTL_MS,
    CATEGORY_NAME_MAX_LENGTH,
    DB_PATH,
    DEFAULT_CURRENCY,
    EVENT_CATEGORIZE_BY_KEYWORD,
    EVENT_REASSIGN_KEYWORD,
    EVENT_RECATEGORIZE,
    EVENT_STATEMENT_PROCESS,
    KEYWORD_MAX_LENGTH,
    PDF_MIME_TYPES,
    SUPPORTED_CURRENCIES,
    ensure_data_dir
)
from personal_cfo.db.sqlite_store import SQLiteStore
from personal_cfo.errors import (
    EncryptedPdf,
    ExternalFailure,
    NotFound,
    PlanLimitReached,
    ValidationFailed
)
from personal_cfo.ingestion.pdf_extract import ExtractionResult, extract_text_from_pdf, validate_pdf_bytes
from personal_cfo.intelligence import analytics
from personal_cfo.intelligence import entitlements
from personal_cfo.jobs.queue import (
    CategorizeByKeywordEvent,
    JobQueue,
    ReassignKeywordEvent,
    RecategorizeEvent,
    StatementProcessEvent
)


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
STATEMENT_STATUSES = ["processing", "completed", "failed"]
ANALYTICS_ENDPOINTS = ["spend-by-category", "spend-over-time", "income-vs-expenses", "net-cashflow"]


def _format_limit(limit: float, noun: str) -> str:
    return f"{int(limit)} {noun}{'' if limit == 1 else 's'}"


class FinanceService:
    """Main service for the personal CFO backend.

    Every method takes the authenticated user id and only ever touches that
    user's rows. Background work is sent to the job queue; the worker
    process (or the embedded worker thread) runs it.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        cache: Optional[TTLCache] = None,
        pdf_extractor: Callable[..., ExtractionResult] = extract_text_from_pdf
    ):
        """Initialize the finance service.

        Args:
            db_path: Path to SQLite database (default: ~/.personal_cfo/personal_cfo.db)
            cache: Analytics cache shared with the worker; a new one if omitted
            pdf_extractor: Callable(data, password=None) -> ExtractionResult
        """
        if db_path is None:
            ensure_data_dir()

        self.db_path = db_path or DB_PATH
        self.store = SQLiteStore(self.db_path)
        self.cache = cache if cache is not None else TTLCache()
        self.queue = JobQueue(self.store)
        self.pdf_extractor = pdf_extractor

    def close(self):
        """Close all connections."""
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # === Users & plans ===

    def get_user(self, user_id: str) -> Dict[str, Any]:
        """Get the user, provisioning it on the free plan on first sight."""
        return self.store.ensure_user(user_id)

    def _plan(self, user_id: str) -> str:
        return self.get_user(user_id)["plan"]

    def set_plan(self, user_id: str, plan: str) -> Dict[str, Any]:
        try:
            plan = entitlements.Plan(plan).value
        except ValueError:
            raise ValidationFailed(f"Unknown plan: {plan}")
        self.get_user(user_id)
        self.store.set_user_plan(user_id, plan)
        logger.info(f"user.plan_changed user={user_id} plan={plan}")
        return self.get_user(user_id)

    def get_usage(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        plan = self._plan(user_id)
        counts = {
            "cards": self.store.count_cards(user_id),
            "statements_per_month": self.store.count_statements_this_month(user_id),
            # Presets count toward the category limit
            "categories": len(self.store.get_categories(user_id)),
            "budgets": self.store.count_budgets(user_id),
            "alerts": 0,
        }
        return entitlements.usage_summary(plan, counts)

    def get_me(self, user_id: str) -> Dict[str, Any]:
        user = self.get_user(user_id)
        plan_limits = entitlements.get_entitlements(user["plan"]).to_dict()
        return {
            "user": user,
            "entitlements": {
                k: (None if isinstance(v, float) and math.isinf(v) else v)
                for k, v in plan_limits.items()
            },
            "usage": self.get_usage(user_id),
        }

    # === Cards ===

    def list_cards(self, user_id: str) -> List[Dict[str, Any]]:
        return self.store.get_cards(user_id)

    def create_card(self, user_id: str, name: str, last_four: Optional[str] = None) -> Dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("Card name is required")
        if last_four is not None and not (len(last_four) == 4 and last_four.isdigit()):
            raise ValidationFailed("last_four must be 4 digits")

        plan = self._plan(user_id)
        if not entitlements.can_create_card(plan, self.store.count_cards(user_id)):
            limit = entitlements.get_entitlements(plan).cards
            raise PlanLimitReached(
                f"Your {plan} plan allows up to {_format_limit(limit, 'card')}. Upgrade to add more."
            )

        card_id = self.store.add_card(user_id, name, last_four)
        logger.info(f"card.created user={user_id} card_id={card_id}")
        return self.store.get_card(user_id, card_id)

    def delete_card(self, user_id: str, card_id: int) -> None:
        if not self.store.delete_card(user_id, card_id):
            raise NotFound("Card not found")
        invalidate_user_analytics(self.cache, user_id)
        logger.info(f"card.deleted user={user_id} card_id={card_id}")

    def _require_card(self, user_id: str, card_id: int) -> Dict[str, Any]:
        card = self.store.get_card(user_id, card_id)
        if card is None:
            raise NotFound("Card not found")
        return card

    # === Categories ===

    def list_categories(self, user_id: str) -> List[Dict[str, Any]]:
        return self.store.get_categories(user_id)

    def create_category(self, user_id: str, name: str, color: Optional[str] = None) -> Dict[str, Any]:
        name = (name or "").strip()
        if not name or len(name) > CATEGORY_NAME_MAX_LENGTH:
            raise ValidationFailed(f"Category name must be 1-{CATEGORY_NAME_MAX_LENGTH} characters")

        plan = self._plan(user_id)
        if not entitlements.can_create_category(plan, self.store.count_user_categories(user_id)):
            raise PlanLimitReached(f"Your {plan} plan does not allow more custom categories")

        category_id = self.store.add_category(user_id, name, color)
        logger.info(f"category.created user={user_id} category_id={category_id}")
        return self.store.get_category(user_id, category_id)

    def _require_category(self, user_id: str, category_id: int) -> Dict[str, Any]:
        category = self.store.get_category(user_id, category_id)
        if category is None:
            raise NotFound("Category not found")
        return category

    # === Keywords ===

    def list_keywords(self, user_id: str, category_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.store.get_keywords(user_id, category_id)

    def _send_keyword_event(self, keyword: Dict[str, Any], name: str, event) -> None:
        """Enqueue after the status write; a send failure fails the keyword."""
        try:
            self.queue.send(name, event)
        except ExternalFailure:
            self.store.mark_keyword_failed(keyword["id"], "Failed to enqueue categorization job")
            raise

    def create_keyword(self, user_id: str, category_id: int, keyword: str) -> Dict[str, Any]:
        """Add a keyword rule and queue categorization of existing transactions."""
        keyword = (keyword or "").strip()
        if not keyword or len(keyword) > KEYWORD_MAX_LENGTH:
            raise ValidationFailed(f"Keyword must be 1-{KEYWORD_MAX_LENGTH} characters")
        if not entitlements.can_use_keyword_categorization(self._plan(user_id)):
            raise PlanLimitReached("Keyword categorization is not available on your plan")
        self._require_category(user_id, category_id)

        row = self.store.add_keyword(user_id, category_id, keyword)
        self._send_keyword_event(
            row,
            EVENT_CATEGORIZE_BY_KEYWORD,
            CategorizeByKeywordEvent(
                user_id=user_id, keyword_id=row["id"], keyword=row["keyword"], category_id=category_id
            )
        )
        logger.info(f"keyword.created user={user_id} keyword_id={row['id']}")
        return row

    def retry_keyword(self, user_id: str, keyword_id: int) -> Dict[str, Any]:
        """Reset a keyword to categorizing, then enqueue its categorization job.

        The status write commits before the event is sent so the job never
        observes a stale failed state.
        """
        row = self.store.get_keyword(user_id, keyword_id)
        if row is None:
            raise NotFound("Keyword not found")

        self.store.mark_keyword_categorizing(user_id, keyword_id)
        logger.info(f"keyword.retry.status_reset user={user_id} keyword_id={keyword_id}")

        self._send_keyword_event(
            row,
            EVENT_CATEGORIZE_BY_KEYWORD,
            CategorizeByKeywordEvent(
                user_id=user_id,
                keyword_id=keyword_id,
                keyword=row["keyword"],
                category_id=row["category_id"]
            )
        )
        logger.info(f"keyword.retry.job_enqueued user={user_id} keyword_id={keyword_id}")
        return {"success": True}

    def reassign_keyword(self, user_id: str, keyword_id: int, new_category_id: int) -> Dict[str, Any]:
        """Move a keyword to another category and re-assign all its matches."""
        row = self.store.get_keyword(user_id, keyword_id)
        if row is None:
            raise NotFound("Keyword not found")
        self._require_category(user_id, new_category_id)
        if row["category_id"] == new_category_id:
            raise ValidationFailed("Keyword already belongs to this category")

        self.store.mark_keyword_categorizing(user_id, keyword_id, category_id=new_category_id)
        self._send_keyword_event(
            row,
            EVENT_REASSIGN_KEYWORD,
            ReassignKeywordEvent(
                user_id=user_id,
                keyword_id=keyword_id,
                keyword=row["keyword"],
                old_category_id=row["category_id"],
                new_category_id=new_category_id
            )
        )
        logger.info(
            f"keyword.reassign.job_enqueued user={user_id} keyword_id={keyword_id} "
            f"to={new_category_id}"
        )
        return self.store.get_keyword(user_id, keyword_id)

    def delete_keyword(self, user_id: str, keyword_id: int) -> None:
        if not self.store.delete_keyword(user_id, keyword_id):
            raise NotFound("Keyword not found")
        logger.info(f"keyword.deleted user={user_id} keyword_id={keyword_id}")

    # === Excluded keywords ===

    def list_excluded_keywords(self, user_id: str) -> List[Dict[str, Any]]:
        return self.store.get_excluded_keywords(user_id)

    def add_excluded_keywords(self, user_id: str, keywords: Sequence[str]) -> List[Dict[str, Any]]:
        """Add denylist keywords; all are inserted or none."""
        cleaned: List[str] = []
        seen = set()
        for word in keywords:
            word = (word or "").strip()
            if not word or len(word) > KEYWORD_MAX_LENGTH:
                raise ValidationFailed(f"Keyword must be 1-{KEYWORD_MAX_LENGTH} characters")
            if word.lower() not in seen:
                seen.add(word.lower())
                cleaned.append(word)
        if not cleaned:
            raise ValidationFailed("At least one keyword is required")

        self.get_user(user_id)
        rows = self.store.add_excluded_keywords(user_id, cleaned)
        logger.info(f"excluded.created user={user_id} count={len(rows)}")
        return rows

    def delete_excluded_keyword(self, user_id: str, excluded_id: int) -> None:
        if not self.store.delete_excluded_keyword(user_id, excluded_id):
            raise NotFound("Excluded keyword not found")

    # === Budgets ===

    def list_budgets(self, user_id: str) -> List[Dict[str, Any]]:
        return self.store.get_budgets(user_id)

    def create_budget(self, user_id: str, category_id: int, amount_cents: int) -> Dict[str, Any]:
        if amount_cents <= 0:
            raise ValidationFailed("Budget amount must be positive")
        plan = self._plan(user_id)
        self._require_category(user_id, category_id)
        if not entitlements.can_create_budget(plan, self.store.count_budgets(user_id)):
            limit = entitlements.get_entitlements(plan).budgets
            raise PlanLimitReached(
                f"Your {plan} plan allows up to {_format_limit(limit, 'budget')}. Upgrade to add more."
            )

        budget_id = self.store.add_budget(user_id, category_id, amount_cents)
        logger.info(f"budget.created user={user_id} budget_id={budget_id}")
        return next(b for b in self.store.get_budgets(user_id) if b["id"] == budget_id)

    # === Statements ===

    def _extract(self, data: bytes, password: Optional[str]) -> str:
        result = self.pdf_extractor(data, password=password)
        if result.success:
            return result.text
        if result.is_password_error:
            raise EncryptedPdf(result.error)
        raise ValidationFailed(result.error)

    def _send_statement_event(self, statement: Dict[str, Any], text: str) -> None:
        try:
            self.queue.send(
                EVENT_STATEMENT_PROCESS,
                StatementProcessEvent(
                    statement_id=statement["id"],
                    user_id=statement["user_id"],
                    card_id=statement["card_id"],
                    file_name=statement["file_name"],
                    extracted_text=text
                )
            )
        except ExternalFailure:
            self.store.mark_statement_failed(statement["id"], "Failed to enqueue processing job")
            raise

    def upload_statement(
        self,
        user_id: str,
        card_id: int,
        file_name: str,
        data: bytes,
        content_type: Optional[str] = "application/pdf",
        password: Optional[str] = None
    ) -> Dict[str, Any]:
        """Validate and extract a statement PDF, then queue it for processing.

        The PDF bytes are discarded after extraction; only the text travels
        with the job event.
        """
        if content_type not in PDF_MIME_TYPES and not (file_name or "").lower().endswith(".pdf"):
            raise ValidationFailed("File must be a PDF")
        problem = validate_pdf_bytes(data)
        if problem:
            raise ValidationFailed(problem)

        plan = self._plan(user_id)
        self._require_card(user_id, card_id)
        if not entitlements.can_upload_statement(plan, self.store.count_statements_this_month(user_id)):
            limit = entitlements.get_entitlements(plan).statements_per_month
            raise PlanLimitReached(
                f"Your {plan} plan allows up to {_format_limit(limit, 'statement')} per month. "
                "Upgrade to upload more."
            )

        logger.info(f"statement.upload.extracting user={user_id} bytes={len(data)}")
        text = self._extract(data, password)

        statement = self.store.add_statement(user_id, card_id, file_name, content_type or "application/pdf")
        self._send_statement_event(statement, text)
        logger.info(f"statement.upload.queued user={user_id} statement_id={statement['id']}")
        return statement

    def retry_statement(
        self,
        user_id: str,
        statement_id: int,
        data: bytes,
        password: Optional[str] = None
    ) -> Dict[str, Any]:
        """Re-run a failed statement from a re-uploaded PDF."""
        statement = self.store.get_statement(statement_id, user_id)
        if statement is None:
            raise NotFound("Statement not found")
        if statement["status"] != "failed":
            raise ValidationFailed("Only failed statements can be retried")
        problem = validate_pdf_bytes(data)
        if problem:
            raise ValidationFailed(problem)

        text = self._extract(data, password)
        self.store.mark_statement_processing(statement_id)
        self._send_statement_event(statement, text)
        logger.info(f"statement.retry.queued user={user_id} statement_id={statement_id}")
        return self.store.get_statement(statement_id, user_id)

    def list_statements(
        self,
        user_id: str,
        search: Optional[str] = None,
        status: Optional[str] = None,
        card_id: Optional[int] = None,
        page: int = 1,
        page_size: int = 25
    ) -> Dict[str, Any]:
        if status is not None and status not in STATEMENT_STATUSES:
            raise ValidationFailed(f"Invalid status: {status}")
        if page < 1 or not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationFailed(f"page must be >= 1 and pageSize 1-{MAX_PAGE_SIZE}")

        rows, total = self.store.get_statements(user_id, search, status, card_id, page, page_size)
        return {"statements": rows, "total": total, "page": page, "page_size": page_size}

    def delete_statements(self, user_id: str, statement_ids: Sequence[int]) -> int:
        if not statement_ids:
            raise ValidationFailed("No statement ids given")
        deleted = self.store.delete_statements(user_id, statement_ids)
        if deleted:
            invalidate_user_analytics(self.cache, user_id)
        logger.info(f"statement.deleted user={user_id} count={deleted}")
        return deleted

    # === Transactions ===

    def list_transactions(self, user_id: str, **filters) -> Dict[str, Any]:
        rows, total = self.store.get_transactions(user_id, **filters)
        return {"transactions": rows, "total": total}

    def update_transaction_category(
        self,
        user_id: str,
        txn_id: int,
        category_id: Optional[int]
    ) -> Dict[str, Any]:
        if self.store.get_transaction(user_id, txn_id) is None:
            raise NotFound("Transaction not found")
        if category_id is not None:
            self._require_category(user_id, category_id)

        self.store.update_transaction_category(user_id, txn_id, category_id)
        invalidate_user_analytics(self.cache, user_id)
        return self.store.get_transaction(user_id, txn_id)

    def recategorize_transactions(self, user_id: str, transaction_ids: Sequence[int]) -> Dict[str, Any]:
        """Queue keyword matching over the given transactions."""
        owned = [t["id"] for t in self.store.get_transactions_by_ids(user_id, transaction_ids)]
        if not owned:
            raise NotFound("Transaction not found")
        self.queue.send(EVENT_RECATEGORIZE, RecategorizeEvent(user_id=user_id, transaction_ids=owned))
        return {"queued": len(owned)}

    # === Analytics ===

    def get_analytics(
        self,
        user_id: str,
        endpoint: str,
        date_from: str,
        date_to: str,
        currency: str = DEFAULT_CURRENCY,
        card_id: Optional[int] = None,
        granularity: Optional[str] = None
    ) -> Any:
        """Compute one analytics view, memoized for a minute per parameter set."""
        if endpoint not in ANALYTICS_ENDPOINTS:
            raise NotFound(f"Unknown analytics endpoint: {endpoint}")
        try:
            start = date.fromisoformat(date_from)
            end = date.fromisoformat(date_to)
        except (TypeError, ValueError):
            raise ValidationFailed("from and to must be ISO dates (YYYY-MM-DD)")
        if start > end:
            raise ValidationFailed("from must not be after to")
        if currency not in SUPPORTED_CURRENCIES:
            raise ValidationFailed(f"Unsupported currency: {currency}")
        if endpoint in ("spend-over-time", "income-vs-expenses"):
            granularity = granularity or "month"
            if granularity not in analytics.GRANULARITIES:
                raise ValidationFailed(f"Invalid granularity: {granularity}")
        else:
            granularity = None
        if card_id is not None:
            self._require_card(user_id, card_id)

        key = analytics_cache_key(user_id, endpoint, {
            "from": date_from,
            "to": date_to,
            "account": card_id,
            "currency": currency,
            "granularity": granularity,
        })

        def compute():
            current = self.store.get_transactions_in_range(user_id, date_from, date_to, card_id)
            if endpoint == "spend-over-time":
                return analytics.spend_over_time(current, start, end, granularity, currency)
            if endpoint == "income-vs-expenses":
                return analytics.income_vs_expenses(current, start, end, granularity, currency)

            prev_from, prev_to = analytics.previous_period(start, end)
            previous = self.store.get_transactions_in_range(
                user_id, prev_from.isoformat(), prev_to.isoformat(), card_id
            )
            if endpoint == "spend-by-category":
                return analytics.spend_by_category(current, previous, currency)
            return analytics.net_cashflow(current, previous, start, end, currency)

        return with_cache(self.cache, key, ANALYTICS_CACHE_TTL_MS, compute)
