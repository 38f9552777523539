"""Job event payloads and the durable queue they are sent through."""
import logging
from typing import List, Dict, Type

from pydantic import BaseModel, ConfigDict, Field

from personal_cfo.config import (
    EVENT_CATEGORIZE_BY_KEYWORD,
    EVENT_REASSIGN_KEYWORD,
    EVENT_RECATEGORIZE,
    EVENT_STATEMENT_PROCESS,
)
from personal_cfo.db.sqlite_store import SQLiteStore
from personal_cfo.errors import ExternalFailure, FinanceError


logger = logging.getLogger(__name__)


# === Event payloads (camelCase on the wire) ===

class JobEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StatementProcessEvent(JobEvent):
    statement_id: int = Field(alias="statementId")
    user_id: str = Field(alias="userId")
    card_id: int = Field(alias="cardId")
    file_name: str = Field(alias="fileName")
    extracted_text: str = Field(alias="extractedText")


class CategorizeByKeywordEvent(JobEvent):
    user_id: str = Field(alias="userId")
    keyword_id: int = Field(alias="keywordId")
    keyword: str
    category_id: int = Field(alias="categoryId")


class ReassignKeywordEvent(JobEvent):
    user_id: str = Field(alias="userId")
    keyword_id: int = Field(alias="keywordId")
    keyword: str
    old_category_id: int = Field(alias="oldCategoryId")
    new_category_id: int = Field(alias="newCategoryId")


class RecategorizeEvent(JobEvent):
    user_id: str = Field(alias="userId")
    transaction_ids: List[int] = Field(alias="transactionIds")


EVENT_MODELS: Dict[str, Type[JobEvent]] = {
    EVENT_STATEMENT_PROCESS: StatementProcessEvent,
    EVENT_CATEGORIZE_BY_KEYWORD: CategorizeByKeywordEvent,
    EVENT_REASSIGN_KEYWORD: ReassignKeywordEvent,
    EVENT_RECATEGORIZE: RecategorizeEvent,
}


class JobQueue:
    """Sends events to the job_events outbox drained by the worker."""

    def __init__(self, store: SQLiteStore):
        self.store = store

    def send(self, name: str, event: JobEvent) -> int:
        """Persist an event, returns its id.

        Raises:
            ValueError: Unknown event name or payload of the wrong type
            ExternalFailure: The event could not be stored
        """
        model = EVENT_MODELS.get(name)
        if model is None or not isinstance(event, model):
            raise ValueError(f"Invalid payload for event {name}")

        try:
            event_id = self.store.add_job_event(name, event.model_dump(by_alias=True))
        except FinanceError as e:
            logger.error(f"queue.send_failed name={name}: {e.message}")
            raise ExternalFailure("Failed to enqueue background job") from e

        logger.info(f"queue.sent name={name} event_id={event_id}")
        return event_id
