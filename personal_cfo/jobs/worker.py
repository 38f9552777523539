"""Worker that drains the job_events outbox.

Delivery is at-least-once: an event is claimed (pending -> running), handled,
then marked done. A handler exception puts the event back to pending until
it has been attempted `max_attempts` times, after which it is dead-lettered
and the handler's dead-letter hook marks the owning entity failed. Events a
crashed worker left running are re-queued after the visibility timeout; one
redelivered after `max_attempts` claims is dead-lettered without running.
"""
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Any, Optional, Tuple, Type

from pydantic import ValidationError

from personal_cfo.cache import TTLCache
from personal_cfo.config import (
    EVENT_CATEGORIZE_BY_KEYWORD,
    EVENT_REASSIGN_KEYWORD,
    EVENT_RECATEGORIZE,
    EVENT_STATEMENT_PROCESS,
    JOB_MAX_ATTEMPTS,
    JOB_POLL_INTERVAL_SECONDS,
    JOB_VISIBILITY_TIMEOUT_SECONDS,
    KEYWORD_CATEGORIZING_TIMEOUT_SECONDS,
)
from personal_cfo.db.sqlite_store import SQLiteStore
from personal_cfo.jobs import categorize_by_keyword, process_statement, reassign_keyword, recategorize
from personal_cfo.jobs.queue import EVENT_MODELS, JobEvent


logger = logging.getLogger(__name__)


@dataclass
class JobHandler:
    model: Type[JobEvent]
    run: Callable[..., Any]
    on_dead_letter: Optional[Callable[[SQLiteStore, Any, str], None]] = None


class JobWorker:
    """Claims events one at a time and dispatches them by name."""

    def __init__(
        self,
        store: SQLiteStore,
        cache: Optional[TTLCache] = None,
        max_attempts: int = JOB_MAX_ATTEMPTS,
        visibility_timeout: int = JOB_VISIBILITY_TIMEOUT_SECONDS,
        keyword_timeout: int = KEYWORD_CATEGORIZING_TIMEOUT_SECONDS,
        poll_interval: float = JOB_POLL_INTERVAL_SECONDS
    ):
        self.store = store
        self.cache = cache
        self.max_attempts = max_attempts
        self.visibility_timeout = visibility_timeout
        self.keyword_timeout = keyword_timeout
        self.poll_interval = poll_interval
        self.handlers: Dict[str, JobHandler] = {}

        self.register(
            EVENT_STATEMENT_PROCESS,
            process_statement.process_statement,
            process_statement.on_dead_letter
        )
        self.register(
            EVENT_CATEGORIZE_BY_KEYWORD,
            categorize_by_keyword.categorize_by_keyword,
            categorize_by_keyword.on_dead_letter
        )
        self.register(
            EVENT_REASSIGN_KEYWORD,
            reassign_keyword.reassign_keyword,
            reassign_keyword.on_dead_letter
        )
        self.register(EVENT_RECATEGORIZE, recategorize.recategorize)

    def register(
        self,
        name: str,
        run: Callable[..., Any],
        on_dead_letter: Optional[Callable[[SQLiteStore, Any, str], None]] = None
    ) -> None:
        """Register (or replace) the handler for an event name.

        `run` is called as run(store, event, cache).
        """
        self.handlers[name] = JobHandler(EVENT_MODELS[name], run, on_dead_letter)

    def run_maintenance(self) -> Dict[str, int]:
        """Re-queue abandoned events and fail keywords stuck categorizing."""
        requeued = self.store.requeue_stale_job_events(self.visibility_timeout)
        swept = self.store.sweep_stale_keywords(self.keyword_timeout)
        if requeued or swept:
            logger.warning(f"worker.maintenance requeued={requeued} swept_keywords={swept}")
        return {"requeued": requeued, "swept_keywords": swept}

    def run_once(self) -> bool:
        """Handle at most one event. Returns False when the queue is empty."""
        event = self.store.claim_job_event()
        if event is None:
            return False

        event_id = event["id"]
        name = event["name"]
        handler = self.handlers.get(name)
        if handler is None:
            logger.error(f"worker.unknown_event event_id={event_id} name={name}")
            self.store.finish_job_event(event_id, "dead", f"No handler for {name}")
            return True

        try:
            payload = handler.model.model_validate(event["payload"])
        except ValidationError as e:
            logger.error(f"worker.invalid_payload event_id={event_id} name={name}")
            self.store.finish_job_event(event_id, "dead", f"Invalid payload: {e.error_count()} errors")
            return True

        if event["attempts"] > self.max_attempts:
            # Redelivered after a worker died mid-handler on every attempt
            error = f"Abandoned after {self.max_attempts} attempts"
            self._dead_letter(event, handler, payload, error)
            return True

        logger.info(f"worker.event.start event_id={event_id} name={name} attempt={event['attempts']}")
        try:
            result = handler.run(self.store, payload, self.cache)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            if event["attempts"] >= self.max_attempts:
                self._dead_letter(event, handler, payload, error)
            else:
                logger.warning(f"worker.event.retry event_id={event_id} name={name}: {error}")
                self.store.finish_job_event(event_id, "pending", error)
            return True

        self.store.finish_job_event(event_id, "done")
        logger.info(f"worker.event.done event_id={event_id} name={name} result={result}")
        return True

    def _dead_letter(self, event: Dict[str, Any], handler: JobHandler, payload: Any, error: str) -> None:
        logger.error(f"worker.event.dead event_id={event['id']} name={event['name']}: {error}")
        self.store.finish_job_event(event["id"], "dead", error)
        if handler.on_dead_letter is not None:
            handler.on_dead_letter(self.store, payload, error)

    def drain(self, max_events: Optional[int] = None) -> int:
        """Handle events until the queue is empty, returns how many were handled."""
        handled = 0
        while max_events is None or handled < max_events:
            if not self.run_once():
                break
            handled += 1
        return handled

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Poll until `stop_event` is set (or forever)."""
        stop_event = stop_event or threading.Event()
        logger.info(f"worker.started poll_interval={self.poll_interval}s")
        while not stop_event.is_set():
            try:
                self.run_maintenance()
                handled = self.drain()
            except Exception as e:
                logger.exception(f"worker.cycle_failed: {e}")
                handled = 0
            if not handled:
                stop_event.wait(self.poll_interval)
        logger.info("worker.stopped")


def start_worker_thread(
    db_path: Path,
    cache: Optional[TTLCache] = None
) -> Tuple[threading.Thread, threading.Event]:
    """Run a worker with its own connection in a daemon thread.

    Returns the thread and the event that stops it.
    """
    stop_event = threading.Event()

    def _run():
        with SQLiteStore(db_path) as store:
            JobWorker(store, cache=cache).run_forever(stop_event)

    thread = threading.Thread(target=_run, name="personal-cfo-worker", daemon=True)
    thread.start()
    return thread, stop_event
