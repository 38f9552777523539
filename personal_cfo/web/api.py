"""FastAPI backend for the personal CFO service."""
import logging
from typing import Optional, List, Tuple
from contextlib import asynccontextmanager
import threading

from fastapi import FastAPI, Depends, UploadFile, File, Form, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from personal_cfo.api.finance_service import FinanceService
from personal_cfo.cache import TTLCache
from personal_cfo.errors import FinanceError, Unauthorized
from personal_cfo.jobs.worker import start_worker_thread


logger = logging.getLogger(__name__)

# Global service instance (for production use)
_service: Optional[FinanceService] = None
_worker: Optional[Tuple[threading.Thread, threading.Event]] = None


def get_service() -> FinanceService:
    """Dependency to get the finance service."""
    global _service
    if _service is None:
        _service = FinanceService(db_path=getattr(app.state, "db_path", None), cache=TTLCache())
        _service.__enter__()
    return _service


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """User id forwarded by the identity provider's gateway."""
    if not x_user_id or not x_user_id.strip():
        raise Unauthorized()
    return x_user_id.strip()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the service (and its analytics cache) once; optionally run the worker in-process."""
    global _service, _worker
    service = get_service()
    if getattr(app.state, "embedded_worker", False):
        _worker = start_worker_thread(service.db_path, service.cache)
        logger.info("api.embedded_worker.started")
    yield
    # Cleanup on shutdown
    if _worker is not None:
        thread, stop_event = _worker
        stop_event.set()
        thread.join(timeout=10)
        _worker = None
    if _service is not None:
        _service.__exit__(None, None, None)
        _service = None


app = FastAPI(
    title="Personal CFO API",
    description="Statement ingestion, keyword categorization and spending analytics",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(FinanceError)
async def handle_finance_error(request: Request, exc: FinanceError):
    content = {"error": exc.message}
    if exc.code:
        content["code"] = exc.code
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    details = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
    return JSONResponse(status_code=400, content={"error": "Validation failed", "details": details})


# === Pydantic Models ===

class CardCreate(BaseModel):
    name: str
    last_four: Optional[str] = None


class CategoryCreate(BaseModel):
    name: str
    color: Optional[str] = None  # Hex color, e.g. "#F59E0B"


class KeywordCreate(BaseModel):
    category_id: int
    keyword: str


class KeywordReassign(BaseModel):
    category_id: int


class ExcludedCreate(BaseModel):
    keywords: List[str]


class BudgetCreate(BaseModel):
    category_id: int
    amount_cents: int


class StatementDelete(BaseModel):
    ids: List[int]


class TransactionUpdate(BaseModel):
    category_id: Optional[int] = None  # None clears the category


class RecategorizeRequest(BaseModel):
    transaction_ids: List[int]


# === Profile ===

@app.get("/api/me")
def get_me(
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    """Current user with plan limits and usage."""
    return service.get_me(user_id)


# === Cards ===

@app.get("/api/cards")
def list_cards(
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.list_cards(user_id)


@app.post("/api/cards", status_code=201)
def create_card(
    card: CardCreate,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.create_card(user_id, card.name, card.last_four)


@app.delete("/api/cards/{card_id}")
def delete_card(
    card_id: int,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    """Delete a card with its statements and transactions."""
    service.delete_card(user_id, card_id)
    return {"success": True}


# === Settings: categories ===

@app.get("/api/settings/categories")
def list_categories(
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.list_categories(user_id)


@app.post("/api/settings/categories", status_code=201)
def create_category(
    category: CategoryCreate,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.create_category(user_id, category.name, category.color)


# === Settings: keywords ===

@app.get("/api/settings/keywords")
def list_keywords(
    category_id: Optional[int] = Query(None),
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.list_keywords(user_id, category_id)


@app.post("/api/settings/keywords", status_code=201)
def create_keyword(
    keyword: KeywordCreate,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    """Create a keyword; matching transactions are categorized in the background."""
    return service.create_keyword(user_id, keyword.category_id, keyword.keyword)


@app.delete("/api/settings/keywords/{keyword_id}")
def delete_keyword(
    keyword_id: int,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    service.delete_keyword(user_id, keyword_id)
    return {"success": True}


@app.post("/api/settings/keywords/{keyword_id}/retry")
def retry_keyword(
    keyword_id: int,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    """Re-run categorization for a keyword (typically a failed one)."""
    return service.retry_keyword(user_id, keyword_id)


@app.post("/api/settings/keywords/{keyword_id}/reassign")
def reassign_keyword(
    keyword_id: int,
    body: KeywordReassign,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.reassign_keyword(user_id, keyword_id, body.category_id)


# === Settings: excluded keywords ===

@app.get("/api/settings/excluded")
def list_excluded(
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.list_excluded_keywords(user_id)


@app.post("/api/settings/excluded", status_code=201)
def create_excluded(
    body: ExcludedCreate,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.add_excluded_keywords(user_id, body.keywords)


@app.delete("/api/settings/excluded/{excluded_id}")
def delete_excluded(
    excluded_id: int,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    service.delete_excluded_keyword(user_id, excluded_id)
    return {"success": True}


# === Budgets ===

@app.get("/api/budgets")
def list_budgets(
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.list_budgets(user_id)


@app.post("/api/budgets", status_code=201)
def create_budget(
    budget: BudgetCreate,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.create_budget(user_id, budget.category_id, budget.amount_cents)


# === Statements ===

@app.get("/api/statements")
def list_statements(
    search: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    card_id: Optional[int] = Query(None, alias="cardId"),
    page: int = Query(1),
    page_size: int = Query(25, alias="pageSize"),
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.list_statements(user_id, search, status, card_id, page, page_size)


@app.post("/api/statements", status_code=202)
def upload_statement(
    file: UploadFile = File(...),
    card_id: int = Form(..., alias="cardId"),
    password: Optional[str] = Form(None),
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    """Upload a statement PDF.

    Text is extracted right away; parsing runs in the background and the
    statement stays 'processing' until the job finishes.
    """
    data = file.file.read()
    statement = service.upload_statement(
        user_id,
        card_id,
        file.filename or "statement.pdf",
        data,
        content_type=file.content_type,
        password=password or None
    )
    return {"success": True, "statement": statement}


@app.delete("/api/statements")
def delete_statements(
    body: StatementDelete,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    deleted = service.delete_statements(user_id, body.ids)
    return {"success": True, "deleted": deleted}


@app.post("/api/statements/{statement_id}/retry", status_code=202)
def retry_statement(
    statement_id: int,
    file: UploadFile = File(...),
    password: Optional[str] = Form(None),
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    """Retry a failed statement; the PDF must be uploaded again."""
    statement = service.retry_statement(user_id, statement_id, file.file.read(), password or None)
    return {"success": True, "statement": statement}


# === Transactions ===

@app.get("/api/transactions")
def list_transactions(
    category_id: Optional[int] = Query(None),
    uncategorized: bool = Query(False),
    card_id: Optional[int] = Query(None),
    statement_id: Optional[int] = Query(None),
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.list_transactions(
        user_id,
        category_id=category_id,
        uncategorized=uncategorized,
        card_id=card_id,
        statement_id=statement_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset
    )


@app.patch("/api/transactions/{txn_id}")
def update_transaction(
    txn_id: int,
    update: TransactionUpdate,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.update_transaction_category(user_id, txn_id, update.category_id)


@app.post("/api/transactions/recategorize", status_code=202)
def recategorize_transactions(
    body: RecategorizeRequest,
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    return service.recategorize_transactions(user_id, body.transaction_ids)


# === Analytics ===

@app.get("/api/analytics/{endpoint}")
def get_analytics(
    endpoint: str,
    date_from: str = Query(..., alias="from"),
    date_to: str = Query(..., alias="to"),
    account: Optional[int] = Query(None),
    currency: str = Query("USD"),
    granularity: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user),
    service: FinanceService = Depends(get_service)
):
    """spend-by-category, spend-over-time, income-vs-expenses or net-cashflow."""
    return service.get_analytics(
        user_id,
        endpoint,
        date_from,
        date_to,
        currency=currency,
        card_id=account,
        granularity=granularity
    )
