"""Configuration settings for the personal CFO service."""
import math
from pathlib import Path
from typing import Dict, Any

# Paths
DATA_DIR = Path.home() / ".personal_cfo"
DB_PATH = DATA_DIR / "personal_cfo.db"

# Statement upload
MAX_PDF_SIZE_BYTES = 25 * 1024 * 1024  # 25MB
PDF_MIME_TYPES = ["application/pdf"]

# PDF extraction subprocess
PDF_EXTRACT_TIMEOUT_SECONDS = 60
PDF_EXTRACT_MAX_OUTPUT_BYTES = 20 * 1024 * 1024
# Thread pools the child must not spin up
PDF_EXTRACT_SINGLE_THREAD_ENV = {
    "OMP_NUM_THREADS": "1",
    "OPENBLAS_NUM_THREADS": "1",
    "MKL_NUM_THREADS": "1",
    "NUMEXPR_NUM_THREADS": "1",
}

# Job queue
JOB_MAX_ATTEMPTS = 3  # First run plus 2 retries
JOB_VISIBILITY_TIMEOUT_SECONDS = 300  # Running events older than this are re-queued
JOB_POLL_INTERVAL_SECONDS = 2.0
KEYWORD_CATEGORIZING_TIMEOUT_SECONDS = 15 * 60
KEYWORD_UPDATE_CHUNK_SIZE = 100

# Event names
EVENT_STATEMENT_PROCESS = "statement/process"
EVENT_CATEGORIZE_BY_KEYWORD = "transactions/categorize-by-keyword"
EVENT_REASSIGN_KEYWORD = "transactions/reassign-keyword"
EVENT_RECATEGORIZE = "transactions/recategorize"

# Analytics
ANALYTICS_CACHE_TTL_MS = 60_000
DEFAULT_CURRENCY = "USD"
SUPPORTED_CURRENCIES = ["PEN", "USD", "EUR"]
# Fixed rates against USD
EXCHANGE_RATES: Dict[str, Any] = {
    "base": "USD",
    "rates": {"USD": 1.0, "PEN": 3.75, "EUR": 0.92},
}

# Keyword / category validation
KEYWORD_MAX_LENGTH = 100
CATEGORY_NAME_MAX_LENGTH = 50

# System categories, shared by every user and not counted toward plan limits
PRESET_CATEGORIES = [
    ("Food & Dining", "#F59E0B"),
    ("Transportation", "#F97316"),
    ("Shopping", "#06B6D4"),
    ("Entertainment", "#14B8A6"),
    ("Utilities", "#84CC16"),
    ("Health", "#22C55E"),
]

# Plan entitlements; math.inf means unbounded
PLAN_ENTITLEMENTS: Dict[str, Dict[str, Any]] = {
    "free": {
        "cards": 1,
        "statements_per_month": 2,
        "categories": 6,
        "alerts": 2,
        "budgets": 2,
        "keyword_categorization": True,
    },
    "plus": {
        "cards": 5,
        "statements_per_month": math.inf,
        "categories": 25,
        "alerts": 6,
        "budgets": 10,
        "keyword_categorization": True,
    },
    "pro": {
        "cards": math.inf,
        "statements_per_month": math.inf,
        "categories": math.inf,
        "alerts": 10,
        "budgets": 15,
        "keyword_categorization": True,
    },
    "admin": {
        "cards": math.inf,
        "statements_per_month": math.inf,
        "categories": math.inf,
        "alerts": math.inf,
        "budgets": math.inf,
        "keyword_categorization": True,
    },
}

# User categories a plus plan may add on top of the presets
PLUS_USER_CATEGORY_LIMIT = 19


def ensure_data_dir() -> Path:
    """Ensure the data directory exists."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    return DATA_DIR
