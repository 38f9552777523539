"""
Pytest configuration and shared fixtures.
"""
import pytest
from pathlib import Path
from typing import List, Optional


SAMPLE_STATEMENT_TEXT = """ACME BANK VISA
Statement Period: 01/01/2025 - 01/31/2025
01/05 STARBUCKS LIMA PE COMPRA 12.50
01/05 STARBUCKS LIMA PE COMPRA 12.50
01/07 NETFLIX.COM 15.99
01/10 UBER *TRIP 23.40
01/15 PAYMENT THANK YOU 200.00 CR
Total 64.39
"""

# Valid header is all the upload checks look at; extraction is faked
FAKE_PDF_BYTES = b"%PDF-1.4\n% fake statement\n"


def make_pdf(lines: List[str]) -> bytes:
    """Build a minimal one-page PDF with the given text lines."""
    def escape(s):
        return s.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")

    content = "BT /F1 11 Tf 50 750 Td 14 TL " + " ".join(
        f"({escape(line)}) Tj T*" for line in lines
    ) + " ET"
    objects = [
        "<< /Type /Catalog /Pages 2 0 R >>",
        "<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
        "/Contents 4 0 R /Resources << /Font << /F1 5 0 R >> >> >>",
        f"<< /Length {len(content)} >>\nstream\n{content}\nendstream",
        "<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]

    out = b"%PDF-1.4\n"
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{number} 0 obj\n{body}\nendobj\n".encode("latin-1")

    xref_offset = len(out)
    out += f"xref\n0 {len(objects) + 1}\n0000000000 65535 f \n".encode("latin-1")
    for offset in offsets:
        out += f"{offset:010d} 00000 n \n".encode("latin-1")
    out += (
        f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\n"
        f"startxref\n{xref_offset}\n%%EOF\n"
    ).encode("latin-1")
    return out


class FakeExtractor:
    """Stand-in for the PDF child process; records what it was called with."""

    def __init__(self, text: str = SAMPLE_STATEMENT_TEXT, error: Optional[str] = None):
        self.text = text
        self.error = error
        self.calls = []

    def __call__(self, data: bytes, password: Optional[str] = None):
        from personal_cfo.ingestion.pdf_extract import ExtractionResult

        self.calls.append({"data": data, "password": password})
        if self.error:
            return ExtractionResult(False, error=self.error)
        return ExtractionResult(True, text=self.text)


@pytest.fixture
def temp_db_path(tmp_path) -> Path:
    """Temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def store(temp_db_path: Path):
    """Store with two provisioned users."""
    from personal_cfo.db.sqlite_store import SQLiteStore

    with SQLiteStore(temp_db_path) as store:
        store.ensure_user("user_1")
        store.ensure_user("user_2")
        yield store


@pytest.fixture
def fake_extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def service(temp_db_path: Path, fake_extractor: FakeExtractor):
    """Finance service backed by a temp database and a fake PDF extractor."""
    from personal_cfo.api.finance_service import FinanceService
    from personal_cfo.cache import TTLCache

    with FinanceService(db_path=temp_db_path, cache=TTLCache(), pdf_extractor=fake_extractor) as service:
        yield service


@pytest.fixture
def pdf_factory():
    """Builds real PDFs for the extraction tests."""
    return make_pdf


@pytest.fixture
def pdf_bytes() -> bytes:
    return FAKE_PDF_BYTES


@pytest.fixture
def sample_statement_text() -> str:
    return SAMPLE_STATEMENT_TEXT


@pytest.fixture
def sample_rows() -> list:
    """Analytics input rows, shaped like SQLiteStore.get_transactions_in_range."""
    return [
        {"id": 1, "date": "2025-01-05", "amount_cents": -1250, "currency": "USD", "type": "expense",
         "category_id": 1, "category_name": "Food & Dining", "category_color": "#F59E0B"},
        {"id": 2, "date": "2025-01-12", "amount_cents": -3000, "currency": "USD", "type": "expense",
         "category_id": 2, "category_name": "Transportation", "category_color": "#F97316"},
        {"id": 3, "date": "2025-01-20", "amount_cents": -750, "currency": "USD", "type": "expense",
         "category_id": 1, "category_name": "Food & Dining", "category_color": "#F59E0B"},
        {"id": 4, "date": "2025-02-03", "amount_cents": -1000, "currency": "USD", "type": "expense",
         "category_id": None, "category_name": None, "category_color": None},
        {"id": 5, "date": "2025-02-15", "amount_cents": 50000, "currency": "USD", "type": "income",
         "category_id": None, "category_name": None, "category_color": None},
    ]
