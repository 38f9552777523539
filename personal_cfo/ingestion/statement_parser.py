"""Parser that turns extracted statement text into transaction dicts."""
import re
from collections import Counter
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import List, Dict, Any, Optional, Tuple

from personal_cfo.config import DEFAULT_CURRENCY, SUPPORTED_CURRENCIES


MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
    # Spanish abbreviations seen on Latin American statements
    "ene": 1, "abr": 4, "ago": 8, "set": 9, "dic": 12,
}

DATE_RE = r"\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}(?:/\d{2,4})?|\d{1,2}[- ][A-Za-z]{3,4}(?:[- ]\d{4})?"
AMOUNT_RE = r"[-+]?\(?[$€]?\s?\d{1,3}(?:,\d{3})*(?:\.\d{2})\)?-?|[-+]?\(?[$€]?\s?\d+\.\d{2}\)?-?"
CURRENCY_RE = "|".join(SUPPORTED_CURRENCIES)

LINE_RE = re.compile(
    rf"^(?P<date>{DATE_RE})\s+(?:(?:{DATE_RE})\s+)?"
    rf"(?P<description>.+?)\s+"
    rf"(?P<amount>{AMOUNT_RE})"
    rf"(?:\s*(?P<marker>CR|DR))?"
    rf"(?:\s+(?P<currency>{CURRENCY_RE}))?$"
)
FULL_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{4}|\d{1,2}[- ][A-Za-z]{3,4}[- ]\d{4}")
PERIOD_RE = re.compile(r"statement period|billing period|periodo|period", re.IGNORECASE)

# Dated summary lines that look like transactions; matched against the whole
# description so merchants such as "TOTAL WINE" or "BALANCE FITNESS" survive
SUMMARY_LINE_RE = re.compile(
    r"^(?:"
    r"(?:(?:new|previous|opening|closing|ending|beginning|current|available|statement)\s+)?"
    r"balance(?:\s+(?:due|forward|transferred))?"
    r"|(?:sub)?total(?:\s+(?:purchases|payments|credits|debits|charges|new charges|fees|interest"
    r"|amount|amount due|due|spent|transactions|this period|for this period))?"
    r"|saldo(?:\s+(?:anterior|actual|final|inicial|total))?"
    r"|minimum payment(?:\s+due)?|pago minimo"
    r")\s*:?$"
    r"|^(?:statement period|billing period|periodo)\b",
    re.IGNORECASE
)

# Description markers that turn a line into a credit (income)
CREDIT_MARKERS = [
    "payment thank you", "payment received", "pago recibido", "abono",
    "refund", "reembolso", "devolucion", "deposit", "deposito",
    "payroll", "salary", "direct dep", "interest earned", "cashback",
]

MERCHANT_SUFFIXES = [
    "PE CONSUMO", "PE COMPRA", "PE DEBITO", "USD CONSUMO", "USD COMPRA", "EUR COMPRA",
    "CONSUMO", "COMPRA", "DEBITO", "CREDITO", "PURCHASE", "DEBIT", "CREDIT",
    "POS", "ECOM", "E-COM", "WEB", "APP", "QR", "PE", "US", "USA", "PERU",
]
AGGREGATOR_PREFIX_RE = re.compile(r"^(?:SQ|TST|PAYPAL|PP|SP|DLO|IZI)\s*\*\s*")
DOMAIN_RE = re.compile(r"\b(?:WWW\.)?([A-Z0-9][A-Z0-9-]*)\.(?:COM|NET|ORG|IO|CO|PE|TV)\b")
STORE_NUMBER_RE = re.compile(r"(?:#\s*\d+|\bSTORE\s+\d+|\bSUC\.?\s*\d+|\bTIENDA\s+\d+|\*\S+)")

CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")
REPEATED_PUNCT_RE = re.compile(r"([^\w\s])(?:\s*\1){3,}")


def normalize_extracted_text(text: Optional[str]) -> str:
    """Clean PDF extraction artifacts while keeping line structure."""
    if not text:
        return ""

    cleaned = CONTROL_CHARS_RE.sub("", text)
    cleaned = REPEATED_PUNCT_RE.sub("", cleaned)
    cleaned = "\n".join(line.strip() for line in cleaned.split("\n"))
    cleaned = re.sub(r" {2,}", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def standardize_merchant(description: str) -> str:
    """Reduce a raw description to a brand-like merchant name.

    "NETFLIX.COM" -> "Netflix", "STARBUCKS LIMA PE COMPRA" -> "Starbucks Lima",
    "SQ *BLUE BOTTLE #123" -> "Blue Bottle".
    """
    text = re.sub(r"\s+", " ", description.upper()).strip()
    text = AGGREGATOR_PREFIX_RE.sub("", text)

    domain = DOMAIN_RE.search(text)
    if domain:
        return domain.group(1).replace("-", " ").title()

    text = STORE_NUMBER_RE.sub(" ", text)
    text = re.sub(r"\s+", " ", text).strip()

    changed = True
    while changed and text:
        changed = False
        for suffix in MERCHANT_SUFFIXES:
            if text == suffix:
                break
            if text.endswith(" " + suffix):
                text = text[: -len(suffix) - 1].rstrip()
                changed = True
        # Trailing reference numbers
        stripped = re.sub(r"(?:\s+\d[\d-]*)+$", "", text)
        if stripped != text:
            text = stripped
            changed = True

    text = text.strip(" -*.,")
    return text.title() if text else "Unknown"


def parse_amount(raw: str) -> Tuple[int, bool]:
    """Parse an amount string into (absolute cents, had_negative_sign)."""
    value = raw.strip()
    negative = value.startswith("-") or value.endswith("-") or (
        value.startswith("(") and value.endswith(")")
    )
    digits = re.sub(r"[^\d.]", "", value)
    try:
        cents = int((Decimal(digits) * 100).quantize(Decimal("1")))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {raw!r}")
    return cents, negative


class StatementTextParser:
    """Line-oriented parser for bank and credit card statement text.

    Amount signs on statements are inconsistent between banks, so the
    transaction type comes from credit markers and the stored sign follows
    the type: expenses negative, income positive.
    """

    def __init__(self, default_currency: str = DEFAULT_CURRENCY, today: Optional[date] = None):
        """Initialize parser.

        Args:
            default_currency: Currency used when a line has no ISO code
            today: Reference date for the last-resort year (injected for testing)
        """
        self.default_currency = default_currency
        self.today = today or date.today()

    def parse(self, text: str) -> List[Dict[str, Any]]:
        """Parse statement text.

        Returns:
            List of dicts with date (ISO), description, merchant, amount_cents,
            currency, type and occurrence
        """
        text = normalize_extracted_text(text)
        if not text:
            return []

        period = self._detect_period(text)
        fallback_year = self._detect_fallback_year(text)

        transactions = []
        seen = Counter()
        for line in text.split("\n"):
            txn = self._parse_line(line, period, fallback_year)
            if txn is None:
                continue
            key = (txn["date"], txn["amount_cents"], txn["description"])
            txn["occurrence"] = seen[key]
            seen[key] += 1
            transactions.append(txn)
        return transactions

    def _parse_line(
        self,
        line: str,
        period: Optional[Tuple[date, date]],
        fallback_year: int
    ) -> Optional[Dict[str, Any]]:
        match = LINE_RE.match(line)
        if not match:
            return None

        description = match.group("description").strip()
        lowered = description.lower()
        if SUMMARY_LINE_RE.match(description):
            return None

        txn_date = self._parse_date(match.group("date"), period, fallback_year)
        if txn_date is None:
            return None

        raw_amount = match.group("amount")
        cents, _ = parse_amount(raw_amount)
        if cents == 0:
            return None

        is_credit = (
            match.group("marker") == "CR"
            or raw_amount.strip().startswith("+")
            or any(marker in lowered for marker in CREDIT_MARKERS)
        )
        txn_type = "income" if is_credit else "expense"

        return {
            "date": txn_date.isoformat(),
            "description": description,
            "merchant": standardize_merchant(description),
            "amount_cents": cents if is_credit else -cents,
            "currency": match.group("currency") or self.default_currency,
            "type": txn_type,
        }

    def _detect_period(self, text: str) -> Optional[Tuple[date, date]]:
        """Find the statement period from a header line with two full dates."""
        for line in text.split("\n"):
            if not PERIOD_RE.search(line):
                continue
            found = [self._parse_full_date(d) for d in FULL_DATE_RE.findall(line)]
            found = [d for d in found if d is not None]
            if len(found) >= 2:
                return min(found[0], found[1]), max(found[0], found[1])
        return None

    def _detect_fallback_year(self, text: str) -> int:
        for raw in FULL_DATE_RE.findall(text):
            parsed = self._parse_full_date(raw)
            if parsed:
                return parsed.year
        return self.today.year

    def _parse_full_date(self, raw: str) -> Optional[date]:
        return self._parse_date(raw, None, None)

    def _parse_date(
        self,
        raw: str,
        period: Optional[Tuple[date, date]],
        fallback_year: Optional[int]
    ) -> Optional[date]:
        """Parse a statement date, inferring the year for MM/DD and DD-Mon forms."""
        raw = raw.strip()
        try:
            if re.fullmatch(r"\d{4}-\d{2}-\d{2}", raw):
                return datetime.strptime(raw, "%Y-%m-%d").date()

            named = re.fullmatch(r"(\d{1,2})[- ]([A-Za-z]{3,4})(?:[- ](\d{4}))?", raw)
            if named:
                month = MONTHS.get(named.group(2).lower())
                if month is None:
                    return None
                day = int(named.group(1))
                year = int(named.group(3)) if named.group(3) else None
            else:
                parts = [int(p) for p in raw.split("/")]
                month, day = parts[0], parts[1]
                if month > 12 and day <= 12:
                    month, day = day, month
                year = None
                if len(parts) == 3:
                    year = parts[2] + 2000 if parts[2] < 100 else parts[2]

            if year is not None:
                return date(year, month, day)
            if fallback_year is None:
                return None
            return self._infer_year(month, day, period, fallback_year)
        except ValueError:
            return None

    @staticmethod
    def _infer_year(
        month: int,
        day: int,
        period: Optional[Tuple[date, date]],
        fallback_year: int
    ) -> date:
        if period is None:
            return date(fallback_year, month, day)
        start, end = period
        candidate = date(end.year, month, day)
        # A period crossing New Year puts late-year dates in the start year
        if candidate > end and start.year < end.year:
            candidate = date(start.year, month, day)
        return candidate
