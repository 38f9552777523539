"""Tests for the finance service orchestration layer."""
import pytest

from personal_cfo.errors import (
    Conflict,
    EncryptedPdf,
    ExternalFailure,
    NotFound,
    PlanLimitReached,
    ValidationFailed,
)
from personal_cfo.ingestion.pdf_extract import PASSWORD_REQUIRED_MESSAGE
from personal_cfo.jobs.worker import JobWorker


def _drain(service):
    return JobWorker(service.store, cache=service.cache).drain()


def _category(service, name, user_id="user_1"):
    return next(c["id"] for c in service.list_categories(user_id) if c["name"] == name)


class TestUsersAndPlans:

    def test_new_user_is_free(self, service):
        me = service.get_me("user_1")
        assert me["user"]["plan"] == "free"
        assert me["entitlements"]["cards"] == 1
        assert me["usage"]["cards"] == {"limit": 1, "used": 0, "remaining": 1}
        # Presets count as used categories
        assert me["usage"]["categories"]["used"] == 6

    def test_unbounded_entitlements_are_null(self, service):
        service.set_plan("user_1", "pro")
        me = service.get_me("user_1")
        assert me["entitlements"]["cards"] is None
        assert me["usage"]["cards"]["remaining"] is None

    def test_unknown_plan(self, service):
        with pytest.raises(ValidationFailed, match="Unknown plan: gold"):
            service.set_plan("user_1", "gold")


class TestCards:

    def test_free_plan_allows_one_card(self, service):
        service.create_card("user_1", "Visa", "4242")
        with pytest.raises(PlanLimitReached) as exc:
            service.create_card("user_1", "Amex")
        assert exc.value.message == "Your free plan allows up to 1 card. Upgrade to add more."
        assert exc.value.status_code == 402

    def test_card_validation(self, service):
        with pytest.raises(ValidationFailed):
            service.create_card("user_1", "   ")
        with pytest.raises(ValidationFailed):
            service.create_card("user_1", "Visa", "42")

    def test_delete_card_of_other_user(self, service):
        card = service.create_card("user_1", "Visa")
        with pytest.raises(NotFound):
            service.delete_card("user_2", card["id"])
        service.delete_card("user_1", card["id"])
        assert service.list_cards("user_1") == []


class TestCategories:

    def test_free_users_cannot_add_categories(self, service):
        with pytest.raises(PlanLimitReached):
            service.create_category("user_1", "Pets")

    def test_plus_users_can(self, service):
        service.set_plan("user_1", "plus")
        category = service.create_category("user_1", "  Pets  ", "#123456")
        assert category["name"] == "Pets"
        assert category["color"] == "#123456"
        assert len(service.list_categories("user_1")) == 7
        assert len(service.list_categories("user_2")) == 6

    def test_name_length(self, service):
        service.set_plan("user_1", "pro")
        with pytest.raises(ValidationFailed):
            service.create_category("user_1", "x" * 51)

    def test_duplicate_name(self, service):
        service.set_plan("user_1", "pro")
        service.create_category("user_1", "Pets")
        with pytest.raises(Conflict):
            service.create_category("user_1", "PETS")


class TestKeywords:

    def test_create_keyword_queues_categorization(self, service):
        food = _category(service, "Food & Dining")
        service.get_user("user_1")
        txn = service.store.add_transaction("user_1", "2025-01-05", "STARBUCKS LIMA", -1250)

        keyword = service.create_keyword("user_1", food, "  Starbucks ")
        assert keyword["keyword"] == "Starbucks"
        assert keyword["status"] == "categorizing"

        _drain(service)
        assert service.store.get_transaction("user_1", txn)["category_id"] == food
        assert service.list_keywords("user_1")[0]["status"] == "completed"

    def test_duplicate_keyword(self, service):
        food = _category(service, "Food & Dining")
        service.create_keyword("user_1", food, "uber")
        with pytest.raises(Conflict, match="Duplicate keyword"):
            service.create_keyword("user_1", food, "UBER")

    def test_keyword_validation(self, service):
        food = _category(service, "Food & Dining")
        with pytest.raises(ValidationFailed):
            service.create_keyword("user_1", food, "")
        with pytest.raises(ValidationFailed):
            service.create_keyword("user_1", food, "k" * 101)
        with pytest.raises(NotFound, match="Category not found"):
            service.create_keyword("user_1", 9999, "uber")

    def test_enqueue_failure_marks_keyword_failed(self, service, monkeypatch):
        food = _category(service, "Food & Dining")

        def broken(*args, **kwargs):
            raise ExternalFailure("Failed to enqueue background job")

        monkeypatch.setattr(service.queue, "send", broken)
        with pytest.raises(ExternalFailure):
            service.create_keyword("user_1", food, "uber")
        row = service.list_keywords("user_1")[0]
        assert row["status"] == "failed"
        assert row["failure_reason"] == "Failed to enqueue categorization job"

    def test_retry_resets_status_before_enqueue(self, service, monkeypatch):
        food = _category(service, "Food & Dining")
        keyword = service.create_keyword("user_1", food, "uber")
        service.store.mark_keyword_failed(keyword["id"], "boom")

        seen_at_send = []
        real_send = service.queue.send

        def recording_send(name, event):
            seen_at_send.append(dict(service.store.get_keyword("user_1", keyword["id"])))
            return real_send(name, event)

        monkeypatch.setattr(service.queue, "send", recording_send)
        assert service.retry_keyword("user_1", keyword["id"]) == {"success": True}

        assert len(seen_at_send) == 1
        assert seen_at_send[0]["status"] == "categorizing"
        assert seen_at_send[0]["failure_reason"] is None

        _drain(service)
        assert service.store.get_keyword("user_1", keyword["id"])["status"] == "completed"

    def test_retry_unknown_keyword(self, service):
        with pytest.raises(NotFound, match="Keyword not found"):
            service.retry_keyword("user_1", 12345)

    def test_reassign(self, service):
        food = _category(service, "Food & Dining")
        shopping = _category(service, "Shopping")
        keyword = service.create_keyword("user_1", food, "amazon")
        txn = service.store.add_transaction("user_1", "2025-01-05", "AMAZON MKTP", -4000, category_id=food)

        row = service.reassign_keyword("user_1", keyword["id"], shopping)
        assert row["category_id"] == shopping
        assert row["status"] == "categorizing"

        _drain(service)
        assert service.store.get_transaction("user_1", txn)["category_id"] == shopping

    def test_reassign_to_same_category(self, service):
        food = _category(service, "Food & Dining")
        keyword = service.create_keyword("user_1", food, "amazon")
        with pytest.raises(ValidationFailed, match="already belongs"):
            service.reassign_keyword("user_1", keyword["id"], food)

    def test_delete_keyword(self, service):
        food = _category(service, "Food & Dining")
        keyword = service.create_keyword("user_1", food, "amazon")
        with pytest.raises(NotFound):
            service.delete_keyword("user_2", keyword["id"])
        service.delete_keyword("user_1", keyword["id"])
        assert service.list_keywords("user_1") == []


class TestExcludedKeywords:

    def test_trims_and_dedupes(self, service):
        rows = service.add_excluded_keywords("user_1", [" refund ", "REFUND", "transfer"])
        assert [r["keyword"] for r in rows] == ["refund", "transfer"]

    def test_existing_keyword_conflicts(self, service):
        service.add_excluded_keywords("user_1", ["refund"])
        with pytest.raises(Conflict):
            service.add_excluded_keywords("user_1", ["Refund", "other"])
        assert len(service.list_excluded_keywords("user_1")) == 1

    def test_empty_list(self, service):
        with pytest.raises(ValidationFailed):
            service.add_excluded_keywords("user_1", [])

    def test_delete(self, service):
        row = service.add_excluded_keywords("user_1", ["refund"])[0]
        with pytest.raises(NotFound, match="Excluded keyword not found"):
            service.delete_excluded_keyword("user_2", row["id"])
        service.delete_excluded_keyword("user_1", row["id"])


class TestBudgets:

    def test_create_and_limit(self, service):
        food = _category(service, "Food & Dining")
        shopping = _category(service, "Shopping")
        health = _category(service, "Health")
        budget = service.create_budget("user_1", food, 30000)
        assert budget["category_name"] == "Food & Dining"
        service.create_budget("user_1", shopping, 10000)
        with pytest.raises(PlanLimitReached):
            service.create_budget("user_1", health, 5000)

    def test_amount_must_be_positive(self, service):
        with pytest.raises(ValidationFailed):
            service.create_budget("user_1", _category(service, "Health"), 0)


class TestStatements:

    @pytest.fixture
    def card(self, service):
        return service.create_card("user_1", "Visa")

    def test_upload_then_process(self, service, card, pdf_bytes, fake_extractor):
        statement = service.upload_statement("user_1", card["id"], "jan.pdf", pdf_bytes, password="pw")
        assert statement["status"] == "processing"
        assert fake_extractor.calls == [{"data": pdf_bytes, "password": "pw"}]

        _drain(service)
        listing = service.list_statements("user_1")
        assert listing["total"] == 1
        assert listing["statements"][0]["status"] == "completed"
        assert listing["statements"][0]["transaction_count"] == 5
        assert service.list_transactions("user_1", card_id=card["id"])["total"] == 5

    def test_rejects_non_pdf(self, service, card):
        with pytest.raises(ValidationFailed, match="File must be a PDF"):
            service.upload_statement("user_1", card["id"], "a.txt", b"hello", content_type="text/plain")
        with pytest.raises(ValidationFailed, match="invalid header"):
            service.upload_statement("user_1", card["id"], "a.pdf", b"hello")
        with pytest.raises(ValidationFailed, match="File is empty"):
            service.upload_statement("user_1", card["id"], "a.pdf", b"")

    def test_card_must_be_owned(self, service, card, pdf_bytes):
        with pytest.raises(NotFound, match="Card not found"):
            service.upload_statement("user_2", card["id"], "jan.pdf", pdf_bytes)

    def test_encrypted_pdf(self, service, card, pdf_bytes, fake_extractor):
        fake_extractor.error = PASSWORD_REQUIRED_MESSAGE
        with pytest.raises(EncryptedPdf) as exc:
            service.upload_statement("user_1", card["id"], "jan.pdf", pdf_bytes)
        assert exc.value.code == "encrypted"
        assert service.list_statements("user_1")["total"] == 0

    def test_extraction_failure(self, service, card, pdf_bytes, fake_extractor):
        fake_extractor.error = "PDF extraction failed: broken xref"
        with pytest.raises(ValidationFailed, match="broken xref"):
            service.upload_statement("user_1", card["id"], "jan.pdf", pdf_bytes)

    def test_monthly_quota(self, service, card, pdf_bytes):
        service.upload_statement("user_1", card["id"], "jan.pdf", pdf_bytes)
        service.upload_statement("user_1", card["id"], "feb.pdf", pdf_bytes)
        with pytest.raises(PlanLimitReached, match="2 statements per month"):
            service.upload_statement("user_1", card["id"], "mar.pdf", pdf_bytes)

    def test_enqueue_failure_fails_statement(self, service, card, pdf_bytes, monkeypatch):
        def broken(*args, **kwargs):
            raise ExternalFailure("Failed to enqueue background job")

        monkeypatch.setattr(service.queue, "send", broken)
        with pytest.raises(ExternalFailure):
            service.upload_statement("user_1", card["id"], "jan.pdf", pdf_bytes)
        row = service.list_statements("user_1")["statements"][0]
        assert row["status"] == "failed"
        assert row["failure_reason"] == "Failed to enqueue processing job"

    def test_retry_failed_statement(self, service, card, pdf_bytes, fake_extractor, sample_statement_text):
        fake_extractor.text = "Cover page only"
        statement = service.upload_statement("user_1", card["id"], "jan.pdf", pdf_bytes)
        _drain(service)
        assert service.store.get_statement(statement["id"])["status"] == "failed"

        fake_extractor.text = sample_statement_text
        retried = service.retry_statement("user_1", statement["id"], pdf_bytes)
        assert retried["status"] == "processing"
        _drain(service)
        row = service.store.get_statement(statement["id"])
        assert row["status"] == "completed"
        assert row["retry_count"] == 1

    def test_only_failed_can_be_retried(self, service, card, pdf_bytes):
        statement = service.upload_statement("user_1", card["id"], "jan.pdf", pdf_bytes)
        with pytest.raises(ValidationFailed, match="Only failed statements"):
            service.retry_statement("user_1", statement["id"], pdf_bytes)

    def test_list_validation(self, service):
        with pytest.raises(ValidationFailed):
            service.list_statements("user_1", status="weird")
        with pytest.raises(ValidationFailed):
            service.list_statements("user_1", page_size=101)
        with pytest.raises(ValidationFailed):
            service.list_statements("user_1", page=0)

    def test_delete_statements(self, service, card, pdf_bytes):
        statement = service.upload_statement("user_1", card["id"], "jan.pdf", pdf_bytes)
        _drain(service)
        assert service.delete_statements("user_2", [statement["id"]]) == 0
        assert service.delete_statements("user_1", [statement["id"]]) == 1
        assert service.list_transactions("user_1")["total"] == 0
        with pytest.raises(ValidationFailed):
            service.delete_statements("user_1", [])


class TestTransactions:

    def test_update_category(self, service):
        food = _category(service, "Food & Dining")
        service.get_user("user_1")
        txn = service.store.add_transaction("user_1", "2025-01-05", "Coffee", -500)

        row = service.update_transaction_category("user_1", txn, food)
        assert row["category_id"] == food
        assert service.update_transaction_category("user_1", txn, None)["category_id"] is None

        with pytest.raises(NotFound, match="Transaction not found"):
            service.update_transaction_category("user_2", txn, food)
        with pytest.raises(NotFound, match="Category not found"):
            service.update_transaction_category("user_1", txn, 9999)

    def test_recategorize_queues_owned_ids_only(self, service):
        transport = _category(service, "Transportation")
        service.create_keyword("user_1", transport, "uber")
        service.get_user("user_2")
        mine = service.store.add_transaction("user_1", "2025-01-05", "UBER TRIP", -900)
        theirs = service.store.add_transaction("user_2", "2025-01-05", "UBER TRIP", -900)

        assert service.recategorize_transactions("user_1", [mine, theirs]) == {"queued": 1}
        _drain(service)
        assert service.store.get_transaction("user_1", mine)["category_id"] == transport
        assert service.store.get_transaction("user_2", theirs)["category_id"] is None

        with pytest.raises(NotFound):
            service.recategorize_transactions("user_1", [theirs])


class TestAnalytics:

    @pytest.fixture
    def seeded(self, service):
        food = _category(service, "Food & Dining")
        service.get_user("user_1")
        add = service.store.add_transaction
        add("user_1", "2025-01-05", "Coffee", -1250, category_id=food)
        add("user_1", "2025-01-20", "Salary", 300000, type="income")
        add("user_1", "2024-12-10", "Coffee", -1000, category_id=food)
        return food

    def test_spend_by_category(self, service, seeded):
        result = service.get_analytics("user_1", "spend-by-category", "2025-01-01", "2025-01-31")
        assert result[0]["category_id"] == seeded
        assert result[0]["amount"] == 12.5
        assert result[0]["delta_pct_prev"] == 25.0

    def test_default_granularity_is_month(self, service, seeded):
        series = service.get_analytics("user_1", "income-vs-expenses", "2025-01-01", "2025-01-31")
        assert series == [{"period": "2025-01-01", "income": 3000.0, "expenses": 12.5, "net": 2987.5}]

    def test_currency_conversion(self, service, seeded):
        result = service.get_analytics(
            "user_1", "spend-by-category", "2025-01-01", "2025-01-31", currency="PEN"
        )
        assert result[0]["amount"] == 46.88

    def test_results_are_cached_until_data_changes(self, service, seeded):
        first = service.get_analytics("user_1", "net-cashflow", "2025-01-01", "2025-01-31")
        txn = service.store.add_transaction("user_1", "2025-01-21", "Lunch", -2000)
        assert service.get_analytics("user_1", "net-cashflow", "2025-01-01", "2025-01-31") == first

        # A write through the service drops the user's cached analytics
        service.update_transaction_category("user_1", txn, seeded)
        fresh = service.get_analytics("user_1", "net-cashflow", "2025-01-01", "2025-01-31")
        assert fresh["expenses"] == 32.5

    @pytest.mark.parametrize("kwargs, error", [
        ({"endpoint": "nope"}, NotFound),
        ({"date_from": "01/01/2025"}, ValidationFailed),
        ({"date_from": "2025-02-01"}, ValidationFailed),
        ({"currency": "GBP"}, ValidationFailed),
        ({"granularity": "year", "endpoint": "spend-over-time"}, ValidationFailed),
        ({"card_id": 999}, NotFound),
    ])
    def test_validation(self, service, kwargs, error):
        params = {
            "endpoint": "net-cashflow",
            "date_from": "2025-01-01",
            "date_to": "2025-01-31",
        }
        params.update(kwargs)
        with pytest.raises(error):
            service.get_analytics("user_1", **params)
