"""Tests for plan entitlements."""
import math

import pytest

from personal_cfo.intelligence.entitlements import (
    Plan,
    can_create_alert,
    can_create_budget,
    can_create_card,
    can_create_category,
    can_upload_statement,
    can_use_keyword_categorization,
    get_entitlements,
    get_remaining_count,
    usage_summary,
)


class TestPlanLimits:
    """Limit checks per plan."""

    def test_free_plan_limits(self):
        """Free plan has one card and two statements a month."""
        limits = get_entitlements("free")
        assert limits.cards == 1
        assert limits.statements_per_month == 2
        assert limits.budgets == 2
        assert limits.keyword_categorization is True

    def test_accepts_enum_or_string(self):
        assert get_entitlements(Plan.PRO) is get_entitlements("pro")

    def test_unknown_plan_raises(self):
        with pytest.raises(ValueError):
            get_entitlements("enterprise")

    def test_card_limit_is_strict(self):
        """A free user with one card cannot add a second."""
        assert can_create_card("free", 0) is True
        assert can_create_card("free", 1) is False
        assert can_create_card("plus", 4) is True
        assert can_create_card("plus", 5) is False

    def test_unbounded_resources(self):
        """math.inf limits never block."""
        assert can_create_card("pro", 10_000) is True
        assert can_upload_statement("plus", 500) is True
        assert can_create_alert("admin", 10_000) is True

    def test_statement_quota(self):
        assert can_upload_statement("free", 1) is True
        assert can_upload_statement("free", 2) is False

    def test_budget_and_alert_limits(self):
        assert can_create_budget("pro", 14) is True
        assert can_create_budget("pro", 15) is False
        assert can_create_alert("free", 2) is False

    def test_keyword_categorization_on_every_plan(self):
        assert all(can_use_keyword_categorization(p) for p in Plan)


class TestCategoryLimits:
    """Presets do not count; only user-created categories do."""

    def test_free_users_only_get_presets(self):
        assert can_create_category("free", 0) is False

    def test_plus_users_get_nineteen_of_their_own(self):
        assert can_create_category("plus", 18) is True
        assert can_create_category("plus", 19) is False

    def test_pro_and_admin_unbounded(self):
        assert can_create_category("pro", 1000) is True
        assert can_create_category("admin", 1000) is True


class TestRemainingAndUsage:

    def test_remaining_count(self):
        assert get_remaining_count("free", "cards", 0) == 1
        assert get_remaining_count("free", "cards", 3) == 0
        assert get_remaining_count("pro", "cards", 3) == math.inf

    def test_remaining_for_boolean_resource_is_zero(self):
        assert get_remaining_count("free", "keyword_categorization", 0) == 0

    def test_usage_summary_is_json_safe(self):
        """Unbounded limits are reported as None."""
        summary = usage_summary("plus", {"cards": 2, "statements_per_month": 7})
        assert summary["cards"] == {"limit": 5, "used": 2, "remaining": 3}
        assert summary["statements_per_month"] == {"limit": None, "used": 7, "remaining": None}
        assert summary["alerts"]["used"] == 0
        assert set(summary) == {"cards", "statements_per_month", "categories", "alerts", "budgets"}

    def test_to_dict_keeps_all_resources(self):
        data = get_entitlements("admin").to_dict()
        assert data["keyword_categorization"] is True
        assert math.isinf(data["budgets"])
