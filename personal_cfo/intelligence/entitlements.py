"""Plan entitlements and enforcement for cards, statements, categories, alerts and budgets."""
import math
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Any, Union

from personal_cfo.config import PLAN_ENTITLEMENTS, PLUS_USER_CATEGORY_LIMIT


Limit = Union[int, float]  # float only for math.inf

NUMERIC_RESOURCES = ["cards", "statements_per_month", "categories", "alerts", "budgets"]


class Plan(str, Enum):
    FREE = "free"
    PLUS = "plus"
    PRO = "pro"
    ADMIN = "admin"


@dataclass(frozen=True)
class PlanEntitlements:
    cards: Limit
    statements_per_month: Limit
    categories: Limit
    alerts: Limit
    budgets: Limit
    keyword_categorization: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_ENTITLEMENTS = {
    Plan(name): PlanEntitlements(**limits) for name, limits in PLAN_ENTITLEMENTS.items()
}


def get_entitlements(plan: Union[Plan, str]) -> PlanEntitlements:
    """Get entitlements for a plan.

    Raises:
        ValueError: if `plan` is not one of the known plans
    """
    return _ENTITLEMENTS[Plan(plan)]


def _below_limit(limit: Limit, current_count: int) -> bool:
    return math.isinf(limit) or current_count < limit


def can_create_card(plan: Union[Plan, str], current_count: int) -> bool:
    return _below_limit(get_entitlements(plan).cards, current_count)


def can_upload_statement(plan: Union[Plan, str], current_month_count: int) -> bool:
    """Check the statement quota against uploads in the current calendar month."""
    return _below_limit(get_entitlements(plan).statements_per_month, current_month_count)


def can_create_category(plan: Union[Plan, str], current_user_categories_count: int) -> bool:
    """Check if a user may add a category.

    Preset (system) categories do not count toward the limit. Free users only
    get the presets; plus users may add up to 19 of their own on top of them.
    """
    plan = Plan(plan)
    if plan is Plan.FREE:
        return False
    if plan is Plan.PLUS:
        return current_user_categories_count < PLUS_USER_CATEGORY_LIMIT
    return True


def can_create_budget(plan: Union[Plan, str], current_count: int) -> bool:
    return _below_limit(get_entitlements(plan).budgets, current_count)


def can_create_alert(plan: Union[Plan, str], current_count: int) -> bool:
    return _below_limit(get_entitlements(plan).alerts, current_count)


def can_use_keyword_categorization(plan: Union[Plan, str]) -> bool:
    return get_entitlements(plan).keyword_categorization


def get_remaining_count(plan: Union[Plan, str], resource: str, current_count: int) -> Limit:
    """Remaining quota for a resource; math.inf when unbounded.

    Boolean resources (keyword_categorization) have no count and return 0.
    """
    limit = getattr(get_entitlements(plan), resource)
    if isinstance(limit, bool):
        return 0
    if math.isinf(limit):
        return math.inf
    return max(0, limit - current_count)


def usage_summary(plan: Union[Plan, str], counts: Dict[str, int]) -> Dict[str, Dict[str, Any]]:
    """Limit, used and remaining for every numeric resource.

    Unbounded values are reported as None so the result is JSON safe.
    """
    entitlements = get_entitlements(plan)
    summary = {}
    for resource in NUMERIC_RESOURCES:
        used = counts.get(resource, 0)
        limit = getattr(entitlements, resource)
        remaining = get_remaining_count(plan, resource, used)
        summary[resource] = {
            "limit": None if math.isinf(limit) else limit,
            "used": used,
            "remaining": None if math.isinf(remaining) else remaining,
        }
    return summary
