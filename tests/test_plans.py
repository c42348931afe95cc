"""
Unit tests for the Copilot plan catalog.
"""

import pytest

from usage_guard.core.plans import PLAN_CATALOG, normalize_plan_id


class TestPlanCatalog:
    """Test plan lookup and normalization."""

    @pytest.mark.parametrize("plan_id,included", [
        ("copilot-free", 50),
        ("copilot-pro", 300),
        ("copilot-proplus", 1500),
        ("copilot-business", 300),
        ("copilot-enterprise", 1000),
    ])
    def test_included_limits(self, plan_id, included):
        assert PLAN_CATALOG.find(plan_id).included_premium_requests == included

    @pytest.mark.parametrize("spelling", [
        "Copilot Pro+",
        "copilot-pro-plus",
        "COPILOT_PROPLUS",
        "  copilot pro plus ",
    ])
    def test_spellings_resolve_to_same_plan(self, spelling):
        assert PLAN_CATALOG.find(spelling).id == "copilot-proplus"

    def test_unknown_plan(self):
        assert PLAN_CATALOG.find("copilot-ultra") is None

    def test_empty_plan_id(self):
        assert PLAN_CATALOG.find("") is None
        assert PLAN_CATALOG.find("   ") is None

    def test_list_plans_sorted_by_name(self):
        names = [plan.name for plan in PLAN_CATALOG.list_plans()]

        assert names == [
            "Copilot Business",
            "Copilot Enterprise",
            "Copilot Free",
            "Copilot Pro",
            "Copilot Pro+",
        ]

    def test_normalize_plan_id(self):
        assert normalize_plan_id("Copilot Pro+") == "copilotproplus"
        assert normalize_plan_id(None) == ""
