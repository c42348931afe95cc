"""
Copilot plan catalog and included-limit lookup.

The billing API exposes neither the subscribed plan nor its monthly
included premium requests, so limits come from a fixed table.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional


DEFAULT_PRICE_PER_PREMIUM_REQUEST = 0.04


@dataclass(frozen=True)
class CopilotPlan:
    """Monthly included premium requests for a plan."""
    id: str
    name: str
    included_premium_requests: int


@dataclass(frozen=True)
class PlanCatalog:
    """Fixed catalog of known plans keyed by normalized id."""
    plans: Dict[str, CopilotPlan]

    def find(self, plan_id: str) -> Optional[CopilotPlan]:
        """Look up a plan by id, ignoring case, spaces, dashes and ``+`` spelling.

        Args:
            plan_id: Plan identifier or display name

        Returns:
            The matching plan, or None if the id is empty or unknown
        """
        wanted = normalize_plan_id(plan_id)
        if not wanted:
            return None
        for plan in self.plans.values():
            if normalize_plan_id(plan.id) == wanted or normalize_plan_id(plan.name) == wanted:
                return plan
        return None

    def list_plans(self) -> List[CopilotPlan]:
        """All plans sorted by display name."""
        return sorted(self.plans.values(), key=lambda plan: plan.name.lower())


def _catalog(*plans: CopilotPlan) -> PlanCatalog:
    return PlanCatalog({normalize_plan_id(plan.id): plan for plan in plans})


def normalize_plan_id(raw: str) -> str:
    """Normalize a plan id so ``Copilot Pro+`` and ``copilot-pro-plus`` compare equal."""
    value = (raw or "").strip().lower()
    for separator in (" ", "-", "_"):
        value = value.replace(separator, "")
    return value.replace("+", "plus")


PLAN_CATALOG = _catalog(
    CopilotPlan("copilot-free", "Copilot Free", 50),
    CopilotPlan("copilot-pro", "Copilot Pro", 300),
    CopilotPlan("copilot-proplus", "Copilot Pro+", 1500),
    CopilotPlan("copilot-business", "Copilot Business", 300),
    CopilotPlan("copilot-enterprise", "Copilot Enterprise", 1000),
)
