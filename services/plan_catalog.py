"""
Plan Catalog - maps processor price ids to display names and prices
"""
from typing import Dict, Mapping, Optional

from models.subscription import PlanDescription

UNKNOWN_PLAN_NAME = "Unknown Plan"
UNKNOWN_PLAN_PRICE = 0


class PlanCatalog:
    """Fixed table built once from configuration; lookups never fail."""

    def __init__(self, plans: Optional[Mapping[str, object]] = None):
        self._plans: Dict[str, PlanDescription] = {}
        for plan_id, entry in (plans or {}).items():
            if isinstance(entry, PlanDescription):
                self._plans[plan_id] = entry
            elif isinstance(entry, Mapping):
                self._plans[plan_id] = PlanDescription(**entry)
            else:
                self._plans[plan_id] = PlanDescription(name=entry.name, price=entry.price)

    @classmethod
    def from_settings(cls, settings) -> "PlanCatalog":
        return cls(settings.plan_catalog)

    def describe(self, plan_id: Optional[str]) -> PlanDescription:
        plan = self._plans.get(plan_id) if plan_id else None
        if plan is None:
            return PlanDescription(name=UNKNOWN_PLAN_NAME, price=UNKNOWN_PLAN_PRICE)
        return plan.model_copy()

    def __contains__(self, plan_id) -> bool:
        return plan_id in self._plans

    def __len__(self) -> int:
        return len(self._plans)
