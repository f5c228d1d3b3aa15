"""
melodia/features/plans/service.py

Plan catalog.

The catalog is a value built from a mapping and passed into the billing
code; DEFAULT_CATALOG is only the fallback when a caller does not supply one.
"""

from typing import Dict, List, Mapping, Optional, Union

from melodia.models.plan import Plan


# Default plan configurations
DEFAULT_PLANS = {
    "monthly": {
        "display_name": "Premium Monthly",
        "price_minor_units": 54990,
        "entitlement_days": 30,
    },
    "yearly": {
        "display_name": "Premium Yearly",
        "price_minor_units": 549900,
        "entitlement_days": 365,
    },
}


class PlanCatalog:
    """Immutable lookup of plan_id -> Plan, in configuration order."""

    def __init__(self, plans: Mapping[str, Plan]):
        self._plans: Dict[str, Plan] = dict(plans)

    @classmethod
    def from_config(cls, config: Mapping[str, Mapping[str, Union[str, int]]]) -> "PlanCatalog":
        return cls({
            plan_id: Plan(plan_id=plan_id, **fields)
            for plan_id, fields in config.items()
        })

    def get(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        return self._plans.get(plan_id)

    def list(self) -> List[Plan]:
        return list(self._plans.values())


DEFAULT_CATALOG = PlanCatalog.from_config(DEFAULT_PLANS)


def resolve_catalog(catalog: Optional[PlanCatalog] = None) -> PlanCatalog:
    return catalog if catalog is not None else DEFAULT_CATALOG


def get_plan(plan_id: Optional[str], catalog: Optional[PlanCatalog] = None) -> Optional[Plan]:
    """Pure lookup; None when the plan is unknown."""
    return resolve_catalog(catalog).get(plan_id)


def list_plans(catalog: Optional[PlanCatalog] = None) -> List[Plan]:
    return resolve_catalog(catalog).list()
