"""
melodia/models/plan.py

Premium plan model.

Plans are a configuration constant: a price in minor units and the length
of the premium window the purchase grants.
"""

from pydantic import BaseModel, ConfigDict, Field


class Plan(BaseModel):
    """
    A purchasable premium plan.

    Examples:
    - monthly (30 days)
    - yearly (365 days)
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    display_name: str
    price_minor_units: int = Field(gt=0)
    entitlement_days: int = Field(gt=0)
