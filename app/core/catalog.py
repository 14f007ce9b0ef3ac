"""
Plan and add-on catalog.

Single source of truth for what each plan and add-on grants.
Prices are in minor currency units (paise). A plan total of None means
unlimited for that entitlement kind.
"""
import enum
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from app.core.exceptions import ConfigurationError


class EntitlementKind(str, enum.Enum):
    OPTIMIZATION = "optimization"
    SCORE_CHECK = "score_check"
    LINKEDIN_MESSAGE = "linkedin_message"
    GUIDED_BUILD = "guided_build"


# Pseudo-plan used for add-on only checkouts; zero base price, not coupon eligible
ADDON_ONLY_PLAN_ID = "addon_only_purchase"

PAISE_PER_RUPEE = 100


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price: int
    validity: timedelta
    entitlements: Dict[EntitlementKind, Optional[int]]
    tag: str = ""

    def total_for(self, kind: EntitlementKind) -> Optional[int]:
        return self.entitlements[kind]


@dataclass(frozen=True)
class AddOn:
    id: str
    name: str
    price: int
    kind: EntitlementKind
    quantity: int


def _rupees(amount: int) -> int:
    return amount * PAISE_PER_RUPEE


_ONE_YEAR = timedelta(days=365)

PLANS: Dict[str, Plan] = {
    plan.id: plan
    for plan in [
        Plan(
            id="career_pro_max",
            name="Career Pro Max",
            price=_rupees(1999),
            validity=_ONE_YEAR,
            entitlements={
                EntitlementKind.OPTIMIZATION: 50,
                EntitlementKind.SCORE_CHECK: 50,
                EntitlementKind.LINKEDIN_MESSAGE: None,
                EntitlementKind.GUIDED_BUILD: 5,
            },
            tag="Ultimate Value",
        ),
        Plan(
            id="career_boost_plus",
            name="Career Boost+",
            price=_rupees(1499),
            validity=_ONE_YEAR,
            entitlements={
                EntitlementKind.OPTIMIZATION: 30,
                EntitlementKind.SCORE_CHECK: 30,
                EntitlementKind.LINKEDIN_MESSAGE: None,
                EntitlementKind.GUIDED_BUILD: 3,
            },
            tag="Best Seller",
        ),
        Plan(
            id="pro_resume_kit",
            name="Pro Resume Kit",
            price=_rupees(999),
            validity=_ONE_YEAR,
            entitlements={
                EntitlementKind.OPTIMIZATION: 20,
                EntitlementKind.SCORE_CHECK: 20,
                EntitlementKind.LINKEDIN_MESSAGE: 100,
                EntitlementKind.GUIDED_BUILD: 2,
            },
            tag="Great Start",
        ),
        Plan(
            id="smart_apply_pack",
            name="Smart Apply Pack",
            price=_rupees(499),
            validity=_ONE_YEAR,
            entitlements={
                EntitlementKind.OPTIMIZATION: 10,
                EntitlementKind.SCORE_CHECK: 10,
                EntitlementKind.LINKEDIN_MESSAGE: 50,
                EntitlementKind.GUIDED_BUILD: 1,
            },
            tag="Quick Boost",
        ),
        Plan(
            id="resume_fix_pack",
            name="Resume Fix Pack",
            price=_rupees(199),
            validity=_ONE_YEAR,
            entitlements={
                EntitlementKind.OPTIMIZATION: 5,
                EntitlementKind.SCORE_CHECK: 2,
                EntitlementKind.LINKEDIN_MESSAGE: 0,
                EntitlementKind.GUIDED_BUILD: 0,
            },
            tag="Essential",
        ),
        Plan(
            id="lite_check",
            name="Lite Check",
            price=_rupees(99),
            validity=timedelta(days=7),
            entitlements={
                EntitlementKind.OPTIMIZATION: 2,
                EntitlementKind.SCORE_CHECK: 2,
                EntitlementKind.LINKEDIN_MESSAGE: 10,
                EntitlementKind.GUIDED_BUILD: 0,
            },
            tag="Trial",
        ),
    ]
}

FREE_TRIAL_PLAN_ID = "lite_check"

ADDONS: Dict[str, AddOn] = {
    addon.id: addon
    for addon in [
        AddOn("jd_optimization_single", "JD-Based Optimization (1x)", _rupees(49), EntitlementKind.OPTIMIZATION, 1),
        AddOn("guided_resume_build_single", "Guided Resume Build (1x)", _rupees(99), EntitlementKind.GUIDED_BUILD, 1),
        AddOn("resume_score_check_single", "Resume Score Check (1x)", _rupees(19), EntitlementKind.SCORE_CHECK, 1),
        AddOn("linkedin_messages_50", "LinkedIn Messages (50x)", _rupees(29), EntitlementKind.LINKEDIN_MESSAGE, 50),
        AddOn("jd_optimization_single_purchase", "JD-Based Optimization (1 Use)", _rupees(49), EntitlementKind.OPTIMIZATION, 1),
        AddOn("guided_resume_build_single_purchase", "Guided Resume Build (1 Use)", _rupees(99), EntitlementKind.GUIDED_BUILD, 1),
        AddOn("resume_score_check_single_purchase", "Resume Score Check (1 Use)", _rupees(19), EntitlementKind.SCORE_CHECK, 1),
        AddOn("linkedin_messages_50_purchase", "LinkedIn Messages (50 Uses)", _rupees(29), EntitlementKind.LINKEDIN_MESSAGE, 50),
    ]
}

# Every plan must define every kind
for _plan in PLANS.values():
    assert set(_plan.entitlements) == set(EntitlementKind), f"Plan {_plan.id} is missing entitlement kinds"


def plan_by_id(plan_id: Optional[str]) -> Optional[Plan]:
    """Look up a plan. Unknown ids return None, never a default plan."""
    if not plan_id:
        return None
    return PLANS.get(plan_id)


def addon_by_id(addon_id: Optional[str]) -> Optional[AddOn]:
    """Look up an add-on. Unknown ids return None."""
    if not addon_id:
        return None
    return ADDONS.get(addon_id)


def require_plan(plan_id: str) -> Plan:
    plan = plan_by_id(plan_id)
    if plan is None:
        raise ConfigurationError(f"Unknown plan id: {plan_id}")
    return plan


def require_addon(addon_id: str) -> AddOn:
    addon = addon_by_id(addon_id)
    if addon is None:
        raise ConfigurationError(f"Unknown add-on id: {addon_id}")
    return addon


def list_plans() -> List[Plan]:
    return list(PLANS.values())


def list_addons() -> List[AddOn]:
    return list(ADDONS.values())


def addons_total(addons: Dict[str, int]) -> int:
    """Total price in paise of an add-on selection {addon_id: units}."""
    return sum(require_addon(addon_id).price * units for addon_id, units in addons.items())
