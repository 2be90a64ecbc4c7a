"""
Plan catalog.

Static mapping from plan id to quota, scale cap and quality tier.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Tuple

from .errors import UnknownPlanError


class Quality(Enum):
    """Enhancement quality tiers, cheapest first."""
    BASIC = "basic"
    PREMIUM = "premium"
    ULTRA = "ultra"


class ImageType(Enum):
    """Kind of picture, used to pick the best model a plan allows."""
    UNIVERSAL = "universal"
    PHOTO = "photo"
    ARTWORK = "artwork"
    LOGO = "logo"


class Priority(Enum):
    """Processing priority granted by a plan."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


ALLOWED_SCALES = (4, 8, 16)

REAL_ESRGAN = "nightmareai/real-esrgan"
WAIFU2X = "cjwbw/waifu2x"
GFPGAN = "tencentarc/gfpgan"
REALESRGAN_ANIME = "xinntao/realesrgan"

# Preferred model per image type; anything not allowed falls back to REAL_ESRGAN
_PREFERRED_MODELS = {
    ImageType.UNIVERSAL: REAL_ESRGAN,
    ImageType.PHOTO: GFPGAN,
    ImageType.ARTWORK: WAIFU2X,
    ImageType.LOGO: REALESRGAN_ANIME,
}


@dataclass(frozen=True)
class Plan:
    """A named tier with its monthly quota and enhancement limits."""
    id: str
    name: str
    images_per_month: int
    max_scale: int
    quality: Quality
    priority: Priority
    price_monthly: Decimal = Decimal("0")
    price_yearly: Decimal = Decimal("0")
    features: Tuple[str, ...] = field(default_factory=tuple)
    models: Tuple[str, ...] = (REAL_ESRGAN,)

    def __post_init__(self):
        """Validate quota and scale cap."""
        if self.images_per_month <= 0:
            raise ValueError("images_per_month must be > 0")
        if self.max_scale not in ALLOWED_SCALES:
            raise ValueError(f"max_scale must be one of {ALLOWED_SCALES}")

    @property
    def is_paid(self) -> bool:
        return self.price_monthly > 0


@dataclass(frozen=True)
class PlanCatalog:
    """Fixed catalog of plans keyed by id."""
    plans: Dict[str, Plan]

    def get(self, plan_id: str) -> Plan:
        """Get a plan by id.

        Args:
            plan_id: Plan identifier

        Returns:
            The matching Plan

        Raises:
            UnknownPlanError: If the id is not in the catalog
        """
        if plan_id not in self.plans:
            raise UnknownPlanError(plan_id)
        return self.plans[plan_id]

    def __contains__(self, plan_id: str) -> bool:
        return plan_id in self.plans

    def paid_plans(self) -> List[Plan]:
        """Plans that can be bought through checkout, cheapest first."""
        return sorted(
            (plan for plan in self.plans.values() if plan.is_paid),
            key=lambda plan: plan.price_monthly,
        )


TRIAL_PLAN_ID = "trial"

PLAN_CATALOG = PlanCatalog({
    "trial": Plan(
        id="trial",
        name="Free Trial",
        images_per_month=3,
        max_scale=4,
        quality=Quality.BASIC,
        priority=Priority.LOW,
        features=("3 images total", "4x upscaling", "Basic AI model"),
        models=(REAL_ESRGAN,),
    ),
    "basic": Plan(
        id="basic",
        name="Basic",
        images_per_month=150,
        max_scale=4,
        quality=Quality.BASIC,
        priority=Priority.LOW,
        price_monthly=Decimal("19"),
        price_yearly=Decimal("190"),
        features=(
            "150 images/month",
            "4x upscaling",
            "Basic quality enhancement",
            "Email support",
            "Standard processing speed",
        ),
        models=(REAL_ESRGAN, WAIFU2X),
    ),
    "pro": Plan(
        id="pro",
        name="Pro",
        images_per_month=400,
        max_scale=8,
        quality=Quality.PREMIUM,
        priority=Priority.MEDIUM,
        price_monthly=Decimal("37"),
        price_yearly=Decimal("370"),
        features=(
            "400 images/month",
            "8x upscaling",
            "Premium quality enhancement",
            "Priority support",
            "Batch processing",
        ),
        models=(REAL_ESRGAN, WAIFU2X, GFPGAN),
    ),
    "premium": Plan(
        id="premium",
        name="Premium",
        images_per_month=1300,
        max_scale=16,
        quality=Quality.ULTRA,
        priority=Priority.HIGH,
        price_monthly=Decimal("90"),
        price_yearly=Decimal("900"),
        features=(
            "1,300 images/month",
            "16x upscaling",
            "Ultra quality enhancement",
            "24/7 priority support",
            "API access & integrations",
        ),
        models=(REAL_ESRGAN, WAIFU2X, GFPGAN, REALESRGAN_ANIME),
    ),
})

# Feature gates by plan id
_FEATURE_PLANS = {
    "batch_processing": {"pro", "premium"},
    "priority_support": {"pro", "premium"},
    "api_access": {"premium"},
}


def can_use_feature(plan_id: str, feature: str) -> bool:
    """Check whether a plan unlocks a gated feature. Unknown features are denied."""
    return plan_id in _FEATURE_PLANS.get(feature, set())


def optimal_model(plan: Plan, image_type: ImageType = ImageType.UNIVERSAL) -> str:
    """Best model name for an image type among the models the plan allows.

    Args:
        plan: Plan whose model list bounds the choice
        image_type: Kind of picture being enhanced

    Returns:
        Model name in "owner/name" form
    """
    preferred = _PREFERRED_MODELS[image_type]
    if preferred in plan.models:
        return preferred
    return REAL_ESRGAN
