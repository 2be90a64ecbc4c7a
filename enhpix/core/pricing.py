"""
Per-call provider cost estimates.

Costs are fixed per quality tier, in EUR.
"""

from decimal import Decimal
from typing import Dict, Union

from .plans import Quality


# Fixed cost table - one provider call per image
MODEL_COSTS: Dict[Quality, Decimal] = {
    Quality.BASIC: Decimal("0.003"),    # Real-ESRGAN
    Quality.PREMIUM: Decimal("0.004"),  # Waifu2x
    Quality.ULTRA: Decimal("0.006"),    # GFPGAN
}


def estimate_cost(quality: Quality, image_count: int = 1) -> Decimal:
    """Estimate provider cost for processing images at a quality tier.

    Args:
        quality: Quality tier used for the call
        image_count: Number of images processed

    Returns:
        Estimated cost in EUR

    Raises:
        ValueError: If image_count is negative
    """
    if image_count < 0:
        raise ValueError("image_count must be >= 0")
    return MODEL_COSTS[quality] * image_count


def format_cost(amount: Union[Decimal, float]) -> str:
    """Format a cost for display, e.g. ``€0.003``."""
    return f"€{float(amount):.3f}"
