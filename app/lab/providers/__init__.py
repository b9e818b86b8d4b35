from app.lab.providers.comparison import (
    ComparisonTarget,
    ProviderComparison,
    ProviderComparisonResult,
    ScaleComparison,
    ScalePricing,
    TCOCalculation,
)

__all__ = [
    "ComparisonTarget",
    "ProviderComparison",
    "ProviderComparisonResult",
    "ScaleComparison",
    "ScalePricing",
    "TCOCalculation",
]
