"""cratesweep data models."""

from cratesweep.models.cache_item import CacheItem, ItemKind, OwnerSummary, PackageVersion
from cratesweep.models.outcome import Outcome
from cratesweep.models.removal_plan import PlannedRemoval, RemovalPlan, merge_plans

__all__ = [
    "CacheItem",
    "ItemKind",
    "Outcome",
    "OwnerSummary",
    "PackageVersion",
    "PlannedRemoval",
    "RemovalPlan",
    "merge_plans",
]
