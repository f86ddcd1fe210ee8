"""SG Cleanup - find security groups nothing uses. Reusable for CLI and FastAPI."""

from sgcleanup.collector import ConcurrentLoader, ExistingGroups, References
from sgcleanup.groups import ExistingGroup, GroupReference, SecurityGroups
from sgcleanup.regions import REGIONS, get_regions
from sgcleanup.scanner import (
    GroupReport,
    RegionScanResult,
    delete_unused_groups,
    scan_all_regions,
)

__all__ = [
    "REGIONS",
    "get_regions",
    "ConcurrentLoader",
    "References",
    "ExistingGroups",
    "ExistingGroup",
    "GroupReference",
    "SecurityGroups",
    "GroupReport",
    "RegionScanResult",
    "scan_all_regions",
    "delete_unused_groups",
]
