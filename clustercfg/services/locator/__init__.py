"""
Locator Service - Configuration Coordination

Responsibilities:
- Resolve configuration for joining members by group
- Record deployed artifacts and push them to connected members
- Import and export the configuration tree
"""

from .coordinator import ConfigCoordinator, DeployResult, ImportResult, MemberState
from .resolver import GroupResolver, parse_groups
from .service import LocatorService

__all__ = [
    "ConfigCoordinator",
    "DeployResult",
    "ImportResult",
    "MemberState",
    "GroupResolver",
    "parse_groups",
    "LocatorService",
]
