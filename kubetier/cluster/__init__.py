"""
Cluster Module

Live-state side of kubetier:
- ClusterDescriptor / discover: what a cluster looks like right now
- UpdatePlan / plan: what an update would change, and whether it may
- ClusterManager: the deploy/update/status/list/delete commands
"""

from .descriptor import ClusterDescriptor, discover
from .manager import ClusterManager, ClusterSummary, ConfigLayers, inherit_live_values
from .planner import NOOP, PATCH, REJECT, PlanEntry, ResourcePatch, UpdatePlan, plan

__all__ = [
    "ClusterDescriptor",
    "discover",
    "ClusterManager",
    "ClusterSummary",
    "ConfigLayers",
    "inherit_live_values",
    "NOOP",
    "PATCH",
    "REJECT",
    "PlanEntry",
    "ResourcePatch",
    "UpdatePlan",
    "plan",
]
