"""Data models for provisioner configuration and state."""

from metal_provisioner.models.cluster import ClusterNodeStatus, HardwareRecord
from metal_provisioner.models.config import (
    ClusterFeatures,
    ProvisionerConfig,
    RunConfig,
    RunMode,
    Timeouts,
)
from metal_provisioner.models.node import Node, NodeRole, NodeSpec, NodeStatus
from metal_provisioner.models.workflow import (
    WorkflowPhase,
    WorkflowState,
    WorkflowSummary,
    classify_state,
)

__all__ = [
    "ClusterFeatures",
    "ClusterNodeStatus",
    "HardwareRecord",
    "Node",
    "NodeRole",
    "NodeSpec",
    "NodeStatus",
    "ProvisionerConfig",
    "RunConfig",
    "RunMode",
    "Timeouts",
    "WorkflowPhase",
    "WorkflowState",
    "WorkflowSummary",
    "classify_state",
]
