"""Data models for the provisioned Kubernetes cluster."""

from pydantic import BaseModel


class ClusterNodeStatus(BaseModel):
    """Kubernetes node status information."""

    name: str
    role: str
    ready: bool
    internal_ip: str = "N/A"
    kubelet_version: str = "unknown"

    @property
    def status(self) -> str:
        return "Ready" if self.ready else "NotReady"

    @classmethod
    def from_kubernetes(cls, node) -> "ClusterNodeStatus":
        """Parse a ``V1Node`` returned by the Kubernetes API."""
        ready = False
        for condition in node.status.conditions or []:
            if condition.type == "Ready":
                ready = condition.status == "True"

        role = "worker"
        labels = node.metadata.labels or {}
        if "node-role.kubernetes.io/control-plane" in labels:
            role = "control-plane"
        elif "node-role.kubernetes.io/master" in labels:
            role = "control-plane"

        addresses = node.status.addresses or []
        internal_ip = next((a.address for a in addresses if a.type == "InternalIP"), "N/A")

        kubelet_version = "unknown"
        if node.status.node_info is not None:
            kubelet_version = node.status.node_info.kubelet_version

        return cls(
            name=node.metadata.name,
            role=role,
            ready=ready,
            internal_ip=internal_ip,
            kubelet_version=kubelet_version,
        )


class HardwareRecord(BaseModel):
    """A Hardware declaration as registered with the workflow engine."""

    name: str
    mac: str = ""
    ip: str = ""
    allow_pxe: bool = False
    allow_workflow: bool = False

    @classmethod
    def from_resource(cls, resource: dict) -> "HardwareRecord":
        interfaces = resource.get("spec", {}).get("interfaces") or [{}]
        first = interfaces[0]
        dhcp = first.get("dhcp") or {}
        netboot = first.get("netboot") or {}
        return cls(
            name=resource.get("metadata", {}).get("name", "unknown"),
            mac=dhcp.get("mac", ""),
            ip=(dhcp.get("ip") or {}).get("address", ""),
            allow_pxe=bool(netboot.get("allowPXE", False)),
            allow_workflow=bool(netboot.get("allowWorkflow", False)),
        )
