"""Data models for physical nodes and their probed state."""

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, IPvAnyAddress, field_validator

# Every separator must match the first one
MAC_PATTERN = re.compile(
    r"^[0-9a-f]{2}([:-])[0-9a-f]{2}(\1[0-9a-f]{2}){4}$", re.IGNORECASE | re.ASCII
)
HOSTNAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", re.IGNORECASE | re.ASCII)


class NodeRole(str, Enum):
    """Cluster role of a node."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


class NodeStatus(str, Enum):
    """Reachability of a node as seen by a single probe cycle."""

    OFFLINE = "offline"
    ONLINE_UNKNOWN_OS = "online-unknown-os"
    ONLINE_TARGET_RUNTIME = "online-target-runtime"

    @property
    def is_online(self) -> bool:
        return self is not NodeStatus.OFFLINE


class NodeSpec(BaseModel):
    """A declared node: name, hardware address and network address."""

    model_config = ConfigDict(frozen=True)

    name: str
    mac: str
    ip: IPvAnyAddress

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the name is usable as a hostname and resource name."""
        if not v:
            raise ValueError("name cannot be empty")
        if len(v) > 63:
            raise ValueError("name cannot exceed 63 characters")
        if not HOSTNAME_PATTERN.match(v):
            raise ValueError(
                f"name '{v}' must contain only alphanumeric characters and hyphens, "
                "and cannot start or end with a hyphen"
            )
        return v

    @field_validator("mac")
    @classmethod
    def validate_mac(cls, v: str) -> str:
        """Validate and normalize the MAC address to lower-case colon form."""
        v = v.strip()
        if not MAC_PATTERN.match(v):
            raise ValueError(f"mac '{v}' is not a valid hardware address (e.g. aa:bb:cc:dd:ee:ff)")
        return v.lower().replace("-", ":")

    @staticmethod
    def split_record(record: str) -> dict[str, str]:
        """Split a ``name;mac;ip`` record into its fields."""
        parts = [p.strip() for p in record.split(";")]
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"node record '{record}' must have the form 'name;mac;ip'")
        name, mac, ip = parts
        return {"name": name, "mac": mac, "ip": ip}

    @classmethod
    def from_record(cls, record: str) -> "NodeSpec":
        """Parse a ``name;mac;ip`` record."""
        return cls(**cls.split_record(record))


class Node(BaseModel):
    """A registered node with its role resolved."""

    model_config = ConfigDict(frozen=True)

    name: str
    mac: str
    ip: IPvAnyAddress
    role: NodeRole

    @property
    def address(self) -> str:
        return str(self.ip)

    @property
    def is_control_plane(self) -> bool:
        return self.role is NodeRole.CONTROL_PLANE

    @classmethod
    def from_spec(cls, spec: NodeSpec, role: NodeRole) -> "Node":
        return cls(name=spec.name, mac=spec.mac, ip=spec.ip, role=role)

    def __str__(self) -> str:
        return f"{self.name} ({self.ip}, {self.role.value})"
