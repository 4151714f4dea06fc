"""Run configuration models.

The configuration file is read once at start-up and turned into frozen
models; every component receives the resulting :class:`RunConfig`
explicitly.
"""

import re
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress, field_validator

from metal_provisioner.models.node import NodeSpec


class RunMode(str, Enum):
    """Where the provisioning run executes."""

    LOCAL = "local"
    JOB = "job"


class Timeouts(BaseModel):
    """Polling intervals, windows and thresholds, in seconds."""

    model_config = ConfigDict(frozen=True)

    probe_timeout: float = Field(2.0, gt=0)

    reset_window: int = Field(60, ge=0)
    reset_poll_interval: int = Field(2, gt=0)
    reset_command_grace: int = Field(3, ge=0)

    boot_settle: int = Field(20, ge=0)
    boot_window: int = Field(180, ge=0)
    boot_poll_interval: int = Field(5, gt=0)
    boot_partial_fraction: float = Field(1 / 3, ge=0, le=1)

    workflow_timeout: int = Field(1800, gt=0)
    workflow_poll_interval: int = Field(10, gt=0)
    workflow_max_stall: int = Field(30, gt=0)

    workflow_delete_settle: int = Field(2, ge=0)
    reboot_pickup_wait: int = Field(10, ge=0)
    reboot_settle: int = Field(15, ge=0)

    config_port_timeout: int = Field(180, ge=0)
    config_port_poll_interval: int = Field(5, gt=0)

    talos_settle: int = Field(30, ge=0)
    talos_api_timeout: int = Field(300, ge=0)
    talos_api_poll_interval: int = Field(10, gt=0)
    talos_command_timeout: int = Field(60, gt=0)

    bootstrap_timeout: int = Field(600, ge=0)
    kubeconfig_poll_interval: int = Field(10, gt=0)

    ready_timeout: int = Field(300, ge=0)
    ready_poll_interval: int = Field(10, gt=0)
    registration_settle: int = Field(30, ge=0)

    job_timeout: int = Field(3600, gt=0)
    job_poll_interval: int = Field(10, gt=0)


class ClusterFeatures(BaseModel):
    """Optional cluster components toggled from the command line."""

    model_config = ConfigDict(frozen=True)

    cni: bool = True
    coredns: bool = True


class ProvisionerConfig(BaseModel):
    """Contents of the provisioner configuration file."""

    model_config = ConfigDict(frozen=True)

    cluster_name: str
    management_ip: IPvAnyAddress
    namespace: str = "tinkerbell"
    talos_version: str = "v1.12.1"
    node_disk: str = "/dev/sda"
    dhcp_gateway: IPvAnyAddress
    dhcp_netmask: str = "255.255.255.0"
    name_servers: list[str] = Field(default_factory=lambda: ["8.8.8.8", "8.8.4.4"])
    controlplane_count: int = 1
    nodes: list[NodeSpec] = Field(min_length=1)

    talos_dir: Path = Path("talos")
    kubeconfig_path: Path = Path("kubeconfig")
    management_kubeconfig: Path | None = Path("/etc/rancher/k3s/k3s.yaml")

    hookos_port: int = 7173
    talos_api_port: int = 50000
    install_template: str = "talos-install"
    reboot_template: str = "reboot-only"
    kubeconfig_secret: str = "sandbox-kubeconfig"
    job_name: str = "cluster-reset"
    job_template: Path = Path("infrastructure/reset-job/job-template.yaml")

    timeouts: Timeouts = Field(default_factory=Timeouts)

    @field_validator("nodes", mode="before")
    @classmethod
    def parse_node_records(cls, v):
        """Accept legacy ``name;mac;ip`` strings alongside mappings."""
        if not isinstance(v, list):
            return v
        return [NodeSpec.split_record(item) if isinstance(item, str) else item for item in v]

    @field_validator("talos_version")
    @classmethod
    def validate_talos_version(cls, v: str) -> str:
        """Validate talos_version follows semantic versioning."""
        if not re.match(r"^v\d+\.\d+\.\d+$", v):
            raise ValueError(f"talos_version '{v}' must look like v1.12.1")
        return v

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, v: str) -> str:
        """Validate cluster name is not empty."""
        if not v:
            raise ValueError("cluster_name cannot be empty")
        return v

    @property
    def hookos_url(self) -> str:
        return f"http://{self.management_ip}:{self.hookos_port}"

    @property
    def talosconfig(self) -> Path:
        return self.talos_dir / "talosconfig"


class RunConfig(BaseModel):
    """Everything a provisioning run needs, fixed at start-up."""

    model_config = ConfigDict(frozen=True)

    settings: ProvisionerConfig
    features: ClusterFeatures = Field(default_factory=ClusterFeatures)
    mode: RunMode = RunMode.LOCAL

    @property
    def timeouts(self) -> Timeouts:
        return self.settings.timeouts
