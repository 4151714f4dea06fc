"""Application of Talos machine configuration to freshly imaged nodes."""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from metal_provisioner.display import Reporter, render_dots
from metal_provisioner.exceptions import ConfigApplyError, ConfigurationError, TalosError
from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.config import ClusterFeatures, ProvisionerConfig, RunConfig
from metal_provisioner.models.node import Node, NodeRole
from metal_provisioner.polling import Clock, PollCheck, poll_until
from metal_provisioner.prober import LivenessProber
from metal_provisioner.registry import NodeRegistry
from metal_provisioner.talos import TalosClient

logger = get_logger(__name__)

ROLE_BASE_FILES = {
    NodeRole.CONTROL_PLANE: "controlplane.yaml",
    NodeRole.WORKER: "worker.yaml",
}


def build_config_patch(hostname: str, features: ClusterFeatures) -> dict:
    """Per-node patch: hostname plus the optional component toggles.

    Both toggles can be present at once.
    """
    patch: dict = {"machine": {"network": {"hostname": hostname}}}
    cluster: dict = {}
    if not features.cni:
        cluster["network"] = {"cni": {"name": "none"}}
    if not features.coredns:
        cluster["coreDNS"] = {"disabled": True}
    if cluster:
        patch["cluster"] = cluster
    return patch


def role_base_file(talos_dir: Path, role: NodeRole) -> Path:
    return talos_dir / ROLE_BASE_FILES[role]


def missing_talos_files(settings: ProvisionerConfig) -> list[Path]:
    """Role base files and the talosconfig that are absent from ``talos_dir``."""
    required = [role_base_file(settings.talos_dir, role) for role in NodeRole]
    required.append(settings.talosconfig)
    return [path for path in required if not path.is_file()]


def check_talos_files(settings: ProvisionerConfig) -> None:
    """Fail before any node is touched if generated Talos files are missing.

    Raises:
        ConfigurationError: Naming every missing file
    """
    missing = missing_talos_files(settings)
    if missing:
        raise ConfigurationError(
            "Missing Talos files: " + ", ".join(str(path) for path in missing),
            f"Generate them into {settings.talos_dir} with: "
            f"talosctl gen config {settings.cluster_name} https://<endpoint>:6443",
        )


def resolve_config_file(talos_dir: Path, node: Node) -> Path:
    """Prefer a node-specific file, else the base file for the node's role."""
    specific = talos_dir / f"{node.name}.yaml"
    if specific.exists():
        return specific
    return role_base_file(talos_dir, node.role)


@dataclass
class ApplyReport:
    """Which nodes received configuration and which did not."""

    applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    not_ready: list[str] = field(default_factory=list)


class ConfigApplier:
    """Pushes machine configuration to every node whose Talos API is reachable."""

    def __init__(
        self,
        registry: NodeRegistry,
        run_config: RunConfig,
        talos: TalosClient,
        prober: LivenessProber,
        reporter: Reporter,
        clock: Clock | None = None,
    ):
        self.registry = registry
        self.run_config = run_config
        self.talos = talos
        self.prober = prober
        self.reporter = reporter
        self.clock = clock or Clock()

    @property
    def talos_dir(self) -> Path:
        return self.run_config.settings.talos_dir

    async def wait_for_api(self, nodes: Sequence[Node]) -> list[Node]:
        """Wait for the Talos API port on every node.

        Returns whatever subset is ready when the wait ends; a partial result
        is not an error.
        """
        timeouts = self.run_config.timeouts
        ready: dict[str, bool] = {}

        with self.reporter.status_line() as line:

            async def check(elapsed: float) -> PollCheck:
                nonlocal ready
                ready = await self.prober.port_open_all(nodes)
                flags = [ready[node.name] for node in nodes]
                line.update(f"[{render_dots(flags)}] {flags.count(True)}/{len(nodes)} ready")
                return PollCheck(done=all(flags))

            result = await poll_until(
                check,
                interval=timeouts.config_port_poll_interval,
                timeout=timeouts.config_port_timeout,
                clock=self.clock,
            )

        ready_nodes = [node for node in nodes if ready.get(node.name)]
        if result.ok:
            self.reporter.success("All nodes in Talos maintenance mode")
        else:
            self.reporter.warn(f"Only {len(ready_nodes)}/{len(nodes)} nodes ready")
        return ready_nodes

    async def apply(self, node: Node) -> bool:
        """Apply configuration to one node, falling back to the role base file.

        Returns:
            True if some configuration was accepted
        """
        # Role comes from the registry, never from the iteration position
        role = self.registry.get(node.name).role
        patch = build_config_patch(node.name, self.run_config.features)
        preferred = resolve_config_file(self.talos_dir, node)
        base = role_base_file(self.talos_dir, role)

        # A failed base file gets one identical retry; a missing one gets none
        if preferred != base:
            attempts = [preferred, base]
        elif base.is_file():
            attempts = [base, base]
        else:
            attempts = [base]
        for attempt, config_file in enumerate(attempts):
            if attempt:
                logger.info(f"Retrying {node.name} with {config_file.name}")
            try:
                await self.talos.apply_config(node.address, config_file, patch)
            except TalosError as e:
                logger.warning(f"apply-config {config_file.name} on {node.name} failed: {e}")
                continue
            label = "control plane" if role is NodeRole.CONTROL_PLANE else "worker"
            self.reporter.console.print(f"  {node.name} ({label}) ✓")
            return True

        self.reporter.warn(f"Failed to configure {node.name}")
        return False

    async def apply_all(self, nodes: Sequence[Node] | None = None) -> ApplyReport:
        """Wait for the Talos API, then configure every ready node concurrently.

        Raises:
            ConfigApplyError: If no node accepted a configuration
        """
        nodes = list(nodes if nodes is not None else self.registry.nodes)
        report = ApplyReport()

        ready = await self.wait_for_api(nodes)
        ready_names = {node.name for node in ready}
        report.not_ready = [node.name for node in nodes if node.name not in ready_names]

        if not ready:
            raise ConfigApplyError(
                "No node exposed the Talos API",
                f"Waited {self.run_config.timeouts.config_port_timeout}s for port "
                f"{self.run_config.settings.talos_api_port}",
            )

        results = await asyncio.gather(*(self.apply(node) for node in ready))
        for node, ok in zip(ready, results):
            (report.applied if ok else report.failed).append(node.name)

        if not report.applied:
            raise ConfigApplyError(
                "Configuration was rejected by every node",
                f"Check the files in {self.talos_dir}",
            )
        return report
