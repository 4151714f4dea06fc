"""End-to-end provisioning run.

Phases execute strictly in order; per-node work inside a phase is concurrent.
A phase that cannot meet its precondition raises and aborts the run.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from metal_provisioner.bootstrap import ClusterBootstrapper
from metal_provisioner.configure import ApplyReport, ConfigApplier, check_talos_files
from metal_provisioner.display import Reporter
from metal_provisioner.exceptions import CredentialsError, KubernetesError
from metal_provisioner.kube import ClusterClient
from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.config import RunConfig
from metal_provisioner.models.workflow import WorkflowSummary
from metal_provisioner.polling import Clock
from metal_provisioner.power import BootReport, PowerDriver, send_magic_packet
from metal_provisioner.prober import LivenessProber
from metal_provisioner.registry import NodeRegistry
from metal_provisioner.talos import BootstrapResult, TalosClient
from metal_provisioner.tinkerbell import TinkerbellClient
from metal_provisioner.workflows import WorkflowPoller, WorkflowSubmitter

logger = get_logger(__name__)


@dataclass
class RunReport:
    """What a provisioning run did."""

    boot: BootReport | None = None
    workflows: list[str] = field(default_factory=list)
    summary: WorkflowSummary | None = None
    reboot_offline: int = 0
    apply: ApplyReport | None = None
    bootstrap: BootstrapResult | None = None
    kubeconfig_path: Path | None = None
    ready: bool | None = None
    mirrored: bool = False
    warnings: list[str] = field(default_factory=list)


class Provisioner:
    """Runs every provisioning phase against the registry's nodes."""

    def __init__(
        self,
        run_config: RunConfig,
        registry: NodeRegistry,
        talos: TalosClient,
        prober: LivenessProber,
        tinkerbell: TinkerbellClient,
        management: ClusterClient | None,
        reporter: Reporter | None = None,
        clock: Clock | None = None,
        wake: Callable[[str], None] = send_magic_packet,
        connect: Callable[[bytes], ClusterClient] = ClusterClient.from_kubeconfig_data,
    ):
        self.run_config = run_config
        self.settings = run_config.settings
        self.timeouts = run_config.timeouts
        self.registry = registry
        self.talos = talos
        self.prober = prober
        self.tinkerbell = tinkerbell
        self.reporter = reporter or Reporter()
        self.clock = clock or Clock()

        self.power = PowerDriver(prober, talos, self.timeouts, self.reporter, self.clock, wake)
        self.submitter = WorkflowSubmitter(tinkerbell, self.settings, self.reporter)
        self.poller = WorkflowPoller(tinkerbell, self.timeouts, self.reporter, self.clock)
        self.applier = ConfigApplier(
            registry, run_config, talos, prober, self.reporter, self.clock
        )
        self.bootstrapper = ClusterBootstrapper(
            registry, run_config, talos, self.reporter, management, self.clock, connect
        )

    @classmethod
    def from_run_config(cls, run_config: RunConfig, reporter: Reporter | None = None):
        """Wire real clients for the management cluster, Talos and the network.

        Raises:
            ConfigurationError: If the node list is invalid
            KubernetesError: If the management cluster cannot be reached
        """
        settings = run_config.settings
        registry = NodeRegistry.from_config(settings)
        management = ClusterClient.from_kubeconfig(settings.management_kubeconfig)
        return cls(
            run_config,
            registry,
            TalosClient(
                settings.talosconfig,
                command_timeout=run_config.timeouts.talos_command_timeout,
            ),
            LivenessProber(settings.talos_api_port, run_config.timeouts.probe_timeout),
            TinkerbellClient(management.custom, settings.namespace),
            management,
            reporter,
        )

    async def cleanup(self) -> None:
        """Remove stale workflows and make every node eligible for PXE again."""
        try:
            deleted = await asyncio.to_thread(self.tinkerbell.delete_all_workflows)
            logger.info(f"Deleted {deleted} stale workflows")
        except KubernetesError as e:
            self.reporter.warn(f"Could not delete old workflows: {e.message}")

        async def enable(node) -> None:
            try:
                await asyncio.to_thread(self.tinkerbell.patch_hardware, node, self.settings, True)
            except KubernetesError as e:
                self.reporter.warn(f"Could not enable PXE for {node.name}: {e.message}")

        await asyncio.gather(*(enable(node) for node in self.registry))
        self.reporter.success("Cleanup done")

    async def disable_pxe_and_reboot(self) -> int:
        """Reboot imaged nodes into the installed OS with PXE switched off.

        Returns:
            Number of nodes observed going offline

        Raises:
            KubernetesError: If PXE cannot be disabled for a node
        """
        nodes = self.registry.nodes

        await self.submitter.ensure_reboot_template()
        await asyncio.to_thread(self.tinkerbell.delete_all_workflows)
        await self.clock.sleep(self.timeouts.workflow_delete_settle)

        self.reporter.info("Creating reboot workflows...")
        await self.submitter.submit_reboot(nodes)
        await self.clock.sleep(self.timeouts.reboot_pickup_wait)

        self.reporter.info("Disabling PXE boot...")
        await asyncio.gather(
            *(
                asyncio.to_thread(self.tinkerbell.patch_hardware, node, self.settings, False)
                for node in nodes
            )
        )
        await self.clock.sleep(self.timeouts.reboot_settle)

        reachable = await self.prober.reachable_all(nodes)
        offline = sum(1 for up in reachable.values() if not up)
        if offline:
            self.reporter.success(f"{offline} nodes rebooting")
        else:
            self.reporter.warn("No nodes went offline, they may need a manual reboot")

        try:
            await asyncio.to_thread(self.tinkerbell.delete_all_workflows)
            await asyncio.to_thread(self.tinkerbell.delete_template, self.settings.reboot_template)
        except KubernetesError as e:
            self.reporter.warn(f"Could not clean up reboot workflows: {e.message}")
        return offline

    async def run(self) -> RunReport:
        """Execute every phase in order.

        Raises:
            ProvisionerError: Any fatal condition, after diagnostics were printed
        """
        report = RunReport()
        nodes = self.registry.nodes
        settings = self.settings
        features = self.run_config.features
        bootstrap_node = self.registry.bootstrap_node
        check_talos_files(settings)

        self.reporter.banner(f"{settings.cluster_name.upper()} CLUSTER RESET")
        self.reporter.console.print(
            f"  Nodes: {len(nodes)} ({len(self.registry.control_plane)} control plane) | "
            f"Talos: {settings.talos_version} | "
            f"CNI: {'enabled' if features.cni else 'disabled'} | "
            f"CoreDNS: {'enabled' if features.coredns else 'disabled'}"
        )

        self.reporter.step(1, "Cleanup")
        await self.cleanup()

        self.reporter.step(2, "Boot nodes")
        report.boot = await self.power.boot(nodes)

        self.reporter.step(3, "Create workflows")
        report.workflows = await self.submitter.submit_provisioning(nodes)

        self.reporter.step(4, "Wait for workflows")
        report.summary = await self.poller.wait(len(nodes))

        self.reporter.step(5, "Disable PXE and reboot into Talos")
        report.reboot_offline = await self.disable_pxe_and_reboot()

        self.reporter.step(6, "Apply Talos configs")
        report.apply = await self.applier.apply_all(nodes)

        self.reporter.step(7, "Wait for Talos")
        self.reporter.info(f"Waiting for Talos to install and boot ({bootstrap_node.name})...")
        await self.clock.sleep(self.timeouts.talos_settle)
        await self.bootstrapper.wait_for_api(bootstrap_node)

        self.reporter.step(8, "Bootstrap cluster")
        report.bootstrap = await self.bootstrapper.bootstrap(bootstrap_node)
        await self.bootstrapper.wait_for_api(bootstrap_node)

        self.reporter.step(9, "Get kubeconfig")
        data, cluster = await self.bootstrapper.retrieve_credentials(bootstrap_node)
        report.kubeconfig_path = self.bootstrapper.persist_credentials(data)

        self.reporter.step(10, "Verify cluster")
        report.ready = await self.bootstrapper.wait_for_ready(cluster)
        await self.bootstrapper.show_nodes(cluster)
        await self.bootstrapper.mirror_credentials(data)
        report.mirrored = True

        if not settings.kubeconfig_path.exists():
            raise CredentialsError(f"Kubeconfig not found at {settings.kubeconfig_path}")

        report.warnings = list(self.reporter.warnings)
        self.reporter.banner("CLUSTER READY")
        self.reporter.console.print(f"  export KUBECONFIG={settings.kubeconfig_path.absolute()}")
        if not features.cni:
            self.reporter.console.print("  Next: install a CNI (e.g. Cilium)")
        if report.warnings:
            self.reporter.console.print(
                f"  [yellow]{len(report.warnings)} warning(s) during the run[/yellow]"
            )
        return report
