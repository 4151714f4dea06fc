"""Cluster bootstrap, credential retrieval and readiness verification."""

import asyncio
import os
from collections.abc import Callable
from pathlib import Path

from metal_provisioner.display import Reporter
from metal_provisioner.exceptions import BootstrapError, CredentialsError, KubernetesError
from metal_provisioner.kube import ClusterClient
from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.cluster import ClusterNodeStatus
from metal_provisioner.models.config import RunConfig
from metal_provisioner.models.node import Node
from metal_provisioner.polling import Clock, PollCheck, poll_until
from metal_provisioner.registry import NodeRegistry
from metal_provisioner.talos import BootstrapResult, TalosClient

logger = get_logger(__name__)

KUBECONFIG_SECRET_KEY = "kubeconfig"


def write_credentials(path: Path, data: bytes) -> Path:
    """Write the kubeconfig readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, 0o600)
    return path


class ClusterBootstrapper:
    """Turns configured Talos nodes into a verified Kubernetes cluster."""

    def __init__(
        self,
        registry: NodeRegistry,
        run_config: RunConfig,
        talos: TalosClient,
        reporter: Reporter,
        management: ClusterClient | None = None,
        clock: Clock | None = None,
        connect: Callable[[bytes], ClusterClient] = ClusterClient.from_kubeconfig_data,
    ):
        """Initialize the bootstrapper.

        Args:
            registry: Node registry; its first control-plane node is bootstrapped
            run_config: Immutable run configuration
            talos: Talos API client
            reporter: Operator output
            management: Management cluster client used to mirror credentials
            clock: Time source
            connect: Builds a cluster client from kubeconfig contents
        """
        self.registry = registry
        self.run_config = run_config
        self.talos = talos
        self.reporter = reporter
        self.management = management
        self.clock = clock or Clock()
        self.connect = connect

    @property
    def timeouts(self):
        return self.run_config.timeouts

    async def wait_for_api(self, node: Node) -> None:
        """Poll the Talos version endpoint until the node answers.

        Raises:
            BootstrapError: If the node did not answer before the timeout
        """

        async def check(elapsed: float) -> PollCheck:
            return PollCheck(done=await self.talos.health_check(node.address))

        with self.reporter.status_line() as line:
            line.update(f"Waiting for Talos API on {node.name} ({node.address})...")
            result = await poll_until(
                check,
                interval=self.timeouts.talos_api_poll_interval,
                timeout=self.timeouts.talos_api_timeout,
                clock=self.clock,
            )

        if not result.ok:
            raise BootstrapError(
                f"Talos API on {node.name} did not respond within "
                f"{self.timeouts.talos_api_timeout} seconds",
                f"Check the node console, then run: talosctl version --nodes {node.address}",
            )
        self.reporter.success("Talos API ready")

    async def bootstrap(self, node: Node) -> BootstrapResult:
        """Issue the one-shot bootstrap request; failure is reported, not raised."""
        result = await self.talos.bootstrap(node.address)
        if result is BootstrapResult.BOOTSTRAPPED:
            self.reporter.success("Bootstrap initiated")
        elif result is BootstrapResult.ALREADY_BOOTSTRAPPED:
            self.reporter.success("Cluster was already bootstrapped")
        else:
            self.reporter.warn("Bootstrap failed (may already be bootstrapped)")
        return result

    async def retrieve_credentials(self, node: Node) -> tuple[bytes, ClusterClient]:
        """Poll for an admin kubeconfig that actually authorizes requests.

        Raises:
            CredentialsError: If no authorized kubeconfig appeared in time
        """

        async def check(elapsed: float) -> PollCheck:
            data = await self.talos.fetch_kubeconfig(node.address)
            if not data:
                return PollCheck()
            try:
                cluster = self.connect(data)
            except KubernetesError as e:
                logger.debug(f"Kubeconfig not usable yet: {e.message}")
                return PollCheck()
            if not await asyncio.to_thread(cluster.is_authorized):
                return PollCheck()
            return PollCheck(done=True, value=(data, cluster))

        with self.reporter.status_line() as line:
            line.update("Waiting for Kubernetes API...")
            result = await poll_until(
                check,
                interval=self.timeouts.kubeconfig_poll_interval,
                timeout=self.timeouts.bootstrap_timeout,
                clock=self.clock,
            )

        if not result.ok:
            raise CredentialsError(
                f"Kubernetes API did not accept credentials within "
                f"{self.timeouts.bootstrap_timeout} seconds",
                f"Check the control plane with: talosctl health --nodes {node.address}",
            )
        self.reporter.success("Kubernetes API ready")
        return result.value

    async def wait_for_ready(self, cluster: ClusterClient) -> bool | None:
        """Wait for every registry node to report Ready.

        With the CNI disabled nodes stay NotReady, so only a short settle
        sleep for node registration is performed and None is returned.
        """
        if not self.run_config.features.cni:
            self.reporter.info(
                "CNI skipped: nodes will be NotReady until a CNI is installed"
            )
            await self.clock.sleep(self.timeouts.registration_settle)
            return None

        expected = len(self.registry)
        with self.reporter.status_line() as line:
            result = await cluster.wait_ready(
                expected,
                timeout=self.timeouts.ready_timeout,
                interval=self.timeouts.ready_poll_interval,
                clock=self.clock,
                on_poll=lambda nodes: line.update(
                    f"{sum(1 for n in nodes if n.ready)}/{expected} nodes Ready"
                ),
            )

        if result.ok:
            self.reporter.success("All nodes Ready")
        else:
            self.reporter.warn(
                f"Not all nodes became Ready within {self.timeouts.ready_timeout} seconds"
            )
        return result.ok

    async def mirror_credentials(self, data: bytes) -> None:
        """Copy the kubeconfig into the management cluster secret.

        Delegated runs read the kubeconfig back from this secret, so a run
        that cannot store it has not finished.

        Raises:
            CredentialsError: If there is no management cluster or the write fails
        """
        settings = self.run_config.settings
        secret = f"{settings.namespace}/{settings.kubeconfig_secret}"
        restore = (
            f"Store it manually: kubectl -n {settings.namespace} create secret generic "
            f"{settings.kubeconfig_secret} --from-file={KUBECONFIG_SECRET_KEY}="
            f"{settings.kubeconfig_path}"
        )
        if self.management is None:
            raise CredentialsError(f"No management cluster access to store {secret}", restore)
        try:
            await asyncio.to_thread(
                self.management.create_or_update_secret,
                settings.namespace,
                settings.kubeconfig_secret,
                {KUBECONFIG_SECRET_KEY: data},
            )
        except KubernetesError as e:
            raise CredentialsError(
                f"Could not store kubeconfig secret {secret}: {e.message}", restore
            ) from e
        self.reporter.success(f"Kubeconfig stored in secret {secret}")

    def persist_credentials(self, data: bytes) -> Path:
        """Save the kubeconfig locally.

        Raises:
            CredentialsError: If the file cannot be written
        """
        path = self.run_config.settings.kubeconfig_path
        try:
            write_credentials(path, data)
        except OSError as e:
            raise CredentialsError(
                f"Failed to write kubeconfig to {path}: {e}",
                "Check that the directory is writable",
            )
        self.reporter.success(f"Kubeconfig saved to {path}")
        return path

    async def show_nodes(self, cluster: ClusterClient) -> list[ClusterNodeStatus]:
        try:
            nodes = await asyncio.to_thread(cluster.list_nodes)
        except KubernetesError as e:
            self.reporter.warn(f"Could not list cluster nodes: {e.message}")
            return []
        self.reporter.cluster_nodes(nodes)
        return nodes
