"""Power control for physical nodes.

Nodes already running Talos are reset through the Talos API; everything else
is woken with a Wake-on-LAN magic packet. Neither path acknowledges delivery,
so both are followed by reachability polling.
"""

import asyncio
import socket
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from metal_provisioner.display import Reporter, render_dots
from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.config import Timeouts
from metal_provisioner.models.node import Node, NodeStatus
from metal_provisioner.polling import Clock, PollCheck, PollOutcome, poll_until
from metal_provisioner.prober import LivenessProber
from metal_provisioner.talos import TalosClient

logger = get_logger(__name__)


def build_magic_packet(mac: str) -> bytes:
    """Build a Wake-on-LAN magic packet: 6 bytes of 0xFF then the MAC 16 times."""
    mac_bytes = bytes.fromhex(mac.replace(":", "").replace("-", ""))
    if len(mac_bytes) != 6:
        raise ValueError(f"Invalid MAC address: {mac}")
    return b"\xff" * 6 + mac_bytes * 16


def send_magic_packet(mac: str, broadcast: str = "255.255.255.255", port: int = 9) -> None:
    """Broadcast a magic packet for ``mac`` over UDP."""
    packet = build_magic_packet(mac)
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.sendto(packet, (broadcast, port))
    logger.debug(f"Magic packet sent to {mac}")


class BootOutcome(str, Enum):
    """Result of waiting for nodes to come online."""

    ALL_ONLINE = "all-online"
    PARTIAL = "partial"
    TIMED_OUT = "timed-out"


@dataclass
class BootReport:
    """What the power phase did and what it observed."""

    initial: dict[str, NodeStatus] = field(default_factory=dict)
    reset: list[str] = field(default_factory=list)
    woken: list[str] = field(default_factory=list)
    reset_confirmed: bool | None = None
    outcome: BootOutcome = BootOutcome.TIMED_OUT
    online: int = 0


class PowerDriver:
    """Resets or wakes nodes according to their probed status."""

    def __init__(
        self,
        prober: LivenessProber,
        talos: TalosClient,
        timeouts: Timeouts,
        reporter: Reporter,
        clock: Clock | None = None,
        wake: Callable[[str], None] = send_magic_packet,
    ):
        self.prober = prober
        self.talos = talos
        self.timeouts = timeouts
        self.reporter = reporter
        self.clock = clock or Clock()
        self._wake = wake

    async def wake(self, nodes: Sequence[Node]) -> list[str]:
        """Send a wake signal to every node concurrently.

        Delivery is best-effort; failures are logged and not retried.

        Returns:
            Names of nodes the signal was handed to the network for
        """

        async def wake_one(node: Node) -> bool:
            try:
                await asyncio.to_thread(self._wake, node.mac)
            except (OSError, ValueError) as e:
                self.reporter.warn(f"WoL to {node.name} ({node.mac}) failed: {e}")
                return False
            self.reporter.console.print(f"  WoL: {node.name} ({node.mac})")
            return True

        results = await asyncio.gather(*(wake_one(node) for node in nodes))
        return [node.name for node, sent in zip(nodes, results) if sent]

    def fire_resets(self, nodes: Sequence[Node]) -> list[asyncio.Task]:
        """Start a reset-and-reboot for every node without waiting for it."""
        return [
            asyncio.create_task(self.talos.reset(node.address), name=f"reset-{node.name}")
            for node in nodes
        ]

    async def _join_resets(self, tasks: list[asyncio.Task]) -> None:
        """Give reset commands a bounded chance to finish, then cancel the rest."""
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self.timeouts.reset_command_grace)
        for task in pending:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, Exception):
                logger.debug(f"{task.get_name()} ended with {result!r}")

    async def wait_for_reset(self, nodes: Sequence[Node]) -> bool:
        """Poll until every reset node has gone dark.

        Returns:
            True if all nodes went offline within the reset window
        """
        self.reporter.info("Waiting for nodes to reset...")

        with self.reporter.status_line() as line:

            async def all_dark(elapsed: float) -> PollCheck:
                reachable = await self.prober.reachable_all(nodes)
                flags = [reachable[node.name] for node in nodes]
                offline = flags.count(False)
                line.update(f"[{render_dots(flags)}] {offline}/{len(nodes)} rebooting")
                return PollCheck(done=offline == len(nodes))

            result = await poll_until(
                all_dark,
                interval=self.timeouts.reset_poll_interval,
                timeout=self.timeouts.reset_window,
                clock=self.clock,
            )

        if result.ok:
            self.reporter.success("All nodes rebooting")
        else:
            self.reporter.warn(
                "Not every node went offline within the reset window, continuing anyway"
            )
        return result.ok

    async def wait_for_online(self, nodes: Sequence[Node]) -> tuple[BootOutcome, int]:
        """Wait for nodes to answer pings after being woken or reset.

        Succeeds once all nodes are online, or once at least one is online and
        more than the partial fraction of the window has elapsed.
        """
        window = self.timeouts.boot_window
        partial_after = window * self.timeouts.boot_partial_fraction
        last_online = 0

        with self.reporter.status_line() as line:

            async def nodes_online(elapsed: float) -> PollCheck:
                nonlocal last_online
                reachable = await self.prober.reachable_all(nodes)
                flags = [reachable[node.name] for node in nodes]
                last_online = flags.count(True)
                line.update(f"[{render_dots(flags)}] {last_online}/{len(nodes)} online")

                if last_online == len(nodes):
                    return PollCheck(done=True, value=BootOutcome.ALL_ONLINE)
                if last_online > 0 and elapsed > partial_after:
                    return PollCheck(done=True, value=BootOutcome.PARTIAL)
                return PollCheck()

            result = await poll_until(
                nodes_online,
                interval=self.timeouts.boot_poll_interval,
                timeout=window,
                settle=self.timeouts.boot_settle,
                clock=self.clock,
            )

        if result.outcome is PollOutcome.SUCCESS and result.value is BootOutcome.ALL_ONLINE:
            self.reporter.success("All nodes online!")
            return BootOutcome.ALL_ONLINE, last_online
        if result.outcome is PollOutcome.SUCCESS:
            self.reporter.warn(f"{last_online}/{len(nodes)} nodes online, proceeding...")
            return BootOutcome.PARTIAL, last_online

        self.reporter.warn("Timeout waiting for nodes. Make sure they can PXE boot.")
        return BootOutcome.TIMED_OUT, last_online

    async def boot(self, nodes: Sequence[Node]) -> BootReport:
        """Bring every node into the provisioning environment."""
        report = BootReport()

        self.reporter.info("Checking current node state...")
        report.initial = await self.prober.probe_all(nodes)
        self.reporter.node_statuses(nodes, report.initial)

        running = [n for n in nodes if report.initial[n.name] is NodeStatus.ONLINE_TARGET_RUNTIME]
        others = [n for n in nodes if report.initial[n.name] is not NodeStatus.ONLINE_TARGET_RUNTIME]

        if running:
            self.reporter.info(
                f"Found {len(running)} nodes in Talos, triggering reset + reboot..."
            )
            tasks = self.fire_resets(running)
            await self.clock.sleep(self.timeouts.reset_command_grace)
            self.reporter.success(f"Reset commands sent to {len(running)} nodes")
            report.reset = [n.name for n in running]
            try:
                report.reset_confirmed = await self.wait_for_reset(running)
            finally:
                await self._join_resets(tasks)

        if others:
            self.reporter.info(f"Sending Wake-on-LAN to {len(others)} nodes...")
            report.woken = await self.wake(others)

        self.reporter.info("Waiting for nodes to boot...")
        report.outcome, report.online = await self.wait_for_online(nodes)
        return report
