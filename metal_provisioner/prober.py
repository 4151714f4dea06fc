"""Liveness probing of physical nodes.

A node is classified by two short, timeout-bounded checks: a TCP connect to
the target runtime's API port and, failing that, a single ICMP echo.
"""

import asyncio
import math
from collections.abc import Iterable

from metal_provisioner.exceptions import DependencyError
from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.node import Node, NodeStatus

logger = get_logger(__name__)


async def check_port(address: str, port: int, timeout: float) -> bool:
    """Return True if a TCP connection to ``address:port`` opens within ``timeout``."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(address, port), timeout)
    except (asyncio.TimeoutError, OSError):
        return False

    writer.close()
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout)
    except (asyncio.TimeoutError, OSError):
        pass
    return True


async def ping(address: str, timeout: float) -> bool:
    """Send one ICMP echo request with the system ``ping`` binary.

    Raises:
        DependencyError: If ping is not installed
    """
    wait_seconds = max(1, math.ceil(timeout))
    try:
        process = await asyncio.create_subprocess_exec(
            "ping",
            "-c1",
            f"-W{wait_seconds}",
            address,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except FileNotFoundError:
        raise DependencyError(
            "ping is not installed or not in PATH",
            "Install iputils-ping (Debian/Ubuntu) or iputils (RHEL/Alpine)",
        )

    try:
        returncode = await asyncio.wait_for(process.wait(), wait_seconds + 1)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return False
    return returncode == 0


class LivenessProber:
    """Classifies nodes as offline, online with an unknown OS, or running the target runtime."""

    def __init__(self, runtime_port: int, timeout: float = 2.0):
        """Initialize the prober.

        Args:
            runtime_port: Control port that only the target runtime listens on
            timeout: Upper bound for each individual check, in seconds
        """
        self.runtime_port = runtime_port
        self.timeout = timeout

    async def probe(
        self, node: Node, port: int | None = None, timeout: float | None = None
    ) -> NodeStatus:
        """Classify a single node."""
        port = port or self.runtime_port
        timeout = timeout or self.timeout

        if await check_port(node.address, port, timeout):
            status = NodeStatus.ONLINE_TARGET_RUNTIME
        elif await ping(node.address, timeout):
            status = NodeStatus.ONLINE_UNKNOWN_OS
        else:
            status = NodeStatus.OFFLINE

        logger.debug(f"Probe {node.name} ({node.address}): {status.value}")
        return status

    async def probe_all(self, nodes: Iterable[Node]) -> dict[str, NodeStatus]:
        """Classify every node concurrently, keyed by node name."""
        nodes = list(nodes)
        statuses = await asyncio.gather(*(self.probe(node) for node in nodes))
        return {node.name: status for node, status in zip(nodes, statuses)}

    async def reachable_all(self, nodes: Iterable[Node], timeout: float = 1.0) -> dict[str, bool]:
        """Ping every node concurrently, keyed by node name."""
        nodes = list(nodes)
        results = await asyncio.gather(*(ping(node.address, timeout) for node in nodes))
        return {node.name: result for node, result in zip(nodes, results)}

    async def port_open_all(
        self, nodes: Iterable[Node], port: int | None = None
    ) -> dict[str, bool]:
        """Check the given port on every node concurrently, keyed by node name."""
        nodes = list(nodes)
        port = port or self.runtime_port
        results = await asyncio.gather(
            *(check_port(node.address, port, self.timeout) for node in nodes)
        )
        return {node.name: result for node, result in zip(nodes, results)}
