"""Talos node-configuration API access through ``talosctl``."""

import asyncio
import json
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from metal_provisioner.exceptions import TalosError
from metal_provisioner.logging_config import get_logger

logger = get_logger(__name__)

ALREADY_BOOTSTRAPPED_MARKERS = ("alreadyexists", "already exists", "already bootstrapped")


@dataclass(frozen=True)
class CommandResult:
    """Exit status and output of a finished talosctl invocation."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class BootstrapResult(str, Enum):
    """Outcome of a bootstrap request."""

    BOOTSTRAPPED = "bootstrapped"
    ALREADY_BOOTSTRAPPED = "already-bootstrapped"
    FAILED = "failed"


class TalosClient:
    """Runs talosctl against individual nodes."""

    def __init__(
        self,
        talosconfig: Path | None = None,
        binary: str = "talosctl",
        command_timeout: float = 60,
    ):
        """Initialize the client.

        Args:
            talosconfig: talosconfig file used for authenticated calls
            binary: Name or path of the talosctl executable
            command_timeout: Upper bound for a single talosctl call, in seconds
        """
        self.talosconfig = talosconfig
        self.binary = binary
        self.command_timeout = command_timeout

    def _base_args(self, authenticated: bool = True) -> list[str]:
        args = [self.binary]
        if authenticated and self.talosconfig is not None:
            args += ["--talosconfig", str(self.talosconfig)]
        return args

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()
        await process.wait()

    async def run(self, args: list[str], timeout: float | None = None) -> CommandResult:
        """Execute talosctl and collect its output.

        Raises:
            TalosError: If talosctl is missing or does not finish in time
        """
        timeout = timeout or self.command_timeout
        logger.debug(f"Running: {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            logger.error("talosctl binary not found in PATH")
            raise TalosError(
                "talosctl is not installed or not in PATH",
                "Install talosctl from https://github.com/siderolabs/talos/releases "
                "or run the bootstrap installer",
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            logger.error(f"talosctl timed out after {timeout} seconds: {' '.join(args[1:3])}")
            raise TalosError(
                f"talosctl did not finish within {timeout} seconds",
                f"Command: {' '.join(args)}",
            )
        except asyncio.CancelledError:
            # The child must not outlive its task
            await self._kill(process)
            raise

        result = CommandResult(
            returncode=process.returncode,
            stdout=stdout.decode("utf-8", errors="ignore").strip(),
            stderr=stderr.decode("utf-8", errors="ignore").strip(),
        )
        logger.debug(f"talosctl exited with return code {result.returncode}")
        return result

    async def apply_config(
        self, address: str, config_file: Path, patch: dict, insecure: bool = True
    ) -> None:
        """Apply a machine configuration file plus a JSON patch to a node.

        Raises:
            TalosError: If talosctl rejects the configuration
        """
        args = self._base_args(authenticated=not insecure) + ["apply-config"]
        if insecure:
            args.append("--insecure")
        args += [
            "--nodes",
            address,
            "--file",
            str(config_file),
            "--config-patch",
            json.dumps(patch, separators=(",", ":")),
        ]

        result = await self.run(args)
        if not result.ok:
            raise TalosError(
                f"apply-config failed for {address} using {config_file.name}",
                result.stderr or result.stdout,
            )
        logger.info(f"Applied {config_file.name} to {address}")

    async def bootstrap(self, address: str) -> BootstrapResult:
        """Bootstrap etcd on a control-plane node.

        A node that has already been bootstrapped counts as success.
        """
        args = self._base_args() + ["bootstrap", "--endpoints", address, "--nodes", address]
        result = await self.run(args)

        if result.ok:
            return BootstrapResult.BOOTSTRAPPED
        output = f"{result.stderr} {result.stdout}".lower()
        if any(marker in output for marker in ALREADY_BOOTSTRAPPED_MARKERS):
            logger.info(f"{address} was already bootstrapped")
            return BootstrapResult.ALREADY_BOOTSTRAPPED

        logger.warning(f"Bootstrap of {address} failed: {result.stderr}")
        return BootstrapResult.FAILED

    async def fetch_kubeconfig(self, address: str) -> bytes | None:
        """Retrieve the admin kubeconfig from a control-plane node.

        Returns:
            The kubeconfig contents, or None if the node could not provide it yet
        """
        with tempfile.TemporaryDirectory(prefix="metal-prov-") as tmpdir:
            target = Path(tmpdir) / "kubeconfig"
            args = self._base_args() + [
                "kubeconfig",
                str(target),
                "--endpoints",
                address,
                "--nodes",
                address,
                "--force",
            ]
            result = await self.run(args)
            if not result.ok or not target.exists():
                logger.debug(f"kubeconfig not available from {address}: {result.stderr}")
                return None
            return target.read_bytes()

    async def health_check(self, address: str) -> bool:
        """Return True if the node's Talos API answers a version request."""
        args = self._base_args() + ["version", "--endpoints", address, "--nodes", address]
        try:
            result = await self.run(args, timeout=min(self.command_timeout, 15))
        except TalosError as e:
            if "not installed" in e.message:
                raise
            return False
        return result.ok

    async def reset(self, address: str) -> bool:
        """Wipe a node running Talos and reboot it.

        The node goes dark while this runs, so callers normally fire it as a
        task and do not wait for completion.
        """
        args = self._base_args() + [
            "reset",
            "--endpoints",
            address,
            "--nodes",
            address,
            "--graceful=false",
            "--reboot",
        ]
        result = await self.run(args)
        return result.ok
