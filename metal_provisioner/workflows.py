"""Submission and progress tracking of provisioning workflows."""

import asyncio
from collections.abc import Sequence

from metal_provisioner.display import Reporter
from metal_provisioner.exceptions import (
    KubernetesError,
    WorkflowFailedError,
    WorkflowStalledError,
    WorkflowTimeoutError,
)
from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.config import ProvisionerConfig, Timeouts
from metal_provisioner.models.node import Node
from metal_provisioner.models.workflow import WorkflowSummary
from metal_provisioner.polling import Clock, PollCheck, PollOutcome, StallDetector, poll_until
from metal_provisioner.tinkerbell import (
    TinkerbellClient,
    provision_workflow_name,
    reboot_template_data,
    reboot_workflow_name,
)

logger = get_logger(__name__)


def install_hardware_map(node: Node, settings: ProvisionerConfig) -> dict[str, str]:
    """Template parameters for the imaging workflow of one node."""
    return {
        "device_1": node.mac,
        "tinkerbell_ip": str(settings.management_ip),
        "disk_device": settings.node_disk,
        "talos_version": settings.talos_version,
    }


class WorkflowSubmitter:
    """Declares imaging and reboot workflows for registry nodes."""

    def __init__(self, client: TinkerbellClient, settings: ProvisionerConfig, reporter: Reporter):
        self.client = client
        self.settings = settings
        self.reporter = reporter

    async def submit_provisioning(self, nodes: Sequence[Node]) -> list[str]:
        """Submit one imaging workflow per node.

        Raises:
            KubernetesError: If any workflow cannot be declared
        """

        async def submit(node: Node) -> str:
            name = provision_workflow_name(node)
            await asyncio.to_thread(
                self.client.submit_workflow,
                name,
                self.settings.install_template,
                node.name,
                install_hardware_map(node, self.settings),
            )
            self.reporter.console.print(f"  Created: {name}")
            return name

        return list(await asyncio.gather(*(submit(node) for node in nodes)))

    async def ensure_reboot_template(self) -> None:
        name = self.settings.reboot_template
        await asyncio.to_thread(self.client.apply_template, name, reboot_template_data(name))

    async def submit_reboot(self, nodes: Sequence[Node]) -> list[str]:
        """Submit reboot-only workflows.

        Best-effort: a node whose workflow cannot be declared is skipped with a
        warning, and the workflows are never polled for completion.
        """

        async def submit(node: Node) -> str | None:
            name = reboot_workflow_name(node)
            try:
                await asyncio.to_thread(
                    self.client.submit_workflow,
                    name,
                    self.settings.reboot_template,
                    node.name,
                    {"device_1": node.mac},
                )
            except KubernetesError as e:
                self.reporter.warn(f"Could not create {name}: {e.message}")
                return None
            return name

        results = await asyncio.gather(*(submit(node) for node in nodes))
        return [name for name in results if name]


class WorkflowPoller:
    """Waits until every expected workflow has completed."""

    def __init__(
        self,
        client: TinkerbellClient,
        timeouts: Timeouts,
        reporter: Reporter,
        clock: Clock | None = None,
    ):
        self.client = client
        self.timeouts = timeouts
        self.reporter = reporter
        self.clock = clock or Clock()

    async def summary(self, expected: int) -> WorkflowSummary:
        states = await asyncio.to_thread(self.client.list_workflow_states)
        return WorkflowSummary(states=states, expected=expected)

    async def _dump(self) -> None:
        try:
            states = await asyncio.to_thread(self.client.list_workflow_states)
        except KubernetesError as e:
            self.reporter.warn(f"Could not list workflows for diagnosis: {e.message}")
            return
        self.reporter.dump_workflows(states, self.client.namespace)

    async def wait(self, expected: int) -> WorkflowSummary:
        """Poll workflow state until ``expected`` workflows have completed.

        Returns:
            The final summary

        Raises:
            WorkflowFailedError: As soon as any workflow reports failure
            WorkflowStalledError: If progress did not change for too many polls
            WorkflowTimeoutError: If the hard timeout elapsed first
        """
        stall = StallDetector(self.timeouts.workflow_max_stall)

        with self.reporter.status_line() as line:

            async def check(elapsed: float) -> PollCheck:
                try:
                    summary = await self.summary(expected)
                except KubernetesError as e:
                    # A transient API error counts as a poll without progress
                    logger.warning(f"Listing workflows failed: {e.message}")
                    return PollCheck(progress=None)
                line.update(summary.status_line())
                return PollCheck(
                    done=summary.is_complete,
                    failed=summary.failed > 0,
                    progress=summary.progress,
                    value=summary,
                )

            result = await poll_until(
                check,
                interval=self.timeouts.workflow_poll_interval,
                timeout=self.timeouts.workflow_timeout,
                stall_detector=stall,
                clock=self.clock,
            )

        if result.outcome is PollOutcome.SUCCESS:
            self.reporter.success("All workflows completed!")
            return result.value

        self.reporter.error(f"Workflows did not complete ({result.outcome.value})")
        await self._dump()

        if result.outcome is PollOutcome.FAILED:
            raise WorkflowFailedError(
                "Workflow failed",
                f"{result.value.failed} workflow(s) reported failure",
            )
        if result.outcome is PollOutcome.STALLED:
            raise WorkflowStalledError(
                f"Workflows stalled: no progress for {stall.count} polls",
                "Check the Tinkerbell worker logs on the affected nodes",
            )
        raise WorkflowTimeoutError(
            f"Workflows did not complete within {self.timeouts.workflow_timeout} seconds"
        )
