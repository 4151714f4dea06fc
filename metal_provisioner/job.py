"""Delegated provisioning run as a Job in the management cluster.

The Job runs this same tool in local mode next to Tinkerbell, so the run
survives the operator's terminal disconnecting. The operator side only
(re)creates the Job, follows its logs and copies the resulting kubeconfig
out of the management secret.
"""

import asyncio
import copy
from pathlib import Path

import urllib3
import yaml
from kubernetes.client.rest import ApiException

from metal_provisioner.bootstrap import KUBECONFIG_SECRET_KEY, write_credentials
from metal_provisioner.display import Reporter
from metal_provisioner.exceptions import ConfigurationError, KubernetesError, ResetJobError
from metal_provisioner.kube import ClusterClient
from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.config import RunConfig
from metal_provisioner.polling import Clock, PollCheck, PollOutcome, poll_until

logger = get_logger(__name__)

DELETE_TIMEOUT = 60
DELETE_POLL_INTERVAL = 2
POD_START_TIMEOUT = 300


def feature_args(run_config: RunConfig) -> list[str]:
    """Command-line flags that carry the feature toggles into the Job."""
    args = []
    if not run_config.features.cni:
        args.append("--no-cni")
    if not run_config.features.coredns:
        args.append("--no-coredns")
    return args


def load_job_template(path: Path) -> dict:
    """Read the Job manifest.

    Raises:
        ConfigurationError: If the manifest is missing or not a Job
    """
    if not path.exists():
        raise ConfigurationError(
            f"Job template not found: {path}",
            "Set job_template in the configuration file or run with --mode local",
        )
    try:
        with open(path) as f:
            manifest = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid job template {path}: {e}")

    if not isinstance(manifest, dict) or manifest.get("kind") != "Job":
        raise ConfigurationError(f"{path} does not contain a Job manifest")
    return manifest


def build_job(template: dict, run_config: RunConfig) -> dict:
    """Name the Job and forward the feature flags to its first container."""
    settings = run_config.settings
    job = copy.deepcopy(template)

    metadata = job.setdefault("metadata", {})
    metadata["name"] = settings.job_name
    metadata["namespace"] = settings.namespace
    metadata.setdefault("labels", {})["app"] = settings.job_name

    containers = job.get("spec", {}).get("template", {}).get("spec", {}).get("containers") or []
    if not containers:
        raise ConfigurationError("Job template has no containers")
    container = containers[0]
    container["args"] = list(container.get("args") or []) + feature_args(run_config)
    return job


class ResetJobRunner:
    """Runs the provisioning sequence as a Job and waits for its result."""

    def __init__(
        self,
        cluster: ClusterClient,
        run_config: RunConfig,
        reporter: Reporter,
        clock: Clock | None = None,
    ):
        self.cluster = cluster
        self.run_config = run_config
        self.settings = run_config.settings
        self.reporter = reporter
        self.clock = clock or Clock()

    @property
    def _job_key(self) -> tuple[str, str]:
        return self.settings.job_name, self.settings.namespace

    def _read_job(self):
        try:
            return self.cluster.batch.read_namespaced_job(*self._job_key)
        except ApiException as e:
            if e.status == 404:
                return None
            raise KubernetesError(f"Failed to read job {self.settings.job_name}", str(e.reason))

    async def delete_previous(self) -> None:
        """Delete a previous Job and wait until it is gone."""
        try:
            await asyncio.to_thread(
                self.cluster.batch.delete_namespaced_job,
                *self._job_key,
                propagation_policy="Foreground",
            )
        except ApiException as e:
            if e.status == 404:
                return
            raise KubernetesError(f"Failed to delete job {self.settings.job_name}", str(e.reason))

        self.reporter.info(f"Deleting previous job {self.settings.job_name}...")

        async def gone(elapsed: float) -> PollCheck:
            return PollCheck(done=await asyncio.to_thread(self._read_job) is None)

        result = await poll_until(
            gone, interval=DELETE_POLL_INTERVAL, timeout=DELETE_TIMEOUT, clock=self.clock
        )
        if not result.ok:
            raise ResetJobError(
                f"Previous job {self.settings.job_name} was not deleted in time",
                f"Remove it manually: kubectl delete job {self.settings.job_name} "
                f"-n {self.settings.namespace}",
            )

    async def create(self) -> None:
        job = build_job(load_job_template(self.settings.job_template), self.run_config)
        try:
            await asyncio.to_thread(
                self.cluster.batch.create_namespaced_job, self.settings.namespace, job
            )
        except ApiException as e:
            raise KubernetesError(f"Failed to create job {self.settings.job_name}", str(e.reason))
        self.reporter.success(f"Job {self.settings.job_name} created")

    async def wait_for_pod(self) -> str | None:
        """Return the name of the Job's pod once its container has started."""
        selector = f"job-name={self.settings.job_name}"

        async def started(elapsed: float) -> PollCheck:
            try:
                pods = await asyncio.to_thread(
                    self.cluster.core.list_namespaced_pod,
                    self.settings.namespace,
                    label_selector=selector,
                )
            except ApiException as e:
                logger.debug(f"Listing job pods failed: {e.reason}")
                return PollCheck()
            for pod in pods.items:
                if pod.status.phase in ("Running", "Succeeded", "Failed"):
                    return PollCheck(done=True, value=pod.metadata.name)
            return PollCheck()

        result = await poll_until(
            started,
            interval=DELETE_POLL_INTERVAL,
            timeout=POD_START_TIMEOUT,
            clock=self.clock,
        )
        return result.value if result.ok else None

    def stream_logs(self, pod_name: str) -> None:
        """Print the pod's log until the container exits."""
        try:
            response = self.cluster.core.read_namespaced_pod_log(
                pod_name,
                self.settings.namespace,
                follow=True,
                _preload_content=False,
                _request_timeout=self.run_config.timeouts.job_timeout,
            )
            for line in response.stream():
                self.reporter.console.print(
                    line.decode("utf-8", errors="replace").rstrip("\n"), markup=False
                )
        except ApiException as e:
            self.reporter.warn(f"Log streaming stopped: {e.reason}")
        except (urllib3.exceptions.HTTPError, OSError) as e:
            # The stream may drop or hit its read timeout while the Job still runs
            self.reporter.warn(f"Log streaming stopped: {e}")

    async def wait_for_completion(self) -> None:
        """Wait until the Job succeeds.

        Raises:
            ResetJobError: If the Job failed or did not finish in time
        """
        timeouts = self.run_config.timeouts

        async def finished(elapsed: float) -> PollCheck:
            job = await asyncio.to_thread(self._read_job)
            if job is None or job.status is None:
                return PollCheck()
            if job.status.succeeded:
                return PollCheck(done=True)
            conditions = job.status.conditions or []
            failed = any(c.type == "Failed" and c.status == "True" for c in conditions)
            return PollCheck(failed=failed)

        result = await poll_until(
            finished,
            interval=timeouts.job_poll_interval,
            timeout=timeouts.job_timeout,
            clock=self.clock,
        )
        if result.outcome is PollOutcome.FAILED:
            raise ResetJobError(
                "Reset job failed",
                f"Check logs with: kubectl logs job/{self.settings.job_name} "
                f"-n {self.settings.namespace}",
            )
        if not result.ok:
            raise ResetJobError(
                f"Reset job did not finish within {timeouts.job_timeout} seconds"
            )

    async def fetch_kubeconfig(self) -> Path:
        data = await asyncio.to_thread(
            self.cluster.read_secret_value,
            self.settings.namespace,
            self.settings.kubeconfig_secret,
            KUBECONFIG_SECRET_KEY,
        )
        return write_credentials(self.settings.kubeconfig_path, data)

    async def run(self) -> Path:
        """Recreate the Job, follow it and retrieve the kubeconfig.

        Returns:
            Path of the local kubeconfig written from the management secret
        """
        self.reporter.info("Running reset as Kubernetes Job...")
        await self.delete_previous()
        await self.create()

        self.reporter.info("Job created, following logs...")
        pod_name = await self.wait_for_pod()
        if pod_name is None:
            self.reporter.warn("Job pod did not start, waiting for the job status instead")
        else:
            await asyncio.to_thread(self.stream_logs, pod_name)

        await self.wait_for_completion()
        self.reporter.success("Reset job completed successfully!")

        path = await self.fetch_kubeconfig()
        self.reporter.success(f"Kubeconfig saved to: {path}")
        return path
