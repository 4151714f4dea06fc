"""Kubernetes API access for the management cluster and the new cluster."""

import asyncio
import base64
from pathlib import Path

import urllib3
import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from metal_provisioner.exceptions import KubernetesError
from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.cluster import ClusterNodeStatus
from metal_provisioner.polling import Clock, PollCheck, PollResult, poll_until

logger = get_logger(__name__)

UNAUTHORIZED_STATUSES = (401, 403)


class ClusterClient:
    """Thin wrapper over the Kubernetes API groups the provisioner uses."""

    def __init__(self, core_api, batch_api=None, custom_api=None, request_timeout: float = 10):
        self.core = core_api
        self.batch = batch_api
        self.custom = custom_api
        self.request_timeout = request_timeout

    @classmethod
    def from_api_client(cls, api_client: client.ApiClient) -> "ClusterClient":
        return cls(
            client.CoreV1Api(api_client),
            client.BatchV1Api(api_client),
            client.CustomObjectsApi(api_client),
        )

    @classmethod
    def from_kubeconfig(cls, path: Path | None = None) -> "ClusterClient":
        """Connect using a kubeconfig file.

        Without a usable path, the in-cluster service account is tried first
        and then the default kubeconfig location.

        Raises:
            KubernetesError: If no configuration can be loaded
        """
        try:
            if path is not None and Path(path).exists():
                api_client = config.new_client_from_config(config_file=str(path))
            else:
                try:
                    config.load_incluster_config()
                except config.ConfigException:
                    config.load_kube_config()
                api_client = client.ApiClient()
        except (config.ConfigException, OSError) as e:
            raise KubernetesError(
                f"Failed to load kubeconfig: {e}",
                "Make sure the management cluster is running and its kubeconfig is readable",
            )
        return cls.from_api_client(api_client)

    @classmethod
    def from_kubeconfig_data(cls, data: bytes) -> "ClusterClient":
        """Connect using kubeconfig contents held in memory.

        Raises:
            KubernetesError: If the contents are not a usable kubeconfig
        """
        try:
            config_dict = yaml.safe_load(data)
            if not isinstance(config_dict, dict):
                raise KubernetesError("Kubeconfig does not contain a mapping")
            api_client = config.new_client_from_config_dict(config_dict)
        except (yaml.YAMLError, config.ConfigException) as e:
            raise KubernetesError(f"Invalid kubeconfig: {e}")
        return cls.from_api_client(api_client)

    def list_nodes(self) -> list[ClusterNodeStatus]:
        try:
            response = self.core.list_node(_request_timeout=self.request_timeout)
        except ApiException as e:
            raise KubernetesError(f"Failed to list nodes: {e.reason}")
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise KubernetesError(f"Cluster API unreachable: {e}")
        return [ClusterNodeStatus.from_kubernetes(node) for node in response.items]

    def is_authorized(self) -> bool:
        """Return True if a live request with these credentials succeeds.

        Rejected credentials and unreachable endpoints both mean "not yet".
        """
        try:
            self.core.list_node(_request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status in UNAUTHORIZED_STATUSES:
                logger.debug(f"Credentials not authorized yet ({e.status})")
            else:
                logger.debug(f"Cluster API returned {e.status}: {e.reason}")
            return False
        except (urllib3.exceptions.HTTPError, OSError) as e:
            logger.debug(f"Cluster API unreachable: {e}")
            return False
        return True

    async def wait_ready(
        self,
        expected: int,
        timeout: float,
        interval: float = 10,
        clock: Clock | None = None,
        on_poll=None,
    ) -> PollResult:
        """Wait until at least ``expected`` nodes report Ready.

        A transient API error counts as a poll with nothing ready.

        Args:
            expected: Number of nodes that must be Ready
            timeout: Hard limit in seconds
            interval: Seconds between polls
            clock: Time source
            on_poll: Optional callback receiving the latest node list
        """

        async def check(elapsed: float) -> PollCheck:
            try:
                nodes = await asyncio.to_thread(self.list_nodes)
            except KubernetesError as e:
                logger.debug(f"Node listing failed: {e.message}")
                nodes = []
            if on_poll is not None:
                on_poll(nodes)
            ready = sum(1 for node in nodes if node.ready)
            return PollCheck(done=ready >= expected, value=nodes)

        return await poll_until(check, interval=interval, timeout=timeout, clock=clock)

    def create_or_update_secret(self, namespace: str, name: str, data: dict[str, bytes]) -> None:
        """Store ``data`` in an Opaque secret, replacing any existing one.

        Raises:
            KubernetesError: If the secret cannot be written
        """
        body = client.V1Secret(
            api_version="v1",
            kind="Secret",
            type="Opaque",
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            data={key: base64.b64encode(value).decode("ascii") for key, value in data.items()},
        )
        try:
            self.core.create_namespaced_secret(namespace, body)
            logger.info(f"Created secret {namespace}/{name}")
        except ApiException as e:
            if e.status != 409:
                raise KubernetesError(f"Failed to create secret {namespace}/{name}", str(e.reason))
            try:
                self.core.replace_namespaced_secret(name, namespace, body)
            except ApiException as replace_error:
                raise KubernetesError(
                    f"Failed to update secret {namespace}/{name}", str(replace_error.reason)
                )
            logger.info(f"Updated secret {namespace}/{name}")

    def read_secret_value(self, namespace: str, name: str, key: str) -> bytes:
        """Return one decoded value from a secret.

        Raises:
            KubernetesError: If the secret or key does not exist
        """
        try:
            secret = self.core.read_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status == 404:
                raise KubernetesError(
                    f"Secret {namespace}/{name} not found",
                    "Run a reset first so the cluster credentials are stored",
                )
            raise KubernetesError(f"Failed to read secret {namespace}/{name}", str(e.reason))

        value = (secret.data or {}).get(key)
        if value is None:
            raise KubernetesError(f"Secret {namespace}/{name} has no '{key}' entry")
        return base64.b64decode(value)
