"""Tinkerbell workflow and hardware resources in the management cluster.

Workflows, Templates and Hardware are custom resources, so every call goes
through the Kubernetes ``CustomObjectsApi``. Writes are keyed by resource name
and safe to repeat.
"""

from kubernetes.client.rest import ApiException

from metal_provisioner.exceptions import KubernetesError
from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.cluster import HardwareRecord
from metal_provisioner.models.config import ProvisionerConfig
from metal_provisioner.models.node import Node
from metal_provisioner.models.workflow import WorkflowState

logger = get_logger(__name__)

GROUP = "tinkerbell.org"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"

REBOOT_TEMPLATE_TASKS = """\
global_timeout: 60
tasks:
  - name: "reboot"
    worker: "{{.device_1}}"
    actions:
      - name: "trigger-reboot"
        image: alpine:3.19
        timeout: 30
        pid: host
        command:
          - sh
          - -c
          - "echo 'Rebooting into Talos...' && sleep 2 && echo b > /proc/sysrq-trigger"
"""


def reboot_template_data(name: str) -> str:
    """Body of the reboot-only template stored under ``name``."""
    return f'version: "0.1"\nname: {name}\n' + REBOOT_TEMPLATE_TASKS


def provision_workflow_name(node: Node) -> str:
    return f"provision-{node.name}"


def reboot_workflow_name(node: Node) -> str:
    return f"reboot-{node.name}"


def hardware_patch(node: Node, settings: ProvisionerConfig, netboot: bool) -> dict:
    """Build the merge patch that toggles PXE eligibility for a node."""
    netboot_spec = {"allowPXE": netboot, "allowWorkflow": netboot}
    if netboot:
        netboot_spec["osie"] = {"baseURL": settings.hookos_url}

    spec = {
        "interfaces": [
            {
                "dhcp": {
                    "arch": "x86_64",
                    "hostname": node.name,
                    "mac": node.mac,
                    "ip": {
                        "address": node.address,
                        "gateway": str(settings.dhcp_gateway),
                        "netmask": settings.dhcp_netmask,
                    },
                    "lease_time": 86400,
                    "name_servers": list(settings.name_servers),
                },
                "netboot": netboot_spec,
            }
        ]
    }
    if netboot:
        # The agent identifies itself by MAC address
        spec["agentID"] = node.mac
    return {"spec": spec}


class TinkerbellClient:
    """Access to Tinkerbell custom resources in one namespace."""

    def __init__(self, custom_api, namespace: str = "tinkerbell"):
        """Initialize the client.

        Args:
            custom_api: A ``kubernetes.client.CustomObjectsApi``
            namespace: Namespace holding the Tinkerbell resources
        """
        self.api = custom_api
        self.namespace = namespace

    def _get(self, plural: str, name: str) -> dict | None:
        try:
            return self.api.get_namespaced_custom_object(
                GROUP, VERSION, self.namespace, plural, name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise KubernetesError(f"Failed to read {plural}/{name}", str(e.reason))

    def _create_or_replace(self, plural: str, body: dict) -> dict:
        """Create a resource, or replace it if its spec differs from the stored one."""
        name = body["metadata"]["name"]
        existing = self._get(plural, name)

        try:
            if existing is None:
                logger.debug(f"Creating {plural}/{name}")
                return self.api.create_namespaced_custom_object(
                    GROUP, VERSION, self.namespace, plural, body
                )

            if existing.get("spec") == body["spec"]:
                logger.debug(f"{plural}/{name} is unchanged")
                return existing

            logger.debug(f"Replacing {plural}/{name}")
            body = {
                **body,
                "metadata": {
                    **body["metadata"],
                    "resourceVersion": existing["metadata"].get("resourceVersion"),
                },
            }
            return self.api.replace_namespaced_custom_object(
                GROUP, VERSION, self.namespace, plural, name, body
            )
        except ApiException as e:
            raise KubernetesError(f"Failed to apply {plural}/{name}", str(e.reason))

    def _delete(self, plural: str, name: str) -> bool:
        try:
            self.api.delete_namespaced_custom_object(GROUP, VERSION, self.namespace, plural, name)
        except ApiException as e:
            if e.status == 404:
                return False
            raise KubernetesError(f"Failed to delete {plural}/{name}", str(e.reason))
        logger.debug(f"Deleted {plural}/{name}")
        return True

    def submit_workflow(
        self, name: str, template_ref: str, hardware_ref: str, hardware_map: dict[str, str]
    ) -> dict:
        """Declare a workflow; resubmitting identical parameters is a no-op."""
        body = {
            "apiVersion": API_VERSION,
            "kind": "Workflow",
            "metadata": {"name": name, "namespace": self.namespace},
            "spec": {
                "templateRef": template_ref,
                "hardwareRef": hardware_ref,
                "hardwareMap": dict(hardware_map),
            },
        }
        return self._create_or_replace("workflows", body)

    def list_workflow_states(self) -> list[WorkflowState]:
        try:
            response = self.api.list_namespaced_custom_object(
                GROUP, VERSION, self.namespace, "workflows"
            )
        except ApiException as e:
            raise KubernetesError("Failed to list workflows", str(e.reason))
        return [WorkflowState.from_resource(item) for item in response.get("items", [])]

    def delete_workflow(self, name: str) -> bool:
        return self._delete("workflows", name)

    def delete_all_workflows(self) -> int:
        """Delete every workflow in the namespace; returns how many were removed."""
        deleted = 0
        for state in self.list_workflow_states():
            if self.delete_workflow(state.name):
                deleted += 1
        return deleted

    def apply_template(self, name: str, data: str) -> dict:
        body = {
            "apiVersion": API_VERSION,
            "kind": "Template",
            "metadata": {"name": name, "namespace": self.namespace},
            "spec": {"data": data},
        }
        return self._create_or_replace("templates", body)

    def delete_template(self, name: str) -> bool:
        return self._delete("templates", name)

    def patch_hardware(self, node: Node, settings: ProvisionerConfig, netboot: bool) -> dict:
        """Allow or forbid PXE booting and workflows for a node."""
        try:
            return self.api.patch_namespaced_custom_object(
                GROUP,
                VERSION,
                self.namespace,
                "hardware",
                node.name,
                hardware_patch(node, settings, netboot),
            )
        except ApiException as e:
            raise KubernetesError(f"Failed to patch hardware/{node.name}", str(e.reason))

    def list_hardware(self) -> list[HardwareRecord]:
        try:
            response = self.api.list_namespaced_custom_object(
                GROUP, VERSION, self.namespace, "hardware"
            )
        except ApiException as e:
            raise KubernetesError("Failed to list hardware", str(e.reason))
        return [HardwareRecord.from_resource(item) for item in response.get("items", [])]
