"""Pytest configuration and shared fixtures."""

import copy
import io
import os
from types import SimpleNamespace

import pytest
from hypothesis import Verbosity, settings
from kubernetes import client
from kubernetes.client.rest import ApiException
from rich.console import Console

from metal_provisioner.display import Reporter
from metal_provisioner.exceptions import TalosError
from metal_provisioner.kube import ClusterClient
from metal_provisioner.models.config import ProvisionerConfig, RunConfig
from metal_provisioner.models.node import NodeStatus
from metal_provisioner.registry import NodeRegistry
from metal_provisioner.talos import BootstrapResult
from metal_provisioner.tinkerbell import TinkerbellClient

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


class Script:
    """Returns scripted values in order, repeating the last one."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = 0

    def next(self):
        step = self.steps[min(self.calls, len(self.steps) - 1)]
        self.calls += 1
        return step


class FakeClock:
    """Clock whose sleeps advance time instantly."""

    def __init__(self):
        self.time = 0.0
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.time

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.time += seconds


class FakeProber:
    """Prober with a fixed initial classification and scripted reachability."""

    def __init__(self, initial=None, reachable=None, port_open=None):
        self.initial = initial or {}
        self.reachable = reachable or Script(True)
        self.port_open = port_open or Script(True)

    @staticmethod
    def _expand(value, nodes):
        if isinstance(value, dict):
            return {node.name: value.get(node.name, False) for node in nodes}
        return {node.name: value for node in nodes}

    async def probe_all(self, nodes):
        return {node.name: self.initial.get(node.name, NodeStatus.OFFLINE) for node in nodes}

    async def reachable_all(self, nodes, timeout=1.0):
        return self._expand(self.reachable.next(), list(nodes))

    async def port_open_all(self, nodes, port=None):
        return self._expand(self.port_open.next(), list(nodes))


class FakeTalos:
    """Records talosctl operations instead of running them."""

    def __init__(self):
        self.applied: list[tuple[str, str, dict]] = []
        self.apply_failures: set = set()
        self.bootstrap_result = BootstrapResult.BOOTSTRAPPED
        self.bootstraps: list[str] = []
        self.health = Script(True)
        self.kubeconfigs = Script(b"apiVersion: v1\nkind: Config\n")
        self.resets: list[str] = []

    async def apply_config(self, address, config_file, patch, insecure=True):
        self.applied.append((address, config_file.name, patch))
        if config_file.name in self.apply_failures or (address, config_file.name) in self.apply_failures:
            raise TalosError(f"apply-config failed for {address} using {config_file.name}")

    async def bootstrap(self, address):
        self.bootstraps.append(address)
        return self.bootstrap_result

    async def health_check(self, address):
        return self.health.next()

    async def fetch_kubeconfig(self, address):
        return self.kubeconfigs.next()

    async def reset(self, address):
        self.resets.append(address)
        return True


class FakeCustomObjectsApi:
    """In-memory stand-in for the Kubernetes CustomObjectsApi."""

    def __init__(self):
        self.objects: dict[tuple[str, str], dict] = {}
        self.calls: list[str] = []
        self.fail: dict[str, int] = {}
        self.on_list = None
        self._version = 0

    def _record(self, method):
        self.calls.append(method)
        if method in self.fail:
            raise ApiException(status=self.fail[method], reason="Injected failure")

    def _store(self, plural, body):
        stored = copy.deepcopy(body)
        self._version += 1
        stored.setdefault("metadata", {})["resourceVersion"] = str(self._version)
        self.objects[(plural, stored["metadata"]["name"])] = stored
        return copy.deepcopy(stored)

    def add_hardware(self, node):
        self.objects[("hardware", node.name)] = {
            "metadata": {"name": node.name},
            "spec": {"interfaces": [{"dhcp": {"mac": node.mac, "ip": {"address": node.address}}}]},
        }

    def set_status(self, name, state, action=None):
        self.objects[("workflows", name)]["status"] = {"state": state, "currentAction": action}

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        self._record("get")
        if (plural, name) not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(self.objects[(plural, name)])

    def create_namespaced_custom_object(self, group, version, namespace, plural, body):
        self._record("create")
        if (plural, body["metadata"]["name"]) in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        return self._store(plural, body)

    def replace_namespaced_custom_object(self, group, version, namespace, plural, name, body):
        self._record("replace")
        if (plural, name) not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        return self._store(plural, body)

    def delete_namespaced_custom_object(self, group, version, namespace, plural, name):
        self._record("delete")
        if (plural, name) not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        del self.objects[(plural, name)]

    def list_namespaced_custom_object(self, group, version, namespace, plural):
        self._record("list")
        if self.on_list is not None:
            self.on_list(self, plural)
        items = [copy.deepcopy(v) for (p, _), v in sorted(self.objects.items()) if p == plural]
        return {"items": items}

    def patch_namespaced_custom_object(self, group, version, namespace, plural, name, body):
        self._record("patch")
        if (plural, name) not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        self.objects[(plural, name)]["spec"] = copy.deepcopy(body["spec"])
        return copy.deepcopy(self.objects[(plural, name)])

    def names(self, plural):
        return sorted(name for p, name in self.objects if p == plural)


class FakeCoreV1Api:
    """In-memory stand-in for the parts of CoreV1Api the provisioner uses."""

    def __init__(self, nodes=None, unauthorized=0):
        self.nodes = nodes or []
        self.unauthorized = unauthorized
        self.list_calls = 0
        self.secrets: dict[tuple[str, str], client.V1Secret] = {}
        self.pods: list = []
        self.log_lines: list[bytes] = []

    def list_node(self, _request_timeout=None):
        self.list_calls += 1
        if self.unauthorized > 0:
            self.unauthorized -= 1
            raise ApiException(status=401, reason="Unauthorized")
        return SimpleNamespace(items=list(self.nodes))

    def create_namespaced_secret(self, namespace, body):
        key = (namespace, body.metadata.name)
        if key in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        self.secrets[key] = body

    def replace_namespaced_secret(self, name, namespace, body):
        self.secrets[(namespace, name)] = body

    def read_namespaced_secret(self, name, namespace):
        if (namespace, name) not in self.secrets:
            raise ApiException(status=404, reason="Not Found")
        return self.secrets[(namespace, name)]

    def list_namespaced_pod(self, namespace, label_selector=None):
        return SimpleNamespace(items=list(self.pods))

    def read_namespaced_pod_log(self, name, namespace, **kwargs):
        return SimpleNamespace(stream=lambda: iter(self.log_lines))


def make_k8s_node(name, ready=True, control_plane=False, ip="192.168.1.101"):
    """Build a V1Node as returned by list_node."""
    labels = {"node-role.kubernetes.io/control-plane": ""} if control_plane else {}
    return client.V1Node(
        metadata=client.V1ObjectMeta(name=name, labels=labels),
        status=client.V1NodeStatus(
            conditions=[client.V1NodeCondition(type="Ready", status="True" if ready else "False")],
            addresses=[client.V1NodeAddress(address=ip, type="InternalIP")],
        ),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def console_output():
    return io.StringIO()


@pytest.fixture
def reporter(console_output):
    return Reporter(Console(file=console_output, width=200, force_terminal=False))


@pytest.fixture
def talos():
    return FakeTalos()


@pytest.fixture
def custom_api():
    return FakeCustomObjectsApi()


@pytest.fixture
def talos_dir(tmp_path):
    path = tmp_path / "talos"
    path.mkdir()
    (path / "controlplane.yaml").write_text("machine:\n  type: controlplane\n")
    (path / "worker.yaml").write_text("machine:\n  type: worker\n")
    (path / "talosconfig").write_text("context: sandbox\n")
    return path


@pytest.fixture
def make_settings(tmp_path, talos_dir):
    """Factory for configurations with ``count`` nodes named node-1..node-N."""

    def factory(count=4, controlplane_count=1, **overrides):
        data = {
            "cluster_name": "sandbox",
            "management_ip": "192.168.1.10",
            "dhcp_gateway": "192.168.1.1",
            "controlplane_count": controlplane_count,
            "nodes": [
                {
                    "name": f"node-{i}",
                    "mac": f"aa:bb:cc:dd:ee:{i:02x}",
                    "ip": f"192.168.1.{100 + i}",
                }
                for i in range(1, count + 1)
            ],
            "talos_dir": talos_dir,
            "kubeconfig_path": tmp_path / "kubeconfig",
            "management_kubeconfig": None,
        }
        data.update(overrides)
        return ProvisionerConfig.model_validate(data)

    return factory


@pytest.fixture
def make_run_config(make_settings):
    def factory(cni=True, coredns=True, **overrides):
        return RunConfig(
            settings=make_settings(**overrides),
            features={"cni": cni, "coredns": coredns},
        )

    return factory


@pytest.fixture
def registry(make_settings):
    return NodeRegistry.from_config(make_settings())


@pytest.fixture
def tinkerbell(custom_api):
    return TinkerbellClient(custom_api, "tinkerbell")


@pytest.fixture
def make_cluster():
    """Factory for a ClusterClient over an in-memory core API."""

    def factory(nodes=None, unauthorized=0):
        return ClusterClient(FakeCoreV1Api(nodes=nodes, unauthorized=unauthorized))

    return factory
