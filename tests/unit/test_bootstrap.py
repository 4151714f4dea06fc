"""Unit tests for cluster bootstrap and credential handling."""

import asyncio
import stat
from unittest.mock import MagicMock

import pytest
from conftest import FakeCoreV1Api, Script, make_k8s_node

from metal_provisioner.bootstrap import ClusterBootstrapper, write_credentials
from metal_provisioner.exceptions import BootstrapError, CredentialsError, KubernetesError
from metal_provisioner.kube import ClusterClient
from metal_provisioner.registry import NodeRegistry
from metal_provisioner.talos import BootstrapResult

KUBECONFIG = b"apiVersion: v1\nkind: Config\n"


@pytest.fixture
def make_bootstrapper(make_run_config, talos, reporter, clock):
    def factory(cluster=None, management=None, connect=None, **run_overrides):
        run_config = make_run_config(**run_overrides)
        return ClusterBootstrapper(
            NodeRegistry.from_config(run_config.settings),
            run_config,
            talos,
            reporter,
            management,
            clock,
            connect or (lambda data: cluster),
        )

    return factory


def ready_cluster(count=4, unauthorized=0):
    nodes = [make_k8s_node(f"node-{i}") for i in range(1, count + 1)]
    return ClusterClient(FakeCoreV1Api(nodes=nodes, unauthorized=unauthorized))


def test_write_credentials_is_owner_only(tmp_path):
    path = write_credentials(tmp_path / "nested" / "kubeconfig", KUBECONFIG)

    assert path.read_bytes() == KUBECONFIG
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_write_credentials_tightens_existing_file(tmp_path):
    path = tmp_path / "kubeconfig"
    path.write_bytes(b"old")
    path.chmod(0o644)

    write_credentials(path, KUBECONFIG)

    assert path.read_bytes() == KUBECONFIG
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_wait_for_api_succeeds(make_bootstrapper, talos):
    talos.health = Script(False, False, True)
    bootstrapper = make_bootstrapper()

    asyncio.run(bootstrapper.wait_for_api(bootstrapper.registry.bootstrap_node))

    assert talos.health.calls == 3


def test_wait_for_api_timeout_is_fatal(make_bootstrapper, talos, clock):
    talos.health = Script(False)
    bootstrapper = make_bootstrapper()

    with pytest.raises(BootstrapError, match="did not respond"):
        asyncio.run(bootstrapper.wait_for_api(bootstrapper.registry.bootstrap_node))

    assert clock.time >= 300


@pytest.mark.parametrize(
    "result", [BootstrapResult.BOOTSTRAPPED, BootstrapResult.ALREADY_BOOTSTRAPPED]
)
def test_bootstrap_success_variants(make_bootstrapper, talos, reporter, result):
    talos.bootstrap_result = result
    bootstrapper = make_bootstrapper()

    assert asyncio.run(bootstrapper.bootstrap(bootstrapper.registry.bootstrap_node)) is result
    assert talos.bootstraps == ["192.168.1.101"]
    assert reporter.warnings == []


def test_bootstrap_failure_is_a_warning(make_bootstrapper, talos, reporter):
    talos.bootstrap_result = BootstrapResult.FAILED
    bootstrapper = make_bootstrapper()

    result = asyncio.run(bootstrapper.bootstrap(bootstrapper.registry.bootstrap_node))

    assert result is BootstrapResult.FAILED
    assert len(reporter.warnings) == 1


def test_credentials_polled_until_authorized(make_bootstrapper, clock):
    cluster = ready_cluster(unauthorized=2)
    bootstrapper = make_bootstrapper(cluster=cluster)

    data, connected = asyncio.run(
        bootstrapper.retrieve_credentials(bootstrapper.registry.bootstrap_node)
    )

    assert data == KUBECONFIG
    assert connected is cluster
    assert cluster.core.list_calls == 3
    assert clock.sleeps == [10, 10]


def test_credentials_wait_for_kubeconfig_to_appear(make_bootstrapper, talos):
    talos.kubeconfigs = Script(None, None, KUBECONFIG)
    bootstrapper = make_bootstrapper(cluster=ready_cluster())

    data, _ = asyncio.run(bootstrapper.retrieve_credentials(bootstrapper.registry.bootstrap_node))

    assert data == KUBECONFIG
    assert talos.kubeconfigs.calls == 3


def test_unusable_kubeconfig_is_not_ready(make_bootstrapper):
    attempts = []

    def connect(data):
        attempts.append(data)
        if len(attempts) == 1:
            raise KubernetesError("Invalid kubeconfig")
        return ready_cluster()

    bootstrapper = make_bootstrapper(connect=connect)

    data, _ = asyncio.run(bootstrapper.retrieve_credentials(bootstrapper.registry.bootstrap_node))

    assert data == KUBECONFIG
    assert len(attempts) == 2


def test_credentials_timeout(make_bootstrapper, clock):
    bootstrapper = make_bootstrapper(cluster=ready_cluster(unauthorized=10**6))

    with pytest.raises(CredentialsError):
        asyncio.run(bootstrapper.retrieve_credentials(bootstrapper.registry.bootstrap_node))

    assert clock.time >= 600


def test_readiness_waits_for_every_node(make_bootstrapper, reporter):
    bootstrapper = make_bootstrapper()

    assert asyncio.run(bootstrapper.wait_for_ready(ready_cluster())) is True
    assert reporter.warnings == []


def test_readiness_timeout_is_a_warning(make_bootstrapper, reporter):
    bootstrapper = make_bootstrapper()

    assert asyncio.run(bootstrapper.wait_for_ready(ready_cluster(count=3))) is False
    assert len(reporter.warnings) == 1


def test_readiness_skipped_without_cni(make_bootstrapper, clock):
    cluster = ready_cluster()
    bootstrapper = make_bootstrapper(cni=False)

    assert asyncio.run(bootstrapper.wait_for_ready(cluster)) is None
    assert clock.sleeps == [30]
    assert cluster.core.list_calls == 0


def test_persist_credentials(make_bootstrapper, tmp_path):
    bootstrapper = make_bootstrapper()

    path = bootstrapper.persist_credentials(KUBECONFIG)

    assert path == tmp_path / "kubeconfig"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_persist_failure_raises(make_bootstrapper, tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    bootstrapper = make_bootstrapper(kubeconfig_path=blocker / "kubeconfig")

    with pytest.raises(CredentialsError):
        bootstrapper.persist_credentials(KUBECONFIG)


def test_mirror_credentials(make_bootstrapper):
    management = ClusterClient(FakeCoreV1Api())
    bootstrapper = make_bootstrapper(management=management)

    asyncio.run(bootstrapper.mirror_credentials(KUBECONFIG))

    assert management.read_secret_value("tinkerbell", "sandbox-kubeconfig", "kubeconfig") == (
        KUBECONFIG
    )


def test_mirror_failure_is_fatal(make_bootstrapper):
    management = MagicMock()
    management.create_or_update_secret.side_effect = KubernetesError("Failed to create secret")
    bootstrapper = make_bootstrapper(management=management)

    with pytest.raises(CredentialsError, match="tinkerbell/sandbox-kubeconfig") as exc_info:
        asyncio.run(bootstrapper.mirror_credentials(KUBECONFIG))

    assert "create secret generic sandbox-kubeconfig" in exc_info.value.details


def test_mirror_without_management_cluster_is_fatal(make_bootstrapper):
    bootstrapper = make_bootstrapper()

    with pytest.raises(CredentialsError, match="No management cluster"):
        asyncio.run(bootstrapper.mirror_credentials(KUBECONFIG))
