"""Unit tests for workflow submission and progress tracking."""

import asyncio

import pytest
from kubernetes.client.rest import ApiException

from metal_provisioner.exceptions import (
    WorkflowFailedError,
    WorkflowStalledError,
    WorkflowTimeoutError,
)
from metal_provisioner.workflows import WorkflowPoller, WorkflowSubmitter, install_hardware_map


def finish_after(polls: int, failed: set | None = None):
    """List hook that completes every workflow once ``polls`` listings happened."""
    failed = failed or set()
    seen = {"count": 0}

    def hook(api, plural):
        if plural != "workflows":
            return
        seen["count"] += 1
        for name in api.names("workflows"):
            if name in failed:
                api.set_status(name, "STATE_FAILED", "stream-talos-image")
            elif seen["count"] >= polls:
                api.set_status(name, "STATE_SUCCESS")
            else:
                api.set_status(name, "STATE_RUNNING", "stream-talos-image")

    return hook


@pytest.fixture
def submitter(tinkerbell, make_settings, reporter):
    return WorkflowSubmitter(tinkerbell, make_settings(), reporter)


@pytest.fixture
def make_poller(tinkerbell, make_settings, reporter, clock):
    def factory(**timeouts):
        settings = make_settings(timeouts=timeouts)
        return WorkflowPoller(tinkerbell, settings.timeouts, reporter, clock)

    return factory


def test_install_hardware_map(registry, make_settings):
    hardware_map = install_hardware_map(registry.get("node-3"), make_settings())

    assert hardware_map == {
        "device_1": "aa:bb:cc:dd:ee:03",
        "tinkerbell_ip": "192.168.1.10",
        "disk_device": "/dev/sda",
        "talos_version": "v1.12.1",
    }


def test_submit_provisioning_creates_one_workflow_per_node(
    submitter, registry, custom_api, console_output
):
    names = asyncio.run(submitter.submit_provisioning(registry.nodes))

    assert names == [f"provision-node-{i}" for i in range(1, 5)]
    assert custom_api.names("workflows") == names
    stored = custom_api.objects[("workflows", "provision-node-2")]
    assert stored["spec"]["templateRef"] == "talos-install"
    assert stored["spec"]["hardwareRef"] == "node-2"
    assert "Created: provision-node-2" in console_output.getvalue()


def test_submit_reboot_is_best_effort(submitter, registry, custom_api, reporter):
    custom_api.fail["create"] = 500

    names = asyncio.run(submitter.submit_reboot(registry.nodes))

    assert names == []
    assert len(reporter.warnings) == 4


def test_reboot_workflows_use_reboot_template(submitter, registry, custom_api):
    asyncio.run(submitter.ensure_reboot_template())
    names = asyncio.run(submitter.submit_reboot(registry.nodes))

    assert names == [f"reboot-node-{i}" for i in range(1, 5)]
    assert custom_api.names("templates") == ["reboot-only"]
    spec = custom_api.objects[("workflows", "reboot-node-1")]["spec"]
    assert spec["templateRef"] == "reboot-only"
    assert spec["hardwareMap"] == {"device_1": "aa:bb:cc:dd:ee:01"}


def test_configured_reboot_template_name_is_used(
    tinkerbell, make_settings, reporter, registry, custom_api
):
    submitter = WorkflowSubmitter(tinkerbell, make_settings(reboot_template="lab-reboot"), reporter)

    asyncio.run(submitter.ensure_reboot_template())
    asyncio.run(submitter.submit_reboot(registry.nodes[:1]))

    template = custom_api.objects[("templates", "lab-reboot")]
    assert "name: lab-reboot\n" in template["spec"]["data"]
    assert custom_api.objects[("workflows", "reboot-node-1")]["spec"]["templateRef"] == (
        "lab-reboot"
    )


def test_wait_succeeds_when_all_workflows_complete(
    submitter, make_poller, registry, custom_api, clock
):
    asyncio.run(submitter.submit_provisioning(registry.nodes))
    custom_api.on_list = finish_after(3)

    summary = asyncio.run(make_poller().wait(4))

    assert summary.completed == 4
    assert summary.failed == 0
    assert clock.sleeps == [10, 10]


def test_wait_fails_fast_and_dumps_state(
    submitter, make_poller, registry, custom_api, console_output
):
    asyncio.run(submitter.submit_provisioning(registry.nodes))
    custom_api.on_list = finish_after(1, failed={"provision-node-4"})

    with pytest.raises(WorkflowFailedError):
        asyncio.run(make_poller().wait(4))

    output = console_output.getvalue()
    assert "Workflows (tinkerbell)" in output
    assert "STATE_FAILED" in output
    assert "provision-node-4" in output


def test_wait_reports_stall_separately_from_timeout(submitter, make_poller, registry, clock):
    asyncio.run(submitter.submit_provisioning(registry.nodes))

    with pytest.raises(WorkflowStalledError, match="no progress for 3 polls"):
        asyncio.run(make_poller(workflow_max_stall=3).wait(4))

    assert clock.time == 30


def test_wait_times_out_when_progress_keeps_changing(
    submitter, make_poller, registry, custom_api
):
    asyncio.run(submitter.submit_provisioning(registry.nodes))
    states = iter(["STATE_PENDING", "STATE_RUNNING"] * 100)

    def flip(api, plural):
        if plural == "workflows":
            api.set_status("provision-node-1", next(states))

    custom_api.on_list = flip

    with pytest.raises(WorkflowTimeoutError):
        asyncio.run(make_poller(workflow_timeout=50, workflow_max_stall=1000).wait(4))


def test_transient_list_error_does_not_abort(submitter, make_poller, registry, custom_api):
    asyncio.run(submitter.submit_provisioning(registry.nodes))
    complete = finish_after(1)
    calls = {"count": 0}

    def flaky(api, plural):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ApiException(status=503, reason="Service Unavailable")
        complete(api, plural)

    custom_api.on_list = flaky

    summary = asyncio.run(make_poller().wait(4))

    assert summary.completed == 4
    assert calls["count"] == 2
