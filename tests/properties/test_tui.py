"""Property-based tests for the provisioning dashboard."""

from hypothesis import given
from hypothesis import strategies as st

from metal_provisioner.tui import ProvisioningTUI


@given(
    cluster_name=st.text(
        min_size=1,
        max_size=50,
        alphabet=st.characters(whitelist_categories=("Lu", "Ll", "Nd"), whitelist_characters="-_"),
    ),
    refresh_interval=st.integers(min_value=1, max_value=60),
)
def test_keyboard_bindings_have_actions(cluster_name: str, refresh_interval: int) -> None:
    """Every documented shortcut is bound and maps to an existing action."""
    app = ProvisioningTUI(cluster_name=cluster_name, refresh_interval=refresh_interval)

    binding_keys = {binding.key for binding in app.BINDINGS}
    required_bindings = {"q", "r", "h", "escape"}
    assert required_bindings.issubset(
        binding_keys
    ), f"Missing required keyboard bindings. Expected: {required_bindings}, Got: {binding_keys}"

    for binding in app.BINDINGS:
        action_name = f"action_{binding.action}"
        assert hasattr(app, action_name), (
            f"Binding '{binding.key}' references action '{binding.action}' "
            f"but method '{action_name}' does not exist"
        )
        assert callable(getattr(app, action_name))


def test_tui_initialization() -> None:
    """Test that TUI initializes with correct default values."""
    app = ProvisioningTUI()

    assert app.cluster_name == "sandbox"
    assert app.job_name == "cluster-reset"
    assert app.refresh_interval == 5
    assert app.tinkerbell is None
    assert app.cluster is None


def test_tui_custom_initialization() -> None:
    """Test that TUI accepts custom names, node count and refresh interval."""
    app = ProvisioningTUI(cluster_name="lab", job_name="lab-reset", expected=6, refresh_interval=10)

    assert app.cluster_name == "lab"
    assert app.job_name == "lab-reset"
    assert app.expected == 6
    assert app.refresh_interval == 10


def test_tui_tracks_refresh_and_connection_state() -> None:
    """Refresh state and connection errors are tracked as flags."""
    app = ProvisioningTUI(cluster_name="test", refresh_interval=5)

    assert app._is_refreshing is False
    assert app._connection_error is False
    assert app._workflows == []
    assert app._hardware == []


def test_fetch_job_status_without_cluster() -> None:
    """Without a management cluster the job status is not applicable."""
    app = ProvisioningTUI()

    assert app._fetch_job_status() == "n/a"


def test_refresh_without_management_cluster_flags_connection(monkeypatch) -> None:
    """Without a workflow client the dashboard reports a connection error once."""
    app = ProvisioningTUI()
    notifications = []
    monkeypatch.setattr(app, "notify", lambda *args, **kwargs: notifications.append(kwargs))

    app.refresh_data()
    app.refresh_data()

    assert app._connection_error is True
    assert app._is_refreshing is False
    assert len(notifications) == 1
    assert notifications[0]["severity"] == "warning"
