"""Property-based tests for role assignment in the node registry."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from metal_provisioner.exceptions import RegistryError
from metal_provisioner.models.node import NodeRole, NodeSpec
from metal_provisioner.registry import NodeRegistry


def make_specs(count: int) -> list[NodeSpec]:
    return [
        NodeSpec(name=f"node-{i}", mac=f"aa:bb:cc:dd:ee:{i:02x}", ip=f"10.0.0.{i + 1}")
        for i in range(count)
    ]


@st.composite
def registry_shape(draw):
    """Draw a node count and a valid control-plane count for it."""
    count = draw(st.integers(min_value=1, max_value=30))
    controlplane = draw(st.integers(min_value=0, max_value=count))
    return count, controlplane


@given(shape=registry_shape())
def test_leading_nodes_form_the_control_plane(shape):
    """The first C nodes are control-plane, the rest workers, in declaration order."""
    count, controlplane = shape
    specs = make_specs(count)
    registry = NodeRegistry(specs, controlplane)

    assert len(registry) == count
    assert [node.name for node in registry] == [spec.name for spec in specs]
    for index, node in enumerate(registry):
        expected = NodeRole.CONTROL_PLANE if index < controlplane else NodeRole.WORKER
        assert node.role is expected

    assert len(registry.control_plane) == controlplane
    assert len(registry.workers) == count - controlplane
    assert registry.control_plane + registry.workers == registry.nodes


@given(shape=registry_shape())
def test_lookup_by_name_returns_registered_role(shape):
    count, controlplane = shape
    registry = NodeRegistry(make_specs(count), controlplane)

    for node in registry:
        assert registry.get(node.name) == node


@given(count=st.integers(min_value=1, max_value=20), extra=st.integers(min_value=1, max_value=5))
def test_controlplane_count_above_node_count_rejected(count, extra):
    with pytest.raises(RegistryError):
        NodeRegistry(make_specs(count), count + extra)


def test_negative_controlplane_count_rejected():
    with pytest.raises(RegistryError):
        NodeRegistry(make_specs(3), -1)


@given(count=st.integers(min_value=2, max_value=10), data=st.data())
def test_duplicate_mac_rejected(count, data):
    specs = make_specs(count)
    first, second = data.draw(
        st.lists(st.integers(0, count - 1), min_size=2, max_size=2, unique=True)
    )
    specs[second] = NodeSpec(name=specs[second].name, mac=specs[first].mac, ip=specs[second].ip)

    with pytest.raises(RegistryError, match="Hardware address"):
        NodeRegistry(specs, 1)


def test_duplicate_name_rejected():
    specs = make_specs(2)
    specs[1] = NodeSpec(name=specs[0].name, mac=specs[1].mac, ip=specs[1].ip)

    with pytest.raises(RegistryError, match="more than once"):
        NodeRegistry(specs, 1)


def test_bootstrap_node_is_first_control_plane_node():
    registry = NodeRegistry(make_specs(4), 3)

    assert registry.bootstrap_node.name == "node-0"
    assert registry.bootstrap_node.role is NodeRole.CONTROL_PLANE


def test_registry_without_control_plane_has_no_bootstrap_node():
    registry = NodeRegistry(make_specs(2), 0)

    assert registry.control_plane == ()
    with pytest.raises(RegistryError):
        registry.bootstrap_node


def test_unknown_name_lookup_fails():
    registry = NodeRegistry(make_specs(2), 1)

    with pytest.raises(RegistryError):
        registry.get("node-99")
