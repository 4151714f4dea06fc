"""Node registry: resolves node roles from declaration order."""

from collections.abc import Iterator, Sequence

from metal_provisioner.exceptions import RegistryError
from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.config import ProvisionerConfig
from metal_provisioner.models.node import Node, NodeRole, NodeSpec

logger = get_logger(__name__)


class NodeRegistry:
    """Immutable, ordered set of nodes with roles assigned.

    The first ``controlplane_count`` nodes in declaration order are
    control-plane nodes, the remainder are workers.
    """

    def __init__(self, specs: Sequence[NodeSpec], controlplane_count: int):
        """Build the registry.

        Args:
            specs: Declared nodes in order
            controlplane_count: Number of leading nodes that form the control plane

        Raises:
            RegistryError: If the count is out of range or a MAC/name repeats
        """
        if controlplane_count < 0:
            raise RegistryError(
                f"Control-plane count cannot be negative (got {controlplane_count})"
            )
        if controlplane_count > len(specs):
            raise RegistryError(
                f"Control-plane count {controlplane_count} exceeds the number of nodes ({len(specs)})",
                "Lower controlplane_count or declare more nodes",
            )

        seen_macs: dict[str, str] = {}
        seen_names: set[str] = set()
        for spec in specs:
            if spec.mac in seen_macs:
                raise RegistryError(
                    f"Hardware address {spec.mac} is used by both "
                    f"'{seen_macs[spec.mac]}' and '{spec.name}'",
                    "Each node must have a unique MAC address",
                )
            if spec.name in seen_names:
                raise RegistryError(f"Node name '{spec.name}' is declared more than once")
            seen_macs[spec.mac] = spec.name
            seen_names.add(spec.name)

        self._nodes: tuple[Node, ...] = tuple(
            Node.from_spec(
                spec, NodeRole.CONTROL_PLANE if index < controlplane_count else NodeRole.WORKER
            )
            for index, spec in enumerate(specs)
        )
        self._controlplane_count = controlplane_count
        logger.debug(
            f"Registry loaded: {controlplane_count} control-plane, "
            f"{len(self._nodes) - controlplane_count} worker nodes"
        )

    @classmethod
    def from_config(cls, settings: ProvisionerConfig) -> "NodeRegistry":
        return cls(settings.nodes, settings.controlplane_count)

    @property
    def nodes(self) -> tuple[Node, ...]:
        return self._nodes

    @property
    def control_plane(self) -> tuple[Node, ...]:
        return self._nodes[: self._controlplane_count]

    @property
    def workers(self) -> tuple[Node, ...]:
        return self._nodes[self._controlplane_count :]

    @property
    def bootstrap_node(self) -> Node:
        """First control-plane node, the target of cluster bootstrap."""
        if not self._controlplane_count:
            raise RegistryError(
                "No control-plane node is declared",
                "Set controlplane_count to at least 1 to bootstrap a cluster",
            )
        return self._nodes[0]

    def get(self, name: str) -> Node:
        for node in self._nodes:
            if node.name == name:
                return node
        raise RegistryError(f"Node '{name}' is not in the registry")

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)
