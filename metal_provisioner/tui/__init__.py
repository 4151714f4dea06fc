"""TUI module for watching a provisioning run."""

from metal_provisioner.tui.app import ProvisioningTUI

__all__ = ["ProvisioningTUI", "main"]


def main(run_config=None) -> None:
    """Launch the dashboard against the management cluster."""
    from metal_provisioner.exceptions import KubernetesError
    from metal_provisioner.kube import ClusterClient
    from metal_provisioner.tinkerbell import TinkerbellClient

    settings = run_config.settings if run_config is not None else None
    tinkerbell = None
    cluster = None
    try:
        cluster = ClusterClient.from_kubeconfig(
            settings.management_kubeconfig if settings is not None else None
        )
        tinkerbell = TinkerbellClient(
            cluster.custom, settings.namespace if settings is not None else "tinkerbell"
        )
    except KubernetesError:
        cluster = None

    app = ProvisioningTUI(
        tinkerbell=tinkerbell,
        cluster=cluster,
        cluster_name=settings.cluster_name if settings is not None else "sandbox",
        job_name=settings.job_name if settings is not None else "cluster-reset",
        expected=len(settings.nodes) if settings is not None else 0,
    )
    app.run()
