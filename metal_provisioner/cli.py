"""Main CLI entry point for bare-metal cluster provisioning."""

import asyncio
import shutil
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from metal_provisioner.config import DEFAULT_CONFIG_PATH, load_run_config
from metal_provisioner.display import STATUS_LABELS, Reporter
from metal_provisioner.exceptions import DependencyError, KubernetesError, ProvisionerError
from metal_provisioner.logging_config import get_logger, setup_logging
from metal_provisioner.models.config import RunMode

app = typer.Typer(
    name="metal-prov",
    help="Bare-metal Kubernetes provisioning with Tinkerbell and Talos",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

CONFIG_HELP = "Path to the provisioner configuration file"


def check_dependencies(binaries: list[str]) -> None:
    """Fail early when a required executable is not on PATH.

    Raises:
        DependencyError: Listing every missing binary
    """
    missing = [binary for binary in binaries if shutil.which(binary) is None]
    if missing:
        raise DependencyError(
            f"Required tools not found: {', '.join(missing)}",
            "Install them or run the bootstrap installer on the management host",
        )


@contextmanager
def handle_errors(action: str):
    """Translate provisioner errors into exit codes: 1 for failures, 130 for interrupts."""
    try:
        yield
    except ProvisionerError as e:
        console.print(f"\n[red]Error:[/red] {e.message}")
        if e.details:
            console.print(f"\n{e.details}")
        logger.error(f"{action} failed: {e.message}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print(f"\n[yellow]{action} interrupted by user[/yellow]")
        raise typer.Exit(code=130)
    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]Unexpected error:[/red] {e}")
        logger.exception(f"Unexpected error during {action.lower()}")
        raise typer.Exit(code=1)


# Global callback to set up logging
@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


@app.command()
def version() -> None:
    """Show version information."""
    from metal_provisioner import __version__

    typer.echo(f"metal-provisioner version {__version__}")


@app.command()
def reset(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help=CONFIG_HELP),
    mode: RunMode = typer.Option(
        RunMode.LOCAL,
        "--mode",
        "-m",
        case_sensitive=False,
        help="Run in this process (local) or as a Job in the management cluster (job)",
    ),
    cni: bool = typer.Option(True, "--cni/--no-cni", help="Install the default CNI"),
    coredns: bool = typer.Option(True, "--coredns/--no-coredns", help="Deploy CoreDNS"),
) -> None:
    """
    Wipe and reprovision every node into a fresh cluster.

    Nodes running Talos are reset, the rest are woken with Wake-on-LAN. Each
    node is imaged through a Tinkerbell workflow, configured, and the cluster
    is bootstrapped and verified.

    Examples:
        # Full reset from this machine
        metal-prov reset

        # Reset without a CNI (install Cilium afterwards)
        metal-prov reset --no-cni

        # Run the reset as a Job next to Tinkerbell
        metal-prov reset --mode job
    """
    with handle_errors("Reset"):
        run_config = load_run_config(config_path, cni=cni, coredns=coredns, mode=mode)
        reporter = Reporter(console)

        if run_config.mode is RunMode.JOB:
            from metal_provisioner.job import ResetJobRunner
            from metal_provisioner.kube import ClusterClient

            cluster = ClusterClient.from_kubeconfig(run_config.settings.management_kubeconfig)
            asyncio.run(ResetJobRunner(cluster, run_config, reporter).run())
            return

        from metal_provisioner.orchestrator import Provisioner

        check_dependencies(["talosctl", "ping"])
        provisioner = Provisioner.from_run_config(run_config, reporter)
        asyncio.run(provisioner.run())


@app.command()
def wol(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help=CONFIG_HELP),
) -> None:
    """Send Wake-on-LAN packets to every node without provisioning."""
    from metal_provisioner.power import PowerDriver
    from metal_provisioner.prober import LivenessProber
    from metal_provisioner.registry import NodeRegistry
    from metal_provisioner.talos import TalosClient

    with handle_errors("Wake-on-LAN"):
        run_config = load_run_config(config_path)
        settings = run_config.settings
        registry = NodeRegistry.from_config(settings)
        driver = PowerDriver(
            LivenessProber(settings.talos_api_port, run_config.timeouts.probe_timeout),
            TalosClient(settings.talosconfig),
            run_config.timeouts,
            Reporter(console),
        )

        console.print("[blue]Sending WoL packets...[/blue]")
        sent = asyncio.run(driver.wake(registry.nodes))
        console.print(f"[green]Done[/green] ({len(sent)}/{len(registry)} sent)")
        if not sent:
            raise typer.Exit(code=1)


@app.command()
def status(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help=CONFIG_HELP),
    probe: bool = typer.Option(True, "--probe/--no-probe", help="Probe node reachability"),
) -> None:
    """
    Show node reachability, workflows and hardware.

    Examples:
        # Full status
        metal-prov status

        # Only what the management cluster knows
        metal-prov status --no-probe
    """
    from metal_provisioner.kube import ClusterClient
    from metal_provisioner.prober import LivenessProber
    from metal_provisioner.registry import NodeRegistry
    from metal_provisioner.tinkerbell import TinkerbellClient

    with handle_errors("Status"):
        run_config = load_run_config(config_path)
        settings = run_config.settings
        registry = NodeRegistry.from_config(settings)
        reporter = Reporter(console)

        if probe:
            check_dependencies(["ping"])
            prober = LivenessProber(settings.talos_api_port, run_config.timeouts.probe_timeout)
            statuses = asyncio.run(prober.probe_all(registry.nodes))

            table = Table(title=f"Nodes ({settings.cluster_name})")
            table.add_column("Name", style="cyan")
            table.add_column("Role", style="magenta")
            table.add_column("MAC")
            table.add_column("IP", style="yellow")
            table.add_column("State")
            for node in registry:
                table.add_row(
                    node.name,
                    node.role.value,
                    node.mac,
                    node.address,
                    STATUS_LABELS[statuses[node.name]],
                )
            console.print(table)

        try:
            cluster = ClusterClient.from_kubeconfig(settings.management_kubeconfig)
            tinkerbell = TinkerbellClient(cluster.custom, settings.namespace)
            reporter.dump_workflows(tinkerbell.list_workflow_states(), settings.namespace)
            reporter.hardware_table(tinkerbell.list_hardware())
        except KubernetesError as e:
            console.print(f"[yellow]Warning:[/yellow] Management cluster unavailable: {e.message}")


@app.command()
def kubeconfig(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help=CONFIG_HELP),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing local file"),
    show: bool = typer.Option(False, "--show", help="Print the kubeconfig instead of saving it"),
) -> None:
    """Restore the cluster kubeconfig from the management cluster secret."""
    from metal_provisioner.bootstrap import KUBECONFIG_SECRET_KEY, write_credentials
    from metal_provisioner.kube import ClusterClient

    with handle_errors("Kubeconfig retrieval"):
        settings = load_run_config(config_path).settings
        path = settings.kubeconfig_path

        if path.exists() and not force and not show:
            console.print(f"[green]Kubeconfig already exists locally:[/green] {path}")
            return

        cluster = ClusterClient.from_kubeconfig(settings.management_kubeconfig)
        data = cluster.read_secret_value(
            settings.namespace, settings.kubeconfig_secret, KUBECONFIG_SECRET_KEY
        )
        if show:
            typer.echo(data.decode("utf-8"))
            return

        write_credentials(path, data)
        console.print(f"[green]Saved to:[/green] {path}")
        console.print(f"\n  export KUBECONFIG={path.absolute()}")


@app.command()
def clean_workflows(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help=CONFIG_HELP),
) -> None:
    """Delete every Tinkerbell workflow in the namespace."""
    from metal_provisioner.kube import ClusterClient
    from metal_provisioner.tinkerbell import TinkerbellClient

    with handle_errors("Workflow cleanup"):
        settings = load_run_config(config_path).settings
        cluster = ClusterClient.from_kubeconfig(settings.management_kubeconfig)
        deleted = TinkerbellClient(cluster.custom, settings.namespace).delete_all_workflows()
        console.print(f"[green]✓[/green] Deleted {deleted} workflow(s)")


@app.command()
def logs(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help=CONFIG_HELP),
) -> None:
    """Follow the logs of the delegated reset job."""
    from metal_provisioner.job import ResetJobRunner
    from metal_provisioner.kube import ClusterClient

    with handle_errors("Log streaming"):
        run_config = load_run_config(config_path)
        cluster = ClusterClient.from_kubeconfig(run_config.settings.management_kubeconfig)
        runner = ResetJobRunner(cluster, run_config, Reporter(console))
        pod_name = asyncio.run(runner.wait_for_pod())
        if pod_name is None:
            console.print("[yellow]No active reset job[/yellow]")
            raise typer.Exit(code=1)
        runner.stream_logs(pod_name)


@app.command()
def info(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help=CONFIG_HELP),
) -> None:
    """Show the configuration summary and node roles."""
    from metal_provisioner.registry import NodeRegistry

    with handle_errors("Info"):
        settings = load_run_config(config_path).settings
        registry = NodeRegistry.from_config(settings)

        summary = Table(show_header=False, title="Configuration")
        summary.add_column("Key", style="cyan")
        summary.add_column("Value")
        summary.add_row("Cluster", settings.cluster_name)
        summary.add_row("Management IP", str(settings.management_ip))
        summary.add_row("Namespace", settings.namespace)
        summary.add_row("Talos version", settings.talos_version)
        summary.add_row("Install disk", settings.node_disk)
        summary.add_row("HookOS URL", settings.hookos_url)
        summary.add_row("Talos configs", str(settings.talos_dir))
        summary.add_row("Kubeconfig", str(settings.kubeconfig_path))
        console.print(summary)

        nodes = Table(title=f"Nodes ({len(registry)})")
        nodes.add_column("Name", style="cyan")
        nodes.add_column("Role", style="magenta")
        nodes.add_column("MAC")
        nodes.add_column("IP", style="yellow")
        for node in registry:
            nodes.add_row(node.name, node.role.value, node.mac, node.address)
        console.print(nodes)


@app.command()
def watch(
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help=CONFIG_HELP),
) -> None:
    """Open a live dashboard of workflows, hardware and the reset job."""
    from metal_provisioner.tui import main as tui_main

    with handle_errors("Watch"):
        tui_main(load_run_config(config_path))


if __name__ == "__main__":
    app()
