"""Main CLI entry point for kubedee."""

from pathlib import Path

import typer
from rich.console import Console

from kubedee.config import KubedeeConfig
from kubedee.exceptions import ConfigurationError, KubedeeError
from kubedee.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="kubedee",
    help="Fast multi-node Kubernetes clusters on LXD",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)
logger = get_logger(__name__)


def build_orchestrator(config: KubedeeConfig):
    """Create the orchestrator for a command."""
    from kubedee.cluster import ClusterOrchestrator

    return ClusterOrchestrator(config)


def _config(ctx: typer.Context) -> KubedeeConfig:
    return ctx.obj


def _fail(error: KubedeeError) -> None:
    logger.debug(error.format_message())
    err_console.print(f"[red]Error:[/red] {error.message}", highlight=False)
    raise typer.Exit(code=1)


def _unexpected(error: Exception) -> None:
    logger.debug(f"Unexpected error: {error}", exc_info=True)
    err_console.print(f"[red]Unexpected error:[/red] {error}", highlight=False)
    err_console.print("\nRun with --verbose --log-file debug.log for more details")
    raise typer.Exit(code=1)


@app.callback()
def main_callback(
    ctx: typer.Context,
    data_dir: str | None = typer.Option(
        None, "--dir", "-d", help="Directory for kubedee's data (default: $KUBEDEE_DIR or ~/.local/share/kubedee)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
    config_file: str | None = typer.Option(None, "--config", "-c", help="YAML file with kubedee settings"),
):
    """Global options for all commands."""
    try:
        base = KubedeeConfig.load(Path(config_file).expanduser()) if config_file else None
        config = KubedeeConfig.from_env(base=base, data_dir=Path(data_dir).expanduser() if data_dir else None)
    except ConfigurationError as e:
        err_console.print(f"[red]Error:[/red] {e.message}", highlight=False)
        raise typer.Exit(code=1)
    except ValueError as e:
        err_console.print(f"[red]Error:[/red] Invalid configuration: {e}", highlight=False)
        raise typer.Exit(code=1)

    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose or config.debug, log_file=log_path)
    logger.debug(f"Using data directory {config.data_dir}")
    ctx.obj = config


@app.command()
def version() -> None:
    """Show version information."""
    from kubedee import __version__

    typer.echo(__version__)


@app.command("list")
def list_clusters(ctx: typer.Context) -> None:
    """List clusters present in the data directory."""
    try:
        names = build_orchestrator(_config(ctx)).list_clusters()
    except Exception as e:
        _unexpected(e)
    for name in names:
        typer.echo(name)


@app.command()
def create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Cluster name"),
    bin_dir: str | None = typer.Option(
        None, "--bin-dir", help="Directory with the Kubernetes binaries (default: ./_output/bin)"
    ),
) -> None:
    """
    Create a cluster.

    Sets up the cluster network, the worker image, the cluster's root
    filesystem with all binaries and its certificate authority.
    """
    try:
        paths = build_orchestrator(_config(ctx)).create(name, bin_dir)
    except KubedeeError as e:
        _fail(e)
    except Exception as e:
        _unexpected(e)
    console.print(f"[green]✓[/green] Cluster created in {paths.root}")


@app.command()
def delete(ctx: typer.Context, name: str = typer.Argument(..., help="Cluster name")) -> None:
    """Delete a cluster with all its containers, network and files."""
    try:
        found = build_orchestrator(_config(ctx)).delete(name)
    except KubedeeError as e:
        _fail(e)
    except Exception as e:
        _unexpected(e)
    if found:
        console.print(f"[green]✓[/green] Cluster {name} deleted")
    else:
        console.print(f"[yellow]Cluster {name} not found[/yellow]")


def _print_started(name: str) -> None:
    console.print(f"[green]✓[/green] Cluster {name} started")
    console.print("\nConfigure kubectl with:")
    console.print(f"  eval $(kubedee kubectl-env {name})", highlight=False)


@app.command()
def start(ctx: typer.Context, name: str = typer.Argument(..., help="Cluster name")) -> None:
    """Start etcd, the controller and one worker of a cluster."""
    try:
        nodes = build_orchestrator(_config(ctx)).start(name)
    except KubedeeError as e:
        _fail(e)
    except Exception as e:
        _unexpected(e)
    for node in nodes:
        console.print(f"  {node.container_name} ({node.ipv4})", highlight=False)
    _print_started(name)


@app.command("start-worker")
def start_worker(ctx: typer.Context, name: str = typer.Argument(..., help="Cluster name")) -> None:
    """Start one additional worker."""
    try:
        node = build_orchestrator(_config(ctx)).start_worker(name)
    except KubedeeError as e:
        _fail(e)
    except Exception as e:
        _unexpected(e)
    console.print(f"[green]✓[/green] Worker {node.container_name} ({node.ipv4}) started", highlight=False)


@app.command()
def up(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Cluster name"),
    bin_dir: str | None = typer.Option(
        None, "--bin-dir", help="Directory with the Kubernetes binaries (default: ./_output/bin)"
    ),
) -> None:
    """Create and start a cluster."""
    try:
        build_orchestrator(_config(ctx)).up(name, bin_dir)
    except KubedeeError as e:
        _fail(e)
    except Exception as e:
        _unexpected(e)
    _print_started(name)


@app.command("kubectl-env")
def kubectl_env(ctx: typer.Context, name: str = typer.Argument(..., help="Cluster name")) -> None:
    """Print the environment for kubectl, e.g. eval $(kubedee kubectl-env NAME)."""
    from kubedee.kubeconfig import export_lines

    try:
        env = build_orchestrator(_config(ctx)).kubectl_env(name)
    except KubedeeError as e:
        _fail(e)
    except Exception as e:
        _unexpected(e)
    typer.echo(export_lines(env))


@app.command("etcd-env")
def etcd_env(ctx: typer.Context, name: str = typer.Argument(..., help="Cluster name")) -> None:
    """Print the environment for etcdctl, e.g. eval $(kubedee etcd-env NAME)."""
    from kubedee.kubeconfig import export_lines

    try:
        env = build_orchestrator(_config(ctx)).etcd_env(name)
    except KubedeeError as e:
        _fail(e)
    except Exception as e:
        _unexpected(e)
    typer.echo(export_lines(env))


if __name__ == "__main__":
    app()
