"""Command line interface for benchfleet."""

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import typer
from dotenv import load_dotenv
from rich.console import Console

from .config import DEFAULT_CONFIG_PATH, RunConfiguration, resolve_configuration, write_config_template
from .debug import set_debug
from .errors import BenchfleetError, ConfigurationError
from .identity import accept_run_identity, new_run_identity
from .infra.ec2 import Ec2Cloud
from .infra.provisioner import ResourceProvisioner
from .infra.teardown import TeardownController
from .models import RunReport
from .run.collector import ResultCollector
from .run.executor import RemoteExecutor
from .run.orchestrator import Orchestrator
from .validation import PreflightChecker

app = typer.Typer(
    name="benchfleet",
    help="Ephemeral EC2 fleet for DataFusion ClickBench runs: setup, benchmark, collect, cleanup",
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)

console = Console()

TRUE_WORDS = ("true", "yes", "1", "on")
FALSE_WORDS = ("false", "no", "0", "off")


@dataclass
class CliState:
    """Global options given before the command."""

    config_path: Path
    run_id: str | None
    overrides: dict[str, Any] = field(default_factory=dict)


@contextmanager
def handle_errors() -> Iterator[None]:
    """Print fatal errors with their remediation and exit with their code."""
    try:
        yield
    except BenchfleetError as e:
        console.print(f"[red]✗ {e.message}[/red]")
        if e.remediation:
            for line in e.remediation.split("\n"):
                console.print(f"  [dim]→ Fix:[/dim] {line}")
        raise typer.Exit(e.exit_code) from e


def parse_bool_word(value: str | None, field_name: str) -> bool | None:
    if value is None:
        return None
    word = value.strip().lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    raise ConfigurationError(
        field_name, f"'{value}' is not a boolean (use true or false)"
    )


def ask_confirmation(prompt: str) -> bool:
    """Only an explicit yes counts; anything else cancels."""
    answer = typer.prompt(f"{prompt} (y/N)", default="", show_default=False)
    return answer.strip().lower() in ("y", "yes")


def run_preflight(config: RunConfiguration, needs_ssh: bool = True) -> None:
    """Pre-flight checks; AWS access is not checked in dry-run mode."""
    PreflightChecker(config, console).ensure_ready(
        include_aws=not config.dry_run, include_local=needs_ssh
    )


def build_orchestrator(config: RunConfiguration, identity: str) -> Orchestrator:
    cloud = Ec2Cloud(config.region)
    return Orchestrator(
        config,
        identity,
        provisioner=ResourceProvisioner(cloud),
        executor=RemoteExecutor(),
        collector=ResultCollector(),
        teardown=TeardownController(cloud, config.security_group, confirm=ask_confirmation),
    )


def _resolve(state: CliState, require_ssh: bool = True) -> RunConfiguration:
    return resolve_configuration(
        state.config_path, state.overrides, require_ssh=require_ssh
    )


def _prepare(
    state: CliState,
    command: str,
    require_run_id: bool = False,
    needs_ssh: bool = True,
) -> Orchestrator:
    config = _resolve(state, require_ssh=needs_ssh)
    if state.run_id is not None:
        identity = accept_run_identity(state.run_id)
    elif require_run_id:
        raise ConfigurationError(
            "run_id",
            f"'{command}' works on the instances of an earlier setup",
            f"Pass the run identity before the command: benchfleet --run-id <id> {command}",
        )
    else:
        identity = new_run_identity()

    if state.run_id is not None or command != "cleanup":
        console.print(f"[blue]Run ID:[/blue] {identity}")
    run_preflight(config, needs_ssh=needs_ssh)
    return build_orchestrator(config, identity)


def _exit_with(report: RunReport) -> None:
    if report.exit_code:
        raise typer.Exit(report.exit_code)


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(
        DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config YAML file"
    ),
    variants: str | None = typer.Option(
        None, "--variants", help="Comma-separated variants (datafusion,datafusion-partitioned)"
    ),
    instances: str | None = typer.Option(
        None, "--instances", help="Comma-separated EC2 instance types"
    ),
    datafusion_ref: str | None = typer.Option(
        None, "--datafusion-ref", help="DataFusion git branch, tag or commit"
    ),
    datafusion_install_method: str | None = typer.Option(
        None, "--datafusion-install-method", help="compile or package (alias: brew)"
    ),
    clickbench_repo: str | None = typer.Option(
        None, "--clickbench-repo", help="ClickBench repository URL"
    ),
    clickbench_ref: str | None = typer.Option(
        None, "--clickbench-ref", help="ClickBench git reference"
    ),
    enable_native_opts: str | None = typer.Option(
        None, "--enable-native-opts", help="Build with -C target-cpu=native (true/false)"
    ),
    run_id: str | None = typer.Option(
        None, "--run-id", help="Run identity (default: UTC timestamp YYYYMMDD-HHMMSS)"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show what would be done without changing anything"
    ),
    region: str | None = typer.Option(None, "--region", help="AWS region"),
    parallel: bool = typer.Option(
        False, "--parallel", help="Benchmark all instances concurrently"
    ),
    debug: bool = typer.Option(
        False, "--debug", help="Enable debug output for detailed command tracing"
    ),
) -> None:
    """Provision EC2 instances, run ClickBench variants of DataFusion, collect results, tear down."""
    load_dotenv()
    set_debug(debug)

    with handle_errors():
        native = parse_bool_word(enable_native_opts, "enable_native_opts")

    ctx.obj = CliState(
        config_path=config,
        run_id=run_id,
        overrides={
            "variants": variants,
            "instance_sizes": instances,
            "datafusion_ref": datafusion_ref,
            "install_method": datafusion_install_method,
            "clickbench_repo": clickbench_repo,
            "clickbench_ref": clickbench_ref,
            "enable_native_opts": native,
            "region": region,
            # Absent flags defer to the config file
            "dry_run": True if dry_run else None,
            "parallel": True if parallel else None,
        },
    )


@app.command()
def init(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
) -> None:
    """Write a starter configuration file."""
    state: CliState = ctx.obj
    with handle_errors():
        path = write_config_template(state.config_path, force=force)
    console.print(f"[green]✓ Configuration written to:[/green] {path}")
    console.print("Next: set aws.key_name and aws.private_key_file, then run 'benchfleet check'")


@app.command()
def check(ctx: typer.Context) -> None:
    """Run the pre-flight checks and print the report."""
    state: CliState = ctx.obj
    with handle_errors():
        config = _resolve(state)
        checker = PreflightChecker(config, console)
        console.print(f"[blue]Pre-flight checks ({config.region}):[/blue]")
        report = checker.run(include_aws=not config.dry_run)
    checker.display_report(report)
    if report.has_errors:
        raise typer.Exit(1)


@app.command()
def setup(ctx: typer.Context) -> None:
    """Create the SSH ingress rule and launch one instance per type."""
    with handle_errors():
        orchestrator = _prepare(ctx.obj, "setup")
        report = orchestrator.run_setup()
    _exit_with(report)


@app.command()
def benchmark(ctx: typer.Context) -> None:
    """Install DataFusion and run every variant on the instances of a run."""
    with handle_errors():
        orchestrator = _prepare(ctx.obj, "benchmark", require_run_id=True)
        report = orchestrator.run_benchmark()
    _exit_with(report)


@app.command()
def collect(ctx: typer.Context) -> None:
    """Copy results of successful variants into results/<run-id>/."""
    with handle_errors():
        orchestrator = _prepare(ctx.obj, "collect", require_run_id=True)
        report = orchestrator.run_collect()
    _exit_with(report)


@app.command()
def cleanup(
    ctx: typer.Context,
    remove_security_group: bool = typer.Option(
        False,
        "--remove-security-group/--keep-security-group",
        help="Also delete the shared security group",
    ),
    force: bool = typer.Option(False, "--force", help="Skip the confirmation prompt"),
) -> None:
    """Terminate the instances of a run, or of every run without --run-id."""
    state: CliState = ctx.obj
    with handle_errors():
        orchestrator = _prepare(state, "cleanup", needs_ssh=False)
        report = orchestrator.run_cleanup(
            all_runs=state.run_id is None,
            remove_ingress_rule=remove_security_group,
            force=force,
        )
    _exit_with(report)


@app.command()
def full(
    ctx: typer.Context,
    remove_security_group: bool = typer.Option(
        False,
        "--remove-security-group/--keep-security-group",
        help="Also delete the shared security group at the end",
    ),
    skip_cleanup: bool = typer.Option(
        False, "--skip-cleanup", help="Leave the instances running afterwards"
    ),
) -> None:
    """Run setup, benchmark, collect and cleanup in one go."""
    with handle_errors():
        orchestrator = _prepare(ctx.obj, "full")
        report = orchestrator.run_full(
            remove_ingress_rule=remove_security_group, skip_cleanup=skip_cleanup
        )
    _exit_with(report)


if __name__ == "__main__":
    app()
