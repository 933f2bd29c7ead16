#!/usr/bin/env python3
"""CLI for quorum cluster fleet reconciliation."""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.table import Table

from quorum_reconcile.errors import ReconcileError
from quorum_reconcile.memory import InMemoryCluster
from quorum_reconcile.model import ClusterModelBuilder, load_custom_resource
from quorum_reconcile.reconciler import ReconciliationStateMachine
from quorum_reconcile.state import AttemptResult, FleetMode, ReconciliationContext
from quorum_tools.config import FeatureGates, OperatorConfig
from quorum_tools.logging_config import get_uvicorn_log_config, setup_logging

console = Console()


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def print_desired(specs: dict, format_type: str = "text") -> None:
    """Print desired specs per role."""
    if format_type == "json":
        print_json({role.value: spec.to_dict() for role, spec in specs.items()})
        return

    table = Table(title="Desired State", box=box.ROUNDED)
    table.add_column("Role", style="cyan")
    table.add_column("Name")
    table.add_column("Replicas", justify="right")
    table.add_column("Mode")
    table.add_column("Revision", style="dim")
    for role, spec in specs.items():
        table.add_row(role.value, spec.name, str(spec.replicas), spec.mode.value, spec.revision)
    console.print(table)


def print_preview(preview: dict, format_type: str = "text") -> None:
    """Print what an attempt would change."""
    if format_type == "json":
        print_json(preview)
        return

    table = Table(title="Fleet Drift", box=box.ROUNDED)
    table.add_column("Role", style="cyan")
    table.add_column("Replicas", justify="right")
    table.add_column("Migration")
    table.add_column("Restarts")
    table.add_column("In sync")
    for role, data in preview.items():
        replicas = f"{data['current_replicas']} -> {data['desired_replicas']}"
        restarts = "\n".join(
            f"{pod}: {', '.join(reasons)}" for pod, reasons in data["restarts"].items()
        )
        table.add_row(
            role,
            replicas,
            ", ".join(data["migration_actions"]) or "-",
            restarts or "-",
            "[green]yes[/green]" if data["in_sync"] else "[yellow]no[/yellow]",
        )
    console.print(table)


def print_result(result: AttemptResult, format_type: str = "text") -> None:
    """Print the outcome of one reconciliation attempt."""
    if format_type == "json":
        print_json(result.to_dict())
        return

    if result.success:
        console.print(f"[green]✓ {result.context} reconciled[/green]")
    else:
        console.print(f"[red]✗ {result.context} failed at {result.failed_stage}[/red]")
        console.print(f"  {result.error['type']}: {result.error['message']}")

    for role, replicas in result.replicas.items():
        console.print(f"  {role}: {replicas} replicas")
    for action in result.migration_actions:
        console.print(f"  migrated: {action}")
    for pod, reasons in result.restart_reasons.items():
        console.print(f"  restarted {pod}: {', '.join(reasons)}")


def print_simulation(cluster: InMemoryCluster, result: AttemptResult, format_type: str = "text") -> None:
    """Print the writes recorded by the simulator and the resulting fleet."""
    if format_type == "json":
        print_json({
            "calls": [{"kind": c.kind, "verb": c.verb, "name": c.name, **c.detail} for c in cluster.calls],
            "fleet": cluster.snapshot(),
            "result": result.to_dict(),
        })
        return

    table = Table(title="Simulated Writes", box=box.SIMPLE)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Verb")
    table.add_column("Kind", style="cyan")
    table.add_column("Name")
    table.add_column("Detail", style="dim")
    for i, call in enumerate(cluster.calls, 1):
        detail = " ".join(f"{k}={v}" for k, v in call.detail.items())
        table.add_row(str(i), call.verb, call.kind, call.name, detail)
    console.print(table)

    pods = Table(title="Simulated Pods", box=box.SIMPLE)
    pods.add_column("Pod", style="cyan")
    pods.add_column("Revision", style="dim")
    pods.add_column("UID")
    pods.add_column("Ready")
    for pod in cluster.snapshot()["pods"]:
        pods.add_row(pod["name"], pod["revision"], pod["uid"], "yes" if pod["ready"] else "[red]no[/red]")
    console.print(pods)
    print_result(result, format_type)


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def _builder(args: argparse.Namespace, config: OperatorConfig) -> ClusterModelBuilder:
    gates = FeatureGates(args.feature_gates) if args.feature_gates is not None else config.gates
    return ClusterModelBuilder(feature_gates=gates)


def _load(path: str) -> dict | None:
    if not Path(path).exists():
        console.print(f"[red]Error: Custom resource file not found: {path}[/red]")
        return None
    return load_custom_resource(path)


def _context(args: argparse.Namespace, config: OperatorConfig, trigger: str) -> ReconciliationContext:
    return ReconciliationContext(
        namespace=args.namespace or config.namespace,
        name=args.name,
        trigger=trigger,
        operation_timeout_ms=config.operation_timeout_ms,
    )


async def cmd_describe(args: argparse.Namespace) -> int:
    """Show the desired state built from a custom resource file."""
    resource = _load(args.resource)
    if resource is None:
        return 1
    specs = _builder(args, OperatorConfig()).build(resource)
    print_desired(specs, args.format)
    return 0


async def cmd_diff(args: argparse.Namespace) -> int:
    """Show what a reconciliation attempt would change on the live cluster."""
    from quorum_reconcile.kube import KubeResources

    config = OperatorConfig()
    async with KubeResources.from_config(config) as resources:
        machine = ReconciliationStateMachine(resources, model_builder=_builder(args, config))
        preview = await machine.preview(_context(args, config, "diff"))
        print_preview(preview, args.format)

    return 0 if all(role["in_sync"] for role in preview.values()) else 1


async def cmd_reconcile(args: argparse.Namespace) -> int:
    """Run one reconciliation attempt against the live cluster."""
    from quorum_reconcile.kube import KubeResources

    config = OperatorConfig()
    async with KubeResources.from_config(config) as resources:
        machine = ReconciliationStateMachine(
            resources,
            model_builder=_builder(args, config),
            poll_interval_ms=config.poll_interval_ms,
        )
        result = await machine.reconcile(_context(args, config, "cli"))
        print_result(result, args.format)

    return 0 if result.success else 1


async def cmd_simulate(args: argparse.Namespace) -> int:
    """Reconcile an in-memory fleet built from one resource toward another."""
    current = _load(args.current)
    desired = _load(args.desired)
    if current is None or desired is None:
        return 1

    builder = _builder(args, OperatorConfig())
    current_mode = FleetMode(args.current_mode) if args.current_mode else builder.mode

    cluster = InMemoryCluster()
    for spec in builder.build(current).values():
        cluster.seed_fleet(spec, mode=current_mode)
    cluster.add_cluster(desired)
    cluster.unready.update(args.unready or [])

    metadata = desired["metadata"]
    context = ReconciliationContext(
        namespace=metadata.get("namespace", "default"),
        name=metadata["name"],
        trigger="simulate",
        operation_timeout_ms=args.timeout_ms,
    )
    machine = ReconciliationStateMachine(cluster, model_builder=builder, poll_interval_ms=1)

    result = None
    for _ in range(args.attempts):
        result = await machine.reconcile(context)
        if result.success:
            break
        cluster.unready.clear()

    print_simulation(cluster, result, args.format)
    return 0 if result.success else 1


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the operator: periodic resync plus the HTTP API."""
    import uvicorn

    from quorum_reconcile.kube import KubeResources
    from quorum_tools.reconcile_api import create_app

    config = OperatorConfig()
    setup_logging(level=config.log_level, json_format=config.log_json)
    app = create_app(KubeResources.from_config(config), config)

    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.api_host,
            port=config.api_port,
            log_config=get_uvicorn_log_config(config.log_json),
        )
    )
    await server.serve()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Quorum cluster fleet reconciliation tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  quorum-reconcile describe -r cluster.yaml              # Show desired state
  quorum-reconcile diff my-cluster -n my-ns              # Show drift on the live cluster
  quorum-reconcile reconcile my-cluster -n my-ns         # Run one attempt
  quorum-reconcile simulate -c old.yaml -d new.yaml      # Dry run against an in-memory fleet
  quorum-reconcile --feature-gates +UsePodSets serve     # Run the operator
        """,
    )
    parser.add_argument(
        "--format",
        "-f",
        choices=["text", "json"],
        default="text",
        help="Output format",
    )
    parser.add_argument(
        "--feature-gates",
        help="Feature gates, e.g. +UsePodSets (default from QUORUM_FEATURE_GATES)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # describe command
    describe_parser = subparsers.add_parser(
        "describe", help="Show the desired state built from a custom resource"
    )
    describe_parser.add_argument(
        "-r",
        "--resource",
        required=True,
        help="Path to cluster custom resource YAML file",
    )
    describe_parser.set_defaults(func=cmd_describe)

    # diff and reconcile commands
    for command, func, help_text in (
        ("diff", cmd_diff, "Show what an attempt would change"),
        ("reconcile", cmd_reconcile, "Run one reconciliation attempt"),
    ):
        command_parser = subparsers.add_parser(command, help=help_text)
        command_parser.add_argument("name", help="Cluster custom resource name")
        command_parser.add_argument(
            "-n",
            "--namespace",
            help="Namespace (default from QUORUM_NAMESPACE)",
        )
        command_parser.set_defaults(func=func)

    # simulate command
    simulate_parser = subparsers.add_parser(
        "simulate", help="Reconcile an in-memory fleet toward a desired resource"
    )
    simulate_parser.add_argument(
        "-c",
        "--current",
        required=True,
        help="Custom resource the running fleet was built from",
    )
    simulate_parser.add_argument(
        "-d",
        "--desired",
        required=True,
        help="Custom resource to reconcile toward",
    )
    simulate_parser.add_argument(
        "--current-mode",
        choices=[m.value for m in FleetMode],
        help="Representation of the running fleet (default: same as desired)",
    )
    simulate_parser.add_argument(
        "--unready",
        nargs="*",
        help="Pods that never become ready on the first attempt",
    )
    simulate_parser.add_argument(
        "--attempts",
        type=positive_int,
        default=1,
        help="Attempts to run until one succeeds (default: 1)",
    )
    simulate_parser.add_argument(
        "--timeout-ms",
        type=int,
        default=300_000,
        help="Operation timeout reported by readiness failures",
    )
    simulate_parser.set_defaults(func=cmd_simulate)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the operator")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)
    try:
        return asyncio.run(args.func(args))
    except (ReconcileError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
