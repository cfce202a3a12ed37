"""
converge CLI entry point.
"""
import json
import os
import sys
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from converge import __version__
from converge.config import Settings, load_settings
from converge.detect import detect_format
from converge.engine import Engine
from converge.errors import ConvergeError
from converge.graph import ResourceGraph, build_graph
from converge.models.expression import to_source
from converge.models.plan import NodeStatus, PassResult, Plan
from converge.models.resource import Declaration
from converge.parsers import terraform, yaml_decl
from converge.providers.simulated import SimulatedCloud
from converge.reporters import json_reporter, markdown
from converge.state import LocalStateBackend, StateRecorder

console = Console(stderr=True)

EXIT_OK = 0
EXIT_NODE_FAILED = 1
EXIT_ERROR = 2
EXIT_CHANGES_PENDING = 3

_ACTION_COLORS = {
    "create": "green",
    "update": "yellow",
    "replace": "bold yellow",
    "destroy": "red",
    "no-op": "dim",
}

_STATUS_COLORS = {
    "succeeded": "green",
    "failed": "bold red",
    "skipped": "yellow",
    "cancelled": "yellow",
}


def _collect_files(paths: Tuple[str, ...]) -> List[str]:
    """Expand directories into file paths."""
    files = []
    for p in paths:
        if os.path.isfile(p):
            files.append(p)
        elif os.path.isdir(p):
            for root, dirs, fnames in os.walk(p):
                dirs[:] = sorted(d for d in dirs if not d.startswith("."))
                for fname in sorted(fnames):
                    files.append(os.path.join(root, fname))
        else:
            console.print(f"[yellow]Warning:[/yellow] '{p}' does not exist, skipping.")
    return files


def _parse_files(file_paths: List[str]) -> Declaration:
    decl = Declaration()
    tf_files = []
    for fp in file_paths:
        fmt = detect_format(fp)
        if fmt == "terraform":
            tf_files.append(fp)
        elif fmt == "yaml":
            decl.extend(yaml_decl.parse_file(fp))
        else:
            console.print(f"[dim]Skipping non-declaration file:[/dim] {fp}")
    if tf_files:
        decl.extend(terraform.parse_files(tf_files))
    return decl


def _print_plan_table(plan: Plan, no_color: bool, result: Optional[PassResult] = None) -> None:
    """Print a rich plan table to stderr."""
    tbl = Table(title="Destroy Plan" if plan.destroy_mode else "Plan", show_header=True, header_style="bold")
    tbl.add_column("Action", width=9)
    tbl.add_column("Resource", width=24)
    tbl.add_column("Type", width=20)
    tbl.add_column("Changes")
    if result is not None:
        tbl.add_column("Status", width=10)

    for e in plan.entries:
        color = _ACTION_COLORS.get(e.action.value, "") if not no_color else ""
        changed = ", ".join(
            d.attribute + (" (forces replacement)" if d.requires_replace else "")
            for d in e.diffs
        ) if e.action.value != "create" else ""
        note = changed or e.reason
        if e.protected:
            note = (note + " " if note else "") + "[protected]"
        row = [
            f"[{color}]{e.action.value}[/{color}]" if color else e.action.value,
            e.name,
            e.resource_type,
            note[:80] + "…" if len(note) > 80 else note,
        ]
        if result is not None:
            status = result.status_of(e.name)
            value = status.value if status else ""
            scolor = _STATUS_COLORS.get(value, "") if not no_color else ""
            row.append(f"[{scolor}]{value}[/{scolor}]" if scolor else value)
        tbl.add_row(*row)

    Console(stderr=True, no_color=no_color).print(tbl)


def _write_report(content: str, output: Optional[str], stderr: Console) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        stderr.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(content)


def _render(fmt: str, plan: Plan, source: str, graph: ResourceGraph,
            result: Optional[PassResult], ascii_mode: bool) -> Optional[str]:
    if fmt == "json":
        return json_reporter.build_report(plan, source, graph=graph, result=result)
    if fmt == "markdown":
        return markdown.build_report(plan, source, graph=graph, result=result, ascii_mode=ascii_mode)
    return None


def _settings(ctx: click.Context) -> Settings:
    obj = ctx.obj or {}
    settings = load_settings(obj.get("config"))
    if obj.get("state_dir"):
        settings.state_dir = obj["state_dir"]
    if obj.get("cloud_file"):
        settings.cloud_file = obj["cloud_file"]
    return settings


def _engine(settings: Settings, no_color: bool, quiet: bool) -> Engine:
    recorder = StateRecorder(LocalStateBackend(settings.state_dir), lease_seconds=settings.lock_lease_seconds)
    cloud = SimulatedCloud(settings.cloud_path)
    return Engine(
        cloud.registry(),
        recorder,
        parallelism=settings.parallelism,
        retry=settings.retry,
        allowed_managed_policies=settings.allowed_managed_policies,
        out=Console(stderr=True, no_color=no_color),
        quiet=quiet,
    )


def _load_graph(paths: Tuple[str, ...], engine: Engine, stderr: Console) -> ResourceGraph:
    with stderr.status("[bold]Reading declaration…"):
        file_paths = _collect_files(paths)
        if not file_paths:
            raise ConvergeError("no files found")
        decl = _parse_files(file_paths)
    graph = build_graph(decl.resources, engine.registry, decl.outputs)
    stderr.print(f"Declaration has [bold]{len(graph)}[/bold] resources.")
    return graph


def _fail(stderr: Console, exc: ConvergeError) -> None:
    stderr.print(f"[red]{type(exc).__name__}:[/red] {exc}")
    sys.exit(EXIT_ERROR)


def _report_options(func):
    options = [
        click.option(
            "--format", "output_format",
            type=click.Choice(["table", "markdown", "json"], case_sensitive=False),
            default="table",
            show_default=True,
            help="Report format; 'table' prints the summary table only.",
        ),
        click.option(
            "--output", "-o",
            type=click.Path(),
            default=None,
            help="Write report to this file (default: stdout).",
        ),
        click.option("--ascii", is_flag=True, default=False, help="ASCII-only action symbols."),
        click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output."),
        click.option("--quiet", "-q", is_flag=True, default=False, help="Do not print per-resource progress."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.option("--config", "-c", type=click.Path(dir_okay=False), default=None,
              envvar="CONVERGE_CONFIG", help="Settings file (default: ./converge.yaml if present).")
@click.option("--state-dir", type=click.Path(file_okay=False), default=None,
              envvar="CONVERGE_STATE_DIR", help="Directory holding recorded state and the lock.")
@click.option("--cloud-file", type=click.Path(dir_okay=False), default=None,
              envvar="CONVERGE_CLOUD_FILE", help="File backing the simulated cloud provider.")
@click.pass_context
def cli(ctx, config, state_dir, cloud_file):
    """converge — reconcile declared infrastructure idempotently."""
    ctx.ensure_object(dict)
    ctx.obj.update(config=config, state_dir=state_dir, cloud_file=cloud_file)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@click.option("--destroy", is_flag=True, default=False, help="Plan the removal of every recorded resource.")
@click.option("--detailed-exitcode", is_flag=True, default=False,
              help=f"Exit {EXIT_CHANGES_PENDING} when the plan has changes.")
@_report_options
@click.pass_context
def plan(ctx, paths, destroy, detailed_exitcode, output_format, output, ascii, no_color, quiet):
    """
    Compute and print the plan without applying it.

    PATHS can be declaration files or directories; multiple values accepted.
    """
    stderr = Console(stderr=True, no_color=no_color)
    try:
        engine = _engine(_settings(ctx), no_color, quiet)
        graph = _load_graph(paths, engine, stderr)
        with stderr.status("[bold]Refreshing state…"):
            the_plan = engine.plan(graph, destroy=destroy)
    except ConvergeError as exc:
        _fail(stderr, exc)

    _print_plan_table(the_plan, no_color)
    counts = the_plan.count_by_action()
    stderr.print("Plan: " + ", ".join(f"{counts[a]} to {a}" for a in ("create", "update", "replace", "destroy")))

    content = _render(output_format.lower(), the_plan, ", ".join(paths), graph, None, ascii)
    if content is not None:
        _write_report(content, output, stderr)

    if detailed_exitcode and the_plan.has_changes:
        sys.exit(EXIT_CHANGES_PENDING)
    sys.exit(EXIT_OK)


def _run_pass(ctx, paths, destroy, output_format, output, ascii, no_color, quiet):
    stderr = Console(stderr=True, no_color=no_color)
    try:
        engine = _engine(_settings(ctx), no_color, quiet)
        graph = _load_graph(paths, engine, stderr)
        result = engine.apply(graph, destroy=destroy)
    except ConvergeError as exc:
        _fail(stderr, exc)

    _print_plan_table(result.plan, no_color, result=result)
    for r in result.failed:
        stderr.print(f"[red]Error:[/red] {type(r.error).__name__}: {r.message}")

    counts = {s.value: sum(1 for r in result.results.values() if r.status == s) for s in NodeStatus}
    stderr.print(
        "Apply complete: "
        + ", ".join(f"{counts[s.value]} {s.value}" for s in NodeStatus if counts[s.value])
        if result.results else "Apply complete: nothing to do."
    )
    if result.outputs:
        stderr.print("\n[bold]Outputs:[/bold]")
        for name, value in result.outputs.items():
            stderr.print(f"  {name} = {json.dumps(to_source(value))}")

    content = _render(output_format.lower(), result.plan, ", ".join(paths), graph, result, ascii)
    if content is not None:
        _write_report(content, output, stderr)

    sys.exit(EXIT_OK if result.ok else EXIT_NODE_FAILED)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_report_options
@click.pass_context
def apply(ctx, paths, output_format, output, ascii, no_color, quiet):
    """
    Compute the plan and apply it.

    Exits 0 when every resource succeeded, 1 when any failed.
    """
    _run_pass(ctx, paths, False, output_format, output, ascii, no_color, quiet)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_report_options
@click.pass_context
def destroy(ctx, paths, output_format, output, ascii, no_color, quiet):
    """Destroy every recorded resource, dependents first."""
    _run_pass(ctx, paths, True, output_format, output, ascii, no_color, quiet)


@cli.command()
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the raw state snapshot.")
@click.pass_context
def show(ctx, as_json):
    """Print the recorded state."""
    stderr = Console(stderr=True)
    try:
        settings = _settings(ctx)
        snapshot = StateRecorder(LocalStateBackend(settings.state_dir)).load()
    except ConvergeError as exc:
        _fail(stderr, exc)

    if as_json:
        click.echo(json.dumps(snapshot.to_dict(), indent=2))
        return
    if not snapshot.resources:
        stderr.print("[yellow]No recorded resources.[/yellow]")
        return
    tbl = Table(title=f"State (serial {snapshot.serial})", show_header=True, header_style="bold")
    tbl.add_column("Resource")
    tbl.add_column("Type")
    tbl.add_column("Identity")
    tbl.add_column("Status")
    tbl.add_column("Protected")
    for name, s in sorted(snapshot.resources.items()):
        tbl.add_row(name, s.resource_type, s.identity or "", s.status, "yes" if s.protect_from_destroy else "")
    Console().print(tbl)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@click.option("--name", default=None, help="Print only this output.")
@click.pass_context
def output(ctx, paths, name):
    """Print resolved output values as JSON."""
    stderr = Console(stderr=True)
    try:
        engine = _engine(_settings(ctx), False, True)
        graph = _load_graph(paths, engine, stderr)
        values = to_source(engine.resolve_outputs(graph))
    except ConvergeError as exc:
        _fail(stderr, exc)

    if name is not None:
        if name not in values:
            stderr.print(f"[red]No output named '{name}'.[/red]")
            sys.exit(EXIT_ERROR)
        click.echo(json.dumps(values[name]))
        return
    click.echo(json.dumps(values, indent=2))


@cli.command("force-unlock")
@click.argument("lock_id")
@click.pass_context
def force_unlock(ctx, lock_id):
    """Remove a stale reconciliation lock by its id."""
    stderr = Console(stderr=True)
    try:
        settings = _settings(ctx)
        released = LocalStateBackend(settings.state_dir).force_unlock(lock_id)
    except ConvergeError as exc:
        _fail(stderr, exc)
    stderr.print(f"Released lock [bold]{released.lock_id}[/bold] held by {released.holder}.")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
