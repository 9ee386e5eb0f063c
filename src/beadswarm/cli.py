"""CLI entrypoint for beadswarm."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from beadswarm.config.loader import load_config
from beadswarm.config.schema import BeadswarmConfig
from beadswarm.controllers.envelope import Envelope
from beadswarm.controllers.operations import AssignController, invoke
from beadswarm.controllers.runtime import Runtime, build_runtime
from beadswarm.coordinator.planner import PassOptions, PassResult
from beadswarm.coordinator.watch import WatchOptions
from beadswarm.errors import InvalidArgsError
from beadswarm.prompts import TEMPLATE_NAMES
from beadswarm.utilities.logger import bind_session, setup_logging

_KIND_FLAGS = {"cc_only": "claude", "cod_only": "codex", "gmi_only": "gemini"}


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: ./.beadswarm.yaml)",
)
@click.option("--debug", is_flag=True, help="Verbose logging on stderr")
@click.option("--log-json", is_flag=True, help="Render logs as JSON lines")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, debug: bool, log_json: bool) -> None:
    """Beadswarm: hand ready beads to idle agent panes."""
    setup_logging(debug=debug, json_output=log_json)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.group()
def assign() -> None:
    """Assign, clear, reassign, retry and watch bead assignments."""


# ----------------------------------------------------------------------
# Shared options
# ----------------------------------------------------------------------


def _runtime_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    decorators = [
        click.argument("session"),
        click.option("--json", "as_json", is_flag=True, help="Emit a JSON envelope on stdout"),
        click.option("--timeout", type=float, default=None, help="Per-call timeout in seconds"),
        click.option("--no-reserve", is_flag=True, help="Skip file reservations"),
        click.option("--template", type=click.Choice(TEMPLATE_NAMES), default=None, help="Prompt template"),
        click.option(
            "--template-file",
            type=click.Path(dir_okay=False, path_type=Path),
            default=None,
            help="Template file for --template custom",
        ),
    ]
    for decorator in reversed(decorators):
        fn = decorator(fn)
    return fn


def _pass_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    decorators = [
        click.option(
            "--strategy",
            type=click.Choice(["balanced", "speed", "quality", "dependency", "round-robin"]),
            default=None,
            help="Matching strategy",
        ),
        click.option("--limit", type=int, default=None, help="Max assignments per pass (0 = unlimited)"),
        click.option("--agent", "agent_type", default="", help="Only assign to this agent kind"),
        click.option("--cc-only", is_flag=True, help="Only Claude agents"),
        click.option("--cod-only", is_flag=True, help="Only Codex agents"),
        click.option("--gmi-only", is_flag=True, help="Only Gemini agents"),
        click.option("--beads", default="", help="Comma-separated bead ids to consider"),
    ]
    for decorator in reversed(decorators):
        fn = decorator(fn)
    return fn


def _agent_filter(agent_type: str, flags: dict[str, bool]) -> str:
    chosen = [kind for flag, kind in _KIND_FLAGS.items() if flags.get(flag)]
    if agent_type:
        chosen.append(agent_type)
    if len(set(chosen)) > 1:
        raise InvalidArgsError("--agent, --cc-only, --cod-only and --gmi-only are mutually exclusive")
    return chosen[0] if chosen else ""


def _split_ids(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _configure(ctx: click.Context, opts: dict[str, Any]) -> BeadswarmConfig:
    cfg = load_config(ctx.obj.get("config_path") if ctx.obj else None)
    if opts.get("timeout"):
        cfg.session.timeout_seconds = opts["timeout"]
    if opts.get("no_reserve"):
        cfg.reservations.enabled = False
    if opts.get("template_file"):
        cfg.prompts.template_file = str(opts["template_file"])
        if not opts.get("template"):
            cfg.prompts.template = "custom"
    if opts.get("template"):
        cfg.prompts.template = opts["template"]
    return cfg


def _run(
    ctx: click.Context,
    subcommand: str,
    opts: dict[str, Any],
    call: Callable[[AssignController, BeadswarmConfig], Awaitable[Envelope]],
    render: Callable[[Envelope], None] | None = None,
) -> None:
    session = opts["session"]
    bind_session(session)
    holder: dict[str, BeadswarmConfig] = {}

    def factory() -> Runtime:
        holder["cfg"] = _configure(ctx, opts)
        return build_runtime(holder["cfg"], session)

    env = asyncio.run(invoke(subcommand, session, factory, lambda ctl: call(ctl, holder["cfg"])))
    _emit(env, opts["as_json"], render)
    raise SystemExit(env.exit_code)


def _fail_early(subcommand: str, opts: dict[str, Any], exc: InvalidArgsError) -> None:
    env = Envelope(subcommand=subcommand, session=opts["session"]).fail_with(exc)
    _emit(env, opts["as_json"], None)
    raise SystemExit(env.exit_code)


# ----------------------------------------------------------------------
# Rendering
# ----------------------------------------------------------------------


def _emit(env: Envelope, as_json: bool, render: Callable[[Envelope], None] | None) -> None:
    if as_json:
        click.echo(env.to_json())
        return
    for warning in env.warnings:
        click.echo(f"warning: {warning}", err=True)
    if render is not None:
        render(env)
    if env.error is not None:
        click.echo(f"Error [{env.error.code}]: {env.error.message}", err=True)


def _render_pass(env: Envelope) -> None:
    data = env.data
    for item in data.get("assignments", []):
        mark = "→" if item["status"] == "planned" else "✓"
        click.echo(
            f"{mark} {item['bead_id']} → pane {item['pane']} ({item['agent_type']}) "
            f"score={item['score']:.2f}  {item['reasoning']}"
        )
    for item in data.get("skipped", []):
        extra = f" (blocked by {', '.join(item['blocked_by_ids'])})" if item.get("blocked_by_ids") else ""
        click.echo(f"- {item['bead_id']} skipped: {item['reason']}{extra}")
    summary = data.get("summary")
    if summary:
        click.echo(f"{summary['assigned_count']} assigned, {summary['skipped_count']} skipped")


def _render_pane(env: Envelope) -> None:
    item = env.data.get("assignment")
    if not env.success or not item:
        return
    click.echo(f"✓ Assigned {item['bead_id']} to pane {item['pane']} ({item['agent_type']})")
    if item.get("bead_title"):
        click.echo(f"  Title: {item['bead_title']}")
    if item.get("pane_was_busy"):
        click.echo("  Note: pane was busy (--force used)")
    if item.get("deps_ignored"):
        click.echo("  Note: dependencies ignored (--ignore-deps used)")
    granted = env.data.get("file_reservations", {}).get("granted")
    if granted:
        click.echo(f"  Reserved: {', '.join(granted)}")


def _render_clear(env: Envelope) -> None:
    for item in env.data.get("results", []):
        if item["success"]:
            click.echo(f"✓ Cleared {item['bead_id']} (pane {item['previous_pane']}, {item['previous_status']})")
    if "cleared" in env.data:
        for bead_id in env.data["cleared"]:
            click.echo(f"✓ Cleared {bead_id}")
    summary = env.data.get("summary")
    if summary:
        click.echo(f"{summary['cleared_count']} cleared")


def _render_reassign(env: Envelope) -> None:
    data = env.data
    if not data.get("bead_id"):
        return
    click.echo(f"Reassigned {data['bead_id']} to pane {data['pane']} ({data['agent_type']})")
    click.echo(f"  Previous: pane {data['previous_pane']} ({data['previous_agent_type']})")
    if data.get("file_reservations_transferred"):
        click.echo("  File reservations transferred")


def _render_retry(env: Envelope) -> None:
    for item in env.data.get("retried", []):
        click.echo(
            f"✓ Retried {item['bead_id']} → pane {item['pane']} ({item['agent_type']}), "
            f"retry #{item['retry_count']}"
        )
    for item in env.data.get("skipped", []):
        click.echo(f"- {item['bead_id']} skipped: {item['reason']}")
    summary = env.data.get("summary")
    if summary:
        click.echo(f"{summary['retried_count']} retried, {summary['skipped_count']} skipped")


def _render_status(env: Envelope) -> None:
    rows = env.data.get("assignments", [])
    console = Console()
    if not rows:
        console.print("No assignments")
    else:
        table = Table(title=f"Assignments: {env.session}")
        for column in ("Bead", "Title", "Pane", "Agent", "Status", "Retries", "Assigned"):
            table.add_column(column)
        for row in rows:
            table.add_row(
                row["bead_id"],
                row["bead_title"],
                str(row["pane_index"]),
                row["agent_kind"],
                row["status"],
                str(row["retry_count"]),
                row["assigned_at"],
            )
        console.print(table)
    stats = env.data.get("stats")
    if stats:
        console.print(", ".join(f"{k}={v}" for k, v in stats.items()))


def _render_watch(env: Envelope) -> None:
    if env.data.get("summary"):
        click.echo(env.data["summary"])


def _print_pass(result: PassResult) -> None:
    for item in result.assignments:
        click.echo(f"✓ {item.bead_id} → pane {item.pane} ({item.agent_type})")


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


def _pass_from(opts: dict[str, Any], cfg: BeadswarmConfig, *, execute: bool) -> PassOptions:
    limit = opts.get("limit")
    return PassOptions(
        strategy=opts.get("strategy") or cfg.matcher.strategy,
        limit=limit if limit is not None else 0,
        agent_type=opts["agent_filter"],
        beads=_split_ids(opts.get("beads", "")),
        execute=execute,
        reserve=cfg.reservations.enabled,
        delay=opts.get("delay") or 0.0,
    )


def _resolve_filter(subcommand: str, opts: dict[str, Any]) -> None:
    try:
        opts["agent_filter"] = _agent_filter(
            opts.get("agent_type", ""),
            {flag: opts.get(flag, False) for flag in _KIND_FLAGS},
        )
    except InvalidArgsError as exc:
        _fail_early(subcommand, opts, exc)


@assign.command("preview")
@_runtime_options
@_pass_options
@click.pass_context
def preview_command(ctx: click.Context, **opts: Any) -> None:
    """Show what an assignment pass would do, without sending anything."""
    _resolve_filter("preview", opts)

    async def call(ctl: AssignController, cfg: BeadswarmConfig) -> Envelope:
        return await ctl.preview(_pass_from(opts, cfg, execute=False))

    _run(ctx, "preview", opts, call, _render_pass)


@assign.command("auto")
@_runtime_options
@_pass_options
@click.option("--delay", type=float, default=None, help="Seconds between prompt injections")
@click.pass_context
def auto_command(ctx: click.Context, **opts: Any) -> None:
    """Run one assignment pass and send prompts."""
    _resolve_filter("auto", opts)

    async def call(ctl: AssignController, cfg: BeadswarmConfig) -> Envelope:
        return await ctl.auto(_pass_from(opts, cfg, execute=True))

    _run(ctx, "auto", opts, call, _render_pass)


@assign.command("pane")
@_runtime_options
@click.argument("pane", type=int)
@click.argument("bead_id")
@click.option("--force", is_flag=True, help="Assign even if the pane is busy")
@click.option("--ignore-deps", is_flag=True, help="Assign even if the bead is blocked")
@click.option("--prompt", default="", help="Prompt text instead of the template")
@click.pass_context
def pane_command(ctx: click.Context, **opts: Any) -> None:
    """Assign one bead to one pane."""

    async def call(ctl: AssignController, cfg: BeadswarmConfig) -> Envelope:
        return await ctl.assign_pane(
            opts["bead_id"],
            opts["pane"],
            force=opts["force"],
            ignore_deps=opts["ignore_deps"],
            prompt=opts["prompt"],
            reserve=cfg.reservations.enabled,
        )

    _run(ctx, "pane", opts, call, _render_pane)


@assign.command("clear")
@_runtime_options
@click.argument("bead_ids", nargs=-1, required=True)
@click.option("--force", is_flag=True, help="Also clear completed assignments")
@click.pass_context
def clear_command(ctx: click.Context, **opts: Any) -> None:
    """Clear assignments for specific beads."""
    bead_ids = [b for raw in opts["bead_ids"] for b in _split_ids(raw)]

    async def call(ctl: AssignController, cfg: BeadswarmConfig) -> Envelope:
        return await ctl.clear(bead_ids, force=opts["force"])

    _run(ctx, "clear", opts, call, _render_clear)


@assign.command("clear-pane")
@_runtime_options
@click.argument("pane", type=int)
@click.pass_context
def clear_pane_command(ctx: click.Context, **opts: Any) -> None:
    """Clear every active assignment on a pane."""

    async def call(ctl: AssignController, cfg: BeadswarmConfig) -> Envelope:
        return await ctl.clear_pane(opts["pane"])

    _run(ctx, "clear-pane", opts, call, _render_clear)


@assign.command("clear-failed")
@_runtime_options
@click.pass_context
def clear_failed_command(ctx: click.Context, **opts: Any) -> None:
    """Remove every failed assignment."""

    async def call(ctl: AssignController, cfg: BeadswarmConfig) -> Envelope:
        return await ctl.clear_failed()

    _run(ctx, "clear-failed", opts, call, _render_clear)


@assign.command("reassign")
@_runtime_options
@click.argument("bead_id")
@click.option("--to-pane", type=int, default=None, help="Target pane index")
@click.option("--to-type", default="", help="Target agent kind (first idle one is used)")
@click.option("--force", is_flag=True, help="Reassign even if the target pane is busy")
@click.option("--prompt", default="", help="Prompt text instead of the template")
@click.pass_context
def reassign_command(ctx: click.Context, **opts: Any) -> None:
    """Move a bead to another pane or agent kind."""

    async def call(ctl: AssignController, cfg: BeadswarmConfig) -> Envelope:
        return await ctl.reassign(
            opts["bead_id"],
            to_pane=opts["to_pane"],
            to_type=opts["to_type"],
            force=opts["force"],
            prompt=opts["prompt"],
        )

    _run(ctx, "reassign", opts, call, _render_reassign)


@assign.command("retry")
@_runtime_options
@click.argument("bead_id")
@click.option("--to-pane", type=int, default=None, help="Target pane index")
@click.option("--to-type", default="", help="Target agent kind")
@click.pass_context
def retry_command(ctx: click.Context, **opts: Any) -> None:
    """Retry one failed bead on an idle agent."""

    async def call(ctl: AssignController, cfg: BeadswarmConfig) -> Envelope:
        return await ctl.retry(opts["bead_id"], to_pane=opts["to_pane"], to_type=opts["to_type"])

    _run(ctx, "retry", opts, call, _render_retry)


@assign.command("retry-failed")
@_runtime_options
@click.option("--to-type", default="", help="Only retry on this agent kind")
@click.pass_context
def retry_failed_command(ctx: click.Context, **opts: Any) -> None:
    """Retry every failed bead on idle agents."""

    async def call(ctl: AssignController, cfg: BeadswarmConfig) -> Envelope:
        return await ctl.retry_failed(to_type=opts["to_type"])

    _run(ctx, "retry-failed", opts, call, _render_retry)


@assign.command("status")
@_runtime_options
@click.pass_context
def status_command(ctx: click.Context, **opts: Any) -> None:
    """Show stored assignments and counts."""

    async def call(ctl: AssignController, cfg: BeadswarmConfig) -> Envelope:
        return await ctl.status()

    _run(ctx, "status", opts, call, _render_status)


@assign.command("watch")
@_runtime_options
@_pass_options
@click.option("--delay", type=float, default=None, help="Seconds between prompt injections")
@click.option("--auto-reassign/--no-auto-reassign", default=None, help="Assign newly unblocked work")
@click.option("--stop-when-done", is_flag=True, help="Exit once nothing is left to do")
@click.option("--poll-interval", type=float, default=None, help="Seconds between completion polls")
@click.pass_context
def watch_command(ctx: click.Context, **opts: Any) -> None:
    """Assign continuously as agents finish their beads."""
    _resolve_filter("watch", opts)
    on_pass = None if opts["as_json"] else _print_pass

    async def call(ctl: AssignController, cfg: BeadswarmConfig) -> Envelope:
        watch_cfg = cfg.watch
        limit = opts.get("limit")
        options = WatchOptions(
            strategy=opts.get("strategy") or cfg.matcher.strategy,
            limit=limit if limit is not None else watch_cfg.limit,
            agent_type=opts["agent_filter"] or watch_cfg.agent_type,
            beads=_split_ids(opts.get("beads", "")),
            auto_reassign=watch_cfg.auto_reassign if opts["auto_reassign"] is None else opts["auto_reassign"],
            delay=opts["delay"] if opts["delay"] is not None else watch_cfg.delay_seconds,
            stop_when_done=bool(opts["stop_when_done"]) or watch_cfg.stop_when_done,
            reserve=cfg.reservations.enabled,
            poll_interval=opts["poll_interval"] or cfg.completion.poll_interval_seconds,
        )
        return await ctl.watch(options, on_pass=on_pass)

    _run(ctx, "watch", opts, call, _render_watch)