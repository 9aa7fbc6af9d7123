"""
converge — CLI entrypoint.

Usage:
    converge --help
    converge apply --dry-run
    converge check
    python -m converge.main history
"""

from __future__ import annotations

import json
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click

from converge import __version__
from converge.core.observability.logging_config import resolve_level, setup_from_env

_STATUS_STYLE = {
    "already_satisfied": ("=", "white"),
    "applied": ("✓", "green"),
    "failed": ("✗", "red"),
    "skipped": ("⊘", "yellow"),
}

_VERDICT_COLOR = {
    "nothing_to_do": "green",
    "converged": "green",
    "failed": "red",
    "cancelled": "yellow",
}


@click.group()
@click.version_option(version=__version__, prog_name="converge")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--plan",
    "-p",
    "plan_path",
    type=click.Path(exists=False, dir_okay=False),
    default=None,
    help="Path to the plan file (default: $CONVERGE_PLAN or converge.yml, auto-detected).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    plan_path: str | None,
) -> None:
    """converge — bring this workstation to its declared state."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["plan_path"] = Path(plan_path) if plan_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_from_env(resolve_level(debug=debug, verbose=verbose, quiet=quiet))


@contextmanager
def _cancel_on_sigint(token) -> Iterator[None]:
    """First Ctrl-C cancels the run gracefully, the second one aborts."""

    def handler(signum, frame):
        if token.cancelled:
            raise KeyboardInterrupt
        token.cancel("interrupted")
        click.secho(
            "\n⚠️  Interrupted: finishing in-flight resources, skipping the rest "
            "(Ctrl-C again to abort)",
            fg="yellow",
            err=True,
        )

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # Not in the main thread (e.g. embedded callers); no handler.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--dry-run", is_flag=True, help="Query only; show what would change.")
@click.option("--mock", is_flag=True, help="Use mock providers (no real changes).")
@click.option("--concurrency", "-j", type=click.IntRange(min=1), default=None, help="Resources converged at once.")
@click.option("--timeout", type=click.IntRange(min=1), default=None, help="Default per-resource timeout (seconds).")
@click.option("--fail-fast", is_flag=True, help="Stop after the first failure.")
@click.option("--only", "only", multiple=True, help="Converge only this resource id (and its dependencies).")
@click.option("--retry-failed", is_flag=True, help="Converge what failed or was skipped last run.")
@click.option("--ledger", "ledger_path", type=click.Path(dir_okay=False), default=None, help="Ledger file.")
@click.option("--strict", is_flag=True, help="Exit 1 if any resource failed.")
@click.pass_context
def apply(
    ctx: click.Context,
    as_json: bool,
    dry_run: bool,
    mock: bool,
    concurrency: int | None,
    timeout: int | None,
    fail_fast: bool,
    only: tuple[str, ...],
    retry_failed: bool,
    ledger_path: str | None,
    strict: bool,
) -> None:
    """Converge the machine to the plan.

    Examples:

        converge apply

        converge apply --dry-run

        converge apply --only zsh --only oh-my-zsh

        converge apply --retry-failed --strict
    """
    from converge.core.engine.cancel import CancelToken
    from converge.core.use_cases.apply import run_apply

    token = CancelToken()
    with _cancel_on_sigint(token):
        result = run_apply(
            plan_path=ctx.obj.get("plan_path"),
            dry_run=dry_run or None,
            mock_mode=mock,
            concurrency=concurrency,
            timeout=timeout,
            fail_fast=fail_fast or None,
            only=list(only),
            retry_failed=retry_failed,
            ledger_path=Path(ledger_path) if ledger_path else None,
            cancel=token,
        )

    summary = result.report.summary if result.report else None

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    elif result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
    else:
        _render_report(ctx, result, mock=mock)

    if result.error:
        sys.exit(result.exit_code or 1)
    if strict and summary is not None and summary.failed_count > 0:
        sys.exit(1)


def _render_report(ctx: click.Context, result, mock: bool) -> None:
    report = result.report
    loaded = result.loaded
    assert report is not None
    assert loaded is not None
    quiet = ctx.obj.get("quiet", False)
    verbose = ctx.obj.get("verbose", False)

    mode_label = "[dry-run] " if report.dry_run else "[mock] " if mock else ""
    if not quiet:
        click.secho(f"\n⚡ {mode_label}{loaded.plan.name or 'plan'}", fg="cyan", bold=True)
        click.echo(f"   Resources: {len(report.outcomes)} | Run: {report.run_id}")
        if loaded.dropped:
            click.echo(f"   Excluded for this host: {', '.join(loaded.dropped)}")
        click.echo()

    for outcome in report.outcomes:
        marker, color = _STATUS_STYLE[outcome.status.value]
        if outcome.status.value == "already_satisfied" and quiet:
            continue
        click.secho(f"   {marker} {outcome.resource_id}", fg=color, nl=False)
        timing = f" ({outcome.duration_ms}ms)" if outcome.duration_ms else ""
        if outcome.failed:
            click.echo(f" [{outcome.error_kind}]{timing}")
            for line in (outcome.detail or "").split("\n")[:5]:
                click.echo(f"     │ {line}")
        elif outcome.skipped:
            click.echo(f" ({outcome.detail or outcome.skip_reason})")
        else:
            click.echo(timing)
            if verbose and outcome.detail:
                click.echo(f"     │ {outcome.detail}")

        if verbose and len(outcome.attempts) > 1:
            for attempt in outcome.attempts:
                a_marker, _ = _STATUS_STYLE[attempt.status.value]
                click.echo(f"     ↳ {a_marker} {attempt.provider}: {attempt.detail.splitlines()[0] if attempt.detail else ''}")

    summary = report.summary
    click.echo()
    click.secho(
        f"   Result: {summary.headline}",
        fg=_VERDICT_COLOR.get(summary.verdict, "white"),
        bold=True,
    )
    counts = ", ".join(f"{n} {status}" for status, n in summary.counts.items() if n)
    if counts:
        click.echo(f"   {counts}")
    if result.ledger_path and not quiet:
        click.echo(f"   📒 Ledger: {result.ledger_path}")
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def check(ctx: click.Context, as_json: bool) -> None:
    """Validate the plan: specs, dependency order and providers."""
    from converge.core.use_cases.check import check_plan

    result = check_plan(plan_path=ctx.obj.get("plan_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if not result.valid:
            sys.exit(2)
        return

    if result.loaded is not None:
        plan = result.loaded.plan
        click.secho(f"\n📋 {plan.name or 'plan'}", fg="cyan", bold=True)
        click.echo(f"   File: {result.loaded.path}")
        click.echo(f"   Resources: {len(plan)}")
        if result.loaded.dropped:
            click.echo(f"   Excluded for this host: {', '.join(result.loaded.dropped)}")

        if result.layers:
            click.echo()
            click.secho("   Order:", fg="white", bold=True)
            for depth, layer in enumerate(result.layers):
                click.echo(f"     {depth}: {', '.join(layer)}")

    if result.warnings:
        click.echo()
        for warning in result.warnings:
            click.secho(f"   ⚠️  {warning}", fg="yellow")

    if result.errors:
        click.echo()
        for error in result.errors:
            click.secho(f"   ❌ {error}", fg="red")
        click.echo()
        sys.exit(2)

    click.echo()
    click.secho("   ✅ Plan is valid", fg="green", bold=True)
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--ledger", "ledger_path", type=click.Path(dir_okay=False), default=None, help="Ledger file.")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=10, help="Number of runs.")
@click.pass_context
def history(ctx: click.Context, as_json: bool, ledger_path: str | None, limit: int) -> None:
    """Show recent runs from the ledger."""
    from converge.core.use_cases.history import get_history

    result = get_history(
        ledger_path=Path(ledger_path) if ledger_path else None,
        plan_path=ctx.obj.get("plan_path"),
        limit=limit,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(3)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(3)

    if not result.runs:
        click.echo(f"No runs recorded in {result.ledger_path}")
        return

    click.secho(f"\n📒 {result.ledger_path}", fg="cyan", bold=True)
    click.echo()
    for run in result.runs:
        summary = run.summary
        click.secho(f"   {run.run_id} ", fg=_VERDICT_COLOR.get(summary.verdict, "white"), nl=False)
        click.echo(f"{run.started_at[:19]}  {summary.headline} ({summary.total} resources)")
        if ctx.obj.get("verbose"):
            for failed in summary.failed:
                click.echo(f"     ✗ {failed.resource_id} [{failed.error_kind}]")
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def providers(as_json: bool) -> None:
    """Show which providers have their tools installed."""
    from converge.providers import build_registry

    status = build_registry().provider_status()

    if as_json:
        click.echo(json.dumps(status, indent=2))
        return

    click.secho("\n🔌 Providers", fg="cyan", bold=True)
    click.echo()
    for kind, info in status.items():
        if info["available"]:
            click.secho(f"   ✓ {kind}", fg="green", nl=False)
        else:
            click.secho(f"   ✗ {kind}", fg="red", nl=False)
        click.echo(f"  ({info['type']})")
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def facts(as_json: bool) -> None:
    """Show the detected host facts plans can branch on."""
    from converge.core.detection.host import detect_host_facts

    host = detect_host_facts()

    if as_json:
        click.echo(json.dumps(host.model_dump(mode="json"), indent=2))
        return

    click.secho("\n🖥️  Host facts", fg="cyan", bold=True)
    click.echo()
    for name, value in host.as_variables().items():
        click.echo(f"   {name:<14} {value or '-'}")
    click.echo()


if __name__ == "__main__":
    cli()
