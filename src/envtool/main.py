"""
envtool CLI - per-environment secrets with remote sync

Main entry point for the envtool command-line tool.
"""

import json
import logging
import subprocess
import sys
import tempfile
from pathlib import Path

import click
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .core.backends import ConvexCLI
from .core.config import ConfigError, load_config, resolve_envs
from .core.discovery import find_process_env_usage, iter_source_files
from .core.excludes import filter_env_vars, should_exclude
from .core.inference import parse_env_vars
from .core.lexer import parse, remove_key, set_value, write
from .core.loader import KEYS_FILE, DotenvxCLI, EnvFileError, get_env_file_path, load_env_file, write_plain_value
from .core.orchestrator import EnvRunReport, SyncRunner
from .core.scaffold import SetupError, init_project, install_github_action
from .core.syncer import ConvexSyncer, SyncOutcome, compare_records


console = Console()

ENV_CHOICE = click.Choice(["dev", "prod", "all"])
STATUS_STYLE = {"created": "green", "skipped": "dim", "warning": "yellow", "dry-run": "dim"}


def _truncate(value: str, max_len: int) -> str:
    if len(value) <= max_len:
        return value
    return value[:max_len - 3] + "..."


def _fail(message: str) -> None:
    console.print(f"[red]Error: {escape(message)}[/red]")
    sys.exit(1)


def get_config(ctx: click.Context):
    """Load the project config once per invocation."""
    if "config" not in ctx.obj:
        try:
            ctx.obj["config"] = load_config(ctx.obj.get("config_path"))
        except ConfigError as e:
            _fail(str(e))
    return ctx.obj["config"]


def _envs(env: str) -> list:
    try:
        return resolve_envs(env)
    except ConfigError as e:
        _fail(str(e))


def print_step(status: str, message: str) -> None:
    style = STATUS_STYLE.get(status, "white")
    if status == "created":
        console.print(f"[green]✓[/green] {escape(message)}")
    elif status == "warning":
        console.print(f"[yellow]⚠ {escape(message)}[/yellow]")
    elif status == "dry-run":
        console.print(f"[{style}][dry-run] {escape(message)}[/{style}]")
    else:
        console.print(f"[{style}]- skip {escape(message)}[/{style}]")


def print_outcome(outcome: SyncOutcome) -> None:
    """Render one target's result the way `sync` reports it."""
    label = f"{outcome.target} ({outcome.env})"
    if outcome.remote_env and outcome.remote_env != outcome.env:
        label = f"{outcome.target} ({outcome.env} → {outcome.remote_env})"
    label = escape(label)

    if outcome.skipped:
        console.print(f"[dim]- skip {label}: {escape(outcome.skipped)}[/dim]")
        return

    if outcome.remote_read_failed:
        console.print(f"[yellow]⚠ {label}: could not list remote secrets, treating remote as empty[/yellow]")

    diff = outcome.diff
    if outcome.dry_run:
        console.print(f"[dim][dry-run] {label}:[/dim]")
        if diff.added:
            console.print(f"[green]  + {', '.join(diff.added)}[/green]")
        if diff.updated:
            console.print(f"[yellow]  ~ {', '.join(diff.updated)}[/yellow]")
        if diff.removed:
            console.print(f"[red]  - {', '.join(diff.removed)}[/red]")
        if diff.is_empty:
            console.print("[dim]  no changes[/dim]")
    elif diff.is_empty:
        console.print(f"[green]✓[/green] {label}: no changes")
    else:
        console.print(
            f"[green]✓[/green] {label}: [green]+{len(diff.added)}[/green] "
            f"[yellow]~{len(diff.updated)}[/yellow] [red]-{len(diff.removed)}[/red]"
        )

    for error in outcome.errors:
        console.print(f"[red]  ✗ {escape(error)}[/red]")


def print_report(report: EnvRunReport) -> None:
    if report.error:
        console.print(f"[red]✗ {report.env}: {escape(report.error)}[/red]")
        return
    for status, message in report.steps:
        print_step(status, message)
    for outcome in report.outcomes:
        print_outcome(outcome)


@click.group()
@click.version_option(version=__version__, prog_name="envtool")
@click.option('--config', 'config_path', default=None, help='Config file (default: env.config.toml)')
@click.option('-v', '--verbose', is_flag=True, help='Show debug logging')
@click.pass_context
def cli(ctx, config_path, verbose):
    """
    envtool - Environment variable management tool
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.argument('key')
@click.option('-e', '--env', default='dev', type=ENV_CHOICE, help='Environment: dev | prod | all')
@click.pass_context
def get(ctx, key, env):
    """Get an environment variable value."""
    config = get_config(ctx)
    results = []

    for e in _envs(env):
        try:
            record = load_env_file(get_env_file_path(config, e))
            results.append((e, record.get(key)))
        except EnvFileError:
            results.append((e, None))

    if env == "all":
        table = Table(box=box.ROUNDED)
        table.add_column("Env", style="cyan")
        table.add_column("Value")
        for e, value in results:
            table.add_row(e, escape(value) if value is not None else "[dim](not set)[/dim]")
        console.print(table)
        return

    value = results[0][1]
    if value is None:
        _fail(f"Variable {key} is not set")
    click.echo(value)


@cli.command(name="set")
@click.argument('key')
@click.argument('value')
@click.option('-e', '--env', default='dev', type=ENV_CHOICE, help='Environment: dev | prod | all')
@click.option('--plain', is_flag=True, help='Store the value unencrypted')
@click.pass_context
def set_command(ctx, key, value, env, plain):
    """Set an environment variable (encrypted unless --plain)."""
    config = get_config(ctx)
    dotenvx = DotenvxCLI()

    for e in _envs(env):
        env_path = get_env_file_path(config, e)
        try:
            if plain:
                write_plain_value(env_path, key, value)
            else:
                dotenvx.set(key, value, env_path)
        except (EnvFileError, OSError) as err:
            console.print(f"[red]✗ {e}: {escape(str(err))}[/red]")
            sys.exit(1)

        console.print(f"[green]✓[/green] {e}: {escape(key)}={escape(_truncate(value, 30))}")


@cli.command()
@click.argument('key')
@click.option('-e', '--env', default='dev', type=ENV_CHOICE, help='Environment: dev | prod | all')
@click.pass_context
def rm(ctx, key, env):
    """Remove an environment variable."""
    config = get_config(ctx)

    for e in _envs(env):
        env_path = Path(get_env_file_path(config, e))
        if not env_path.exists():
            console.print(f"[red]✗ {e}: file not found {env_path}[/red]")
            continue

        tokens = parse(env_path.read_text())
        remaining = remove_key(tokens, key)
        if len(remaining) == len(tokens):
            console.print(f"[red]✗ {e}: variable {escape(key)} not found[/red]")
            continue

        env_path.write_text(write(remaining))
        console.print(f"[green]✓[/green] {e}: deleted {escape(key)}")


@cli.command(name="ls")
@click.option('-e', '--env', default='dev', type=ENV_CHOICE, help='Environment: dev | prod')
@click.option('--filter', 'pattern', default=None, help='Glob filter on keys (e.g. VITE_*)')
@click.option('--show-values', is_flag=True, help='Include values')
@click.option('--format', 'fmt', default='table', type=click.Choice(['table', 'json', 'export']))
@click.pass_context
def ls(ctx, env, pattern, show_values, fmt):
    """List environment variables."""
    config = get_config(ctx)
    # ls shows a single environment
    env = "dev" if env == "all" else env

    try:
        record = load_env_file(get_env_file_path(config, env))
    except EnvFileError as e:
        _fail(str(e))

    env_vars = filter_env_vars(parse_env_vars(record, config.public_prefixes), pattern)
    if not env_vars:
        console.print("No environment variables found")
        return

    if fmt == "json":
        rows = []
        for var in env_vars:
            row = {"key": var.key, "scope": var.scope}
            if show_values:
                row["value"] = var.value
            rows.append(row)
        click.echo(json.dumps(rows, indent=2))
    elif fmt == "export":
        for var in env_vars:
            if show_values:
                escaped = var.value.replace('"', '\\"')
                click.echo(f'export {var.key}="{escaped}"')
            else:
                click.echo(f"export {var.key}=")
    else:
        table = Table(title=f"Env: {env} ({len(env_vars)} variables)", box=box.ROUNDED)
        table.add_column("Key", style="cyan", no_wrap=True)
        table.add_column("Scope", style="magenta")
        if show_values:
            table.add_column("Value")
        for var in env_vars:
            row = [var.key, var.scope]
            if show_values:
                row.append(escape(_truncate(var.value, 40)))
            table.add_row(*row)
        console.print(table)


def _diff_with_tool(entries, left_label, right_label, tool):
    """Hand the differing keys to an external diff tool (difft, delta, ...)."""
    with tempfile.TemporaryDirectory(prefix="envtool-diff-") as tmpdir:
        left = Path(tmpdir) / f"{left_label}.env"
        right = Path(tmpdir) / f"{right_label}.env"
        left.write_text("".join(f"{e.key}={e.left or ''}\n" for e in entries))
        right.write_text("".join(f"{e.key}={e.right or ''}\n" for e in entries))
        try:
            subprocess.run([tool, str(left), str(right)])
        except FileNotFoundError:
            _fail(f"Diff tool not found: {tool}")


@cli.command()
@click.argument('target', default='envs', type=click.Choice(['envs', 'convex', 'wrangler']))
@click.option('-e', '--env', default='dev', type=click.Choice(['dev', 'prod']), help='Environment for remote diffs')
@click.option('--envs', 'pair', default=None, help='Environments to compare (e.g. dev:prod)')
@click.option('--tool', default=None, help='External diff tool: difft | delta')
@click.pass_context
def diff(ctx, target, env, pair, tool):
    """Compare environments, or an environment with a sync target."""
    config = get_config(ctx)

    if target == "envs" or pair:
        left_env, _, right_env = (pair or "dev:prod").partition(":")
        records = {}
        for e in (left_env, right_env):
            if e not in ("dev", "prod"):
                _fail(f"Unknown environment '{e}' in --envs")
            try:
                records[e] = load_env_file(get_env_file_path(config, e))
            except EnvFileError as err:
                console.print(f"[red]Failed to load {escape(str(err))}[/red]")
                records[e] = {}

        entries = compare_records(records[left_env], records[right_env])
        if not entries:
            console.print("\n[green]✓ No differences[/green]\n")
            return
        if tool:
            _diff_with_tool(entries, left_env, right_env, tool)
            return

        table = Table(title=f"Diff: {left_env} ↔ {right_env} ({len(entries)} differences)", box=box.ROUNDED)
        table.add_column("Key", style="cyan", no_wrap=True)
        table.add_column("Status")
        table.add_column(left_env)
        table.add_column(right_env)
        style = {"added": "green", "removed": "red", "changed": "yellow"}
        symbol = {"added": "+", "removed": "-", "changed": "~"}
        for entry in entries:
            s = style[entry.status]
            table.add_row(
                entry.key,
                f"[{s}]{symbol[entry.status]} {entry.status}[/{s}]",
                escape(_truncate(entry.left if entry.left is not None else "(not set)", 30)),
                escape(_truncate(entry.right if entry.right is not None else "(not set)", 30)),
            )
        console.print(table)
        return

    runner = SyncRunner(config)
    try:
        record = load_env_file(str(runner.env_path(env)))
        if target == "convex":
            syncer = runner.convex_syncer() or ConvexSyncer(ConvexCLI(cwd=runner.cwd))
            outcomes = [syncer.sync(record, env, dry_run=True)]
        else:
            syncers = runner.wrangler_syncers()
            if not syncers:
                _fail("sync.wrangler is not configured")
            outcomes = [syncer.sync(record, env, dry_run=True) for syncer in syncers]
    except (EnvFileError, ConfigError) as e:
        _fail(str(e))

    for outcome in outcomes:
        print_outcome(outcome)


@cli.command()
@click.option('-e', '--env', default='dev', type=ENV_CHOICE, help='Environment: dev | prod | all')
@click.option('-w', '--watch', is_flag=True, help='Re-run when env files change')
@click.option('--dry-run', is_flag=True, help='Show what would change without writing')
@click.pass_context
def sync(ctx, env, watch, dry_run):
    """
    Run typegen and sync secrets to the configured targets.

    Order per environment: decrypt (.env.local for dev), typegen, Convex,
    Wrangler. Exits 1 if any environment or target failed.
    """
    config = get_config(ctx)
    if config.sync is None and config.typegen is None:
        _fail("please configure [sync] or [typegen] in env.config.toml")

    envs = _envs(env)
    runner = SyncRunner(config)
    try:
        runner.preflight(envs)
    except ConfigError as e:
        _fail(str(e))

    if not watch:
        reports = runner.run(envs, dry_run)
        for report in reports:
            print_report(report)
        if any(report.failed for report in reports):
            sys.exit(1)
        return

    console.print("[cyan]▶ Starting watch mode...[/cyan]")
    for e in envs:
        console.print(f"  watching: [cyan]{escape(str(runner.env_path(e)))}[/cyan]")

    def on_report(report: EnvRunReport) -> None:
        print_report(report)
        console.print("[cyan]▶ Waiting for changes...[/cyan]")

    try:
        runner.watch(envs, dry_run, on_report)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped watching[/dim]")


@cli.command()
@click.option('--force', is_flag=True, help='Overwrite existing files')
def init(force):
    """Initialize envtool in this project."""
    console.print("[cyan]Initializing envtool...[/cyan]\n")

    for status, message in init_project(Path.cwd(), force=force):
        print_step(status, message)

    console.print("\n[bold green]✓ Done![/bold green] Next steps:\n")
    console.print("  1. Edit .env.development and .env.production")
    console.print("  2. Run [cyan]envtool ls[/cyan] to list variables")
    console.print("  3. Run [cyan]envtool sync[/cyan] to generate types")
    console.print("  4. Run [cyan]envtool sync -w[/cyan] for watch mode")


@cli.command(name="import")
@click.argument('source')
@click.option('-f', '--file', 'target', default=None, help='Target encrypted env file')
def import_command(source, target):
    """Import a plain .env file into an encrypted env file."""
    if not target:
        _fail("target file is required via -f, --file")

    try:
        record = load_env_file(source)
    except EnvFileError as e:
        _fail(str(e))

    use_plain = not Path(KEYS_FILE).exists()
    if use_plain:
        console.print(f"[yellow]⚠ {KEYS_FILE} not found - importing as plain text[/yellow]")

    target_path = Path(target)
    target_path.parent.mkdir(parents=True, exist_ok=True)
    if not target_path.exists():
        target_path.write_text("# Imported by envtool\n")

    to_import = {key: value for key, value in record.items() if not should_exclude(key)}
    try:
        if use_plain:
            tokens = parse(target_path.read_text())
            for key, value in to_import.items():
                tokens = set_value(tokens, key, value)
            target_path.write_text(write(tokens))
        else:
            dotenvx = DotenvxCLI()
            for key, value in to_import.items():
                dotenvx.set(key, value, target)
    except EnvFileError as e:
        _fail(str(e))

    console.print(f"[green]✓[/green] imported: {len(to_import)} variables -> {escape(target)}")


@cli.command(name="install-github-action")
@click.option('--file', 'keys_path', default=KEYS_FILE, help='Keys file with DOTENV_PRIVATE_* entries')
@click.option('--repo', default=None, help='Target repository (owner/name)')
def install_github_action_command(keys_path, repo):
    """Install DOTENV private keys into GitHub Actions secrets."""
    try:
        message = install_github_action(keys_path, repo)
    except SetupError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        if not Path(keys_path).exists():
            console.print("\nTo set up GitHub Actions secrets:\n")
            console.print("  Local (first time):")
            console.print("    1. Run: envtool init")
            console.print("    2. Run: envtool install-github-action\n")
            console.print("  CI (GitHub Actions): set these secrets in your workflow env:")
            console.print("    DOTENV_PRIVATE_KEY_DEVELOPMENT: ${{ secrets.DOTENV_PRIVATE_KEY_DEVELOPMENT }}", markup=False)
            console.print("    DOTENV_PRIVATE_KEY_PRODUCTION: ${{ secrets.DOTENV_PRIVATE_KEY_PRODUCTION }}", markup=False)
        sys.exit(1)

    console.print(f"[green]✓[/green] {escape(message)}")


@cli.command()
@click.option('-e', '--env', default='dev', type=click.Choice(['dev', 'prod']), help='Environment to check against')
@click.option('--project-root', default=".", help='Directory to scan')
@click.pass_context
def check(ctx, env, project_root):
    """Find process.env reads that are missing from the env file."""
    config = get_config(ctx)
    try:
        record = load_env_file(get_env_file_path(config, env))
    except EnvFileError as e:
        _fail(str(e))

    issues = find_process_env_usage(iter_source_files(project_root), set(record))
    if not issues:
        console.print("[green]✓ Every process.env read is declared[/green]")
        return

    console.print(f"[yellow]⚠ {len(issues)} undeclared variable(s):[/yellow]")
    for issue in issues:
        console.print(f"  [cyan]{issue.key}[/cyan]")
        for location in issue.locations:
            console.print(f"    [dim]{escape(location)}[/dim]")
    sys.exit(1)


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == '__main__':
    main()
