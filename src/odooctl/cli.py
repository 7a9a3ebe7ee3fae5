"""Typer-powered command line interface for ``odooctl``.

``odooctl`` prepares a host for Odoo 18 and then creates, lists and removes
isolated instances on it. Each instance gets its own PostgreSQL role,
virtualenv, config file, systemd unit and nginx site.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .bootstrap import HostProvisioner, ProvisionStep
from .config import AppConfig, ConfigError, load_config
from .errors import NotFoundError, OdooctlError, ValidationError
from .exit_codes import ExitCode
from .instances import require_domain, require_email, require_name
from .lifecycle import (
    CreateRequest,
    CreateResult,
    HostEnvironment,
    InstanceManager,
    InstanceSummary,
    RemoveResult,
)
from .logging import OperationScope, StructuredLogger
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to odooctl's YAML config file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Odoo 18 multi-instance host manager.

        Provision a host once with `system provision`, then create and remove
        instances. Each instance runs as its own systemd service behind nginx.
        """
    ).strip(),
)

system_app = typer.Typer(help="Prepare the host for running Odoo instances.")
instances_app = typer.Typer(help="Create, inspect and remove Odoo instances.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(system_app, name="system")
app.add_typer(instances_app, name="instance")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    host: HostEnvironment
    manager: InstanceManager


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    logger = StructuredLogger(config.tool_logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    host = HostEnvironment.from_config(config, templates=templates)
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        templates=templates,
        host=host,
        manager=InstanceManager(host),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the odooctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"odooctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.PROVIDER,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _fail(op: OperationScope, exc: Exception) -> NoReturn:
    """Translate *exc* into the matching exit code."""
    if isinstance(exc, OdooctlError):
        _command_error(op, str(exc), rc=exc.exit_code)
    _command_error(op, f"Filesystem error: {exc}", rc=ExitCode.ENVIRONMENT)


def _abort(op: OperationScope, message: str) -> NoReturn:
    console.print(f"[yellow]{message}[/yellow]")
    op.warning(message, warnings=["user-cancelled"], changed=0)
    raise typer.Exit(code=ExitCode.VALIDATION)


def _render_summaries(summaries: Sequence[InstanceSummary]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("Name", style="bold")
    table.add_column("Domain")
    table.add_column("HTTP")
    table.add_column("Gevent")
    table.add_column("SSL")
    table.add_column("Service")

    if not summaries:
        table.add_row("", "(none)", "", "", "", "", "")
    for index, summary in enumerate(summaries):
        table.add_row(
            str(index),
            summary.name,
            summary.domain or "",
            "" if summary.http_port is None else str(summary.http_port),
            "" if summary.gevent_port is None else str(summary.gevent_port),
            "" if summary.ssl is None else ("yes" if summary.ssl else "no"),
            summary.service,
        )
    console.print(table)


# ----------------------------------------------------------------------
# system


@system_app.command("provision")
def system_provision(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show the planned steps without running them.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        help="Skip the confirmation prompt.",
    ),
) -> None:
    """Install packages, the service user and the Odoo source tree."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "system provision",
        args={"dry_run": dry_run},
        target={"kind": "host"},
    ) as op:
        provisioner = HostProvisioner(runtime.config)
        try:
            plan = provisioner.plan()
        except OdooctlError as exc:
            _fail(op, exc)

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Step", style="bold")
        table.add_column("Description")
        table.add_column("Command")
        for step in plan.steps:
            command = " ".join(step.command)
            if step.user:
                command = f"(as {step.user}) {command}"
            table.add_row(step.name, step.description, command)
        console.print(table)
        for note in plan.skipped:
            console.print(f"[dim]skip[/dim] {note}")
        for warning in plan.warnings:
            console.print(f"[yellow]warning[/yellow] {warning}")

        if dry_run:
            for step in plan.steps:
                op.add_step(step.name, status="skipped", detail="dry-run")
            console.print("[yellow]Dry run[/yellow]: no commands were executed.")
            op.success("Dry run complete.", changed=0, context={"steps": len(plan.steps)})
            return

        if not yes and not typer.confirm("Run these provisioning steps?", default=False):
            _abort(op, "Provisioning cancelled.")

        def _on_step(step: ProvisionStep) -> None:
            console.print(f"[cyan]→[/cyan] {step.description}")
            op.add_step(step.name, detail=step.command[0])

        try:
            applied = provisioner.apply(plan, on_step=_on_step)
        except OdooctlError as exc:
            _fail(op, exc)

        console.print("[green]Host provisioned.[/green]")
        if plan.warnings:
            op.warning(
                "Host provisioned with warnings.",
                warnings=plan.warnings,
                changed=len(applied),
            )
        else:
            op.success("Host provisioned.", changed=len(applied))


# ----------------------------------------------------------------------
# instance


@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instances as JSON instead of a table.",
    ),
) -> None:
    """List instances found in the instance config directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "all"},
    ) as op:
        try:
            summaries = runtime.manager.list_instances()
        except (OdooctlError, OSError) as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(data={"instances": [s.to_dict() for s in summaries]})
        else:
            _render_summaries(summaries)
        op.success("Reported instance list.", changed=0, context={"count": len(summaries)})


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to display."),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit details as JSON instead of a table.",
    ),
) -> None:
    """Show ports, paths and flags of a single instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            summary = runtime.manager.show(name)
        except (OdooctlError, OSError) as exc:
            _fail(op, exc)
        paths = runtime.host.registry.resolve(summary.name)
        data = {**summary.to_dict(), "paths": paths.to_dict()}

        if json_output:
            console.print_json(data=data)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Key", style="bold")
            table.add_column("Value")
            for key, value in data.items():
                if isinstance(value, dict):
                    rendered = json.dumps(value, indent=2)
                else:
                    rendered = "" if value is None else str(value)
                table.add_row(key, rendered)
            console.print(table)
        op.success("Reported instance details.", changed=0)


@instances_app.command("create")
def instance_create(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Instance name ([A-Za-z0-9_-]+)."),
    domain: str | None = typer.Option(None, "--domain", help="Public domain name."),
    enterprise: bool | None = typer.Option(
        None,
        "--enterprise/--no-enterprise",
        help="Clone the enterprise addons (requires a license).",
    ),
    ssl: bool | None = typer.Option(
        None,
        "--ssl/--no-ssl",
        help="Request a Let's Encrypt certificate and serve HTTPS.",
    ),
    email: str | None = typer.Option(
        None,
        "--email",
        help="Contact e-mail for the certificate request.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the result (including secrets) as JSON.",
    ),
) -> None:
    """Create a new instance, prompting for anything not given as an option."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance create",
        args={"name": name, "domain": domain, "enterprise": enterprise, "ssl": ssl},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            name = require_name(name if name is not None else typer.prompt("Instance name"))
            domain = require_domain(
                domain if domain is not None else typer.prompt("Domain (e.g. erp.example.com)")
            )
            if enterprise is None:
                enterprise = typer.confirm("Do you have an Odoo Enterprise license?", default=False)
            if ssl is None:
                ssl = typer.confirm("Enable SSL with Let's Encrypt?", default=False)
            if ssl:
                email = require_email(
                    email if email is not None else typer.prompt("E-mail for Let's Encrypt")
                )
        except ValidationError as exc:
            _fail(op, exc)

        request = CreateRequest(
            name=name,
            domain=domain,
            enterprise=bool(enterprise),
            ssl=bool(ssl),
            email=email if ssl else None,
        )
        console.print(f"Creating instance [bold]{name}[/bold] for {domain}...")
        try:
            result = runtime.manager.create(request, op)
        except (OdooctlError, OSError) as exc:
            _fail(op, exc)

        _report_created(result, json_output=json_output)
        context = result.to_dict(include_secrets=False)
        if result.warnings:
            op.warning(
                "Instance created with warnings.",
                warnings=result.warnings,
                changed=len(op.steps),
                context=context,
            )
        else:
            op.success("Instance created.", changed=len(op.steps), context=context)


def _report_created(result: CreateResult, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=result.to_dict(include_secrets=True))
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Item", style="bold")
    table.add_column("Value")
    rows = [
        ("Instance", result.name),
        ("URL", result.url),
        ("HTTP port", str(result.http_port)),
        ("Gevent port", str(result.gevent_port)),
        ("Master password", result.admin_secret),
        ("Database user", result.name),
        ("Database password", result.db_secret),
        ("Config file", str(result.paths.config_file)),
        ("Service", result.paths.service_name),
        ("Log file", str(result.paths.log_file)),
        ("Custom addons", str(result.paths.custom_addons)),
    ]
    if result.enterprise:
        rows.append(("Enterprise addons", str(result.paths.enterprise_addons)))
    for item, value in rows:
        table.add_row(item, value)
    console.print(table)
    for warning in result.warnings:
        console.print(f"[yellow]warning[/yellow] {warning}")
    console.print(
        "[green]Instance created.[/green] Store the master password now; "
        "it is only shown once."
    )


@instances_app.command("remove")
def instance_remove(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Instance to remove; prompts when omitted."),
    yes: bool = typer.Option(
        False,
        "--yes",
        help="Skip the confirmation prompt.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Remove leftovers even when the instance is not listed.",
    ),
) -> None:
    """Remove an instance with its databases, files, unit and nginx site."""
    runtime = _get_runtime(ctx)
    registry = runtime.host.registry
    with runtime.logger.operation(
        "instance remove",
        args={"name": name, "yes": yes, "force": force},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            if name is None:
                names = registry.list_instances()
                if not names:
                    raise NotFoundError("No instances found.")
                console.print("Available instances:")
                for index, candidate in enumerate(names):
                    console.print(f"  [bold]{index}[/bold]) {candidate}")
                selection = typer.prompt("Select the instance number to remove", type=int)
                name = registry.select(selection)
            elif force:
                name = require_name(name)
            else:
                name = registry.require(name)
        except OdooctlError as exc:
            _fail(op, exc)

        op.target = {"kind": "instance", "name": name}
        if not yes:
            answer = typer.prompt(
                f"This permanently deletes instance '{name}' and its databases. "
                "Type 'yes' to continue"
            )
            if answer.strip() != "yes":
                _abort(op, "Removal cancelled.")

        try:
            result = runtime.manager.remove(name, op, missing_ok=True)
        except (OdooctlError, OSError) as exc:
            _fail(op, exc)

        _report_removed(result)
        op.success(
            f"Instance '{name}' removed.",
            changed=result.changed,
            context=result.to_dict(),
        )


def _report_removed(result: RemoveResult) -> None:
    if result.changed == 0:
        console.print(f"Nothing left to remove for [bold]{result.name}[/bold].")
        return
    if result.unit_removed:
        console.print("  removed systemd unit")
    for database in result.databases_dropped:
        console.print(f"  dropped database {database}")
    for database in result.databases_skipped:
        console.print(f"  [yellow]skipped[/yellow] system database {database}")
    if result.role_dropped:
        console.print(f"  dropped role {result.name}")
    for path in result.files_removed:
        console.print(f"  deleted {path}")
    if result.proxy_removed:
        console.print("  removed nginx site")
    console.print(f"[green]Instance '{result.name}' removed.[/green]")


# ----------------------------------------------------------------------
# config


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()
