#!/usr/bin/env python3
"""
Command-line interface for Cascade Toolkit.

Provides deletion previews, cascade execution, rollback, orphan cleanup and
audit reporting against the configured document store.
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TextIO, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .audit_trail import AuditLogFilter, OperationKind, OperationStatus, OperatorInfo
from .config import CascadeConfig, StorageBackend, get_config
from .deletion import (
    BulkDeletionResult,
    DeletionOptions,
    DeletionService,
    ExecutionResult,
    ImpactReport,
    OperationEnvelope,
    OrphanCleanupOptions,
    RollbackOptions,
    WarningSeverity,
)
from .registry import RelationshipRegistry, build_default_registry
from .storage import get_document_store

console = Console()

SEVERITY_STYLES = {
    WarningSeverity.LOW: "dim",
    WarningSeverity.MEDIUM: "yellow",
    WarningSeverity.HIGH: "red",
    WarningSeverity.CRITICAL: "bold red",
}


def load_registry(config: CascadeConfig) -> RelationshipRegistry:
    """Registry from the configured YAML file, or the built-in one."""
    if config.registry_file:
        return RelationshipRegistry.from_yaml(config.registry_file)
    return build_default_registry()


@asynccontextmanager
async def open_service(config: CascadeConfig) -> AsyncIterator[DeletionService]:
    """Deletion service over a freshly opened store, closed on exit."""
    store = await get_document_store(
        config.storage_backend.value, connection_string=config.database_url
    )
    try:
        yield DeletionService(store, load_registry(config), config)
    finally:
        await store.close()


def run_with_service(
    action: Callable[[DeletionService], Awaitable[Any]],
    description: Optional[str] = None,
) -> Any:
    """Run an async action against the configured service."""
    config = get_config()

    async def _run() -> Any:
        async with open_service(config) as service:
            return await action(service)

    if description is None:
        return asyncio.run(_run())

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task(description, total=None)
        return asyncio.run(_run())


def exit_on_failure(envelope: OperationEnvelope, action: str) -> None:
    if envelope.success:
        return
    console.print(f"[red]Error {action}: {envelope.message} ({envelope.code})[/red]")
    if envelope.snapshot_id:
        console.print(
            f"[yellow]Snapshot {envelope.snapshot_id} was kept for manual "
            f"recovery[/yellow]"
        )
    sys.exit(1)


def operator_from(operator_id: str, operator_name: Optional[str]) -> OperatorInfo:
    return OperatorInfo(id=operator_id, name=operator_name)


def render_impact(report: ImpactReport) -> None:
    primary = report.primary
    console.print(
        Panel.fit(
            f"[bold]{primary.collection}/{primary.id}[/bold]"
            + (f" ({primary.name})" if primary.name else "")
            + ("" if primary.is_active else " [yellow][inactive][/yellow]")
            + f"\nTotal records affected: {report.total_records}"
            + f"\nEstimated time: {report.estimated_time}"
            + f"\nRollback available: {'yes' if report.can_rollback else 'no'}",
            title="Deletion Impact",
            border_style="blue",
        )
    )

    table = Table(title="Relationships", show_header=True)
    table.add_column("Collection", style="cyan")
    table.add_column("Field", style="dim")
    table.add_column("Policy")
    table.add_column("Action", style="yellow")
    table.add_column("Records", justify="right", style="green")
    for impact in report.relationships:
        table.add_row(
            impact.collection,
            impact.field,
            impact.policy,
            impact.action.value,
            str(impact.record_count),
        )
    console.print(table)

    if report.warnings:
        console.print("\n[yellow]⚠ Warnings:[/yellow]")
        for warning in report.warnings:
            style = SEVERITY_STYLES[warning.severity]
            console.print(
                f"  [{style}]• {warning.severity.value} {warning.type}: "
                f"{warning.message}[/{style}]"
            )


def render_execution(result: ExecutionResult) -> None:
    table = Table(title="Deletion Result", show_header=True)
    table.add_column("Collection", style="cyan")
    table.add_column("Deleted", justify="right", style="red")
    table.add_column("Preserved", justify="right", style="yellow")
    table.add_column("Cleaned", justify="right", style="green")
    for collection in result.per_collection_counts:
        table.add_row(
            collection,
            str(result.deleted_records.get(collection, 0)),
            str(result.preserved_records.get(collection, 0)),
            str(result.cleaned_records.get(collection, 0)),
        )
    console.print(table)


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Cascade Toolkit - Consistent deletion for document stores."""
    if ctx.invoked_subcommand is None:
        console.print(
            Panel.fit(
                f"[bold blue]Cascade Toolkit[/bold blue] v{__version__}\n"
                "[dim]Cascade deletion, rollback and orphan repair[/dim]\n\n"
                "Use [bold]cascade --help[/bold] to see available commands.",
                border_style="blue",
            )
        )


@cli.command("preview")
@click.argument("primary_id")
@click.option("--preserve", multiple=True, help="Collection to preserve and redact")
@click.option("--preserve-all", is_flag=True, help="Preserve every PRESERVE relation")
@click.option("--no-snapshot", is_flag=True, help="Preview without a snapshot")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
def preview(
    primary_id: str,
    preserve: Tuple[str, ...],
    preserve_all: bool,
    no_snapshot: bool,
    format: str,
) -> None:
    """Preview the impact of deleting a primary record."""
    options = DeletionOptions(
        preserve_collections=list(preserve),
        preserve_all=preserve_all,
        create_snapshot=not no_snapshot,
    )
    try:
        envelope = run_with_service(
            lambda service: service.preview_deletion(primary_id, options)
        )
    except Exception as e:
        console.print(f"[red]Error previewing deletion: {e}[/red]")
        sys.exit(1)

    exit_on_failure(envelope, "previewing deletion")
    if format == "json":
        console.print_json(data=envelope.model_dump(mode="json"))
    else:
        render_impact(envelope.data)


@cli.command("delete")
@click.argument("primary_id")
@click.option("--hard", is_flag=True, help="Physically remove the primary record")
@click.option("--no-snapshot", is_flag=True, help="Skip the rollback snapshot")
@click.option("--dry-run", is_flag=True, help="Report counts without writing")
@click.option("--preserve", multiple=True, help="Collection to preserve and redact")
@click.option("--preserve-all", is_flag=True, help="Preserve every PRESERVE relation")
@click.option("--reason", help="Reason recorded on the deactivated record")
@click.option("--operator", "operator_id", default="cli", help="Operator ID")
@click.option("--operator-name", help="Operator display name")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def delete(
    primary_id: str,
    hard: bool,
    no_snapshot: bool,
    dry_run: bool,
    preserve: Tuple[str, ...],
    preserve_all: bool,
    reason: Optional[str],
    operator_id: str,
    operator_name: Optional[str],
    yes: bool,
) -> None:
    """Delete a primary record and cascade to every referencing record."""
    options = DeletionOptions(
        hard_delete=hard,
        create_snapshot=not no_snapshot,
        dry_run=dry_run,
        preserve_collections=list(preserve),
        preserve_all=preserve_all,
        reason=reason,
    )
    operator = operator_from(operator_id, operator_name)

    try:
        if not yes and not dry_run:
            envelope = run_with_service(
                lambda service: service.preview_deletion(primary_id, options, operator)
            )
            exit_on_failure(envelope, "previewing deletion")
            render_impact(envelope.data)
            if not click.confirm("Proceed with the deletion?", default=False):
                console.print("[yellow]Deletion cancelled[/yellow]")
                return

        envelope = run_with_service(
            lambda service: service.execute_deletion(primary_id, options, operator),
            description="Deleting...",
        )
    except Exception as e:
        console.print(f"[red]Error executing deletion: {e}[/red]")
        sys.exit(1)

    exit_on_failure(envelope, "executing deletion")
    result: ExecutionResult = envelope.data
    render_execution(result)
    if result.dry_run:
        console.print("[yellow]Dry run, nothing was changed[/yellow]")
    else:
        console.print(
            f"[green]✓[/green] {primary_id} {result.primary_action} "
            f"(operation {result.operation_id})"
        )
    if result.snapshot_id:
        console.print(f"Snapshot for rollback: [bold]{result.snapshot_id}[/bold]")


@cli.command("bulk-delete")
@click.argument("primary_ids", nargs=-1)
@click.option(
    "--from-file",
    type=click.File("r"),
    help="File with one primary record ID per line",
)
@click.option("--hard", is_flag=True, help="Physically remove the primary records")
@click.option("--no-snapshot", is_flag=True, help="Skip the rollback snapshots")
@click.option("--preserve", multiple=True, help="Collection to preserve and redact")
@click.option("--preserve-all", is_flag=True, help="Preserve every PRESERVE relation")
@click.option(
    "--reason",
    default="Bulk administrative deletion",
    help="Reason recorded on the deactivated records",
)
@click.option("--operator", "operator_id", default="cli", help="Operator ID")
@click.option("--operator-name", help="Operator display name")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
def bulk_delete(
    primary_ids: Tuple[str, ...],
    from_file: Optional[TextIO],
    hard: bool,
    no_snapshot: bool,
    preserve: Tuple[str, ...],
    preserve_all: bool,
    reason: str,
    operator_id: str,
    operator_name: Optional[str],
    yes: bool,
    format: str,
) -> None:
    """Delete several primary records, each in its own atomic unit."""
    ids = list(primary_ids)
    if from_file is not None:
        ids.extend(line.strip() for line in from_file if line.strip())
    if not ids:
        console.print("[red]Error: no primary record IDs given[/red]")
        sys.exit(1)

    if not yes and not click.confirm(
        f"Delete {len(ids)} records and cascade to their references?", default=False
    ):
        console.print("[yellow]Bulk deletion cancelled[/yellow]")
        return

    options = DeletionOptions(
        hard_delete=hard,
        create_snapshot=not no_snapshot,
        preserve_collections=list(preserve),
        preserve_all=preserve_all,
        reason=reason,
    )
    operator = operator_from(operator_id, operator_name)
    try:
        envelope = run_with_service(
            lambda service: service.execute_bulk_deletion(ids, options, operator),
            description=f"Deleting {len(ids)} records...",
        )
    except Exception as e:
        console.print(f"[red]Error executing bulk deletion: {e}[/red]")
        sys.exit(1)

    if format == "json":
        console.print_json(data=envelope.model_dump(mode="json"))
        if not envelope.success:
            sys.exit(1)
        return

    result: BulkDeletionResult = envelope.data
    console.print(f"Successful: {result.successful}")
    console.print(f"Failed: {result.failed}")
    console.print(f"Total records affected: {result.total_records_affected}")
    for execution in result.results:
        console.print(
            f"  [green]✓[/green] {execution.primary_id} {execution.primary_action}"
            + (f" (snapshot {execution.snapshot_id})" if execution.snapshot_id else "")
        )
    for failure in result.failures:
        console.print(
            f"  [red]• {failure.primary_id}: {failure.error} ({failure.code})[/red]"
        )
    if not envelope.success:
        sys.exit(1)


@cli.command("rollback")
@click.argument("snapshot_id")
@click.option(
    "--preserve-new-data", is_flag=True, help="Keep records that exist again"
)
@click.option("--operator", "operator_id", default="cli", help="Operator ID")
@click.option("--operator-name", help="Operator display name")
def rollback(
    snapshot_id: str,
    preserve_new_data: bool,
    operator_id: str,
    operator_name: Optional[str],
) -> None:
    """Restore the records captured in a deletion snapshot."""
    options = RollbackOptions(preserve_new_data=preserve_new_data)
    operator = operator_from(operator_id, operator_name)
    try:
        envelope = run_with_service(
            lambda service: service.rollback(snapshot_id, options, operator),
            description="Restoring snapshot...",
        )
    except Exception as e:
        console.print(f"[red]Error during rollback: {e}[/red]")
        sys.exit(1)

    exit_on_failure(envelope, "during rollback")
    result = envelope.data
    console.print(
        f"[green]✓[/green] Restored {result.total_restored} records "
        f"from {snapshot_id}"
    )
    if result.status == OperationStatus.PARTIAL:
        console.print(f"[yellow]⚠ {envelope.message}[/yellow]")
        for failure in result.failures:
            console.print(
                f"  [red]• {failure.collection}/{failure.record_id}: "
                f"{failure.error}[/red]"
            )


@cli.command("orphans")
@click.option("--collection", multiple=True, help="Referencing collection to scan")
@click.option(
    "--include-inactive", is_flag=True, help="Treat inactive primaries as missing"
)
@click.option("--repair", is_flag=True, help="Repair the orphans found")
@click.option("--preserve", multiple=True, help="Collection to preserve and redact")
@click.option("--preserve-all", is_flag=True, help="Preserve every PRESERVE relation")
@click.option("--operator", "operator_id", default="cli", help="Operator ID")
def orphans(
    collection: Tuple[str, ...],
    include_inactive: bool,
    repair: bool,
    preserve: Tuple[str, ...],
    preserve_all: bool,
    operator_id: str,
) -> None:
    """Scan for orphaned references, optionally repairing them."""
    options = OrphanCleanupOptions(
        collections=list(collection) or None,
        include_inactive=include_inactive,
        dry_run=not repair,
        preserve_collections=list(preserve),
        preserve_all=preserve_all,
    )
    try:
        envelope = run_with_service(
            lambda service: service.cleanup_orphans(
                options, operator_from(operator_id, None)
            ),
            description="Scanning for orphans...",
        )
    except Exception as e:
        console.print(f"[red]Error scanning for orphans: {e}[/red]")
        sys.exit(1)

    exit_on_failure(envelope, "scanning for orphans")
    report = envelope.data["report"]
    result = envelope.data["repair"]

    if not report.orphans:
        console.print("[green]✓ No orphaned references found[/green]")
        return

    table = Table(title=f"Orphaned References ({report.total})", show_header=True)
    table.add_column("Collection", style="cyan")
    table.add_column("Record", style="dim")
    table.add_column("Field")
    table.add_column("Missing", style="red")
    table.add_column("Policy", style="yellow")
    for orphan in report.orphans:
        table.add_row(
            orphan.referencing_collection,
            orphan.record_id,
            orphan.field,
            str(orphan.missing_id),
            orphan.policy,
        )
    console.print(table)

    verb = "Would change" if result.dry_run else "Changed"
    console.print(
        f"{verb}: {result.removed} removed, {result.preserved} preserved, "
        f"{result.cleaned} cleaned"
    )


@cli.group()
def audit() -> None:
    """Deletion audit log."""
    pass


@audit.command("list")
@click.option(
    "--kind", type=click.Choice([k.value for k in OperationKind]), help="Operation kind"
)
@click.option(
    "--status",
    type=click.Choice([s.value for s in OperationStatus]),
    help="Operation status",
)
@click.option("--operator", "operator_id", help="Filter by operator ID")
@click.option("--entity-id", help="Filter by target entity ID")
@click.option("--start-date", type=click.DateTime(), help="Start date")
@click.option("--end-date", type=click.DateTime(), help="End date")
@click.option("--page", type=int, default=1, help="Page number")
@click.option("--limit", type=int, default=None, help="Entries per page")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
def audit_list(
    kind: Optional[str],
    status: Optional[str],
    operator_id: Optional[str],
    entity_id: Optional[str],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    page: int,
    limit: Optional[int],
    format: str,
) -> None:
    """List audit log entries."""
    try:
        audit_filter = AuditLogFilter(
            kind=OperationKind(kind) if kind else None,
            status=OperationStatus(status) if status else None,
            operator_id=operator_id,
            target_entity_id=entity_id,
            start_date=start_date,
            end_date=end_date,
        )
        envelope = run_with_service(
            lambda service: service.list_audit_log(audit_filter, page, limit)
        )
    except Exception as e:
        console.print(f"[red]Error listing audit log: {e}[/red]")
        sys.exit(1)

    exit_on_failure(envelope, "listing audit log")
    audit_page = envelope.data

    if format == "json":
        console.print_json(data=audit_page.model_dump(mode="json"))
        return

    if not audit_page.entries:
        console.print("[yellow]No audit entries found matching criteria[/yellow]")
        return

    pagination = audit_page.pagination
    table = Table(
        title=f"Audit Log (page {pagination.page} of {pagination.pages}, "
        f"{pagination.total} entries)"
    )
    table.add_column("Timestamp", style="cyan")
    table.add_column("Operator", style="green")
    table.add_column("Kind", style="yellow")
    table.add_column("Target", style="blue")
    table.add_column("Status", style="magenta")
    for entry in audit_page.entries:
        status_text = entry.status
        if status_text == OperationStatus.SUCCESS.value:
            status_text = "[green]SUCCESS[/green]"
        elif status_text == OperationStatus.FAILED.value:
            status_text = "[red]FAILED[/red]"
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.operator_id,
            entry.kind,
            entry.target_entity_id or "",
            status_text,
        )
    console.print(table)

    summary = audit_page.summary
    console.print(
        f"Successful: {summary.successful_operations}  "
        f"Failed: {summary.failed_operations}  "
        f"Partial: {summary.partial_operations}"
    )


@cli.group()
def snapshots() -> None:
    """Deletion snapshot management."""
    pass


@snapshots.command("list")
@click.option("--record", "primary_id", help="Only snapshots of this primary record")
def snapshots_list(primary_id: Optional[str]) -> None:
    """List snapshots available for rollback."""
    try:
        if primary_id:
            found = run_with_service(
                lambda service: service.snapshots.list_for_record(primary_id)
            )
        else:
            found = run_with_service(lambda service: service.snapshots.list_active())
    except Exception as e:
        console.print(f"[red]Error listing snapshots: {e}[/red]")
        sys.exit(1)

    if not found:
        console.print("[yellow]No snapshots found[/yellow]")
        return

    table = Table(title="Deletion Snapshots", show_header=True)
    table.add_column("Snapshot", style="cyan")
    table.add_column("Record", style="green")
    table.add_column("Created", style="dim")
    table.add_column("Expires", style="dim")
    table.add_column("Records", justify="right")
    table.add_column("Used")
    for snapshot in found:
        table.add_row(
            snapshot.id,
            snapshot.primary_record_id,
            snapshot.created_at.strftime("%Y-%m-%d %H:%M"),
            snapshot.expires_at.strftime("%Y-%m-%d %H:%M"),
            str(snapshot.record_count),
            "✓" if snapshot.used else "✗",
        )
    console.print(table)


@snapshots.command("purge")
def snapshots_purge() -> None:
    """Delete snapshots past their retention window."""
    try:
        removed = run_with_service(lambda service: service.snapshots.purge_expired())
    except Exception as e:
        console.print(f"[red]Error purging snapshots: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]✓[/green] Purged {removed} expired snapshots")


@cli.group()
def config() -> None:
    """Manage cascade toolkit configuration."""
    pass


@config.command("show")
@click.option("--format", type=click.Choice(["table", "json", "yaml"]), default="table")
def config_show(format: str) -> None:
    """Display current configuration."""
    try:
        config_dict = get_config().to_dict()

        if format == "json":
            console.print_json(data=config_dict)
        elif format == "yaml":
            import yaml

            console.print(yaml.dump(config_dict, default_flow_style=False))
        else:
            table = Table(title="Cascade Configuration", show_header=True)
            table.add_column("Setting", style="cyan")
            table.add_column("Value", style="green")

            categories = {
                "General": ["application_name", "environment"],
                "Storage": [
                    "storage_backend",
                    "database_url",
                    "registry_file",
                    "primary_collection",
                ],
                "Snapshots": ["snapshot_retention_days", "snapshot_collection"],
                "Impact": [
                    "large_deletion_threshold",
                    "massive_deletion_threshold",
                    "records_per_batch",
                    "seconds_per_batch",
                ],
                "Audit": ["audit_enabled", "audit_collection", "audit_page_limit"],
                "Integrity": ["checksum_algorithm", "emergency_rollback_enabled"],
            }

            for category, settings in categories.items():
                table.add_row(f"[bold]{category}[/bold]", "")
                for setting in settings:
                    value = config_dict.get(setting)
                    if value is None:
                        value = "[dim]Not configured[/dim]"
                    elif isinstance(value, bool):
                        value = "✓" if value else "✗"
                    table.add_row(f"  {setting}", str(value))

            console.print(table)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@config.command("validate")
def config_validate() -> None:
    """Validate current configuration and relationship registry."""
    try:
        config = get_config()
        registry = load_registry(config)

        issues = []
        warnings = []

        if config.primary_collection not in registry:
            issues.append(
                f"No relationships declared for {config.primary_collection}"
            )
        if (
            config.storage_backend == StorageBackend.MEMORY
            and config.environment == "production"
        ):
            warnings.append("In-memory storage loses all data when the process exits")
        if not config.audit_enabled:
            warnings.append("Audit logging is disabled")

        if issues:
            console.print("[red]✗ Configuration validation failed:[/red]")
            for issue in issues:
                console.print(f"  [red]• {issue}[/red]")
            sys.exit(1)

        console.print(
            f"[green]✓ Configuration is valid[/green] ({len(registry)} relationships)"
        )
        if warnings:
            console.print("\n[yellow]⚠ Warnings:[/yellow]")
            for warning in warnings:
                console.print(f"  [yellow]• {warning}[/yellow]")

    except SystemExit:
        raise
    except Exception as e:
        console.print(f"[red]Error validating configuration: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    cli()
