"""Read-only impact preview for cascade deletions."""

import math
from typing import Any, Dict, Optional

from ..config import CascadeConfig, get_config
from ..exceptions import NotFoundError
from ..registry import RelationshipPolicy, RelationshipRegistry
from ..storage import ID_FIELD, DocumentStore, resolve_path
from .models import (
    DeletionOptions,
    ImpactReport,
    ImpactWarning,
    OperationKind,
    PolicyAction,
    PrimarySummary,
    RelationshipImpact,
    WarningSeverity,
    generate_operation_id,
)
from .policies import resolve_action

NAME_FIELDS = ("personalInfo.fullName", "full_name", "name")


def display_name(record: Dict[str, Any]) -> Optional[str]:
    """Best human-readable name of a primary record, if it has one."""
    for path in NAME_FIELDS:
        values = resolve_path(record, path)
        if values and isinstance(values[0], str):
            return values[0]
    return None


def is_active(record: Dict[str, Any]) -> bool:
    """Primary records are active unless explicitly deactivated."""
    return record.get("is_active") is not False


def format_duration(seconds: int) -> str:
    if seconds > 60:
        return f"{math.ceil(seconds / 60)} minutes"
    return f"{seconds} seconds"


class ImpactAnalyzer:
    """
    Counts what an execution would change, per relationship, and classifies
    the risk before anything is written.
    """

    def __init__(
        self,
        store: DocumentStore,
        registry: RelationshipRegistry,
        config: Optional[CascadeConfig] = None,
        primary_collection: Optional[str] = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config or get_config()
        self.primary_collection = primary_collection or self.config.primary_collection

    def estimate_seconds(self, total_records: int) -> int:
        """Advisory duration from a fixed throughput per batch of records."""
        batches = math.ceil(total_records / self.config.records_per_batch)
        return batches * self.config.seconds_per_batch

    async def preview(
        self,
        primary_id: str,
        options: Optional[DeletionOptions] = None,
        operation_id: Optional[str] = None,
    ) -> ImpactReport:
        """
        Preview the effect of deleting a primary record.

        Args:
            primary_id: Id of the primary record
            options: Deletion options the execution would use
            operation_id: Operation id to report (generated when unset)

        Returns:
            Impact report with per-relationship counts and warnings

        Raises:
            NotFoundError: The primary record does not exist
        """
        options = options or DeletionOptions()
        primary = await self.store.find_one(
            self.primary_collection, {ID_FIELD: primary_id}
        )
        if primary is None:
            raise NotFoundError(self.primary_collection, primary_id)

        report = ImpactReport(
            operation_id=operation_id or generate_operation_id(OperationKind.PREVIEW),
            primary=PrimarySummary(
                id=primary_id,
                collection=self.primary_collection,
                name=display_name(primary),
                is_active=is_active(primary),
            ),
            can_rollback=options.create_snapshot,
        )

        for rule in self.registry.rules_for(self.primary_collection):
            collection = rule.referencing_collection
            count = await self.store.count_documents(
                collection, rule.path.predicate(primary_id)
            )
            action = resolve_action(rule, options.should_preserve(collection))
            report.relationships.append(
                RelationshipImpact(
                    collection=collection,
                    field=str(rule.path),
                    policy=rule.policy.value,
                    action=action,
                    record_count=count,
                )
            )
            if count == 0:
                continue

            report.affected_collections[collection] = (
                report.affected_collections.get(collection, 0) + count
            )
            report.total_records += count

            if action == PolicyAction.DELETE:
                report.cascade_records += count
                if count > self.config.large_deletion_threshold:
                    report.warnings.append(
                        ImpactWarning(
                            type="LARGE_DELETION",
                            message=f"Deleting {count} records from {collection}",
                            severity=WarningSeverity.HIGH,
                            collection=collection,
                        )
                    )
                if rule.policy == RelationshipPolicy.PRESERVE:
                    report.warnings.append(
                        ImpactWarning(
                            type="PRESERVABLE_DATA_LOSS",
                            message=(
                                f"{count} records in {collection} will be deleted; "
                                f"request preservation to keep them redacted"
                            ),
                            severity=WarningSeverity.MEDIUM,
                            collection=collection,
                        )
                    )

        if report.cascade_records > self.config.massive_deletion_threshold:
            report.warnings.append(
                ImpactWarning(
                    type="MASSIVE_DELETION",
                    message=f"Deleting {report.cascade_records} records in total",
                    severity=WarningSeverity.CRITICAL,
                )
            )

        report.estimated_seconds = self.estimate_seconds(report.total_records)
        report.estimated_time = format_duration(report.estimated_seconds)
        return report
