"""
Orphan scanner and repairer.

Finds referencing records whose reference points at a primary record that no
longer exists, independent of any deletion, and repairs them with the same
policy dispatch the executor uses.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..registry import RelationshipRegistry, RelationshipRule
from ..storage import ID_FIELD, Document, DocumentStore, resolve_path
from .impact import is_active
from .models import (
    OperationKind,
    OrphanCleanupOptions,
    OrphanReference,
    OrphanReport,
    PolicyAction,
    RepairResult,
    generate_operation_id,
)
from .policies import apply_policy, resolve_action

logger = logging.getLogger(__name__)

RuleKey = Tuple[str, str, str]


def _rule_key(rule: RelationshipRule) -> RuleKey:
    return (rule.source_collection, rule.referencing_collection, str(rule.path))


def referenced_ids(record: Document, rule: RelationshipRule) -> List[Any]:
    """Reference values a record holds for a rule, skipping redaction stamps."""
    values: List[Any] = []
    for value in resolve_path(record, rule.path.dotted):
        items = value if isinstance(value, list) else [value]
        for item in items:
            # Redaction stamps and nested structures are not references
            if item is None or isinstance(item, (dict, list)):
                continue
            if item not in values:
                values.append(item)
    return values


class OrphanScanner:
    """Scans for and repairs dangling references declared in the registry."""

    def __init__(self, store: DocumentStore, registry: RelationshipRegistry):
        self.store = store
        self.registry = registry

    def _selected_rules(self, collections: Optional[Iterable[str]]) -> List[RelationshipRule]:
        wanted = set(collections) if collections else None
        return [
            rule
            for rule in self.registry
            if wanted is None or rule.referencing_collection in wanted
        ]

    async def _live_ids(self, source: str, include_inactive: bool) -> Set[Any]:
        primaries = await self.store.find(source)
        return {
            doc[ID_FIELD]
            for doc in primaries
            if not include_inactive or is_active(doc)
        }

    async def scan(
        self,
        collections: Optional[Iterable[str]] = None,
        options: Optional[OrphanCleanupOptions] = None,
        operation_id: Optional[str] = None,
    ) -> OrphanReport:
        """
        Find references to primary records that do not exist.

        Args:
            collections: Referencing collections to scan (all when None)
            options: Scan options; ``include_inactive`` also reports
                references to deactivated primary records
            operation_id: Operation id to report (generated when unset)

        Returns:
            Orphan report
        """
        options = options or OrphanCleanupOptions()
        if collections is None:
            collections = options.collections
        rules = self._selected_rules(collections)

        report = OrphanReport(
            operation_id=operation_id or generate_operation_id(OperationKind.CLEANUP),
            include_inactive=options.include_inactive,
        )

        live: Dict[str, Set[Any]] = {}
        for rule in rules:
            source = rule.source_collection
            if source not in live:
                live[source] = await self._live_ids(source, options.include_inactive)

            if rule.referencing_collection not in report.scanned_collections:
                report.scanned_collections.append(rule.referencing_collection)

            records = await self.store.find(
                rule.referencing_collection, rule.path.exists_predicate()
            )
            for record in records:
                for value in referenced_ids(record, rule):
                    if value in live[source]:
                        continue
                    report.orphans.append(
                        OrphanReference(
                            source_collection=source,
                            referencing_collection=rule.referencing_collection,
                            field=str(rule.path),
                            policy=rule.policy.value,
                            record_id=str(record[ID_FIELD]),
                            missing_id=value,
                        )
                    )

        if report.orphans:
            logger.warning(
                f"Found {report.total} orphaned references in "
                f"{len(report.by_collection())} collections"
            )
        return report

    async def repair(
        self,
        report: OrphanReport,
        dry_run: bool = True,
        options: Optional[OrphanCleanupOptions] = None,
        operator_id: str = "system",
    ) -> RepairResult:
        """
        Repair every orphan of a report inside one transaction.

        Orphans whose primary record exists again when the repair runs are
        left untouched. Running a repair twice without intervening writes
        changes nothing the second time.

        Args:
            report: Report produced by ``scan``
            dry_run: Report projected changes without writing
            options: Preservation options for PRESERVE relationships
            operator_id: Operator recorded in redaction stamps

        Returns:
            Repair result
        """
        options = options or OrphanCleanupOptions()
        rules = {_rule_key(rule): rule for rule in self.registry}
        result = RepairResult(
            operation_id=report.operation_id,
            dry_run=dry_run,
            orphans_found=report.total,
        )

        targets: List[Tuple[RelationshipRule, Any]] = []
        for orphan in report.orphans:
            key = (orphan.source_collection, orphan.referencing_collection, orphan.field)
            rule = rules.get(key)
            if rule is None:
                result.warnings.append(
                    f"No relationship declared for {orphan.referencing_collection}."
                    f"{orphan.field}"
                )
                continue
            if dry_run:
                action = resolve_action(
                    rule, options.should_preserve(rule.referencing_collection)
                )
                self._tally(result, action, rule.referencing_collection, 1)
            elif (rule, orphan.missing_id) not in targets:
                targets.append((rule, orphan.missing_id))

        if dry_run or not targets:
            result.completed_at = datetime.utcnow()
            return result

        async with self.store.transaction() as tx:
            for rule, missing_id in targets:
                primary = await tx.find_one(rule.source_collection, {ID_FIELD: missing_id})
                if primary is not None and (
                    not report.include_inactive or is_active(primary)
                ):
                    continue
                outcome = await apply_policy(
                    tx,
                    rule,
                    missing_id,
                    options.should_preserve(rule.referencing_collection),
                    operator_id,
                )
                self._tally(result, outcome.action, outcome.collection, outcome.count)

        result.completed_at = datetime.utcnow()
        return result

    @staticmethod
    def _tally(
        result: RepairResult, action: PolicyAction, collection: str, count: int
    ) -> None:
        if action == PolicyAction.DELETE:
            result.removed += count
        elif action == PolicyAction.PRESERVE:
            result.preserved += count
        else:
            result.cleaned += count
        result.add_count(collection, count)
