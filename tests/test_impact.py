"""
Tests for the read-only impact preview.
"""

import pytest

from cascade_toolkit.config import CascadeConfig
from cascade_toolkit.deletion import DeletionOptions, ImpactAnalyzer
from cascade_toolkit.deletion.impact import display_name, format_duration
from cascade_toolkit.deletion.models import PolicyAction, WarningSeverity
from cascade_toolkit.exceptions import NotFoundError
from cascade_toolkit.registry import RelationshipRegistry, build_default_registry
from cascade_toolkit.storage import InMemoryDocumentStore


@pytest.fixture
def config():
    """Test configuration."""
    return CascadeConfig(environment="test")


@pytest.fixture
def people_registry():
    """Registry with one cascading and one preserved relationship."""
    return RelationshipRegistry.from_declarations(
        {
            "people": [
                {"collection": "A", "field": "pId", "policy": "CASCADE"},
                {"collection": "grades", "field": "pId", "policy": "PRESERVE"},
                {"collection": "B", "field": "refs.pId", "policy": "CLEANUP"},
            ]
        }
    )


def people_store(cascading=0, grades=0, cleanups=0):
    """Store with one primary record P and the requested references."""
    return InMemoryDocumentStore(
        {
            "people": [{"_id": "P", "name": "Dana", "is_active": True}],
            "A": [{"_id": f"a{i}", "pId": "P"} for i in range(cascading)],
            "grades": [{"_id": f"g{i}", "pId": "P"} for i in range(grades)],
            "B": [{"_id": f"b{i}", "refs": [{"pId": "P"}]} for i in range(cleanups)],
        }
    )


class TestImpactAnalyzer:
    """Test impact previews."""

    @pytest.mark.asyncio
    async def test_large_deletion_warning(self, people_registry, config):
        """Test 150 cascading records raise exactly one HIGH warning."""
        store = people_store(cascading=150)
        analyzer = ImpactAnalyzer(store, people_registry, config, "people")

        report = await analyzer.preview("P")

        assert report.total_records == 150
        assert report.cascade_records == 150
        assert len(report.warnings_with(WarningSeverity.HIGH)) == 1
        assert report.critical_warnings == 0
        assert report.estimated_seconds > 0
        assert report.estimated_seconds == 4
        assert report.estimated_time == "4 seconds"

    @pytest.mark.asyncio
    async def test_massive_deletion_warning(self, people_registry, config):
        """Test cumulative cascades above the threshold raise CRITICAL."""
        store = people_store(cascading=1001)
        analyzer = ImpactAnalyzer(store, people_registry, config, "people")

        report = await analyzer.preview("P")

        assert report.critical_warnings == 1
        assert len(report.warnings_with(WarningSeverity.HIGH)) == 1
        assert report.estimated_seconds == 22

    @pytest.mark.asyncio
    async def test_preservable_data_loss(self, people_registry, config):
        """Test PRESERVE records that would be deleted raise MEDIUM."""
        store = people_store(grades=2)
        analyzer = ImpactAnalyzer(store, people_registry, config, "people")

        report = await analyzer.preview("P")

        medium = report.warnings_with(WarningSeverity.MEDIUM)
        assert len(medium) == 1
        assert medium[0].collection == "grades"
        assert report.cascade_records == 2

    @pytest.mark.asyncio
    async def test_requested_preservation(self, people_registry, config):
        """Test preserved records are neither cascades nor warnings."""
        store = people_store(grades=2, cleanups=3)
        analyzer = ImpactAnalyzer(store, people_registry, config, "people")

        report = await analyzer.preview(
            "P", DeletionOptions(preserve_collections=["grades"])
        )

        actions = {impact.collection: impact.action for impact in report.relationships}
        assert actions == {
            "A": PolicyAction.DELETE,
            "grades": PolicyAction.PRESERVE,
            "B": PolicyAction.CLEANUP_REFERENCE,
        }
        assert report.cascade_records == 0
        assert report.total_records == 5
        assert report.affected_collections == {"grades": 2, "B": 3}
        assert report.warnings == []

    @pytest.mark.asyncio
    async def test_no_references(self, people_registry, config):
        """Test a primary nothing points at."""
        store = people_store()
        analyzer = ImpactAnalyzer(store, people_registry, config, "people")

        report = await analyzer.preview("P")

        assert report.total_records == 0
        assert report.affected_collections == {}
        assert report.warnings == []
        assert report.estimated_seconds == 0
        assert report.primary.name == "Dana"
        assert [impact.record_count for impact in report.relationships] == [0, 0, 0]

    @pytest.mark.asyncio
    async def test_missing_primary(self, people_registry, config):
        """Test previewing an unknown record."""
        analyzer = ImpactAnalyzer(people_store(), people_registry, config, "people")
        with pytest.raises(NotFoundError):
            await analyzer.preview("nobody")

    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, people_registry, config):
        """Test a preview leaves the store untouched."""
        store = people_store(cascading=3, grades=1, cleanups=2)
        before = store.dump()
        analyzer = ImpactAnalyzer(store, people_registry, config, "people")

        await analyzer.preview("P")

        assert store.dump() == before

    @pytest.mark.asyncio
    async def test_rollback_availability(self, people_registry, config):
        """Test can_rollback follows the snapshot option."""
        analyzer = ImpactAnalyzer(people_store(), people_registry, config, "people")
        report = await analyzer.preview("P", DeletionOptions(create_snapshot=False))
        assert report.can_rollback is False
        assert report.operation_id.startswith("preview_")

    @pytest.mark.asyncio
    async def test_student_relationships(self, config):
        """Test the built-in registry counts array and value-list references."""
        store = InMemoryDocumentStore(
            {
                "students": [
                    {"_id": "s1", "personalInfo": {"fullName": "Noa Levi"}},
                ],
                "theory_lessons": [
                    {
                        "_id": "t1",
                        "attendees": [{"studentId": "s1"}],
                        "studentIds": ["s1"],
                    }
                ],
                "orchestras": [{"_id": "o1", "memberIds": ["s1", "s2"]}],
            }
        )
        analyzer = ImpactAnalyzer(store, build_default_registry(), config)

        report = await analyzer.preview("s1")

        assert report.primary.name == "Noa Levi"
        assert report.affected_collections == {"theory_lessons": 2, "orchestras": 1}
        assert report.cascade_records == 0


class TestHelpers:
    """Test formatting helpers."""

    def test_format_duration(self):
        """Test seconds switch to minutes above one minute."""
        assert format_duration(0) == "0 seconds"
        assert format_duration(60) == "60 seconds"
        assert format_duration(61) == "2 minutes"

    def test_display_name(self):
        """Test name lookup order."""
        assert display_name({"personalInfo": {"fullName": "A"}, "name": "B"}) == "A"
        assert display_name({"name": "B"}) == "B"
        assert display_name({"_id": "x"}) is None
