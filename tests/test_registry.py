"""
Tests for the relationship registry and reference paths.
"""

import dataclasses

import pytest

from cascade_toolkit.deletion.policies import cleanup_update
from cascade_toolkit.exceptions import RegistryError
from cascade_toolkit.registry import (
    ReferenceKind,
    ReferencePath,
    RelationshipPolicy,
    RelationshipRegistry,
    build_default_registry,
)


class TestReferencePath:
    """Test parsing reference declarations."""

    def test_plain_field(self):
        """Test a scalar reference field."""
        path = ReferencePath.parse("studentId")
        assert path.kind == ReferenceKind.FIELD
        assert path.dotted == "studentId"
        assert path.predicate("s1") == {"studentId": "s1"}
        assert str(path) == "studentId"

    def test_array_element(self):
        """Test a reference inside array elements."""
        path = ReferencePath.parse("attendees.studentId")
        assert path.kind == ReferenceKind.ARRAY_ELEMENT
        assert path.field == "attendees"
        assert path.match_field == "studentId"
        assert path.predicate("s1") == {"attendees.studentId": "s1"}
        assert path.exists_predicate() == {"attendees.studentId": {"$exists": True}}

    def test_value_list(self):
        """Test an array of raw ids."""
        path = ReferencePath.parse("memberIds[]")
        assert path.kind == ReferenceKind.VALUE_LIST
        assert path.field == "memberIds"
        assert path.predicate("s1") == {"memberIds": "s1"}
        assert str(path) == "memberIds[]"

    @pytest.mark.parametrize("declaration", ["", "  ", "a.b.c", "a.b[]", "[]", ".x"])
    def test_invalid_paths(self, declaration):
        """Test malformed declarations are rejected."""
        with pytest.raises(RegistryError):
            ReferencePath.parse(declaration)


class TestRelationshipRegistry:
    """Test registry construction and lookup."""

    def test_from_declarations_keeps_order(self):
        """Test rules come back in declaration order."""
        registry = RelationshipRegistry.from_declarations(
            {
                "people": [
                    {"collection": "A", "field": "pId", "policy": "cascade"},
                    {"collection": "B", "field": "refs.pId", "policy": "CLEANUP"},
                ]
            }
        )
        rules = registry.rules_for("people")
        assert [rule.referencing_collection for rule in rules] == ["A", "B"]
        assert rules[0].policy == RelationshipPolicy.CASCADE
        assert rules[1].path.kind == ReferenceKind.ARRAY_ELEMENT
        assert "people" in registry
        assert len(registry) == 2

    def test_missing_key(self):
        """Test incomplete declarations are rejected."""
        with pytest.raises(RegistryError):
            RelationshipRegistry.from_declarations(
                {"people": [{"collection": "A", "policy": "CASCADE"}]}
            )

    def test_unknown_policy(self):
        """Test unknown policies are rejected."""
        with pytest.raises(RegistryError):
            RelationshipRegistry.from_declarations(
                {"people": [{"collection": "A", "field": "pId", "policy": "ARCHIVE"}]}
            )

    def test_duplicate_rule(self):
        """Test the same relationship cannot be declared twice."""
        with pytest.raises(RegistryError):
            RelationshipRegistry.from_declarations(
                {
                    "people": [
                        {"collection": "A", "field": "pId", "policy": "CASCADE"},
                        {"collection": "A", "field": "pId", "policy": "CLEANUP"},
                    ]
                }
            )

    def test_unknown_source(self):
        """Test looking up an undeclared primary collection."""
        registry = build_default_registry()
        with pytest.raises(RegistryError):
            registry.rules_for("teachers")

    def test_rules_are_immutable(self):
        """Test rules cannot be altered after construction."""
        registry = build_default_registry()
        rule = registry.rules_for("students")[0]
        with pytest.raises(dataclasses.FrozenInstanceError):
            rule.policy = RelationshipPolicy.CLEANUP  # type: ignore[misc]
        assert isinstance(registry.rules_for("students"), tuple)

    def test_from_yaml(self, tmp_path):
        """Test loading declarations from a YAML file."""
        path = tmp_path / "registry.yaml"
        path.write_text(
            "members:\n"
            "  - collection: bookings\n"
            "    field: memberId\n"
            "    policy: CASCADE\n"
            "  - collection: teams\n"
            "    field: memberIds[]\n"
            "    policy: CLEANUP\n"
        )
        registry = RelationshipRegistry.from_yaml(path)
        assert registry.sources == ["members"]
        assert [rule.describe()["field"] for rule in registry] == [
            "memberId",
            "memberIds[]",
        ]

    def test_from_yaml_rejects_lists(self, tmp_path):
        """Test a registry file must be a mapping."""
        path = tmp_path / "registry.yaml"
        path.write_text("- students\n")
        with pytest.raises(RegistryError):
            RelationshipRegistry.from_yaml(path)


class TestDefaultRegistry:
    """Test the built-in student relationships."""

    def test_student_policies(self):
        """Test each referencing collection carries its documented policy."""
        registry = build_default_registry()
        policies = {
            (rule.referencing_collection, str(rule.path)): rule.policy
            for rule in registry.rules_for("students")
        }
        assert len(policies) == 9
        assert policies[("private_lessons", "studentId")] == RelationshipPolicy.CASCADE
        assert policies[("bagrut", "studentId")] == RelationshipPolicy.PRESERVE
        assert (
            policies[("rehearsals", "attendees.studentId")]
            == RelationshipPolicy.CLEANUP
        )
        assert policies[("orchestras", "memberIds[]")] == RelationshipPolicy.CLEANUP
        assert policies[("theory_lessons", "studentIds[]")] == RelationshipPolicy.CLEANUP


class TestCleanupUpdates:
    """Test reference cleanup updates built from paths."""

    def test_array_element_cleanup(self):
        """Test array elements are pulled and object containers unset."""
        update = cleanup_update(ReferencePath.parse("attendees.studentId"), "s1")
        assert update.pull == {"attendees": {"studentId": "s1"}}
        assert update.unset == ["attendees.studentId"]

    def test_array_element_path_needs_element_field(self):
        """Test a hand-built array element path without its field is rejected."""
        path = ReferencePath(kind=ReferenceKind.ARRAY_ELEMENT, field="attendees")
        with pytest.raises(RegistryError):
            cleanup_update(path, "s1")
