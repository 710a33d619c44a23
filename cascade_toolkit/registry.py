"""
Relationship registry for cascade deletion.

Declares, for each primary collection, every collection holding a reference to
it, where that reference lives, and what happens to the referencing record when
the primary record goes away. The registry is built once at startup and passed
by reference into every component.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import yaml

from .exceptions import RegistryError
from .storage import Predicate


class RelationshipPolicy(str, Enum):
    """What happens to a referencing record when its primary record is deleted."""

    CASCADE = "CASCADE"  # delete the referencing record
    PRESERVE = "PRESERVE"  # keep it, redact the reference when requested
    CLEANUP = "CLEANUP"  # strip only the dangling reference


class ReferenceKind(str, Enum):
    """Shape of the field holding a reference."""

    FIELD = "field"  # {"studentId": id}
    ARRAY_ELEMENT = "array_element"  # {"attendees": [{"studentId": id}, ...]}
    VALUE_LIST = "value_list"  # {"memberIds": [id, ...]}


@dataclass(frozen=True)
class ReferencePath:
    """Structured location of a reference, resolved once from its declaration.

    Declarations use ``"studentId"`` for a plain field,
    ``"attendees.studentId"`` for a sub-field of array elements and
    ``"memberIds[]"`` for an array of raw ids.
    """

    kind: ReferenceKind
    field: str
    match_field: Optional[str] = None

    @classmethod
    def parse(cls, declaration: str) -> "ReferencePath":
        text = declaration.strip()
        if not text:
            raise RegistryError("Reference field path cannot be empty")

        if text.endswith("[]"):
            field = text[:-2]
            if not field or "." in field:
                raise RegistryError(f"Invalid value-list path: {declaration!r}")
            return cls(kind=ReferenceKind.VALUE_LIST, field=field)

        if "." in text:
            container, _, match_field = text.partition(".")
            if not container or not match_field or "." in match_field:
                raise RegistryError(
                    f"Array element paths take the form container.field: "
                    f"{declaration!r}"
                )
            return cls(
                kind=ReferenceKind.ARRAY_ELEMENT,
                field=container,
                match_field=match_field,
            )

        return cls(kind=ReferenceKind.FIELD, field=text)

    @property
    def dotted(self) -> str:
        """Dot path matching the reference value itself."""
        if self.kind == ReferenceKind.ARRAY_ELEMENT:
            return f"{self.field}.{self.match_field}"
        return self.field

    def predicate(self, primary_id: Any) -> Predicate:
        """Predicate matching records that reference ``primary_id``."""
        return {self.dotted: primary_id}

    def exists_predicate(self) -> Predicate:
        """Predicate matching records holding any value at this path."""
        return {self.dotted: {"$exists": True}}

    def __str__(self) -> str:
        if self.kind == ReferenceKind.VALUE_LIST:
            return f"{self.field}[]"
        return self.dotted


@dataclass(frozen=True)
class RelationshipRule:
    """One referencing collection and the policy applied to it."""

    source_collection: str
    referencing_collection: str
    path: ReferencePath
    policy: RelationshipPolicy

    def describe(self) -> Dict[str, str]:
        return {
            "source_collection": self.source_collection,
            "referencing_collection": self.referencing_collection,
            "field": str(self.path),
            "policy": self.policy.value,
        }


class RelationshipRegistry:
    """Immutable, ordered relationship declarations per primary collection."""

    def __init__(self, rules: Mapping[str, Iterable[RelationshipRule]]):
        frozen: Dict[str, Tuple[RelationshipRule, ...]] = {}
        for source, source_rules in rules.items():
            ordered = tuple(source_rules)
            seen = set()
            for rule in ordered:
                if rule.source_collection != source:
                    raise RegistryError(
                        f"Rule for {rule.referencing_collection} declares source "
                        f"{rule.source_collection} under {source}"
                    )
                key = (rule.referencing_collection, str(rule.path))
                if key in seen:
                    raise RegistryError(
                        f"Duplicate relationship {source} -> "
                        f"{rule.referencing_collection}.{rule.path}"
                    )
                seen.add(key)
            frozen[source] = ordered
        self._rules: Mapping[str, Tuple[RelationshipRule, ...]] = MappingProxyType(
            frozen
        )

    @classmethod
    def from_declarations(
        cls, declarations: Mapping[str, Iterable[Mapping[str, Any]]]
    ) -> "RelationshipRegistry":
        """
        Build a registry from plain declarations.

        Args:
            declarations: Primary collection to a list of mappings with
                ``collection``, ``field`` and ``policy`` keys

        Returns:
            Registry instance

        Raises:
            RegistryError: A declaration is incomplete or invalid
        """
        rules: Dict[str, List[RelationshipRule]] = {}
        for source, entries in declarations.items():
            source_rules = rules.setdefault(source, [])
            for entry in entries:
                try:
                    collection = entry["collection"]
                    field = entry["field"]
                    policy = RelationshipPolicy(str(entry["policy"]).upper())
                except KeyError as e:
                    raise RegistryError(
                        f"Relationship for {source} is missing {e.args[0]!r}"
                    ) from e
                except ValueError as e:
                    raise RegistryError(
                        f"Unknown policy {entry.get('policy')!r} for {source}"
                    ) from e
                source_rules.append(
                    RelationshipRule(
                        source_collection=source,
                        referencing_collection=collection,
                        path=ReferencePath.parse(field),
                        policy=policy,
                    )
                )
        return cls(rules)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "RelationshipRegistry":
        """
        Load a registry from a YAML file.

        Example file::

            students:
              - collection: private_lessons
                field: studentId
                policy: CASCADE
              - collection: rehearsals
                field: attendees.studentId
                policy: CLEANUP
        """
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise RegistryError("Registry file must map primary collections to rules")
        return cls.from_declarations(data)

    def rules_for(self, source_collection: str) -> Tuple[RelationshipRule, ...]:
        """Ordered rules for a primary collection."""
        try:
            return self._rules[source_collection]
        except KeyError:
            raise RegistryError(
                f"No relationships declared for {source_collection}"
            ) from None

    @property
    def sources(self) -> List[str]:
        return list(self._rules)

    def __contains__(self, source_collection: object) -> bool:
        return source_collection in self._rules

    def __iter__(self) -> Iterator[RelationshipRule]:
        for source_rules in self._rules.values():
            yield from source_rules

    def __len__(self) -> int:
        return sum(len(source_rules) for source_rules in self._rules.values())


STUDENT_RELATIONSHIPS: Dict[str, List[Dict[str, str]]] = {
    "students": [
        {"collection": "private_attendance", "field": "studentId", "policy": "CASCADE"},
        {"collection": "private_lessons", "field": "studentId", "policy": "CASCADE"},
        {"collection": "activity_attendance", "field": "studentId", "policy": "CASCADE"},
        {"collection": "bagrut", "field": "studentId", "policy": "PRESERVE"},
        {
            "collection": "theory_lessons",
            "field": "attendees.studentId",
            "policy": "CLEANUP",
        },
        {"collection": "theory_lessons", "field": "studentIds[]", "policy": "CLEANUP"},
        {
            "collection": "rehearsals",
            "field": "attendees.studentId",
            "policy": "CLEANUP",
        },
        {"collection": "orchestras", "field": "memberIds[]", "policy": "CLEANUP"},
        {
            "collection": "teachers",
            "field": "assignedStudents.studentId",
            "policy": "CLEANUP",
        },
    ]
}


def build_default_registry() -> RelationshipRegistry:
    """Registry for the student records of the conservatory application."""
    return RelationshipRegistry.from_declarations(STUDENT_RELATIONSHIPS)
