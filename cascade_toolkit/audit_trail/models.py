"""
Data models for the deletion audit trail.

These models define operator identity, append-only audit entries and the
paginated listing returned to compliance reviewers.
"""

import hashlib
import json
import math
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class OperationKind(str, Enum):
    """Kinds of audited operations."""

    PREVIEW = "PREVIEW"
    EXECUTE = "EXECUTE"
    CLEANUP = "CLEANUP"
    ROLLBACK = "ROLLBACK"


class OperationStatus(str, Enum):
    """Outcome of an audited operation."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"


class OperatorInfo(BaseModel):
    """Identity of the administrator running an operation."""

    id: str = Field(..., description="Operator identifier", min_length=1)
    name: Optional[str] = Field(None, description="Display name of the operator")
    ip_address: Optional[str] = Field(None, description="Client IP address")
    user_agent: Optional[str] = Field(None, description="Client user agent")


SYSTEM_OPERATOR = OperatorInfo(id="system", name="System")


class AuditLogEntry(BaseModel):
    """
    Immutable record of one attempted deletion-related operation.

    Captures who ran it, what it targeted, when, and how it ended.
    """

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True)

    id: str = Field(..., alias="_id", description="Unique identifier for the entry")
    operation_id: str = Field(..., description="Operation the entry describes")
    kind: OperationKind = Field(..., description="Kind of operation")
    timestamp: datetime = Field(
        default_factory=datetime.utcnow, description="UTC timestamp of the operation"
    )

    # Who
    operator_id: str = Field(..., description="ID of the operator")
    operator_name: Optional[str] = Field(None, description="Display name of operator")
    ip_address: Optional[str] = Field(None, description="Client IP address")
    user_agent: Optional[str] = Field(None, description="Client user agent")

    # What
    target_entity_id: Optional[str] = Field(None, description="ID of entity affected")
    entity_type: Optional[str] = Field(None, description="Collection of the entity")
    application: Optional[str] = Field(None, description="Application name")

    # Outcome
    status: OperationStatus = Field(..., description="Outcome of the operation")
    details: Dict[str, Any] = Field(
        default_factory=dict, description="Operation result or error summary"
    )
    error_code: Optional[str] = Field(None, description="Error code if it failed")

    checksum: Optional[str] = Field(
        None, description="Checksum of the entry for integrity verification"
    )

    def calculate_checksum(self, algorithm: str = "sha256") -> str:
        """
        Calculate checksum for the audit entry.

        Args:
            algorithm: Hash algorithm to use

        Returns:
            Hex digest of the checksum
        """
        data = {
            "id": self.id,
            "operation_id": self.operation_id,
            "kind": self.kind,
            "timestamp": self.timestamp.isoformat(),
            "operator_id": self.operator_id,
            "target_entity_id": self.target_entity_id,
            "status": self.status,
            "details": self.details,
        }

        json_str = json.dumps(data, sort_keys=True, default=str)

        if algorithm == "sha256":
            return hashlib.sha256(json_str.encode()).hexdigest()
        elif algorithm == "sha512":
            return hashlib.sha512(json_str.encode()).hexdigest()
        else:
            raise ValueError(f"Unsupported algorithm: {algorithm}")

    def verify_checksum(
        self, expected_checksum: str, algorithm: str = "sha256"
    ) -> bool:
        """
        Verify the integrity of the audit entry.

        Args:
            expected_checksum: Expected checksum value
            algorithm: Hash algorithm used

        Returns:
            True if checksum matches
        """
        return self.calculate_checksum(algorithm) == expected_checksum

    def to_log_format(self) -> str:
        """
        Convert to a standardized log format string.

        Returns:
            Formatted log string
        """
        parts = [
            f"[{self.timestamp.isoformat()}]",
            f"OPERATOR={self.operator_id}",
            f"KIND={self.kind}",
            f"STATUS={self.status}",
        ]

        if self.entity_type and self.target_entity_id:
            parts.append(f"ENTITY={self.entity_type}:{self.target_entity_id}")

        if self.error_code:
            parts.append(f"ERROR={self.error_code}")

        return " ".join(parts)


class AuditLogFilter(BaseModel):
    """Filter parameters for listing audit entries."""

    start_date: Optional[datetime] = Field(None, description="Start of time range")
    end_date: Optional[datetime] = Field(None, description="End of time range")
    kind: Optional[OperationKind] = Field(None, description="Filter by kind")
    operator_id: Optional[str] = Field(None, description="Filter by operator")
    entity_type: Optional[str] = Field(None, description="Filter by entity type")
    target_entity_id: Optional[str] = Field(None, description="Filter by entity ID")
    status: Optional[OperationStatus] = Field(None, description="Filter by status")

    sort_by: str = Field("timestamp", description="Field to sort by")
    sort_desc: bool = Field(True, description="Sort in descending order")

    @field_validator("end_date")
    @classmethod
    def validate_date_range(
        cls, v: Optional[datetime], info: ValidationInfo
    ) -> Optional[datetime]:
        """Ensure end date is after start date."""
        if v and "start_date" in info.data and info.data["start_date"]:
            if v < info.data["start_date"]:
                raise ValueError("End date must be after start date")
        return v

    def to_predicate(self) -> Dict[str, Any]:
        """Store predicate selecting the filtered entries."""
        predicate: Dict[str, Any] = {}

        timestamp: Dict[str, Any] = {}
        if self.start_date:
            timestamp["$gte"] = self.start_date
        if self.end_date:
            timestamp["$lte"] = self.end_date
        if timestamp:
            predicate["timestamp"] = timestamp

        if self.kind:
            predicate["kind"] = self.kind.value
        if self.operator_id:
            predicate["operator_id"] = self.operator_id
        if self.entity_type:
            predicate["entity_type"] = self.entity_type
        if self.target_entity_id:
            predicate["target_entity_id"] = self.target_entity_id
        if self.status:
            predicate["status"] = self.status.value

        return predicate


class Pagination(BaseModel):
    """Pagination block of a listing."""

    page: int = Field(..., ge=1)
    limit: int = Field(..., gt=0)
    total: int = Field(..., ge=0)
    pages: int = Field(..., ge=0)
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit),
            has_next=(page - 1) * limit + limit < total,
            has_prev=page > 1,
        )


class AuditSummary(BaseModel):
    """Outcome counts over every entry matching a filter."""

    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    partial_operations: int = 0


class AuditLogPage(BaseModel):
    """One page of audit entries with pagination and summary."""

    entries: List[AuditLogEntry] = Field(default_factory=list)
    pagination: Pagination
    summary: AuditSummary
