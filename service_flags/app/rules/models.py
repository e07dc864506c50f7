"""
Flag, allowlist and audit data models for the Flags Service.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

FLAG_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._:-]*$"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlagStatus(str, Enum):
    """Rollout stage of a flag."""
    ALPHA = "Alpha"
    BETA = "Beta"
    GA = "GA"
    DISABLED = "Disabled"


class AllowlistKind(str, Enum):
    """Allowlist variants."""
    TENANT = "tenant"
    USER = "user"


class AuditAction(str, Enum):
    """Audit event actions."""
    EVALUATED = "evaluated"
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    ALLOWLIST_ADDED = "allowlist_added"
    ALLOWLIST_REMOVED = "allowlist_removed"


class Reason:
    """Evaluation reasons not produced by a rollout stage."""
    FLAG_DISABLED = "flag_disabled"
    GA_ROLLOUT = "ga_rollout"
    FLAG_NOT_FOUND = "flag_not_found"
    STORE_TIMEOUT = "store_timeout"
    STORE_UNAVAILABLE = "store_unavailable"
    EVALUATION_ERROR = "evaluation_error"


@dataclass
class FeatureFlag:
    """Environment-scoped flag definition."""
    name: str
    environment: str
    status: FlagStatus = FlagStatus.DISABLED
    owner: str = "unassigned"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class FlagPatch:
    """Partial update of a flag. ``None`` leaves a field untouched."""
    status: Optional[FlagStatus] = None
    owner: Optional[str] = None

    def is_empty(self) -> bool:
        return self.status is None and self.owner is None

    def describe(self, current: FeatureFlag) -> str:
        """Human-readable diff against the current flag, used as audit reason."""
        changes = []
        if self.status is not None and self.status != current.status:
            changes.append(f"status:{current.status.value}->{self.status.value}")
        if self.owner is not None and self.owner != current.owner:
            changes.append(f"owner:{current.owner}->{self.owner}")
        return ",".join(changes) or "no_change"


@dataclass(frozen=True)
class FlagSnapshot:
    """A flag together with the allowlists it is evaluated against."""
    flag: FeatureFlag
    tenant_allowlist: FrozenSet[str] = frozenset()
    user_allowlist: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class EvaluationContext:
    """Caller identity for one evaluation. Not persisted."""
    correlation_id: str
    environment: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    """Output of the allowlist evaluator."""
    enabled: bool
    reason: str


@dataclass
class EvaluationResult:
    """Result of evaluating one flag."""
    flag_name: str
    enabled: bool
    reason: str
    correlation_id: str
    evaluated_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditEvent:
    """Append-only audit record. ``id`` is assigned by the ledger."""
    flag_name: str
    environment: str
    action: AuditAction
    correlation_id: str
    reason: Optional[str] = None
    result: Optional[bool] = None
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class AuditPage:
    """One page of audit events; ``next_cursor`` is None on the last page."""
    events: List[AuditEvent]
    next_cursor: Optional[int] = None


@dataclass(frozen=True)
class Actor:
    """Identity of the administrative caller, as forwarded by the auth layer."""
    user_id: Optional[str]
    tenant_id: Optional[str]
    correlation_id: str


class ApiModel(BaseModel):
    """Base for HTTP payloads: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EvaluateRequest(ApiModel):
    """Request model for single flag evaluation."""
    flag_name: str = Field(..., min_length=1, max_length=255, description="Flag name")
    tenant_id: Optional[str] = Field(None, max_length=255, description="Tenant ID")
    user_id: Optional[str] = Field(None, max_length=255, description="User ID")
    environment: Optional[str] = Field(None, min_length=1, max_length=64, description="Flag environment")


class BulkEvaluateRequest(ApiModel):
    """Request model for bulk evaluation."""
    flag_names: List[str] = Field(..., min_length=1, max_length=100, description="Flag names, in result order")
    tenant_id: Optional[str] = Field(None, max_length=255)
    user_id: Optional[str] = Field(None, max_length=255)
    environment: Optional[str] = Field(None, min_length=1, max_length=64)

    @model_validator(mode="after")
    def check_names(self):
        if any(not name or not name.strip() for name in self.flag_names):
            raise ValueError("flagNames must not contain blank names")
        return self


class EvaluationResponse(ApiModel):
    """Response model for an evaluation."""
    flag_name: str
    enabled: bool
    reason: str
    evaluated_at: datetime
    correlation_id: str

    @classmethod
    def from_result(cls, result: EvaluationResult) -> "EvaluationResponse":
        return cls(
            flag_name=result.flag_name,
            enabled=result.enabled,
            reason=result.reason,
            evaluated_at=result.evaluated_at,
            correlation_id=result.correlation_id
        )


class FlagCreateRequest(ApiModel):
    """Request model for creating a flag."""
    name: str = Field(..., min_length=1, max_length=255, pattern=FLAG_NAME_PATTERN)
    environment: Optional[str] = Field(None, min_length=1, max_length=64)
    status: FlagStatus = Field(FlagStatus.DISABLED, description="Initial rollout stage")
    owner: Optional[str] = Field(None, min_length=1, max_length=255)


class FlagUpdateRequest(ApiModel):
    """Request model for updating a flag."""
    status: Optional[FlagStatus] = None
    owner: Optional[str] = Field(None, min_length=1, max_length=255)

    @model_validator(mode="after")
    def check_not_empty(self):
        if self.status is None and self.owner is None:
            raise ValueError("at least one of status or owner is required")
        return self


class AllowlistAddRequest(ApiModel):
    """Request model for adding a subject to an allowlist."""
    subject_id: str = Field(..., min_length=1, max_length=255)


class FlagResponse(ApiModel):
    """Response model for flag operations."""
    name: str
    environment: str
    status: FlagStatus
    owner: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_flag(cls, flag: FeatureFlag) -> "FlagResponse":
        return cls(
            name=flag.name,
            environment=flag.environment,
            status=flag.status,
            owner=flag.owner,
            created_at=flag.created_at,
            updated_at=flag.updated_at
        )


class FlagDetailResponse(FlagResponse):
    """Flag with its allowlists."""
    tenant_allowlist: List[str] = Field(default_factory=list)
    user_allowlist: List[str] = Field(default_factory=list)


class FlagListResponse(ApiModel):
    """Response model for flag list."""
    flags: List[FlagResponse]
    total: int


class AllowlistResponse(ApiModel):
    """Current membership of one allowlist."""
    flag_name: str
    environment: str
    kind: AllowlistKind
    subjects: List[str]
    changed: Optional[bool] = None


class AuditEventResponse(ApiModel):
    """Response model for one audit event."""
    id: int
    flag_name: str
    environment: str
    action: AuditAction
    result: Optional[bool]
    reason: Optional[str]
    tenant_id: Optional[str]
    user_id: Optional[str]
    correlation_id: str
    timestamp: datetime

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            flag_name=event.flag_name,
            environment=event.environment,
            action=event.action,
            result=event.result,
            reason=event.reason,
            tenant_id=event.tenant_id,
            user_id=event.user_id,
            correlation_id=event.correlation_id,
            timestamp=event.timestamp
        )


class AuditListResponse(ApiModel):
    """Response model for audit queries."""
    events: List[AuditEventResponse]
    next_cursor: Optional[int] = None
