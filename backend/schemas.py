"""
Typed records shared by the sync pipeline.

Input snapshots (external billing data and the local mirror) are validated
into these models at the ingestion boundary. Report records are frozen: a
PreviewReport is built once and then only read, until it is committed or
discarded.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SubscriptionStatus = Literal['not_started', 'in_progress', 'stopped', 'finished']
MatchLevel = Literal['uuid', 'siren', 'name_exact', 'name_clean', 'name_partial', 'name_clean_partial']
Severity = Literal['info', 'warning', 'error']
UnitState = Literal['pending', 'writing', 'done', 'failed']


# =============================================================================
# INPUT SNAPSHOTS
# =============================================================================
class ExternalLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    label: str = ''
    quantity: float = 1.0
    amount_ht: float = 0.0
    amount_ttc: float = 0.0
    amount_tva: float = 0.0
    vat_rate: Optional[str] = None
    description: Optional[str] = None
    family: Optional[str] = None


class ExternalSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    customer_id: str
    label: str = ''
    status: SubscriptionStatus
    frequency: Optional[str] = None
    interval: int = 1
    day_of_month: Optional[int] = None
    start: Optional[str] = None
    finish: Optional[str] = None
    mode: Optional[str] = None
    payment_conditions: Optional[str] = None
    payment_method: Optional[str] = None
    total_ht: float = 0.0
    total_ttc: float = 0.0
    total_tva: float = 0.0
    lines: List[ExternalLine] = Field(default_factory=list)


class ExternalCustomer(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ''
    reg_no: Optional[str] = None
    external_reference: Optional[str] = None
    archived: bool = False
    emails: List[str] = Field(default_factory=list)


class LocalClient(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ''
    siren: Optional[str] = None
    external_reference: Optional[str] = None
    cabinet: Optional[str] = None
    active: bool = True


class LocalLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    subscription_id: str
    external_line_id: Optional[str] = None
    label: str = ''
    family: Optional[str] = None
    quantity: float = 1.0
    amount_ht: float = 0.0
    amount_ttc: float = 0.0
    amount_tva: float = 0.0


class LocalSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    client_id: str
    external_id: Optional[str] = None
    label: str = ''
    status: Optional[str] = None
    frequency: Optional[str] = None
    interval: int = 1
    total_ht: float = 0.0
    total_ttc: float = 0.0
    total_tva: float = 0.0
    lines: List[LocalLine] = Field(default_factory=list)


# =============================================================================
# MATCHING
# =============================================================================
class CustomerRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ''
    external_reference: Optional[str] = None
    reg_no: Optional[str] = None


class ClientRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ''
    siren: Optional[str] = None
    external_reference: Optional[str] = None
    cabinet: Optional[str] = None
    active: bool = True


class CabinetChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    old: Optional[str] = None
    new: str


class MatchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    customer: CustomerRef
    client: ClientRef
    level: MatchLevel
    level_label: str
    cabinet_change: Optional[CabinetChange] = None


class UnmatchedCustomer(BaseModel):
    model_config = ConfigDict(frozen=True)

    customer: CustomerRef
    ambiguous_with: List[ClientRef] = Field(default_factory=list)


class MissingClient(BaseModel):
    model_config = ConfigDict(frozen=True)

    client: ClientRef


# =============================================================================
# DELTAS
# =============================================================================
class FieldChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    old: Any = None
    new: Any = None
    delta: Optional[float] = None


class SubscriptionNew(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    client_name: str
    subscription: ExternalSubscription


class SubscriptionUpdated(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    client_name: str
    local_id: str
    external_id: str
    label: str
    changes: Dict[str, FieldChange]
    subscription: ExternalSubscription


class SubscriptionStatusChanged(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    client_name: str
    local_id: str
    external_id: str
    label: str
    old_status: Optional[str] = None
    new_status: str
    subscription: ExternalSubscription


class SubscriptionDisappeared(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    client_name: str
    local_id: str
    external_id: str
    label: str
    status: Optional[str] = None
    total_ht: float = 0.0


class LineModified(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    client_name: str
    subscription_local_id: str
    subscription_label: str
    line_local_id: str
    external_line_id: Optional[str] = None
    label: str
    family: Optional[str] = None
    old_amount_ht: float
    new_amount_ht: float
    old_quantity: float
    new_quantity: float
    delta_ht: float
    delta_pct: Optional[float] = None
    line: ExternalLine


class LineNew(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    client_name: str
    subscription_local_id: str
    subscription_label: str
    label: str
    family: Optional[str] = None
    line: ExternalLine


class LineRemoved(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    client_name: str
    subscription_local_id: str
    subscription_label: str
    line_local_id: str
    label: str
    amount_ht: float = 0.0
    quantity: float = 1.0


# =============================================================================
# REPORT
# =============================================================================
class Anomaly(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    severity: Severity
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class Summary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_customers: int = 0
    customers_with_subscription: int = 0
    matched: int = 0
    unmatched: int = 0
    no_subscription: int = 0
    clients_missing: int = 0
    new_subs: int = 0
    updated_subs: int = 0
    disappeared_subs: int = 0
    status_changes: int = 0
    unchanged_subs: int = 0
    price_changes: int = 0
    new_lines: int = 0
    removed_lines: int = 0
    total_delta_ht: float = 0.0
    anomalies_count: int = 0
    by_severity: Dict[str, int] = Field(default_factory=lambda: {'error': 0, 'warning': 0, 'info': 0})
    material_change: bool = False


class UnitFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    cabinet: str
    error: str


class UnitReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    cabinet: str
    report: 'PreviewReport'


class PreviewReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    preview_id: str
    cabinet: str
    generated_at: str
    matches: List[MatchResult] = Field(default_factory=list)
    clients_new: List[UnmatchedCustomer] = Field(default_factory=list)
    clients_missing: List[MissingClient] = Field(default_factory=list)
    clients_no_subscription: List[CustomerRef] = Field(default_factory=list)
    subscriptions_new: List[SubscriptionNew] = Field(default_factory=list)
    subscriptions_updated: List[SubscriptionUpdated] = Field(default_factory=list)
    subscriptions_disappeared: List[SubscriptionDisappeared] = Field(default_factory=list)
    subscriptions_status_changed: List[SubscriptionStatusChanged] = Field(default_factory=list)
    subscriptions_unchanged: List[str] = Field(default_factory=list)
    lines_modified: List[LineModified] = Field(default_factory=list)
    lines_new: List[LineNew] = Field(default_factory=list)
    lines_removed: List[LineRemoved] = Field(default_factory=list)
    anomalies: List[Anomaly] = Field(default_factory=list)
    summary: Summary = Field(default_factory=Summary)
    failed_units: List[UnitFailure] = Field(default_factory=list)
    units: List[UnitReport] = Field(default_factory=list)


UnitReport.model_rebuild()


# =============================================================================
# COMMIT
# =============================================================================
class UnitOutcome(BaseModel):
    cabinet: str
    state: UnitState = 'pending'
    error: Optional[str] = None


class CommitResult(BaseModel):
    customers_matched: int = 0
    customers_not_matched: int = 0
    customers_without_subscription: int = 0
    subscriptions_created: int = 0
    subscriptions_updated: int = 0
    lines_created: int = 0
    lines_removed: int = 0
    price_history_created: int = 0
    clients_updated: int = 0
    unmatched_customers: List[CustomerRef] = Field(default_factory=list)
    customers_no_subscription: List[CustomerRef] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    units: List[UnitOutcome] = Field(default_factory=list)
