from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class ProRefIn(BaseModel):
    pro_id: str | None = Field(default=None, max_length=200)
    email: str | None = Field(default=None, max_length=254)


class OfferRequest(BaseModel):
    job_id: str = Field(min_length=1, max_length=200)
    pro: ProRefIn = Field(default_factory=ProRefIn)
    state: str = "offer_sent"


class RespondRequest(BaseModel):
    """Admin-only override of the pro the response is recorded for."""

    pro: ProRefIn | None = None


class SagaOutcomeOut(BaseModel):
    step: str
    status: Literal["applied", "failed", "skipped"]
    detail: str | None = None
    at: datetime


class OfferOut(BaseModel):
    job_id: str
    status: Literal["already_exists", "inserted"]
    assignment: dict[str, Any] = Field(default_factory=dict)
    shape: str
    job_status: SagaOutcomeOut | None = None


class AssignmentOut(BaseModel):
    ok: bool = True
    job_id: str
    state: str
    created: bool
    mode: str
    reopened: bool = False
    assignment: dict[str, Any] = Field(default_factory=dict)
    shape: str
    job_status: SagaOutcomeOut | None = None


class JobViewOut(BaseModel):
    kind: Literal["persisted", "synthesized"]
    job_id: str
    status: str
    order_id: str | None = None
    service_name: str
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    service_address: str = ""
    service_city: str = ""
    service_state: str = ""
    service_zip: str = ""
    description: str = ""
    line_items: list[Any] = Field(default_factory=list)
    service_amount: float | None = None
    payout_estimated: float | None = None
    payout_status: str | None = None
    assigned_pro: str | None = None
    assigned_pro_name: str | None = None
    assigned_pro_phone: str | None = None
    delivery_date: str | None = None
    delivery_time: str | None = None
    created_at: Any = None


class SchemaDescriptorOut(BaseModel):
    assignments_table: str
    assignments_job_col: str
    assignments_pro_col: str
    assignments_pro_email_col: str | None = None
    assignments_state_col: str
    jobs_table: str
    jobs_id_col: str
    jobs_status_col: str
    assignments_confirmed: bool
    jobs_confirmed: bool
    source: Literal["pinned", "probed"]
    registry_version: str
    resolved_at: datetime


class SchemaOut(BaseModel):
    resolved: bool
    descriptor: SchemaDescriptorOut | None = None


class ReconcileRequest(BaseModel):
    limit: int = Field(default=200, ge=1, le=2000)
    dry_run: bool = False


class StatusDriftOut(BaseModel):
    job_id: str
    job_status: str | None = None
    job_found: bool


class ReconcileOut(BaseModel):
    scanned: int
    drifted: int
    repaired: int
    failed: int
    drift: list[StatusDriftOut] = Field(default_factory=list)
