from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from dispatch_api.services.schema import DEFAULT_REGISTRY, SchemaDescriptor, SchemaRegistry, looks_like_email
from dispatch_api.services.shapes import (
    DEFAULT_POLICY,
    RoleBinding,
    ShapeCandidate,
    ShapePolicy,
    expand_shapes,
    first_match,
    upsert,
)
from dispatch_api.services.store import Row, StoreColumnMissingError, StoreError, StructuredStore

logger = logging.getLogger(__name__)

OFFER_SENT = "offer_sent"
ACCEPTED = "accepted"
DECLINED = "declined"

JOB_ASSIGNED_TO_COL = "assigned_to"

SagaStatus = Literal["applied", "failed", "skipped"]
OfferStatus = Literal["already_exists", "inserted"]


@dataclass(frozen=True, slots=True)
class ProRef:
    pro_id: str | None = None
    email: str | None = None

    @property
    def empty(self) -> bool:
        return not self.values()

    def values(self) -> tuple[str, ...]:
        out: list[str] = []
        for raw in (self.pro_id, self.email):
            text = (raw or "").strip()
            if text and text not in out:
                out.append(text)
        return tuple(out)

    def value_for(self, column: str) -> str | None:
        pro_id = (self.pro_id or "").strip() or None
        email = (self.email or "").strip() or None
        if "email" in column.lower():
            return email or pro_id
        return pro_id or email

    @property
    def primary(self) -> str | None:
        values = self.values()
        return values[0] if values else None

    @classmethod
    def from_value(cls, value: Any) -> ProRef:
        text = str(value or "").strip()
        if looks_like_email(text):
            return cls(email=text)
        return cls(pro_id=text or None)


@dataclass(slots=True)
class SagaOutcome:
    """Recorded result of the job-status write that follows an assignment write."""

    step: str
    status: SagaStatus
    detail: str | None = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {"step": self.step, "status": self.status, "detail": self.detail, "at": self.at.isoformat()}


@dataclass(slots=True)
class AssignmentResult:
    job_id: str
    state: str
    created: bool
    mode: str
    assignment: Row
    shape: str
    reopened: bool = False
    job_status: SagaOutcome | None = None


@dataclass(slots=True)
class OfferResult:
    job_id: str
    status: OfferStatus
    assignment: Row
    shape: str
    pro: ProRef
    job_status: SagaOutcome | None = None


def normalize_state(value: Any) -> str:
    return str(value or "").strip().lower()


def transition_steps(state_col: str, current: Any, target: str) -> list[dict[str, Any]]:
    """Patches that move a row from ``current`` to ``target``.

    ``accepted`` and ``declined`` are entered only from ``offer_sent``; a row
    already in the other terminal state is re-opened first. Re-applying the
    current state yields no steps. Other transitions are applied directly.
    """
    state = normalize_state(current)
    if state == target:
        return []
    if target in (ACCEPTED, DECLINED) and state in (ACCEPTED, DECLINED):
        return [{state_col: OFFER_SENT}, {state_col: target}]
    return [{state_col: target}]


class AssignmentCoordinator:
    """Offer/accept/decline state machine over one resolved descriptor.

    A coordinator is built per logical operation so the descriptor it holds
    never outlives the resolution pass that produced it.
    """

    def __init__(
        self,
        store: StructuredStore,
        descriptor: SchemaDescriptor,
        *,
        registry: SchemaRegistry = DEFAULT_REGISTRY,
        policy: ShapePolicy = DEFAULT_POLICY,
        saga_log_table: str | None = None,
    ) -> None:
        self.store = store
        self.descriptor = descriptor
        self.registry = registry
        self.policy = policy
        self.saga_log_table = saga_log_table

    async def ensure_offer(self, job_id: str, pro: ProRef, state: str = OFFER_SENT) -> OfferResult:
        if pro.empty:
            inferred = await self.infer_pro(job_id)
            if inferred is None:
                raise ValueError(f"no pro reference supplied or recorded for job {job_id}")
            pro = inferred

        result = await upsert(
            self.store,
            self.descriptor.assignments_table,
            self.match_shapes(job_id, pro),
            plan=lambda _row: (),
            insert_shapes=self.insert_shapes(job_id, pro, state),
            policy=self.policy,
        )
        status: OfferStatus = "inserted" if result.created else "already_exists"
        logger.info("offer %s job=%s shape=%s", status, job_id, result.shape)

        job_status = None
        if normalize_state(state) == OFFER_SENT:
            job_status = await self.set_job_status(job_id, OFFER_SENT, assignee=pro.primary, step="job_offer_sent")
        return OfferResult(
            job_id=job_id,
            status=status,
            assignment=result.row,
            shape=result.shape.name,
            pro=pro,
            job_status=job_status,
        )

    async def accept(self, job_id: str, pro: ProRef) -> AssignmentResult:
        result = await self._transition(job_id, pro, ACCEPTED)
        await self._warn_on_competing_accepts(job_id, pro)
        result.job_status = await self.set_job_status(job_id, ACCEPTED, step="job_accepted")
        return result

    async def decline(self, job_id: str, pro: ProRef) -> AssignmentResult:
        result = await self._transition(job_id, pro, DECLINED)
        result.job_status = SagaOutcome(step="job_declined", status="skipped", detail="declines leave job status")
        return result

    async def _transition(self, job_id: str, pro: ProRef, target: str) -> AssignmentResult:
        if pro.empty:
            raise ValueError("a pro id or email is required")
        state_col = self.descriptor.assignments_state_col
        reopened: list[bool] = []

        def plan(row: Row) -> list[dict[str, Any]]:
            steps = transition_steps(state_col, row.get(state_col), target)
            if len(steps) > 1:
                reopened.append(True)
            return steps

        result = await upsert(
            self.store,
            self.descriptor.assignments_table,
            self.match_shapes(job_id, pro),
            plan=plan,
            guard_columns=(state_col,),
            insert_shapes=self.insert_shapes(job_id, pro, target),
            policy=self.policy,
        )
        logger.info(
            "assignment %s job=%s mode=%s shape=%s reopened=%s",
            target,
            job_id,
            result.mode,
            result.shape,
            bool(reopened),
        )
        return AssignmentResult(
            job_id=job_id,
            state=target,
            created=result.created,
            mode=result.mode,
            assignment=result.row,
            shape=result.shape.name,
            reopened=bool(reopened),
        )

    def pro_columns(self) -> list[str]:
        ranked = [self.descriptor.assignments_pro_col, *self.registry.pro_cols]
        if self.descriptor.assignments_pro_email_col:
            ranked.insert(1, self.descriptor.assignments_pro_email_col)
        return list(dict.fromkeys(ranked))

    def match_shapes(self, job_id: str, pro: ProRef) -> list[ShapeCandidate]:
        """Every pro value against every pro column, for the resolved job column."""
        job = RoleBinding("job", ((self.descriptor.assignments_job_col, job_id),))
        options = tuple((column, value) for column in self.pro_columns() for value in pro.values())
        return expand_shapes([job, RoleBinding("pro", options)])

    def insert_shapes(self, job_id: str, pro: ProRef, state: str) -> list[ShapeCandidate]:
        """One insert per pro column, carrying the value that suits the column."""
        descriptor = self.descriptor
        email_col = descriptor.assignments_pro_email_col
        columns = self.pro_columns()
        if not (pro.pro_id or "").strip():
            columns.sort(key=lambda column: "email" not in column.lower())
        shapes: list[ShapeCandidate] = []
        for column in columns:
            value = pro.value_for(column)
            if not value:
                continue
            values: dict[str, Any] = {descriptor.assignments_state_col: state}
            if email_col and email_col != column and pro.email:
                values[email_col] = pro.email
            filters = {descriptor.assignments_job_col: job_id, column: value}
            name = ",".join(f"{key}={val}" for key, val in {**filters, **values}.items())
            shapes.append(ShapeCandidate(name=name, filters=filters, values=values))
        return shapes

    def job_shapes(self, job_id: str) -> list[ShapeCandidate]:
        columns = dict.fromkeys([self.descriptor.jobs_id_col, *self.registry.job_id_cols])
        return [ShapeCandidate(name=f"{column}={job_id}", filters={column: job_id}) for column in columns]

    async def fetch_job(self, job_id: str) -> Row | None:
        async def attempt(shape: ShapeCandidate) -> Row | None:
            rows = await self.store.select(self.descriptor.jobs_table, shape.filters, limit=1)
            return rows[0] if rows else None

        match = await first_match(self.job_shapes(job_id), attempt, policy=self.policy, label="job lookup")
        return match.value

    async def infer_pro(self, job_id: str) -> ProRef | None:
        """Recover the assignee recorded on the job row, if any."""
        try:
            job = await self.fetch_job(job_id)
        except StoreError:
            return None
        if job is None:
            return None
        for column in self.registry.job_assignee_cols:
            value = str(job.get(column) or "").strip()
            if value:
                return ProRef.from_value(value)
        return None

    async def set_job_status(
        self,
        job_id: str,
        status: str,
        *,
        assignee: str | None = None,
        step: str = "job_status",
    ) -> SagaOutcome:
        """Second saga step: write the job status; failures are recorded, never raised."""
        jobs_table = self.descriptor.jobs_table
        status_col = self.descriptor.jobs_status_col
        patch: dict[str, Any] = {status_col: status}
        if assignee:
            patch[JOB_ASSIGNED_TO_COL] = assignee

        async def attempt(shape: ShapeCandidate) -> list[Row]:
            try:
                return await self.store.update(jobs_table, shape.filters, patch)
            except StoreColumnMissingError:
                if JOB_ASSIGNED_TO_COL not in patch:
                    raise
                return await self.store.update(jobs_table, shape.filters, {status_col: status})

        try:
            match = await first_match(self.job_shapes(job_id), attempt, policy=self.policy, label="job status")
        except StoreError as exc:
            outcome = SagaOutcome(step=step, status="failed", detail=str(exc))
        else:
            if match.matched:
                outcome = SagaOutcome(step=step, status="applied", detail=f"{jobs_table}.{status_col}={status}")
            else:
                outcome = SagaOutcome(step=step, status="failed", detail=f"no row in {jobs_table} for job {job_id}")

        if outcome.status == "failed":
            logger.warning("job status write failed job=%s status=%s detail=%s", job_id, status, outcome.detail)
        await self.record_saga(job_id, outcome)
        return outcome

    async def record_saga(self, job_id: str, outcome: SagaOutcome) -> None:
        if not self.saga_log_table:
            return
        row = {"job_id": job_id, **outcome.to_dict()}
        try:
            await self.store.insert(self.saga_log_table, row)
        except StoreError as exc:
            logger.debug("saga log insert skipped table=%s error=%s", self.saga_log_table, exc)

    async def _warn_on_competing_accepts(self, job_id: str, pro: ProRef) -> None:
        descriptor = self.descriptor
        filters = {descriptor.assignments_job_col: job_id, descriptor.assignments_state_col: ACCEPTED}
        try:
            rows = await self.store.select(descriptor.assignments_table, filters, limit=10)
        except StoreError:
            return
        mine = set(pro.values())
        others = [row for row in rows if not mine.intersection(_row_pro_values(row, self.pro_columns()))]
        if others:
            logger.warning("job %s has %s other accepted assignment(s)", job_id, len(others))


def _row_pro_values(row: Mapping[str, Any], columns: Sequence[str]) -> set[str]:
    return {str(row[column]) for column in columns if row.get(column) not in (None, "")}
