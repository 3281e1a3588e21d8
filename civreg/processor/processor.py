"""
Life-event processor.

Orchestrates: handler -> immediate checks -> cascades -> deferred checks -> commit

Key invariants:
- One submitted event is one unit of work; it commits whole or not at all
- Deferred rules judge the final tentative state, never an intermediate step
- Nothing is visible to readers before commit
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable

from ..cascade import CASCADE_RULES, CascadeRule, run_cascades
from ..constraints import ConstraintEngine, ValidationReport, affected_groups
from ..errors import EventError, FormatError, InvariantViolation
from ..identity import IdentityResolver
from ..records import Application, ApplicationStatus, LifeEventRecord, new_id
from ..store import CommittedUnit, RecordStore, UnitOfWork
from .events import EventOutcome, EventRequest, EventState
from .handlers import HANDLERS, EventContext

logger = logging.getLogger(__name__)

# Longest rejection reason kept on an application record.
MAX_REASON = 500

Clock = Callable[[], date]


@dataclass
class PreparedEvent:
    """An event whose unit of work has passed every check and awaits commit."""

    request: EventRequest
    unit: UnitOfWork
    application_id: str
    life_events: list[LifeEventRecord]
    cascades: list[str] = field(default_factory=list)
    report: ValidationReport = field(default_factory=ValidationReport)
    state: EventState = EventState.APPLIED


class LifeEventProcessor:
    """
    Turns one EventRequest into one committed unit of work.

    prepare() is pure with respect to the store: it reads a snapshot and
    builds a unit. commit() is the only write.
    """

    def __init__(
        self,
        store: RecordStore,
        resolver: IdentityResolver,
        engine: ConstraintEngine,
        *,
        clock: Clock = date.today,
        cascades: tuple[CascadeRule, ...] = CASCADE_RULES,
    ):
        self.store = store
        self.resolver = resolver
        self.engine = engine
        self.clock = clock
        self.cascades = cascades

    def _transition(self, request: EventRequest, unit: UnitOfWork | None, state: EventState) -> None:
        logger.debug(
            "Event %s @ %s -> %s%s",
            request.event_type.value,
            request.effective_date.isoformat(),
            state.value,
            f" (unit {unit.unit_id})" if unit is not None else "",
        )

    def _application(self, unit: UnitOfWork, request: EventRequest, processing_date: date) -> Application:
        ref = request.application
        if ref.application_id:
            existing = unit.require(Application.collection, ref.application_id)
            assert isinstance(existing, Application)
            if existing.status == ApplicationStatus.REJECTED:
                raise FormatError("application_id", f"application {existing.id} was rejected")
            return existing

        application = Application(
            id=new_id(Application.id_prefix),
            applicant=ref.applicant,
            application_type=ref.application_type or request.event_type.value,
            accepted_at=ref.accepted_at or processing_date,
            status=ApplicationStatus.COMPLETED,
        )
        unit.put(application, valid_from=application.accepted_at)
        return application

    def prepare(self, request: EventRequest) -> PreparedEvent:
        """
        Compute, cascade and validate the unit of work for an event.

        Raises:
            FormatError, NotFound, SequenceError: payload or references rejected
            InvariantViolation: the tentative state breaks one or more rules
        """
        self._transition(request, None, EventState.SUBMITTED)
        handler = HANDLERS[request.event_type]

        unit = self.store.begin(label=request.event_type.value)
        processing_date = self.clock()
        application = self._application(unit, request, processing_date)
        notification_date = request.payload.get("notification_date")
        ctx = EventContext(
            unit=unit,
            request=request,
            resolver=self.resolver,
            processing_date=processing_date,
            notification_date=processing_date,
            application_id=application.id,
        )
        if notification_date is not None:
            ctx.notification_date = ctx.payload.get_date("notification_date") or processing_date
        elif request.application.accepted_at is not None:
            ctx.notification_date = request.application.accepted_at

        handler(ctx)

        base_end = len(unit.journal)
        base_keys = {m.key for m in unit.journal}
        report = self.engine.check_immediate(unit.mutations(base_keys), unit)
        if not report.ok:
            raise InvariantViolation(report.errors)
        self._transition(request, unit, EventState.VALIDATED)

        fired = run_cascades(unit, self.cascades)
        cascade_keys = {m.key for m in unit.journal[base_end:]}
        report.extend(self.engine.check_immediate(unit.mutations(cascade_keys), unit))
        households, residents = affected_groups(unit.mutations())
        report.extend(self.engine.check_deferred(unit, households=households, residents=residents))
        if not report.ok:
            raise InvariantViolation(report.errors)
        for warning in report.warnings:
            logger.warning("Rule %s on %s:%s: %s", warning.rule, warning.collection, warning.entity_id, warning.message)
        self._transition(request, unit, EventState.APPLIED)

        unit.metadata.update(
            {
                "event_type": request.event_type.value,
                "effective_date": request.effective_date.isoformat(),
                "application_id": application.id,
            }
        )
        return PreparedEvent(
            request=request,
            unit=unit,
            application_id=application.id,
            life_events=list(ctx.life_events),
            cascades=fired,
            report=report,
        )

    def commit(self, prepared: PreparedEvent) -> EventOutcome:
        """
        Commit a prepared event.

        Raises:
            ConcurrencyConflict: another unit committed a conflicting change
                after this one was prepared
        """
        mutations = prepared.unit.mutations()
        committed: CommittedUnit = self.store.commit_unit(prepared.unit)
        prepared.state = EventState.COMMITTED
        self._transition(prepared.request, prepared.unit, EventState.COMMITTED)
        logger.info(
            "Committed %s as seq %d (%d versions)",
            prepared.request.event_type.value,
            committed.seq,
            len(committed.versions),
        )
        event_ids = [e.id for e in prepared.life_events]
        return EventOutcome(
            life_event_id=event_ids[0] if event_ids else "",
            life_event_ids=event_ids,
            application_id=prepared.application_id,
            seq=committed.seq,
            versions=committed.refs(),
            cascades=list(prepared.cascades),
            mutations=mutations,
        )

    def process(self, request: EventRequest) -> EventOutcome:
        return self.commit(self.prepare(request))

    def record_rejection(self, request: EventRequest, error: EventError) -> str | None:
        """
        Persist a new application as REJECTED, in a unit of its own.

        Applications that already exist are left untouched. Returns the id of
        the rejected application, or None.
        """
        if request.application.application_id:
            return None
        processing_date = self.clock()
        application = Application(
            id=new_id(Application.id_prefix),
            applicant=request.application.applicant,
            application_type=request.application.application_type or request.event_type.value,
            accepted_at=request.application.accepted_at or processing_date,
            status=ApplicationStatus.REJECTED,
            rejection_reason=str(error)[:MAX_REASON],
        )
        unit = self.store.begin(label="rejection")
        unit.put(application, valid_from=application.accepted_at)
        unit.metadata.update({"event_type": request.event_type.value, "error": error.kind})
        self.store.commit_unit(unit)
        self._transition(request, None, EventState.REJECTED)
        return application.id
