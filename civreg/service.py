"""
Registry facade.

The single entry point for callers: submit events and query committed state.
submit_event() never raises for a rejected event; the rejection is returned
in the SubmitResult and recorded (application marked REJECTED, audit entry).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable

from .audit_log import AuditEntry, log_operation, read_audit_log, summarize_mutations
from .config import RegistryConfig, load_config
from .constraints import ConstraintEngine, RulesetDef, ValidationReport, load_core_ruleset, load_ruleset
from .errors import ConcurrencyConflict, EventError
from .identity import IdentityResolver
from .processor import ApplicationRef, EventOutcome, EventRequest, EventState, EventType, LifeEventProcessor
from .queries import RegistryQueries, ResidentView
from .records import IdentityCard, LifeEventRecord, Membership, SealRegistration
from .store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class SubmitResult:
    """Result of Registry.submit_event()."""

    success: bool
    outcome: EventOutcome | None = None
    error: EventError | None = None
    attempts: int = 1
    rejected_application_id: str | None = None

    @property
    def state(self) -> EventState:
        return EventState.COMMITTED if self.success else EventState.REJECTED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "state": self.state.value, "attempts": self.attempts}
        if self.outcome is not None:
            data["outcome"] = self.outcome.to_dict()
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.rejected_application_id:
            data["rejected_application_id"] = self.rejected_application_id
        return data


class Registry:
    """
    Population registry.

    Args:
        data_dir: Directory for records.jsonl and audit.log; None keeps the
            registry in memory (overrides config.data_dir)
        config: Registry configuration
        clock: Returns the processing date; defaults to date.today
        ruleset: Ruleset to enforce; defaults to config.ruleset or the core ruleset
    """

    def __init__(
        self,
        data_dir: Path | None = None,
        *,
        config: RegistryConfig | None = None,
        clock: Callable[[], date] | None = None,
        ruleset: RulesetDef | None = None,
    ):
        self.config = config or RegistryConfig()
        data_dir = data_dir if data_dir is not None else self.config.data_dir
        self.data_dir = data_dir.resolve() if data_dir is not None else None

        if ruleset is None:
            ruleset = load_ruleset(self.config.ruleset) if self.config.ruleset else load_core_ruleset()
        self.ruleset = ruleset

        self.store = RecordStore(self.data_dir)
        self.resolver = IdentityResolver(self.store)
        self.engine = ConstraintEngine(ruleset, notification_window_days=self.config.notification_window_days)
        self.processor = LifeEventProcessor(self.store, self.resolver, self.engine, clock=clock or date.today)
        self.queries = RegistryQueries(self.store)

    @classmethod
    def from_config(cls, path: Path | None = None, **kwargs: Any) -> Registry:
        return cls(config=load_config(path), **kwargs)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def submit_event(
        self,
        event_type: EventType | str,
        effective_date: date | str,
        payload: dict[str, Any] | None = None,
        application_ref: ApplicationRef | str | dict[str, Any] | None = None,
    ) -> SubmitResult:
        """
        Validate, apply and commit one life event atomically.

        A ConcurrencyConflict is retried against a fresh snapshot up to
        ``config.conflict_retries`` times; any other rejection is final.
        """
        try:
            request = EventRequest.build(event_type, effective_date, payload, application_ref)
        except EventError as e:
            logger.warning("Rejected malformed submission: %s", e)
            self._audit(str(event_type), e.kind, metadata={"error": str(e)})
            return SubmitResult(success=False, error=e, attempts=0)

        attempts = 0
        while True:
            attempts += 1
            try:
                outcome = self.processor.process(request)
            except ConcurrencyConflict as e:
                if attempts <= self.config.conflict_retries:
                    logger.info("Retrying %s after conflict (%s)", request.event_type.value, e)
                    continue
                return self._reject(request, e, attempts)
            except EventError as e:
                return self._reject(request, e, attempts)

            created, closed = summarize_mutations(outcome.mutations)
            self._audit(
                request.event_type.value,
                "committed",
                created=created,
                closed=closed,
                metadata={
                    "effective_date": request.effective_date.isoformat(),
                    "seq": outcome.seq,
                    "application_id": outcome.application_id,
                    "life_event_ids": outcome.life_event_ids,
                    "cascades": outcome.cascades,
                },
            )
            return SubmitResult(success=True, outcome=outcome, attempts=attempts)

    def _reject(self, request: EventRequest, error: EventError, attempts: int) -> SubmitResult:
        logger.warning("Rejected %s @ %s: %s", request.event_type.value, request.effective_date.isoformat(), error)
        application_id = self.processor.record_rejection(request, error)
        self._audit(
            request.event_type.value,
            error.kind,
            metadata={
                "effective_date": request.effective_date.isoformat(),
                "error": str(error),
                "application_id": application_id,
            },
        )
        return SubmitResult(success=False, error=error, attempts=attempts, rejected_application_id=application_id)

    def _audit(self, operation: str, outcome: str, **kwargs: Any) -> None:
        if self.data_dir is None or not self.config.audit:
            return
        log_operation(self.data_dir, operation, outcome, **kwargs)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def current_resident(self, resident_id: str) -> ResidentView:
        return self.queries.current_resident(resident_id)

    def resident_as_of(self, resident_id: str, as_of: date) -> ResidentView:
        return self.queries.resident_as_of(resident_id, as_of)

    def resolve(self, *, personal_number: str | None = None, registry_code: str | None = None) -> str:
        return self.resolver.resolve(personal_number=personal_number, registry_code=registry_code)

    def household_head(self, household_id: str, as_of: date | None = None) -> str:
        return self.queries.household_head(household_id, as_of)

    def household_members(self, household_id: str, as_of: date | None = None) -> list[Membership]:
        return self.queries.household_members(household_id, as_of)

    def life_events(self, resident_id: str) -> list[LifeEventRecord]:
        return self.queries.life_events(resident_id)

    def seal_registration(self, registration_id: str) -> SealRegistration:
        return self.queries.seal_registration(registration_id)

    def identity_card(self, card_id: str) -> IdentityCard:
        return self.queries.identity_card(card_id)

    def check(self, invariant: str | None = None) -> ValidationReport:
        """Run every deferred rule over the whole committed state."""
        return self.engine.audit(self.store.snapshot(), invariant_filter=invariant)

    def audit_entries(self, last_n: int | None = None) -> list[AuditEntry]:
        if self.data_dir is None:
            return []
        return read_audit_log(self.data_dir, last_n)
