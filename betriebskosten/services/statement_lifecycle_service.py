from __future__ import annotations

import logging

from django.core.exceptions import ValidationError
from django.db import transaction

from ..models import Abrechnungsdokument, Betriebskostenabrechnung, Versandprotokoll
from .operating_cost_service import OperatingCostService

logger = logging.getLogger(__name__)

Status = Betriebskostenabrechnung.Status

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    Status.DRAFT: frozenset({Status.READY}),
    Status.READY: frozenset({Status.DRAFT, Status.SENT}),
    Status.SENT: frozenset(),
}


class InvalidStatusTransitionError(ValidationError):
    """Statuswechsel, den der Abrechnungsablauf nicht erlaubt."""


class StatementLifecycleService:
    """Statusablauf einer Abrechnung: Entwurf → Bereit → Versendet."""

    def __init__(self, *, statement: Betriebskostenabrechnung, operating_cost_service: OperatingCostService | None = None):
        self.statement = statement
        self.operating_cost_service = operating_cost_service or OperatingCostService()

    @staticmethod
    def can_transition(current: str, target: str) -> bool:
        return target in ALLOWED_TRANSITIONS.get(current, frozenset())

    def _transition(self, target: str) -> Betriebskostenabrechnung:
        current = self.statement.status
        if not self.can_transition(current, target):
            raise InvalidStatusTransitionError(
                f"Statuswechsel von '{current}' nach '{target}' ist nicht erlaubt."
            )
        self.statement.status = target
        self.statement.save(update_fields=["status", "updated_at"])
        logger.info("Abrechnung %s: Status %s → %s.", self.statement.pk, current, target)
        return self.statement

    @transaction.atomic
    def mark_ready(self) -> Betriebskostenabrechnung:
        self.statement.refresh_from_db()
        if self.statement.status == Status.READY:
            return self.statement
        if not self.can_transition(self.statement.status, Status.READY):
            raise InvalidStatusTransitionError(
                "Nur Entwürfe können als bereit markiert werden."
            )
        results = self.operating_cost_service.compute_results(self.statement.pk, save=True)
        if not results:
            raise InvalidStatusTransitionError(
                "Für diese Abrechnung gibt es keine Mietverhältnisse im Abrechnungszeitraum."
            )
        self.statement.refresh_from_db()
        return self._transition(Status.READY)

    @transaction.atomic
    def refresh_results(self) -> bool:
        """Ergebnisse einer freigegebenen Abrechnung aus dem aktuellen Datenstand neu berechnen."""
        self.statement.refresh_from_db()
        if self.statement.status != Status.READY:
            return False
        self.operating_cost_service.compute_results(self.statement.pk, save=True)
        self.statement.refresh_from_db()
        return True

    @transaction.atomic
    def reopen(self) -> Betriebskostenabrechnung:
        self.statement.refresh_from_db()
        self._transition(Status.DRAFT)
        Abrechnungsdokument.objects.filter(abrechnung=self.statement).update(is_stale=True)
        return self.statement

    def has_successful_delivery(self) -> bool:
        return Versandprotokoll.objects.filter(
            abrechnung=self.statement,
            status=Versandprotokoll.Status.SUCCESS,
        ).exists()

    def mark_sent_if_delivered(self) -> bool:
        self.statement.refresh_from_db()
        if self.statement.status == Status.SENT:
            return True
        if not self.has_successful_delivery():
            return False
        if self.statement.status == Status.DRAFT:
            self.mark_ready()
        self._transition(Status.SENT)
        return True
