from __future__ import annotations

import logging
from dataclasses import dataclass, field

from django.conf import settings
from django.core.mail import EmailMessage

from ..models import (
    Abrechnungsdokument,
    Betriebskostenabrechnung,
    LeaseAgreement,
    Versandprotokoll,
)
from .annual_statement_run_service import AnnualStatementRunService
from .operating_cost_service import AllocationResult, OperatingCostService
from .statement_lifecycle_service import StatementLifecycleService

logger = logging.getLogger(__name__)


class StatementSendError(RuntimeError):
    """Versand einer Abrechnung an ein Mietverhältnis ist fehlgeschlagen."""


@dataclass(slots=True)
class SendSummary:
    sent: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    skipped: list[int] = field(default_factory=list)
    planned: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "sent": len(self.sent),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "planned": len(self.planned),
            "errors": dict(self.failed),
        }


class StatementMailer:
    """Versendet Abrechnungsbriefe per E-Mail und protokolliert jeden Versuch."""

    def __init__(self, *, statement: Betriebskostenabrechnung, run_service: AnnualStatementRunService | None = None):
        self.statement = statement
        self.run_service = run_service or AnnualStatementRunService(statement=statement)

    @staticmethod
    def recipient_emails(lease: LeaseAgreement) -> list[str]:
        emails: list[str] = []
        for tenant in lease.tenants.all():
            email = (tenant.email or "").strip()
            if email and email not in emails:
                emails.append(email)
        return emails

    def already_sent(self, lease_id: int) -> bool:
        return Versandprotokoll.objects.filter(
            abrechnung=self.statement,
            mietervertrag_id=lease_id,
            status=Versandprotokoll.Status.SUCCESS,
        ).exists()

    def _subject(self) -> str:
        prefix = (getattr(settings, "BETRIEBSKOSTEN_MAIL_SUBJECT_PREFIX", "") or "").strip()
        subject = f"Betriebskostenabrechnung {self.statement.jahr} - {self.statement.liegenschaft.name}"
        return f"{prefix} {subject}" if prefix else subject

    def _body(self, *, result: AllocationResult) -> str:
        amount = self.run_service._format_money_at(abs(result.balance))
        if result.balance > 0:
            balance_line = f"Die Abrechnung ergibt eine Nachzahlung in Höhe von {amount} EUR."
        elif result.balance < 0:
            balance_line = f"Die Abrechnung ergibt ein Guthaben in Höhe von {amount} EUR."
        else:
            balance_line = "Die Abrechnung ist ausgeglichen."
        manager = self.statement.liegenschaft.manager
        sender = (manager.company_name if manager is not None else "") or "Ihre Hausverwaltung"
        lines = [
            f"Guten Tag {result.tenant_name}," if result.tenant_name else "Sehr geehrte Damen und Herren,",
            "",
            f"anbei erhalten Sie die Betriebskostenabrechnung für das Jahr {self.statement.jahr}.",
            "",
            balance_line,
            "",
            "Bei Fragen zur Abrechnung stehen wir Ihnen gerne zur Verfügung.",
            "",
            "Mit freundlichen Grüßen",
            sender,
        ]
        return "\n".join(lines)

    def _current_document(self, *, result: AllocationResult) -> Abrechnungsdokument:
        document = Abrechnungsdokument.objects.filter(
            abrechnung=self.statement,
            mietervertrag_id=result.lease_id,
        ).first()
        if document is None or document.is_stale or not document.file:
            document = self.run_service.generate_document(result=result)
        return document

    def _log(
        self,
        *,
        result: AllocationResult,
        document: Abrechnungsdokument | None,
        recipient_email: str,
        status: str,
        error_message: str = "",
    ) -> Versandprotokoll:
        return Versandprotokoll.objects.create(
            abrechnung=self.statement,
            mietervertrag_id=result.lease_id,
            dokument=document,
            recipient_email=recipient_email,
            status=status,
            error_message=error_message,
        )

    def send_result(self, *, result: AllocationResult, force: bool = False) -> Versandprotokoll | None:
        if not force and self.already_sent(result.lease_id):
            return None

        lease = LeaseAgreement.objects.prefetch_related("tenants").get(pk=result.lease_id)
        recipients = self.recipient_emails(lease)
        recipient_label = ", ".join(recipients)
        document = None
        try:
            if not recipients:
                raise StatementSendError(
                    f"Für Mietvertrag {result.lease_id} ist keine E-Mail-Adresse hinterlegt."
                )
            document = self._current_document(result=result)
            message = EmailMessage(
                subject=self._subject(),
                body=self._body(result=result),
                from_email=settings.DEFAULT_FROM_EMAIL,
                to=recipients,
            )
            with document.file.open("rb") as handle:
                message.attach(document.filename, handle.read(), "application/pdf")
            message.send(fail_silently=False)
        except Exception as exc:
            logger.warning(
                "Abrechnung %s: Versand an Mietvertrag %s fehlgeschlagen: %s",
                self.statement.pk,
                result.lease_id,
                exc,
            )
            self._log(
                result=result,
                document=document,
                recipient_email=recipients[0] if recipients else "",
                status=Versandprotokoll.Status.FAILED,
                error_message=str(exc),
            )
            if isinstance(exc, StatementSendError):
                raise
            raise StatementSendError(str(exc)) from exc

        log_entry = self._log(
            result=result,
            document=document,
            recipient_email=recipients[0],
            status=Versandprotokoll.Status.SUCCESS,
        )
        logger.info(
            "Abrechnung %s: an %s versendet (Mietvertrag %s).",
            self.statement.pk,
            recipient_label,
            result.lease_id,
        )
        StatementLifecycleService(statement=self.statement).mark_sent_if_delivered()
        return log_entry

    def send_all(self, *, force: bool = False, dry_run: bool = False) -> dict[str, object]:
        summary = SendSummary()
        if dry_run:
            results = OperatingCostService().compute_results(self.statement.pk)
        else:
            results = self.run_service.results()
        for result in results:
            if not force and self.already_sent(result.lease_id):
                summary.skipped.append(result.lease_id)
                continue
            if dry_run:
                summary.planned.append(result.lease_id)
                continue
            try:
                self.send_result(result=result, force=force)
            except StatementSendError as exc:
                summary.failed[result.lease_id] = str(exc)
                continue
            summary.sent.append(result.lease_id)
        return summary.as_dict()
