from __future__ import annotations

import io
import logging
import zipfile
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.conf import settings
from django.utils import timezone
from django.utils.text import slugify

from ..models import Abrechnungsdokument, Betriebskostenabrechnung, Kostenposition, LeaseAgreement
from .annual_statement_pdf_service import (
    AnnualStatementPdfGenerationError,
    AnnualStatementPdfService,
)
from .annual_statement_storage_service import AnnualStatementStorageService
from .cost_record_store import DjangoCostRecordStore
from .operating_cost_service import AllocationResult
from .payment_qr_code_service import PaymentQrCodeService
from .statement_lifecycle_service import StatementLifecycleService

logger = logging.getLogger(__name__)

SECTION_35A_LABELS = dict(Kostenposition.Section35aKategorie.choices)


class AnnualStatementRunService:
    """Briefe (PDF) für alle Mietverhältnisse einer Abrechnung."""

    def __init__(self, *, statement: Betriebskostenabrechnung):
        self.statement = statement
        self.property = statement.liegenschaft
        self.store = DjangoCostRecordStore()

    @staticmethod
    def _to_money_decimal(value: object) -> Decimal:
        if value in (None, ""):
            return Decimal("0.00")
        try:
            parsed = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError):
            return Decimal("0.00")
        return parsed.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @staticmethod
    def _format_money_at(value: object) -> str:
        amount = AnnualStatementRunService._to_money_decimal(value)
        return f"{amount:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")

    @staticmethod
    def _date_str(value: date) -> str:
        return value.strftime("%d.%m.%Y")

    @staticmethod
    def _greeting(*, lease: LeaseAgreement) -> str:
        tenants = list(lease.tenants.all())
        if len(tenants) != 1:
            return "Sehr geehrte Damen und Herren,"
        tenant = tenants[0]
        last_name = (tenant.last_name or "").strip()
        if tenant.salutation == tenant.Salutation.FRAU and last_name:
            return f"Sehr geehrte Frau {last_name},"
        if tenant.salutation == tenant.Salutation.HERR and last_name:
            return f"Sehr geehrter Herr {last_name},"
        return "Sehr geehrte Damen und Herren,"

    @staticmethod
    def _unit_label(*, lease: LeaseAgreement) -> str:
        unit = lease.unit
        door = (unit.door_number or "").strip()
        name = (unit.name or "").strip() or "Einheit"
        if door:
            return f"{name}, Top {door}"
        return name

    def results(self) -> list[AllocationResult]:
        self.statement.refresh_from_db()
        lifecycle = StatementLifecycleService(statement=self.statement)
        if self.statement.status == Betriebskostenabrechnung.Status.DRAFT:
            lifecycle.mark_ready()
        elif self.statement.status == Betriebskostenabrechnung.Status.READY:
            # Änderungen an Kosten, Zahlungen oder Verträgen nach der Freigabe übernehmen.
            lifecycle.refresh_results()
        return self.store.stored_results(self.statement)

    def _breakdown_sections(self, result: AllocationResult) -> list[dict[str, object]]:
        sections: list[dict[str, object]] = []
        by_label: dict[str, dict[str, object]] = {}
        for line in result.breakdown:
            label = line.group_label or ""
            section = by_label.get(label)
            if section is None:
                section = {"label": label, "rows": [], "total": Decimal("0.00")}
                by_label[label] = section
                sections.append(section)
            section["rows"].append(
                {
                    "cost_type": line.cost_type,
                    "allocation_key": line.allocation_key,
                    "source_amount_display": self._format_money_at(line.source_amount),
                    "share_display": self._format_money_at(line.share),
                    "is_section_35a": line.is_section_35a,
                }
            )
            section["total"] = (section["total"] + line.share).quantize(Decimal("0.01"))
        for section in sections:
            section["total_display"] = self._format_money_at(section["total"])
        return sections

    def _payment_details(self, *, result: AllocationResult, remittance: str) -> dict[str, object]:
        today = timezone.localdate()
        due_days = int(getattr(settings, "BETRIEBSKOSTEN_PAYMENT_DUE_DAYS", 30))
        amount = abs(result.balance)
        manager = self.property.manager
        if result.balance > 0:
            qr_data_uri = ""
            if manager is not None and manager.iban:
                qr_data_uri = PaymentQrCodeService.qr_data_uri(
                    name=manager.company_name,
                    iban=manager.iban,
                    bic=manager.bic,
                    amount=amount,
                    remittance=remittance,
                )
            return {
                "payment_type": "nachzahlung",
                "payment_hint": (
                    f"Bitte überweisen Sie den Nachzahlungsbetrag von {self._format_money_at(amount)} EUR "
                    f"bis zum {self._date_str(today + timedelta(days=due_days))}."
                ),
                "payment_due_date": self._date_str(today + timedelta(days=due_days)),
                "payment_qr_data_uri": qr_data_uri,
            }
        if result.balance < 0:
            return {
                "payment_type": "guthaben",
                "payment_hint": (
                    f"Das Guthaben von {self._format_money_at(amount)} EUR erstatten wir Ihnen "
                    "in den nächsten Tagen."
                ),
                "payment_due_date": "",
                "payment_qr_data_uri": "",
            }
        return {
            "payment_type": "ausgeglichen",
            "payment_hint": "Ihre Vorauszahlungen decken die Kosten genau; es ist nichts weiter zu tun.",
            "payment_due_date": "",
            "payment_qr_data_uri": "",
        }

    def payload_for_result(self, *, result: AllocationResult) -> dict[str, object]:
        lease = (
            LeaseAgreement.objects.select_related("unit", "unit__property")
            .prefetch_related("tenants")
            .get(pk=result.lease_id)
        )
        manager = self.property.manager
        sender_name = self.property.name
        sender_contact = ""
        sender_email = ""
        sender_phone = ""
        sender_account = ""
        if manager is not None:
            sender_name = (manager.company_name or "").strip() or sender_name
            sender_contact = (manager.contact_person or "").strip()
            sender_email = (manager.email or "").strip()
            sender_phone = (manager.phone or "").strip()
            sender_account = (manager.iban or "").strip()

        zip_city = " ".join(
            part for part in [(self.property.zip_code or "").strip(), (self.property.city or "").strip()] if part
        )
        unit_label = self._unit_label(lease=lease)
        period_text = (
            f"{self._date_str(self.statement.period_start)} bis {self._date_str(self.statement.period_end)}"
        )
        usage_text = f"{self._date_str(result.period_start)} bis {self._date_str(result.period_end)}"
        subject = f"Betriebskostenabrechnung {self.statement.jahr}"
        section_35a_rows = [
            {
                "label": SECTION_35A_LABELS.get(category, "§ 35a EStG"),
                "amount_display": self._format_money_at(amount),
            }
            for category, amount in result.section_35a_totals.items()
        ]

        payload: dict[str, object] = {
            "property_name": self.property.name,
            "year": self.statement.jahr,
            "period_text": period_text,
            "usage_text": usage_text,
            "days_in_period": result.days_in_period,
            "issue_date": self._date_str(timezone.localdate()),
            "subject": subject,
            "unit_label": unit_label,
            "tenant_names": result.tenant_name,
            "greeting_text": self._greeting(lease=lease),
            "intro_text": (
                f"für die Einheit {unit_label} erhalten Sie hiermit die Betriebskostenabrechnung "
                f"für den Zeitraum {period_text}. Ihre Nutzungszeit: {usage_text}."
            ),
            "sender_name": sender_name,
            "sender_contact": sender_contact,
            "sender_email": sender_email,
            "sender_phone": sender_phone,
            "sender_account": sender_account,
            "has_sender_account": bool(sender_account),
            "sender_street": (self.property.street_address or "").strip(),
            "sender_zip_city": zip_city,
            "recipient_name": result.tenant_name,
            "recipient_street": (self.property.street_address or "").strip(),
            "recipient_zip_city": zip_city,
            "closing_text": "Mit freundlichen Grüßen",
            "area_display": self._format_money_at(result.area_sqm),
            "household_size": result.household_size,
            "breakdown_sections": self._breakdown_sections(result),
            "cost_share_display": self._format_money_at(result.cost_share),
            "prepayments_display": self._format_money_at(result.prepayments),
            "balance": result.balance,
            "balance_display": self._format_money_at(abs(result.balance)),
            "section_35a_rows": section_35a_rows,
        }
        payload.update(
            self._payment_details(
                result=result,
                remittance=f"{subject} {unit_label}",
            )
        )
        return payload

    def build_letter_filename(self, *, result: AllocationResult) -> str:
        property_part = (slugify(self.property.name) or f"liegenschaft{self.property.pk}").replace("-", "").upper()
        tenant_part = (slugify(result.tenant_name) or f"mietvertrag{result.lease_id}").replace("-", "").upper()
        created_part = timezone.localdate().strftime("%Y%m%d")
        return (
            f"{self.statement.jahr}_{property_part}_{tenant_part}_"
            f"Betriebskostenabrechnung_{created_part}.pdf"
        )

    def build_zip_filename(self) -> str:
        property_slug = slugify(self.property.name) or f"liegenschaft-{self.property.pk}"
        return f"BK-Briefe_{property_slug}_{self.statement.jahr}.zip"

    def generate_document(self, *, result: AllocationResult) -> Abrechnungsdokument:
        payload = self.payload_for_result(result=result)
        filename = self.build_letter_filename(result=result)
        try:
            pdf_bytes = AnnualStatementPdfService.generate_letter_pdf(payload=payload)
        except AnnualStatementPdfGenerationError as exc:
            raise RuntimeError(
                f"PDF-Erstellung fehlgeschlagen für {payload.get('unit_label', '—')} "
                f"({result.tenant_name or result.lease_id}): {exc}"
            ) from exc
        lease = LeaseAgreement.objects.get(pk=result.lease_id)
        document = AnnualStatementStorageService.persist_statement_pdf(
            statement=self.statement,
            lease=lease,
            filename=filename,
            pdf_bytes=pdf_bytes,
        )
        logger.info(
            "Abrechnung %s: PDF für Mietvertrag %s erzeugt (%s).",
            self.statement.pk,
            result.lease_id,
            filename,
        )
        return document

    def generate_documents(self, *, only_missing_or_stale: bool = True) -> list[Abrechnungsdokument]:
        results = self.results()
        current = {
            document.mietervertrag_id: document
            for document in self.statement.dokumente.all()
        }
        documents: list[Abrechnungsdokument] = []
        for result in results:
            existing = current.get(result.lease_id)
            if only_missing_or_stale and existing is not None and not existing.is_stale and existing.file:
                documents.append(existing)
                continue
            documents.append(self.generate_document(result=result))
        return documents

    def generate_letters_zip(self) -> tuple[bytes, int]:
        documents = self.generate_documents(only_missing_or_stale=True)
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
            for document in documents:
                with document.file.open("rb") as handle:
                    archive.writestr(document.filename, handle.read())
        return buffer.getvalue(), len(documents)
