from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Iterable, Iterator

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import DecimalField, Prefetch, Q, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from ..models import (
    Abrechnungsdokument,
    Abrechnungsergebnis,
    Betriebskostenabrechnung,
    Kostenposition,
    LeaseAgreement,
    Tenant,
    Unit,
    Vorauszahlung,
)
from .operating_cost_service import (
    ZERO,
    AllocationBasis,
    AllocationResult,
    BillingPeriod,
    CostLineItem,
    CostShareLine,
    OccupancyUnit,
    TenancySegment,
    quantize_cent,
)


class StatementNotFoundError(LookupError):
    """Die angeforderte Betriebskostenabrechnung existiert nicht."""


class StatementLockedError(ValidationError):
    """Versendete Abrechnungen sind revisionssicher und nicht mehr änderbar."""


class DjangoCostRecordStore:
    """Lesezugriff auf Abrechnungsdaten über das Django-ORM."""

    @contextmanager
    def snapshot(self) -> Iterator[None]:
        with transaction.atomic():
            yield

    @staticmethod
    def statement_model(statement_id: int) -> Betriebskostenabrechnung:
        try:
            return Betriebskostenabrechnung.objects.select_related("liegenschaft", "einheit").get(
                pk=statement_id
            )
        except (Betriebskostenabrechnung.DoesNotExist, ValueError, TypeError) as exc:
            raise StatementNotFoundError(
                f"Betriebskostenabrechnung {statement_id} wurde nicht gefunden."
            ) from exc

    @staticmethod
    def billing_period(statement: Betriebskostenabrechnung) -> BillingPeriod:
        return BillingPeriod(
            statement_id=statement.pk,
            property_id=statement.liegenschaft_id,
            start=statement.period_start,
            end=statement.period_end,
            unit_id=statement.einheit_id,
            status=statement.status,
            basis=AllocationBasis(
                total_area=statement.alloc_total_area,
                unit_count=statement.alloc_total_units,
                total_persons=statement.alloc_total_persons,
                total_mea=statement.alloc_total_mea,
            ),
        )

    def get_statement(self, statement_id: int) -> BillingPeriod:
        return self.billing_period(self.statement_model(statement_id))

    def list_cost_line_items(self, statement_id: int) -> list[CostLineItem]:
        positions = Kostenposition.objects.filter(abrechnung_id=statement_id).order_by("sort_order", "id")
        return [
            CostLineItem(
                item_id=position.pk,
                cost_type=position.kostenart,
                allocation_key=position.verteilerschluessel,
                amount=position.betrag,
                custom_unit_mea=position.custom_unit_mea,
                group_label=position.gruppe,
                is_section_35a=position.is_section_35a,
                section_35a_category=position.section_35a_kategorie,
            )
            for position in positions
        ]

    def list_units(self, property_id: int) -> list[OccupancyUnit]:
        units = Unit.objects.filter(property_id=property_id).order_by("name", "door_number", "id")
        return [
            OccupancyUnit(
                unit_id=unit.pk,
                label=unit.name,
                area_sqm=unit.usable_area,
                mea=unit.mea_numerator,
            )
            for unit in units
        ]

    def list_active_tenancies_overlapping(
        self,
        property_id: int,
        start: date,
        end: date,
        *,
        period: BillingPeriod | None = None,
    ) -> list[TenancySegment]:
        if period is None:
            period = BillingPeriod(statement_id=0, property_id=property_id, start=start, end=end)
        leases = (
            LeaseAgreement.objects.filter(unit__property_id=property_id, entry_date__lte=end)
            .filter(Q(exit_date__isnull=True) | Q(exit_date__gte=start))
            .select_related("unit")
            .prefetch_related(
                Prefetch("tenants", queryset=Tenant.objects.order_by("last_name", "first_name", "id"))
            )
            .order_by("unit__name", "entry_date", "id")
        )
        segments: list[TenancySegment] = []
        for lease in leases:
            tenants = list(lease.tenants.all())
            tenant_names = [tenant.full_name for tenant in tenants if tenant.full_name]
            segment = TenancySegment.from_contract(
                period=period,
                lease_id=lease.pk,
                unit_id=lease.unit_id,
                contract_start=lease.entry_date,
                contract_end=lease.exit_date,
                tenant_id=tenants[0].pk if tenants else None,
                tenant_name=", ".join(tenant_names),
                household_size=lease.household_size,
            )
            if segment is not None:
                segments.append(segment)
        return segments

    def advance_payments_by_lease(
        self,
        *,
        lease_ids: Iterable[int],
        period: BillingPeriod,
    ) -> dict[int, Decimal]:
        lease_ids = list(lease_ids)
        if not lease_ids:
            return {}
        rows = (
            Vorauszahlung.objects.filter(
                mietervertrag_id__in=lease_ids,
                datum__gte=period.start,
                datum__lte=period.end,
            )
            .values("mietervertrag_id")
            .annotate(
                total=Coalesce(
                    Sum("betrag", output_field=DecimalField(max_digits=12, decimal_places=2)),
                    Value(ZERO),
                )
            )
        )
        return {row["mietervertrag_id"]: quantize_cent(row["total"]) for row in rows}

    def list_advance_payments(self, lease_id: int, statement_id: int) -> Decimal:
        period = self.get_statement(statement_id)
        return self.advance_payments_by_lease(lease_ids=[lease_id], period=period).get(lease_id, ZERO)

    @transaction.atomic
    def save_results(self, statement_id: int, results: Iterable[AllocationResult]) -> list[Abrechnungsergebnis]:
        statement = Betriebskostenabrechnung.objects.select_for_update().filter(pk=statement_id).first()
        if statement is None:
            raise StatementNotFoundError(
                f"Betriebskostenabrechnung {statement_id} wurde nicht gefunden."
            )
        if statement.is_locked:
            raise StatementLockedError(
                "Die Abrechnung wurde bereits versendet; Ergebnisse sind festgeschrieben."
            )

        results = list(results)
        previous = {
            record.mietervertrag_id: (record.cost_share, record.prepayments, record.balance)
            for record in statement.ergebnisse.all()
        }
        statement.ergebnisse.all().delete()
        records = Abrechnungsergebnis.objects.bulk_create(
            [
                Abrechnungsergebnis(
                    abrechnung=statement,
                    mietervertrag_id=result.lease_id,
                    einheit_id=result.unit_id,
                    mieter_id=result.tenant_id,
                    tenant_name=result.tenant_name,
                    period_start=result.period_start,
                    period_end=result.period_end,
                    days_in_period=result.days_in_period,
                    area_sqm=result.area_sqm,
                    household_size=result.household_size,
                    breakdown=[line.as_dict() for line in result.breakdown],
                    cost_share=result.cost_share,
                    prepayments=result.prepayments,
                    balance=result.balance,
                )
                for result in results
            ]
        )

        changed_lease_ids = [
            result.lease_id
            for result in results
            if previous.get(result.lease_id) != (result.cost_share, result.prepayments, result.balance)
        ]
        removed_lease_ids = set(previous) - {result.lease_id for result in results}
        Abrechnungsdokument.objects.filter(
            abrechnung=statement,
            mietervertrag_id__in=[*changed_lease_ids, *removed_lease_ids],
        ).update(is_stale=True)

        statement.results_computed_at = timezone.now()
        statement.save(update_fields=["results_computed_at", "updated_at"])
        return records

    @staticmethod
    def stored_results(statement: Betriebskostenabrechnung) -> list[AllocationResult]:
        return [result_from_record(record) for record in statement.ergebnisse.all()]


def result_from_record(record: Abrechnungsergebnis) -> AllocationResult:
    return AllocationResult(
        lease_id=record.mietervertrag_id,
        unit_id=record.einheit_id,
        tenant_id=record.mieter_id,
        tenant_name=record.tenant_name,
        period_start=record.period_start,
        period_end=record.period_end,
        days_in_period=record.days_in_period,
        area_sqm=quantize_cent(record.area_sqm),
        household_size=record.household_size,
        breakdown=tuple(CostShareLine.from_dict(line) for line in record.breakdown or []),
        cost_share=quantize_cent(record.cost_share),
        prepayments=quantize_cent(record.prepayments),
        balance=quantize_cent(record.balance),
    )
