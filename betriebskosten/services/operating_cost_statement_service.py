from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping

from django.db import transaction
from django.db.models import DecimalField, Sum, Value
from django.db.models.functions import Coalesce

from ..models import (
    Abrechnungsdokument,
    Betriebskostenabrechnung,
    Kostenposition,
    Property,
    Unit,
)
from .cost_record_store import DjangoCostRecordStore, StatementLockedError
from .operating_cost_service import ZERO, OperatingCostService, quantize_cent

logger = logging.getLogger(__name__)

LINE_ITEM_FIELDS = (
    "kostenart",
    "verteilerschluessel",
    "betrag",
    "custom_unit_mea",
    "gruppe",
    "is_section_35a",
    "section_35a_kategorie",
    "sort_order",
)


class OperatingCostStatementService:
    """Anlegen und Pflegen von Abrechnungen und ihren Kostenpositionen."""

    @staticmethod
    @transaction.atomic
    def create_statement(
        *,
        property_obj: Property,
        year: int,
        unit: Unit | None = None,
        period_start: date | None = None,
        period_end: date | None = None,
        apply_template: bool = True,
    ) -> Betriebskostenabrechnung:
        statement = Betriebskostenabrechnung(
            liegenschaft=property_obj,
            einheit=unit,
            jahr=int(year),
            zeitraum_von=period_start,
            zeitraum_bis=period_end,
            status=Betriebskostenabrechnung.Status.DRAFT,
        )
        statement.full_clean()
        statement.save()

        if apply_template:
            from .cost_template_service import CostTemplateService

            template = CostTemplateService.template_for(property_obj=property_obj, unit=unit)
            if template is not None:
                CostTemplateService.apply_to_statement(template=template, statement=statement)
        return statement

    @staticmethod
    def assert_editable(statement: Betriebskostenabrechnung) -> None:
        if statement.is_locked:
            raise StatementLockedError(
                "Die Abrechnung wurde bereits versendet; Kostenpositionen sind nicht mehr änderbar."
            )

    @staticmethod
    def refresh_total_costs(statement: Betriebskostenabrechnung) -> Decimal:
        total = Kostenposition.objects.filter(abrechnung=statement).aggregate(
            total=Coalesce(
                Sum("betrag", output_field=DecimalField(max_digits=12, decimal_places=2)),
                Value(ZERO),
            )
        )["total"]
        statement.gesamtkosten = quantize_cent(total)
        statement.save(update_fields=["gesamtkosten", "updated_at"])
        return statement.gesamtkosten

    @staticmethod
    def invalidate_documents(statement: Betriebskostenabrechnung) -> int:
        if statement.status != Betriebskostenabrechnung.Status.READY:
            return 0
        updated = Abrechnungsdokument.objects.filter(abrechnung=statement, is_stale=False).update(
            is_stale=True
        )
        if updated:
            logger.warning(
                "Abrechnung %s: Kostenpositionen nach Freigabe geändert, %s PDF(s) veraltet.",
                statement.pk,
                updated,
            )
        return updated

    @classmethod
    @transaction.atomic
    def upsert_line_items(
        cls,
        *,
        statement: Betriebskostenabrechnung,
        items: Iterable[Mapping[str, object]],
    ) -> list[Kostenposition]:
        cls.assert_editable(statement)

        existing = {position.pk: position for position in statement.positionen.all()}
        kept_ids: set[int] = set()
        saved: list[Kostenposition] = []
        for index, data in enumerate(items):
            item_id = data.get("id")
            position = existing.get(item_id) if item_id is not None else None
            if position is None:
                position = Kostenposition(abrechnung=statement)
            for field_name in LINE_ITEM_FIELDS:
                if field_name in data:
                    setattr(position, field_name, data[field_name])
            if "sort_order" not in data:
                position.sort_order = (index + 1) * 10
            if not position.is_section_35a:
                position.section_35a_kategorie = ""
            position.full_clean(exclude=["abrechnung"])
            position.save()
            kept_ids.add(position.pk)
            saved.append(position)

        for position_id, position in existing.items():
            if position_id not in kept_ids:
                position.delete()

        statement.refresh_from_db(fields=["gesamtkosten", "updated_at"])
        return saved

    @classmethod
    @transaction.atomic
    def add_line_item(
        cls,
        *,
        statement: Betriebskostenabrechnung,
        **data,
    ) -> Kostenposition:
        cls.assert_editable(statement)
        position = Kostenposition(abrechnung=statement)
        for field_name in LINE_ITEM_FIELDS:
            if field_name in data:
                setattr(position, field_name, data[field_name])
        position.full_clean(exclude=["abrechnung"])
        position.save()
        statement.refresh_from_db(fields=["gesamtkosten", "updated_at"])
        return position

    @classmethod
    @transaction.atomic
    def delete_line_item(cls, *, position: Kostenposition) -> None:
        statement = position.abrechnung
        cls.assert_editable(statement)
        position.delete()
        statement.refresh_from_db(fields=["gesamtkosten", "updated_at"])

    @staticmethod
    @transaction.atomic
    def delete_statement(*, statement: Betriebskostenabrechnung) -> None:
        if statement.status != Betriebskostenabrechnung.Status.DRAFT:
            raise StatementLockedError(
                "Nur Abrechnungen im Entwurf können gelöscht werden."
            )
        if statement.versandprotokolle.exists():
            raise StatementLockedError(
                "Für diese Abrechnung gibt es bereits Versandprotokolle; sie kann nicht gelöscht werden."
            )
        files = [document.file for document in statement.dokumente.all() if document.file]
        statement.delete()

        def remove_files() -> None:
            for stored_file in files:
                stored_file.delete(save=False)

        # Dateien erst nach erfolgreichem Commit entfernen.
        transaction.on_commit(remove_files)

    @classmethod
    @transaction.atomic
    def apply_allocation_defaults(
        cls,
        *,
        statement: Betriebskostenabrechnung,
        overwrite: bool = False,
    ) -> Betriebskostenabrechnung:
        cls.assert_editable(statement)
        basis = OperatingCostService().allocation_defaults(statement.pk)
        values = {
            "alloc_total_area": basis.total_area,
            "alloc_total_units": basis.unit_count,
            "alloc_total_persons": basis.total_persons,
            "alloc_total_mea": basis.total_mea,
        }
        changed: list[str] = []
        for field_name, value in values.items():
            if not overwrite and getattr(statement, field_name) is not None:
                continue
            setattr(statement, field_name, value)
            changed.append(field_name)
        if changed:
            statement.save(update_fields=[*changed, "updated_at"])
            logger.info(
                "Abrechnung %s: Verteilungsbasis aus aktuellen Stammdaten übernommen (%s).",
                statement.pk,
                ", ".join(changed),
            )
        return statement

    @staticmethod
    def list_statements(
        *,
        year: int | None = None,
        property_id: int | None = None,
        search: str | None = None,
    ):
        queryset = Betriebskostenabrechnung.objects.select_related("liegenschaft", "einheit")
        if year:
            queryset = queryset.filter(jahr=int(year))
        if property_id:
            queryset = queryset.filter(liegenschaft_id=property_id)
        search_text = (search or "").strip()
        if search_text:
            if search_text.isdigit():
                queryset = queryset.filter(jahr__icontains=search_text)
            else:
                queryset = queryset.filter(liegenschaft__name__icontains=search_text)
        return queryset.order_by("-jahr", "liegenschaft__name", "-id")

    @staticmethod
    def statement_detail(statement: Betriebskostenabrechnung) -> dict[str, object]:
        positions = list(statement.positionen.all())
        results = DjangoCostRecordStore.stored_results(statement)
        return {
            "statement": statement,
            "period_start": statement.period_start,
            "period_end": statement.period_end,
            "line_items": positions,
            "results": results,
            "results_are_current": statement.results_computed_at is not None
            and not statement.dokumente.filter(is_stale=True).exists(),
            "documents": list(statement.dokumente.all()),
            "send_logs": list(statement.versandprotokolle.select_related("mietervertrag")),
        }
