from __future__ import annotations

import logging
from decimal import Decimal

from django.db import transaction

from ..models import (
    Betriebskostenabrechnung,
    Kostenposition,
    Kostenvorlage,
    KostenvorlagePosition,
    Property,
    Unit,
)

logger = logging.getLogger(__name__)

ALLOCATION_BASIS_FIELDS = (
    "alloc_total_area",
    "alloc_total_units",
    "alloc_total_persons",
    "alloc_total_mea",
)


class CostTemplateService:
    """Kostenarten einer Abrechnung als Vorlage für das Folgejahr."""

    @staticmethod
    def template_for(*, property_obj: Property, unit: Unit | None = None) -> Kostenvorlage | None:
        templates = Kostenvorlage.objects.filter(liegenschaft=property_obj)
        if unit is not None:
            template = templates.filter(einheit=unit).first()
            if template is not None:
                return template
        return templates.filter(einheit__isnull=True).first()

    @staticmethod
    @transaction.atomic
    def save_from_statement(
        *,
        statement: Betriebskostenabrechnung,
        name: str = "",
    ) -> Kostenvorlage:
        template, _created = Kostenvorlage.objects.get_or_create(
            liegenschaft_id=statement.liegenschaft_id,
            einheit_id=statement.einheit_id,
            defaults={"name": name or f"Vorlage {statement.liegenschaft.name}"},
        )
        if name:
            template.name = name
        for field_name in ALLOCATION_BASIS_FIELDS:
            setattr(template, field_name, getattr(statement, field_name))
        template.save()

        template.positionen.all().delete()
        KostenvorlagePosition.objects.bulk_create(
            [
                KostenvorlagePosition(
                    vorlage=template,
                    kostenart=position.kostenart,
                    verteilerschluessel=position.verteilerschluessel,
                    gruppe=position.gruppe,
                    is_section_35a=position.is_section_35a,
                    section_35a_kategorie=position.section_35a_kategorie,
                    sort_order=position.sort_order,
                )
                for position in statement.positionen.order_by("sort_order", "id")
            ]
        )
        logger.info(
            "Vorlage %s aus Abrechnung %s gespeichert (%s Positionen).",
            template.pk,
            statement.pk,
            template.positionen.count(),
        )
        return template

    @staticmethod
    @transaction.atomic
    def apply_to_statement(
        *,
        template: Kostenvorlage,
        statement: Betriebskostenabrechnung,
    ) -> list[Kostenposition]:
        for field_name in ALLOCATION_BASIS_FIELDS:
            if getattr(statement, field_name) is None:
                setattr(statement, field_name, getattr(template, field_name))
        statement.save(update_fields=[*ALLOCATION_BASIS_FIELDS, "updated_at"])

        created: list[Kostenposition] = []
        for template_position in template.positionen.order_by("sort_order", "id"):
            created.append(
                Kostenposition.objects.create(
                    abrechnung=statement,
                    kostenart=template_position.kostenart,
                    verteilerschluessel=template_position.verteilerschluessel,
                    betrag=Decimal("0.00"),
                    gruppe=template_position.gruppe,
                    is_section_35a=template_position.is_section_35a,
                    section_35a_kategorie=template_position.section_35a_kategorie,
                    sort_order=template_position.sort_order,
                )
            )
        return created
