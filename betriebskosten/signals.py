from django.db.models.signals import post_delete, post_save, pre_delete, pre_save
from django.dispatch import receiver

from betriebskosten.models import Betriebskostenabrechnung, Kostenposition
from betriebskosten.services.cost_record_store import StatementLockedError
from betriebskosten.services.operating_cost_statement_service import OperatingCostStatementService


def _statement_for(instance: Kostenposition) -> Betriebskostenabrechnung | None:
    return Betriebskostenabrechnung.objects.filter(pk=instance.abrechnung_id).first()


@receiver(pre_save, sender=Kostenposition)
@receiver(pre_delete, sender=Kostenposition)
def kostenposition_guard_locked(sender, instance, **kwargs):
    statement = _statement_for(instance)
    if statement is not None and statement.is_locked:
        raise StatementLockedError(
            "Die Abrechnung wurde bereits versendet; Kostenpositionen sind nicht mehr änderbar."
        )


@receiver(post_save, sender=Kostenposition)
@receiver(post_delete, sender=Kostenposition)
def kostenposition_changed(sender, instance, **kwargs):
    statement = _statement_for(instance)
    if statement is None:
        return
    OperatingCostStatementService.refresh_total_costs(statement)
    OperatingCostStatementService.invalidate_documents(statement)
