from __future__ import annotations

from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError

from betriebskosten.services.cost_record_store import StatementNotFoundError
from betriebskosten.services.operating_cost_service import OperatingCostService


class Command(BaseCommand):
    help = "Berechnet die Kostenanteile einer Betriebskostenabrechnung je Mietverhältnis."

    def add_arguments(self, parser):
        parser.add_argument("statement_id", type=int, help="ID der Betriebskostenabrechnung.")
        parser.add_argument(
            "--save",
            action="store_true",
            help="Ergebnisse speichern (ersetzt frühere Ergebnisse dieser Abrechnung).",
        )

    def handle(self, *args, **options):
        statement_id = options["statement_id"]
        service = OperatingCostService()
        try:
            outcome = service.compute(statement_id)
            if options.get("save"):
                service.store.save_results(statement_id, outcome.results)
        except StatementNotFoundError as exc:
            raise CommandError(str(exc)) from exc
        except ValidationError as exc:
            raise CommandError(" ".join(exc.messages)) from exc

        for warning in outcome.warnings:
            self.stdout.write(self.style.WARNING(f"Warnung: {warning.message}"))

        if outcome.is_empty:
            self.stdout.write("Keine Mietverhältnisse im Abrechnungszeitraum.")
            return

        for result in outcome.results:
            self.stdout.write(
                (
                    f"Mietvertrag {result.lease_id} | {result.tenant_name or '—'} | "
                    f"{result.period_start.isoformat()} bis {result.period_end.isoformat()} "
                    f"({result.days_in_period} Tage) | "
                    f"Kosten: {result.cost_share} | Vorauszahlungen: {result.prepayments} | "
                    f"Saldo: {result.balance}"
                )
            )

        mode_text = "gespeichert" if options.get("save") else "berechnet (nicht gespeichert)"
        self.stdout.write(
            self.style.SUCCESS(f"{len(outcome.results)} Ergebnis(se) {mode_text}.")
        )
