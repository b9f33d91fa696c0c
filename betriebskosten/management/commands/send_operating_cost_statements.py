from __future__ import annotations

from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError

from betriebskosten.services.cost_record_store import DjangoCostRecordStore, StatementNotFoundError
from betriebskosten.services.statement_mailer import StatementMailer


class Command(BaseCommand):
    help = "Erzeugt fehlende PDFs und versendet die Betriebskostenabrechnung an alle Mieter."

    def add_arguments(self, parser):
        parser.add_argument("statement_id", type=int, help="ID der Betriebskostenabrechnung.")
        parser.add_argument(
            "--force",
            action="store_true",
            help="Auch an Mietverhältnisse senden, die bereits erfolgreich beliefert wurden.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Nur anzeigen, was versendet würde, ohne PDFs/E-Mails/Logs zu schreiben.",
        )

    def handle(self, *args, **options):
        dry_run = bool(options.get("dry_run"))
        try:
            statement = DjangoCostRecordStore.statement_model(options["statement_id"])
            summary = StatementMailer(statement=statement).send_all(
                force=bool(options.get("force")),
                dry_run=dry_run,
            )
        except StatementNotFoundError as exc:
            raise CommandError(str(exc)) from exc
        except ValidationError as exc:
            raise CommandError(" ".join(exc.messages)) from exc

        for lease_id, error in summary["errors"].items():
            self.stderr.write(self.style.ERROR(f"Mietvertrag {lease_id}: {error}"))

        mode_text = "Dry-Run" if dry_run else "Versand"
        statement.refresh_from_db()
        self.stdout.write(
            self.style.SUCCESS(
                (
                    f"{mode_text} abgeschlossen. "
                    f"Versendet: {summary['sent']}, "
                    f"Geplant: {summary['planned']}, "
                    f"Fehlgeschlagen: {summary['failed']}, "
                    f"Bereits versendet: {summary['skipped']}, "
                    f"Status: {statement.get_status_display()}."
                )
            )
        )
