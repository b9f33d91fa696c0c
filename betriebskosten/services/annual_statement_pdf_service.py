from __future__ import annotations

import logging

from django.conf import settings
from django.template.loader import render_to_string

LETTER_CSS = """
@page { size: A4; margin: 20mm 18mm 22mm 22mm; }
body { font-family: 'DejaVu Sans', sans-serif; font-size: 10pt; color: #1d2330; }
.letter-head { display: flex; justify-content: space-between; margin-bottom: 12mm; }
.sender-line { font-size: 7pt; color: #5a6475; border-bottom: 1px solid #ccd3de; margin-bottom: 2mm; }
.letter-table { width: 100%; border-collapse: collapse; margin: 6mm 0; }
.letter-table th, .letter-table td { border-bottom: 1px solid #ccd3de; padding: 4px 6px; }
.letter-table th { text-align: left; background: #f2f4f8; }
.group-row td { font-weight: bold; background: #f7f8fb; }
.total-row td { font-weight: bold; border-top: 2px solid #1d2330; }
.text-right { text-align: right; }
.qr { width: 32mm; height: 32mm; }
.note { font-size: 8pt; color: #5a6475; }
"""


class AnnualStatementPdfGenerationError(RuntimeError):
    """Eindeutiger Fehler für fehlgeschlagene BK-PDF-Erstellung."""


class AnnualStatementPdfService:
    """Erzeugt BK-Briefe über WeasyPrint (HTML -> PDF)."""

    logger = logging.getLogger(__name__)
    template_name = "betriebskosten/letters/statement_pdf.html"

    @classmethod
    def render_html(cls, *, payload: dict[str, object]) -> str:
        return render_to_string(
            cls.template_name,
            {
                "payload": payload,
                "letters_css": LETTER_CSS,
            },
        )

    @classmethod
    def generate_letter_pdf(cls, *, payload: dict[str, object]) -> bytes:
        html = cls.render_html(payload=payload)

        try:
            from weasyprint import HTML
        except (ImportError, OSError) as exc:
            raise AnnualStatementPdfGenerationError(
                "PDF-Erstellung fehlgeschlagen: WeasyPrint ist nicht verfügbar."
            ) from exc

        try:
            return HTML(string=html, base_url=str(settings.BASE_DIR)).write_pdf()
        except Exception as exc:
            cls.logger.exception("WeasyPrint-PDF-Erzeugung fehlgeschlagen.")
            raise AnnualStatementPdfGenerationError(
                f"PDF-Erstellung fehlgeschlagen: {exc}"
            ) from exc
