from __future__ import annotations

from django.core.files.base import ContentFile
from django.db import transaction
from django.utils import timezone

from ..models import Abrechnungsdokument, Betriebskostenabrechnung, LeaseAgreement


class AnnualStatementStorageService:
    @staticmethod
    def _discard_existing_pdf(document: Abrechnungsdokument) -> None:
        if document.file:
            document.file.delete(save=False)

    @classmethod
    @transaction.atomic
    def persist_statement_pdf(
        cls,
        *,
        statement: Betriebskostenabrechnung,
        lease: LeaseAgreement,
        filename: str,
        pdf_bytes: bytes,
    ) -> Abrechnungsdokument:
        document = (
            Abrechnungsdokument.objects.select_for_update()
            .filter(abrechnung=statement, mietervertrag=lease)
            .first()
        )
        if document is None:
            document = Abrechnungsdokument(abrechnung=statement, mietervertrag=lease)
        else:
            cls._discard_existing_pdf(document)
            document.generated_at = timezone.now()

        document.filename = filename
        document.is_stale = False
        document.file.save(filename, ContentFile(pdf_bytes), save=False)
        document.save()
        return document
