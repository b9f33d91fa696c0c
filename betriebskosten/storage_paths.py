import os
import uuid

from django.utils import timezone
from django.utils.text import slugify


def _safe_slug(value: str, fallback: str) -> str:
    slug = slugify((value or "").strip())
    return slug or fallback


def _split_filename(filename: str) -> tuple[str, str]:
    base, ext = os.path.splitext(filename or "")
    safe_base = _safe_slug(base, "dokument")
    safe_ext = (ext or "").lower()
    return safe_base, safe_ext


def abrechnungsdokument_upload_to(instance, filename: str) -> str:
    statement_id = getattr(instance, "abrechnung_id", None) or 0
    lease_id = getattr(instance, "mietervertrag_id", None) or 0
    now = timezone.now()
    safe_base, safe_ext = _split_filename(filename)
    unique_name = f"{uuid.uuid4().hex}_{safe_base}{safe_ext}"
    return (
        f"betriebskosten/{statement_id}/{lease_id}/"
        f"{now:%Y}/{now:%m}/{unique_name}"
    )
