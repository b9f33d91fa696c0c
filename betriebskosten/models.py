from builtins import property as builtin_property
from datetime import date
from decimal import Decimal, InvalidOperation

from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator, RegexValidator
from django.db import models
from django.utils.translation import gettext_lazy as _
from simple_history.models import HistoricalRecords

from .storage_paths import abrechnungsdokument_upload_to

# Validator für die Postleitzahl (4 bis 5 Ziffern)
zip_validator = RegexValidator(
    regex=r'^\d{4,5}$',
    message=_("Die Postleitzahl darf nur aus Zahlen bestehen (4 bis 5 Ziffern).")
)

mea_validator = RegexValidator(
    regex=r'^\s*\d+(?:[.,]\d+)?\s*/\s*\d+(?:[.,]\d+)?\s*$',
    message=_("Miteigentumsanteil im Format Zähler/Nenner angeben, z. B. 125/1000."),
)


class Verteilerschluessel(models.TextChoices):
    AREA = "area", _("Wohnfläche")
    UNITS = "units", _("Wohneinheiten")
    PERSONS = "persons", _("Personen")
    CONSUMPTION = "consumption", _("Verbrauch")
    MEA = "mea", _("Miteigentumsanteile")
    DIRECT = "direct", _("Direktzuordnung")
    CONSUMPTION_BILLING = "consumption_billing", _("Verbrauchsabrechnung")


class Manager(models.Model):
    company_name = models.CharField(max_length=255, verbose_name=_("Firma / Vermieter"))
    contact_person = models.CharField(max_length=255, blank=True, verbose_name=_("Ansprechpartner"))
    email = models.EmailField(verbose_name=_("E-Mail"))
    phone = models.CharField(
        max_length=50,
        blank=True,
        validators=[
            RegexValidator(
                regex=r'^\+?\d+$',
                message=_("Telefon darf nur Ziffern enthalten, optional mit führendem +."),
            )
        ],
        verbose_name=_("Telefon"),
    )
    iban = models.CharField(max_length=34, blank=True, verbose_name=_("IBAN"))
    bic = models.CharField(max_length=11, blank=True, verbose_name=_("BIC"))

    class Meta:
        verbose_name = _("Vermieter")
        verbose_name_plural = _("Vermieter")

    def __str__(self) -> str:
        return self.company_name


class Property(models.Model):
    name = models.CharField(max_length=255, verbose_name=_("Name"))
    zip_code = models.CharField(
        max_length=20,
        validators=[zip_validator],
        verbose_name=_("Postleitzahl")
    )
    city = models.CharField(max_length=100, verbose_name=_("Stadt"))
    street_address = models.CharField(max_length=255, verbose_name=_("Straße und Hausnummer"))
    manager = models.ForeignKey(
        Manager,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="properties",
        verbose_name=_("Vermieter"),
    )

    class Meta:
        verbose_name = _("Liegenschaft")
        verbose_name_plural = _("Liegenschaften")

    def __str__(self) -> str:
        return f"{self.name} ({self.city})"


class Unit(models.Model):
    property = models.ForeignKey(
        Property,
        on_delete=models.CASCADE,
        related_name="units",
        verbose_name=_("Liegenschaft"),
    )
    door_number = models.CharField(max_length=50, blank=True, verbose_name=_("Türnummer"))
    name = models.CharField(max_length=255, verbose_name=_("Bezeichnung"))
    usable_area = models.DecimalField(
        max_digits=8,
        decimal_places=2,
        validators=[MinValueValidator(0)],
        null=True,
        blank=True,
        verbose_name=_("Wohnfläche (m²)"),
    )
    mea = models.CharField(
        max_length=30,
        blank=True,
        validators=[mea_validator],
        verbose_name=_("Miteigentumsanteil"),
        help_text=_("Bruch aus der Teilungserklärung, z. B. 125/1000."),
    )

    class Meta:
        verbose_name = _("Einheit")
        verbose_name_plural = _("Einheiten")
        ordering = ["name", "door_number", "id"]

    def __str__(self) -> str:
        return f"{self.name} ({self.property.name})"

    @builtin_property
    def mea_numerator(self) -> Decimal | None:
        raw = (self.mea or "").strip()
        if not raw or "/" not in raw:
            return None
        numerator_raw, denominator_raw = (part.strip().replace(",", ".") for part in raw.split("/", 1))
        try:
            numerator = Decimal(numerator_raw)
            denominator = Decimal(denominator_raw)
        except InvalidOperation:
            return None
        if denominator <= 0 or numerator < 0:
            return None
        return numerator


class Tenant(models.Model):
    class Salutation(models.TextChoices):
        HERR = "herr", _("Herr")
        FRAU = "frau", _("Frau")
        DIVERS = "divers", _("Divers")
        FIRMA = "firma", _("Firma")

    salutation = models.CharField(
        max_length=20,
        choices=Salutation.choices,
        default=Salutation.HERR,
        verbose_name=_("Anrede"),
    )
    first_name = models.CharField(max_length=100, blank=True, verbose_name=_("Vorname"))
    last_name = models.CharField(max_length=100, verbose_name=_("Nachname"))
    email = models.EmailField(blank=True, verbose_name=_("E-Mail"))

    class Meta:
        verbose_name = _("Mieter")
        verbose_name_plural = _("Mieter")
        ordering = ["last_name", "first_name", "id"]

    def __str__(self) -> str:
        return f"{self.get_salutation_display()} {self.first_name} {self.last_name}".strip()

    @builtin_property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class LeaseAgreement(models.Model):
    unit = models.ForeignKey(
        "Unit",
        on_delete=models.CASCADE,
        related_name="leases",
        verbose_name=_("Einheit"),
    )
    tenants = models.ManyToManyField("Tenant", related_name="leases", verbose_name=_("Mieter"))
    entry_date = models.DateField(verbose_name=_("Einzugsdatum"))
    exit_date = models.DateField(null=True, blank=True, verbose_name=_("Auszugsdatum"))
    household_size = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MaxValueValidator(50)],
        verbose_name=_("Personen im Haushalt"),
    )
    history = HistoricalRecords(m2m_fields=["tenants"])

    class Meta:
        verbose_name = _("Mietvertrag")
        verbose_name_plural = _("Mietverträge")
        ordering = ["unit__name", "entry_date", "id"]

    def __str__(self) -> str:
        return f"{self.unit} · {self.entry_date}"

    def clean(self):
        super().clean()
        if self.exit_date and self.entry_date and self.exit_date < self.entry_date:
            raise ValidationError(
                {"exit_date": _("Das Auszugsdatum darf nicht vor dem Einzugsdatum liegen.")}
            )


class Vorauszahlung(models.Model):
    mietervertrag = models.ForeignKey(
        "LeaseAgreement",
        on_delete=models.PROTECT,
        related_name="vorauszahlungen",
        verbose_name=_("Mietvertrag"),
    )
    datum = models.DateField(verbose_name=_("Datum"))
    betrag = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(0)],
        verbose_name=_("Betrag"),
    )
    buchungstext = models.CharField(max_length=255, blank=True, verbose_name=_("Buchungstext"))

    class Meta:
        verbose_name = _("Vorauszahlung")
        verbose_name_plural = _("Vorauszahlungen")
        ordering = ["-datum", "-id"]
        indexes = [models.Index(fields=["mietervertrag", "datum"], name="vorausz_vertrag_datum_idx")]

    def __str__(self) -> str:
        return f"{self.datum} · {self.mietervertrag} · {self.betrag}"


class Betriebskostenabrechnung(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", _("Entwurf")
        READY = "ready", _("Bereit")
        SENT = "sent", _("Versendet")

    liegenschaft = models.ForeignKey(
        "Property",
        on_delete=models.PROTECT,
        related_name="betriebskostenabrechnungen",
        verbose_name=_("Liegenschaft"),
    )
    einheit = models.ForeignKey(
        "Unit",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="betriebskostenabrechnungen",
        verbose_name=_("Einheit"),
        help_text=_("Optional: Abrechnung nur für diese Einheit erstellen."),
    )
    jahr = models.PositiveIntegerField(
        validators=[MinValueValidator(1900), MaxValueValidator(2999)],
        verbose_name=_("Jahr"),
    )
    zeitraum_von = models.DateField(null=True, blank=True, verbose_name=_("Abrechnungszeitraum von"))
    zeitraum_bis = models.DateField(null=True, blank=True, verbose_name=_("Abrechnungszeitraum bis"))
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.DRAFT,
        db_index=True,
        verbose_name=_("Status"),
    )
    gesamtkosten = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        verbose_name=_("Gesamtkosten"),
    )
    alloc_total_area = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(0)],
        verbose_name=_("Gesamtfläche (abweichend)"),
    )
    alloc_total_units = models.PositiveIntegerField(
        null=True,
        blank=True,
        verbose_name=_("Anzahl Einheiten (abweichend)"),
    )
    alloc_total_persons = models.PositiveIntegerField(
        null=True,
        blank=True,
        verbose_name=_("Personen gesamt (abweichend)"),
    )
    alloc_total_mea = models.DecimalField(
        max_digits=12,
        decimal_places=4,
        null=True,
        blank=True,
        validators=[MinValueValidator(0)],
        verbose_name=_("Miteigentumsanteile gesamt (abweichend)"),
    )
    results_computed_at = models.DateTimeField(
        null=True,
        blank=True,
        verbose_name=_("Ergebnisse berechnet am"),
    )
    created_at = models.DateTimeField(auto_now_add=True, verbose_name=_("Erstellt am"))
    updated_at = models.DateTimeField(auto_now=True, verbose_name=_("Aktualisiert am"))
    history = HistoricalRecords()

    class Meta:
        verbose_name = _("Betriebskostenabrechnung")
        verbose_name_plural = _("Betriebskostenabrechnungen")
        ordering = ["-jahr", "liegenschaft__name", "-id"]

    def __str__(self) -> str:
        return f"{self.liegenschaft} · {self.jahr}"

    def clean(self):
        super().clean()
        if bool(self.zeitraum_von) != bool(self.zeitraum_bis):
            raise ValidationError(
                _("Für einen abweichenden Zeitraum bitte Beginn und Ende angeben.")
            )
        if self.zeitraum_von and self.zeitraum_bis and self.zeitraum_bis < self.zeitraum_von:
            raise ValidationError(
                {"zeitraum_bis": _("Das Ende des Zeitraums liegt vor dem Beginn.")}
            )
        if self.einheit_id and self.liegenschaft_id and self.einheit.property_id != self.liegenschaft_id:
            raise ValidationError(
                {"einheit": _("Die Einheit gehört nicht zur gewählten Liegenschaft.")}
            )

    @builtin_property
    def period_start(self) -> date:
        return self.zeitraum_von or date(int(self.jahr), 1, 1)

    @builtin_property
    def period_end(self) -> date:
        return self.zeitraum_bis or date(int(self.jahr), 12, 31)

    @builtin_property
    def is_locked(self) -> bool:
        return self.status == self.Status.SENT


class Kostenposition(models.Model):
    class Section35aKategorie(models.TextChoices):
        HAUSHALTSNAHE_DIENSTLEISTUNGEN = "haushaltsnahe_dienstleistungen", _("Haushaltsnahe Dienstleistungen")
        HANDWERKERLEISTUNGEN = "handwerkerleistungen", _("Handwerkerleistungen")

    abrechnung = models.ForeignKey(
        "Betriebskostenabrechnung",
        on_delete=models.CASCADE,
        related_name="positionen",
        verbose_name=_("Abrechnung"),
    )
    kostenart = models.CharField(max_length=255, verbose_name=_("Kostenart"))
    verteilerschluessel = models.CharField(
        max_length=20,
        choices=Verteilerschluessel.choices,
        default=Verteilerschluessel.AREA,
        verbose_name=_("Verteilerschlüssel"),
    )
    betrag = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(0)],
        verbose_name=_("Betrag"),
    )
    custom_unit_mea = models.DecimalField(
        max_digits=12,
        decimal_places=4,
        null=True,
        blank=True,
        validators=[MinValueValidator(0)],
        verbose_name=_("Miteigentumsanteil der Einheit (abweichend)"),
        help_text=_("Nur bei Abrechnungen für eine einzelne Einheit und Schlüssel Miteigentumsanteile."),
    )
    gruppe = models.CharField(max_length=120, blank=True, verbose_name=_("Gruppe"))
    is_section_35a = models.BooleanField(default=False, verbose_name=_("§ 35a EStG"))
    section_35a_kategorie = models.CharField(
        max_length=40,
        choices=Section35aKategorie.choices,
        blank=True,
        verbose_name=_("§ 35a Kategorie"),
    )
    sort_order = models.PositiveIntegerField(default=100, verbose_name=_("Sortierung"))
    created_at = models.DateTimeField(auto_now_add=True, verbose_name=_("Erstellt am"))
    history = HistoricalRecords()

    class Meta:
        verbose_name = _("Kostenposition")
        verbose_name_plural = _("Kostenpositionen")
        ordering = ["sort_order", "id"]

    def __str__(self) -> str:
        return f"{self.kostenart} · {self.betrag}"

    def clean(self):
        super().clean()
        if self.betrag is not None and self.betrag < 0:
            raise ValidationError({"betrag": _("Der Betrag darf nicht negativ sein.")})
        if self.is_section_35a and not self.section_35a_kategorie:
            raise ValidationError(
                {"section_35a_kategorie": _("Bitte die Kategorie nach § 35a EStG wählen.")}
            )
        if self.custom_unit_mea is not None and self.verteilerschluessel != Verteilerschluessel.MEA:
            raise ValidationError(
                {"custom_unit_mea": _("Ein abweichender Miteigentumsanteil gilt nur für den Schlüssel Miteigentumsanteile.")}
            )


class Abrechnungsergebnis(models.Model):
    abrechnung = models.ForeignKey(
        "Betriebskostenabrechnung",
        on_delete=models.CASCADE,
        related_name="ergebnisse",
        verbose_name=_("Abrechnung"),
    )
    mietervertrag = models.ForeignKey(
        "LeaseAgreement",
        on_delete=models.PROTECT,
        related_name="abrechnungsergebnisse",
        verbose_name=_("Mietvertrag"),
    )
    einheit = models.ForeignKey(
        "Unit",
        on_delete=models.PROTECT,
        related_name="abrechnungsergebnisse",
        verbose_name=_("Einheit"),
    )
    mieter = models.ForeignKey(
        "Tenant",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="abrechnungsergebnisse",
        verbose_name=_("Mieter"),
    )
    tenant_name = models.CharField(max_length=255, blank=True, verbose_name=_("Mietername"))
    period_start = models.DateField(verbose_name=_("Nutzung von"))
    period_end = models.DateField(verbose_name=_("Nutzung bis"))
    days_in_period = models.PositiveIntegerField(verbose_name=_("Tage im Zeitraum"))
    area_sqm = models.DecimalField(max_digits=8, decimal_places=2, verbose_name=_("Fläche (m²)"))
    household_size = models.PositiveSmallIntegerField(default=0, verbose_name=_("Personen"))
    breakdown = models.JSONField(default=list, verbose_name=_("Aufschlüsselung"))
    cost_share = models.DecimalField(max_digits=12, decimal_places=2, verbose_name=_("Kostenanteil"))
    prepayments = models.DecimalField(max_digits=12, decimal_places=2, verbose_name=_("Vorauszahlungen"))
    balance = models.DecimalField(max_digits=12, decimal_places=2, verbose_name=_("Saldo"))
    created_at = models.DateTimeField(auto_now_add=True, verbose_name=_("Erstellt am"))

    class Meta:
        verbose_name = _("Abrechnungsergebnis")
        verbose_name_plural = _("Abrechnungsergebnisse")
        ordering = ["einheit__name", "period_start", "mietervertrag_id"]
        constraints = [
            models.UniqueConstraint(
                fields=["abrechnung", "mietervertrag"],
                name="uniq_abrechnungsergebnis_abrechnung_mietervertrag",
            )
        ]

    def __str__(self) -> str:
        return f"{self.abrechnung} · {self.tenant_name or self.mietervertrag}"


class Abrechnungsdokument(models.Model):
    abrechnung = models.ForeignKey(
        "Betriebskostenabrechnung",
        on_delete=models.CASCADE,
        related_name="dokumente",
        verbose_name=_("Abrechnung"),
    )
    mietervertrag = models.ForeignKey(
        "LeaseAgreement",
        on_delete=models.PROTECT,
        related_name="abrechnungsdokumente",
        verbose_name=_("Mietvertrag"),
    )
    file = models.FileField(upload_to=abrechnungsdokument_upload_to, verbose_name=_("PDF"))
    filename = models.CharField(max_length=255, verbose_name=_("Dateiname"))
    is_stale = models.BooleanField(
        default=False,
        db_index=True,
        verbose_name=_("Veraltet"),
        help_text=_("Kostendaten wurden nach der Erstellung geändert; PDF neu erzeugen."),
    )
    generated_at = models.DateTimeField(auto_now_add=True, verbose_name=_("Erzeugt am"))

    class Meta:
        verbose_name = _("Abrechnungsdokument")
        verbose_name_plural = _("Abrechnungsdokumente")
        ordering = ["-generated_at", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["abrechnung", "mietervertrag"],
                name="uniq_abrechnungsdokument_abrechnung_mietervertrag",
            )
        ]

    def __str__(self) -> str:
        return self.filename


class Versandprotokoll(models.Model):
    class Status(models.TextChoices):
        SUCCESS = "success", _("Erfolgreich")
        FAILED = "failed", _("Fehlgeschlagen")

    abrechnung = models.ForeignKey(
        "Betriebskostenabrechnung",
        on_delete=models.PROTECT,
        related_name="versandprotokolle",
        verbose_name=_("Abrechnung"),
    )
    mietervertrag = models.ForeignKey(
        "LeaseAgreement",
        on_delete=models.PROTECT,
        related_name="versandprotokolle",
        verbose_name=_("Mietvertrag"),
    )
    dokument = models.ForeignKey(
        "Abrechnungsdokument",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="versandprotokolle",
        verbose_name=_("Dokument"),
    )
    recipient_email = models.EmailField(blank=True, verbose_name=_("Empfänger-E-Mail"))
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        db_index=True,
        verbose_name=_("Status"),
    )
    error_message = models.TextField(blank=True, verbose_name=_("Fehlermeldung"))
    sent_at = models.DateTimeField(auto_now_add=True, verbose_name=_("Gesendet am"))

    class Meta:
        verbose_name = _("Versandprotokoll")
        verbose_name_plural = _("Versandprotokolle")
        ordering = ["-sent_at", "-id"]
        indexes = [models.Index(fields=["abrechnung", "status"], name="versandprot_abr_status_idx")]

    def __str__(self) -> str:
        return f"{self.recipient_email or '—'} · {self.get_status_display()} · {self.sent_at:%d.%m.%Y}"


class Kostenvorlage(models.Model):
    liegenschaft = models.ForeignKey(
        "Property",
        on_delete=models.CASCADE,
        related_name="kostenvorlagen",
        verbose_name=_("Liegenschaft"),
    )
    einheit = models.ForeignKey(
        "Unit",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="kostenvorlagen",
        verbose_name=_("Einheit"),
    )
    name = models.CharField(max_length=120, default="Vorlage", verbose_name=_("Name"))
    alloc_total_area = models.DecimalField(
        max_digits=10, decimal_places=2, null=True, blank=True, verbose_name=_("Gesamtfläche")
    )
    alloc_total_units = models.PositiveIntegerField(null=True, blank=True, verbose_name=_("Anzahl Einheiten"))
    alloc_total_persons = models.PositiveIntegerField(null=True, blank=True, verbose_name=_("Personen gesamt"))
    alloc_total_mea = models.DecimalField(
        max_digits=12, decimal_places=4, null=True, blank=True, verbose_name=_("Miteigentumsanteile gesamt")
    )
    created_at = models.DateTimeField(auto_now_add=True, verbose_name=_("Erstellt am"))
    updated_at = models.DateTimeField(auto_now=True, verbose_name=_("Aktualisiert am"))

    class Meta:
        verbose_name = _("Kostenvorlage")
        verbose_name_plural = _("Kostenvorlagen")
        constraints = [
            models.UniqueConstraint(
                fields=["liegenschaft", "einheit"],
                name="uniq_kostenvorlage_liegenschaft_einheit",
            ),
            models.UniqueConstraint(
                fields=["liegenschaft"],
                condition=models.Q(einheit__isnull=True),
                name="uniq_kostenvorlage_liegenschaft_ohne_einheit",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.name} · {self.liegenschaft}"


class KostenvorlagePosition(models.Model):
    vorlage = models.ForeignKey(
        "Kostenvorlage",
        on_delete=models.CASCADE,
        related_name="positionen",
        verbose_name=_("Vorlage"),
    )
    kostenart = models.CharField(max_length=255, verbose_name=_("Kostenart"))
    verteilerschluessel = models.CharField(
        max_length=20,
        choices=Verteilerschluessel.choices,
        verbose_name=_("Verteilerschlüssel"),
    )
    gruppe = models.CharField(max_length=120, blank=True, verbose_name=_("Gruppe"))
    is_section_35a = models.BooleanField(default=False, verbose_name=_("§ 35a EStG"))
    section_35a_kategorie = models.CharField(
        max_length=40,
        choices=Kostenposition.Section35aKategorie.choices,
        blank=True,
        verbose_name=_("§ 35a Kategorie"),
    )
    sort_order = models.PositiveIntegerField(default=100, verbose_name=_("Sortierung"))

    class Meta:
        verbose_name = _("Vorlagenposition")
        verbose_name_plural = _("Vorlagenpositionen")
        ordering = ["sort_order", "id"]

    def __str__(self) -> str:
        return self.kostenart
