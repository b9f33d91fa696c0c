import django.core.validators
import django.db.models.deletion
import simple_history.models
from decimal import Decimal
from django.conf import settings
from django.db import migrations, models

import betriebskosten.storage_paths


VERTEILERSCHLUESSEL_CHOICES = [
    ("area", "Wohnfläche"),
    ("units", "Wohneinheiten"),
    ("persons", "Personen"),
    ("consumption", "Verbrauch"),
    ("mea", "Miteigentumsanteile"),
    ("direct", "Direktzuordnung"),
    ("consumption_billing", "Verbrauchsabrechnung"),
]

SECTION_35A_CHOICES = [
    ("haushaltsnahe_dienstleistungen", "Haushaltsnahe Dienstleistungen"),
    ("handwerkerleistungen", "Handwerkerleistungen"),
]

STATUS_CHOICES = [("draft", "Entwurf"), ("ready", "Bereit"), ("sent", "Versendet")]

HISTORY_TYPE_CHOICES = [("+", "Created"), ("~", "Changed"), ("-", "Deleted")]

HISTORY_OPTIONS = {
    "ordering": ("-history_date", "-history_id"),
    "get_latest_by": ("history_date", "history_id"),
}


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Manager",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("company_name", models.CharField(max_length=255, verbose_name="Firma / Vermieter")),
                ("contact_person", models.CharField(blank=True, max_length=255, verbose_name="Ansprechpartner")),
                ("email", models.EmailField(max_length=254, verbose_name="E-Mail")),
                (
                    "phone",
                    models.CharField(
                        blank=True,
                        max_length=50,
                        validators=[
                            django.core.validators.RegexValidator(
                                message="Telefon darf nur Ziffern enthalten, optional mit führendem +.",
                                regex="^\\+?\\d+$",
                            )
                        ],
                        verbose_name="Telefon",
                    ),
                ),
                ("iban", models.CharField(blank=True, max_length=34, verbose_name="IBAN")),
                ("bic", models.CharField(blank=True, max_length=11, verbose_name="BIC")),
            ],
            options={
                "verbose_name": "Vermieter",
                "verbose_name_plural": "Vermieter",
            },
        ),
        migrations.CreateModel(
            name="Property",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255, verbose_name="Name")),
                (
                    "zip_code",
                    models.CharField(
                        max_length=20,
                        validators=[
                            django.core.validators.RegexValidator(
                                message="Die Postleitzahl darf nur aus Zahlen bestehen (4 bis 5 Ziffern).",
                                regex="^\\d{4,5}$",
                            )
                        ],
                        verbose_name="Postleitzahl",
                    ),
                ),
                ("city", models.CharField(max_length=100, verbose_name="Stadt")),
                ("street_address", models.CharField(max_length=255, verbose_name="Straße und Hausnummer")),
                (
                    "manager",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="properties",
                        to="betriebskosten.manager",
                        verbose_name="Vermieter",
                    ),
                ),
            ],
            options={
                "verbose_name": "Liegenschaft",
                "verbose_name_plural": "Liegenschaften",
            },
        ),
        migrations.CreateModel(
            name="Tenant",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "salutation",
                    models.CharField(
                        choices=[("herr", "Herr"), ("frau", "Frau"), ("divers", "Divers"), ("firma", "Firma")],
                        default="herr",
                        max_length=20,
                        verbose_name="Anrede",
                    ),
                ),
                ("first_name", models.CharField(blank=True, max_length=100, verbose_name="Vorname")),
                ("last_name", models.CharField(max_length=100, verbose_name="Nachname")),
                ("email", models.EmailField(blank=True, max_length=254, verbose_name="E-Mail")),
            ],
            options={
                "verbose_name": "Mieter",
                "verbose_name_plural": "Mieter",
                "ordering": ["last_name", "first_name", "id"],
            },
        ),
        migrations.CreateModel(
            name="Unit",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("door_number", models.CharField(blank=True, max_length=50, verbose_name="Türnummer")),
                ("name", models.CharField(max_length=255, verbose_name="Bezeichnung")),
                (
                    "usable_area",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        max_digits=8,
                        null=True,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Wohnfläche (m²)",
                    ),
                ),
                (
                    "mea",
                    models.CharField(
                        blank=True,
                        help_text="Bruch aus der Teilungserklärung, z. B. 125/1000.",
                        max_length=30,
                        validators=[
                            django.core.validators.RegexValidator(
                                message="Miteigentumsanteil im Format Zähler/Nenner angeben, z. B. 125/1000.",
                                regex="^\\s*\\d+(?:[.,]\\d+)?\\s*/\\s*\\d+(?:[.,]\\d+)?\\s*$",
                            )
                        ],
                        verbose_name="Miteigentumsanteil",
                    ),
                ),
                (
                    "property",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="units",
                        to="betriebskosten.property",
                        verbose_name="Liegenschaft",
                    ),
                ),
            ],
            options={
                "verbose_name": "Einheit",
                "verbose_name_plural": "Einheiten",
                "ordering": ["name", "door_number", "id"],
            },
        ),
        migrations.CreateModel(
            name="LeaseAgreement",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("entry_date", models.DateField(verbose_name="Einzugsdatum")),
                ("exit_date", models.DateField(blank=True, null=True, verbose_name="Auszugsdatum")),
                (
                    "household_size",
                    models.PositiveSmallIntegerField(
                        blank=True,
                        null=True,
                        validators=[django.core.validators.MaxValueValidator(50)],
                        verbose_name="Personen im Haushalt",
                    ),
                ),
                (
                    "unit",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="leases",
                        to="betriebskosten.unit",
                        verbose_name="Einheit",
                    ),
                ),
                (
                    "tenants",
                    models.ManyToManyField(related_name="leases", to="betriebskosten.tenant", verbose_name="Mieter"),
                ),
            ],
            options={
                "verbose_name": "Mietvertrag",
                "verbose_name_plural": "Mietverträge",
                "ordering": ["unit__name", "entry_date", "id"],
            },
        ),
        migrations.CreateModel(
            name="Vorauszahlung",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("datum", models.DateField(verbose_name="Datum")),
                (
                    "betrag",
                    models.DecimalField(
                        decimal_places=2,
                        max_digits=12,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Betrag",
                    ),
                ),
                ("buchungstext", models.CharField(blank=True, max_length=255, verbose_name="Buchungstext")),
                (
                    "mietervertrag",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="vorauszahlungen",
                        to="betriebskosten.leaseagreement",
                        verbose_name="Mietvertrag",
                    ),
                ),
            ],
            options={
                "verbose_name": "Vorauszahlung",
                "verbose_name_plural": "Vorauszahlungen",
                "ordering": ["-datum", "-id"],
                "indexes": [models.Index(fields=["mietervertrag", "datum"], name="vorausz_vertrag_datum_idx")],
            },
        ),
        migrations.CreateModel(
            name="Betriebskostenabrechnung",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "jahr",
                    models.PositiveIntegerField(
                        validators=[
                            django.core.validators.MinValueValidator(1900),
                            django.core.validators.MaxValueValidator(2999),
                        ],
                        verbose_name="Jahr",
                    ),
                ),
                ("zeitraum_von", models.DateField(blank=True, null=True, verbose_name="Abrechnungszeitraum von")),
                ("zeitraum_bis", models.DateField(blank=True, null=True, verbose_name="Abrechnungszeitraum bis")),
                (
                    "status",
                    models.CharField(
                        choices=STATUS_CHOICES,
                        db_index=True,
                        default="draft",
                        max_length=20,
                        verbose_name="Status",
                    ),
                ),
                (
                    "gesamtkosten",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        max_digits=12,
                        verbose_name="Gesamtkosten",
                    ),
                ),
                (
                    "alloc_total_area",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        max_digits=10,
                        null=True,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Gesamtfläche (abweichend)",
                    ),
                ),
                (
                    "alloc_total_units",
                    models.PositiveIntegerField(blank=True, null=True, verbose_name="Anzahl Einheiten (abweichend)"),
                ),
                (
                    "alloc_total_persons",
                    models.PositiveIntegerField(blank=True, null=True, verbose_name="Personen gesamt (abweichend)"),
                ),
                (
                    "alloc_total_mea",
                    models.DecimalField(
                        blank=True,
                        decimal_places=4,
                        max_digits=12,
                        null=True,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Miteigentumsanteile gesamt (abweichend)",
                    ),
                ),
                (
                    "results_computed_at",
                    models.DateTimeField(blank=True, null=True, verbose_name="Ergebnisse berechnet am"),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="Erstellt am")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="Aktualisiert am")),
                (
                    "einheit",
                    models.ForeignKey(
                        blank=True,
                        help_text="Optional: Abrechnung nur für diese Einheit erstellen.",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="betriebskostenabrechnungen",
                        to="betriebskosten.unit",
                        verbose_name="Einheit",
                    ),
                ),
                (
                    "liegenschaft",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="betriebskostenabrechnungen",
                        to="betriebskosten.property",
                        verbose_name="Liegenschaft",
                    ),
                ),
            ],
            options={
                "verbose_name": "Betriebskostenabrechnung",
                "verbose_name_plural": "Betriebskostenabrechnungen",
                "ordering": ["-jahr", "liegenschaft__name", "-id"],
            },
        ),
        migrations.CreateModel(
            name="Kostenposition",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("kostenart", models.CharField(max_length=255, verbose_name="Kostenart")),
                (
                    "verteilerschluessel",
                    models.CharField(
                        choices=VERTEILERSCHLUESSEL_CHOICES,
                        default="area",
                        max_length=20,
                        verbose_name="Verteilerschlüssel",
                    ),
                ),
                (
                    "betrag",
                    models.DecimalField(
                        decimal_places=2,
                        max_digits=12,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Betrag",
                    ),
                ),
                (
                    "custom_unit_mea",
                    models.DecimalField(
                        blank=True,
                        decimal_places=4,
                        help_text="Nur bei Abrechnungen für eine einzelne Einheit und Schlüssel Miteigentumsanteile.",
                        max_digits=12,
                        null=True,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Miteigentumsanteil der Einheit (abweichend)",
                    ),
                ),
                ("gruppe", models.CharField(blank=True, max_length=120, verbose_name="Gruppe")),
                ("is_section_35a", models.BooleanField(default=False, verbose_name="§ 35a EStG")),
                (
                    "section_35a_kategorie",
                    models.CharField(
                        blank=True,
                        choices=SECTION_35A_CHOICES,
                        max_length=40,
                        verbose_name="§ 35a Kategorie",
                    ),
                ),
                ("sort_order", models.PositiveIntegerField(default=100, verbose_name="Sortierung")),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="Erstellt am")),
                (
                    "abrechnung",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="positionen",
                        to="betriebskosten.betriebskostenabrechnung",
                        verbose_name="Abrechnung",
                    ),
                ),
            ],
            options={
                "verbose_name": "Kostenposition",
                "verbose_name_plural": "Kostenpositionen",
                "ordering": ["sort_order", "id"],
            },
        ),
        migrations.CreateModel(
            name="Abrechnungsergebnis",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("tenant_name", models.CharField(blank=True, max_length=255, verbose_name="Mietername")),
                ("period_start", models.DateField(verbose_name="Nutzung von")),
                ("period_end", models.DateField(verbose_name="Nutzung bis")),
                ("days_in_period", models.PositiveIntegerField(verbose_name="Tage im Zeitraum")),
                ("area_sqm", models.DecimalField(decimal_places=2, max_digits=8, verbose_name="Fläche (m²)")),
                ("household_size", models.PositiveSmallIntegerField(default=0, verbose_name="Personen")),
                ("breakdown", models.JSONField(default=list, verbose_name="Aufschlüsselung")),
                ("cost_share", models.DecimalField(decimal_places=2, max_digits=12, verbose_name="Kostenanteil")),
                ("prepayments", models.DecimalField(decimal_places=2, max_digits=12, verbose_name="Vorauszahlungen")),
                ("balance", models.DecimalField(decimal_places=2, max_digits=12, verbose_name="Saldo")),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="Erstellt am")),
                (
                    "abrechnung",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="ergebnisse",
                        to="betriebskosten.betriebskostenabrechnung",
                        verbose_name="Abrechnung",
                    ),
                ),
                (
                    "einheit",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="abrechnungsergebnisse",
                        to="betriebskosten.unit",
                        verbose_name="Einheit",
                    ),
                ),
                (
                    "mieter",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="abrechnungsergebnisse",
                        to="betriebskosten.tenant",
                        verbose_name="Mieter",
                    ),
                ),
                (
                    "mietervertrag",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="abrechnungsergebnisse",
                        to="betriebskosten.leaseagreement",
                        verbose_name="Mietvertrag",
                    ),
                ),
            ],
            options={
                "verbose_name": "Abrechnungsergebnis",
                "verbose_name_plural": "Abrechnungsergebnisse",
                "ordering": ["einheit__name", "period_start", "mietervertrag_id"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("abrechnung", "mietervertrag"),
                        name="uniq_abrechnungsergebnis_abrechnung_mietervertrag",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Abrechnungsdokument",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "file",
                    models.FileField(
                        upload_to=betriebskosten.storage_paths.abrechnungsdokument_upload_to,
                        verbose_name="PDF",
                    ),
                ),
                ("filename", models.CharField(max_length=255, verbose_name="Dateiname")),
                (
                    "is_stale",
                    models.BooleanField(
                        db_index=True,
                        default=False,
                        help_text="Kostendaten wurden nach der Erstellung geändert; PDF neu erzeugen.",
                        verbose_name="Veraltet",
                    ),
                ),
                ("generated_at", models.DateTimeField(auto_now_add=True, verbose_name="Erzeugt am")),
                (
                    "abrechnung",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="dokumente",
                        to="betriebskosten.betriebskostenabrechnung",
                        verbose_name="Abrechnung",
                    ),
                ),
                (
                    "mietervertrag",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="abrechnungsdokumente",
                        to="betriebskosten.leaseagreement",
                        verbose_name="Mietvertrag",
                    ),
                ),
            ],
            options={
                "verbose_name": "Abrechnungsdokument",
                "verbose_name_plural": "Abrechnungsdokumente",
                "ordering": ["-generated_at", "-id"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("abrechnung", "mietervertrag"),
                        name="uniq_abrechnungsdokument_abrechnung_mietervertrag",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Versandprotokoll",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("recipient_email", models.EmailField(blank=True, max_length=254, verbose_name="Empfänger-E-Mail")),
                (
                    "status",
                    models.CharField(
                        choices=[("success", "Erfolgreich"), ("failed", "Fehlgeschlagen")],
                        db_index=True,
                        max_length=10,
                        verbose_name="Status",
                    ),
                ),
                ("error_message", models.TextField(blank=True, verbose_name="Fehlermeldung")),
                ("sent_at", models.DateTimeField(auto_now_add=True, verbose_name="Gesendet am")),
                (
                    "abrechnung",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="versandprotokolle",
                        to="betriebskosten.betriebskostenabrechnung",
                        verbose_name="Abrechnung",
                    ),
                ),
                (
                    "dokument",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="versandprotokolle",
                        to="betriebskosten.abrechnungsdokument",
                        verbose_name="Dokument",
                    ),
                ),
                (
                    "mietervertrag",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="versandprotokolle",
                        to="betriebskosten.leaseagreement",
                        verbose_name="Mietvertrag",
                    ),
                ),
            ],
            options={
                "verbose_name": "Versandprotokoll",
                "verbose_name_plural": "Versandprotokolle",
                "ordering": ["-sent_at", "-id"],
                "indexes": [models.Index(fields=["abrechnung", "status"], name="versandprot_abr_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="Kostenvorlage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(default="Vorlage", max_length=120, verbose_name="Name")),
                (
                    "alloc_total_area",
                    models.DecimalField(
                        blank=True, decimal_places=2, max_digits=10, null=True, verbose_name="Gesamtfläche"
                    ),
                ),
                ("alloc_total_units", models.PositiveIntegerField(blank=True, null=True, verbose_name="Anzahl Einheiten")),
                ("alloc_total_persons", models.PositiveIntegerField(blank=True, null=True, verbose_name="Personen gesamt")),
                (
                    "alloc_total_mea",
                    models.DecimalField(
                        blank=True,
                        decimal_places=4,
                        max_digits=12,
                        null=True,
                        verbose_name="Miteigentumsanteile gesamt",
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="Erstellt am")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="Aktualisiert am")),
                (
                    "einheit",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="kostenvorlagen",
                        to="betriebskosten.unit",
                        verbose_name="Einheit",
                    ),
                ),
                (
                    "liegenschaft",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="kostenvorlagen",
                        to="betriebskosten.property",
                        verbose_name="Liegenschaft",
                    ),
                ),
            ],
            options={
                "verbose_name": "Kostenvorlage",
                "verbose_name_plural": "Kostenvorlagen",
                "constraints": [
                    models.UniqueConstraint(
                        fields=("liegenschaft", "einheit"),
                        name="uniq_kostenvorlage_liegenschaft_einheit",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("einheit__isnull", True)),
                        fields=("liegenschaft",),
                        name="uniq_kostenvorlage_liegenschaft_ohne_einheit",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="KostenvorlagePosition",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("kostenart", models.CharField(max_length=255, verbose_name="Kostenart")),
                (
                    "verteilerschluessel",
                    models.CharField(
                        choices=VERTEILERSCHLUESSEL_CHOICES,
                        max_length=20,
                        verbose_name="Verteilerschlüssel",
                    ),
                ),
                ("gruppe", models.CharField(blank=True, max_length=120, verbose_name="Gruppe")),
                ("is_section_35a", models.BooleanField(default=False, verbose_name="§ 35a EStG")),
                (
                    "section_35a_kategorie",
                    models.CharField(
                        blank=True,
                        choices=SECTION_35A_CHOICES,
                        max_length=40,
                        verbose_name="§ 35a Kategorie",
                    ),
                ),
                ("sort_order", models.PositiveIntegerField(default=100, verbose_name="Sortierung")),
                (
                    "vorlage",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="positionen",
                        to="betriebskosten.kostenvorlage",
                        verbose_name="Vorlage",
                    ),
                ),
            ],
            options={
                "verbose_name": "Vorlagenposition",
                "verbose_name_plural": "Vorlagenpositionen",
                "ordering": ["sort_order", "id"],
            },
        ),
        migrations.CreateModel(
            name="HistoricalLeaseAgreement",
            fields=[
                ("id", models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")),
                ("entry_date", models.DateField(verbose_name="Einzugsdatum")),
                ("exit_date", models.DateField(blank=True, null=True, verbose_name="Auszugsdatum")),
                (
                    "household_size",
                    models.PositiveSmallIntegerField(
                        blank=True,
                        null=True,
                        validators=[django.core.validators.MaxValueValidator(50)],
                        verbose_name="Personen im Haushalt",
                    ),
                ),
                ("history_id", models.AutoField(primary_key=True, serialize=False)),
                ("history_date", models.DateTimeField(db_index=True)),
                ("history_change_reason", models.CharField(max_length=100, null=True)),
                ("history_type", models.CharField(choices=HISTORY_TYPE_CHOICES, max_length=1)),
                (
                    "history_user",
                    models.ForeignKey(
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "unit",
                    models.ForeignKey(
                        blank=True,
                        db_constraint=False,
                        null=True,
                        on_delete=django.db.models.deletion.DO_NOTHING,
                        related_name="+",
                        to="betriebskosten.unit",
                        verbose_name="Einheit",
                    ),
                ),
            ],
            options={
                "verbose_name": "historical Mietvertrag",
                "verbose_name_plural": "historical Mietverträge",
                **HISTORY_OPTIONS,
            },
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
        migrations.CreateModel(
            name="HistoricalLeaseAgreement_tenants",
            fields=[
                ("id", models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")),
                ("m2m_history_id", models.AutoField(primary_key=True, serialize=False)),
                (
                    "history",
                    models.ForeignKey(
                        db_constraint=False,
                        on_delete=django.db.models.deletion.DO_NOTHING,
                        to="betriebskosten.historicalleaseagreement",
                    ),
                ),
                (
                    "leaseagreement",
                    models.ForeignKey(
                        blank=True,
                        db_constraint=False,
                        null=True,
                        on_delete=django.db.models.deletion.DO_NOTHING,
                        related_name="+",
                        to="betriebskosten.leaseagreement",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        blank=True,
                        db_constraint=False,
                        null=True,
                        on_delete=django.db.models.deletion.DO_NOTHING,
                        related_name="+",
                        to="betriebskosten.tenant",
                    ),
                ),
            ],
            options={
                "verbose_name": "HistoricalLeaseAgreement_tenants",
            },
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
        migrations.CreateModel(
            name="HistoricalBetriebskostenabrechnung",
            fields=[
                ("id", models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")),
                (
                    "jahr",
                    models.PositiveIntegerField(
                        validators=[
                            django.core.validators.MinValueValidator(1900),
                            django.core.validators.MaxValueValidator(2999),
                        ],
                        verbose_name="Jahr",
                    ),
                ),
                ("zeitraum_von", models.DateField(blank=True, null=True, verbose_name="Abrechnungszeitraum von")),
                ("zeitraum_bis", models.DateField(blank=True, null=True, verbose_name="Abrechnungszeitraum bis")),
                (
                    "status",
                    models.CharField(
                        choices=STATUS_CHOICES,
                        db_index=True,
                        default="draft",
                        max_length=20,
                        verbose_name="Status",
                    ),
                ),
                (
                    "gesamtkosten",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        max_digits=12,
                        verbose_name="Gesamtkosten",
                    ),
                ),
                (
                    "alloc_total_area",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        max_digits=10,
                        null=True,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Gesamtfläche (abweichend)",
                    ),
                ),
                (
                    "alloc_total_units",
                    models.PositiveIntegerField(blank=True, null=True, verbose_name="Anzahl Einheiten (abweichend)"),
                ),
                (
                    "alloc_total_persons",
                    models.PositiveIntegerField(blank=True, null=True, verbose_name="Personen gesamt (abweichend)"),
                ),
                (
                    "alloc_total_mea",
                    models.DecimalField(
                        blank=True,
                        decimal_places=4,
                        max_digits=12,
                        null=True,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Miteigentumsanteile gesamt (abweichend)",
                    ),
                ),
                (
                    "results_computed_at",
                    models.DateTimeField(blank=True, null=True, verbose_name="Ergebnisse berechnet am"),
                ),
                ("created_at", models.DateTimeField(blank=True, editable=False, verbose_name="Erstellt am")),
                ("updated_at", models.DateTimeField(blank=True, editable=False, verbose_name="Aktualisiert am")),
                ("history_id", models.AutoField(primary_key=True, serialize=False)),
                ("history_date", models.DateTimeField(db_index=True)),
                ("history_change_reason", models.CharField(max_length=100, null=True)),
                ("history_type", models.CharField(choices=HISTORY_TYPE_CHOICES, max_length=1)),
                (
                    "einheit",
                    models.ForeignKey(
                        blank=True,
                        db_constraint=False,
                        help_text="Optional: Abrechnung nur für diese Einheit erstellen.",
                        null=True,
                        on_delete=django.db.models.deletion.DO_NOTHING,
                        related_name="+",
                        to="betriebskosten.unit",
                        verbose_name="Einheit",
                    ),
                ),
                (
                    "history_user",
                    models.ForeignKey(
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "liegenschaft",
                    models.ForeignKey(
                        blank=True,
                        db_constraint=False,
                        null=True,
                        on_delete=django.db.models.deletion.DO_NOTHING,
                        related_name="+",
                        to="betriebskosten.property",
                        verbose_name="Liegenschaft",
                    ),
                ),
            ],
            options={
                "verbose_name": "historical Betriebskostenabrechnung",
                "verbose_name_plural": "historical Betriebskostenabrechnungen",
                **HISTORY_OPTIONS,
            },
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
        migrations.CreateModel(
            name="HistoricalKostenposition",
            fields=[
                ("id", models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")),
                ("kostenart", models.CharField(max_length=255, verbose_name="Kostenart")),
                (
                    "verteilerschluessel",
                    models.CharField(
                        choices=VERTEILERSCHLUESSEL_CHOICES,
                        default="area",
                        max_length=20,
                        verbose_name="Verteilerschlüssel",
                    ),
                ),
                (
                    "betrag",
                    models.DecimalField(
                        decimal_places=2,
                        max_digits=12,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Betrag",
                    ),
                ),
                (
                    "custom_unit_mea",
                    models.DecimalField(
                        blank=True,
                        decimal_places=4,
                        help_text="Nur bei Abrechnungen für eine einzelne Einheit und Schlüssel Miteigentumsanteile.",
                        max_digits=12,
                        null=True,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Miteigentumsanteil der Einheit (abweichend)",
                    ),
                ),
                ("gruppe", models.CharField(blank=True, max_length=120, verbose_name="Gruppe")),
                ("is_section_35a", models.BooleanField(default=False, verbose_name="§ 35a EStG")),
                (
                    "section_35a_kategorie",
                    models.CharField(
                        blank=True,
                        choices=SECTION_35A_CHOICES,
                        max_length=40,
                        verbose_name="§ 35a Kategorie",
                    ),
                ),
                ("sort_order", models.PositiveIntegerField(default=100, verbose_name="Sortierung")),
                ("created_at", models.DateTimeField(blank=True, editable=False, verbose_name="Erstellt am")),
                ("history_id", models.AutoField(primary_key=True, serialize=False)),
                ("history_date", models.DateTimeField(db_index=True)),
                ("history_change_reason", models.CharField(max_length=100, null=True)),
                ("history_type", models.CharField(choices=HISTORY_TYPE_CHOICES, max_length=1)),
                (
                    "abrechnung",
                    models.ForeignKey(
                        blank=True,
                        db_constraint=False,
                        null=True,
                        on_delete=django.db.models.deletion.DO_NOTHING,
                        related_name="+",
                        to="betriebskosten.betriebskostenabrechnung",
                        verbose_name="Abrechnung",
                    ),
                ),
                (
                    "history_user",
                    models.ForeignKey(
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "historical Kostenposition",
                "verbose_name_plural": "historical Kostenpositionen",
                **HISTORY_OPTIONS,
            },
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
    ]
