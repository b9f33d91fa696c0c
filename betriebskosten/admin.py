from django.contrib import admin, messages
from django.core.exceptions import ValidationError
from simple_history.admin import SimpleHistoryAdmin

from .models import (
    Abrechnungsdokument,
    Abrechnungsergebnis,
    Betriebskostenabrechnung,
    Kostenposition,
    Kostenvorlage,
    KostenvorlagePosition,
    LeaseAgreement,
    Manager,
    Property,
    Tenant,
    Unit,
    Versandprotokoll,
    Vorauszahlung,
)
from .services.statement_lifecycle_service import StatementLifecycleService


@admin.register(Manager)
class ManagerAdmin(admin.ModelAdmin):
    list_display = ("company_name", "contact_person", "email", "phone", "iban")
    search_fields = ("company_name", "contact_person", "email", "iban")


@admin.register(Property)
class PropertyAdmin(admin.ModelAdmin):
    list_display = ("name", "manager", "city", "zip_code", "street_address")
    search_fields = ("name", "city", "zip_code", "street_address")


@admin.register(Unit)
class UnitAdmin(admin.ModelAdmin):
    list_display = ("name", "property", "door_number", "usable_area", "mea")
    list_filter = ("property",)
    search_fields = ("name", "door_number", "property__name")


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    list_display = ("salutation", "first_name", "last_name", "email")
    search_fields = ("first_name", "last_name", "email")
    list_filter = ("salutation",)


class VorauszahlungInline(admin.TabularInline):
    model = Vorauszahlung
    extra = 0


@admin.register(LeaseAgreement)
class LeaseAgreementAdmin(SimpleHistoryAdmin):
    list_display = ("unit", "entry_date", "exit_date", "household_size")
    list_filter = ("unit__property",)
    search_fields = ("unit__name", "tenants__first_name", "tenants__last_name")
    filter_horizontal = ("tenants",)
    inlines = (VorauszahlungInline,)
    history_list_display = ("entry_date", "exit_date", "household_size", "history_user", "history_date")


@admin.register(Vorauszahlung)
class VorauszahlungAdmin(admin.ModelAdmin):
    list_display = ("datum", "mietervertrag", "betrag", "buchungstext")
    list_filter = ("datum",)
    search_fields = ("buchungstext", "mietervertrag__unit__name")


class KostenpositionInline(admin.TabularInline):
    model = Kostenposition
    extra = 0
    fields = (
        "sort_order",
        "gruppe",
        "kostenart",
        "verteilerschluessel",
        "betrag",
        "custom_unit_mea",
        "is_section_35a",
        "section_35a_kategorie",
    )

    def has_add_permission(self, request, obj=None):
        if obj is not None and obj.is_locked:
            return False
        return super().has_add_permission(request, obj)

    def has_change_permission(self, request, obj=None):
        if obj is not None and obj.is_locked:
            return False
        return super().has_change_permission(request, obj)

    def has_delete_permission(self, request, obj=None):
        if obj is not None and obj.is_locked:
            return False
        return super().has_delete_permission(request, obj)


class AbrechnungsergebnisInline(admin.TabularInline):
    model = Abrechnungsergebnis
    extra = 0
    can_delete = False
    fields = (
        "mietervertrag",
        "tenant_name",
        "period_start",
        "period_end",
        "days_in_period",
        "cost_share",
        "prepayments",
        "balance",
    )
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Betriebskostenabrechnung)
class BetriebskostenabrechnungAdmin(SimpleHistoryAdmin):
    list_display = ("liegenschaft", "jahr", "einheit", "status", "gesamtkosten", "results_computed_at")
    list_filter = ("status", "jahr", "liegenschaft")
    search_fields = ("liegenschaft__name",)
    readonly_fields = ("status", "gesamtkosten", "results_computed_at", "created_at", "updated_at")
    inlines = (KostenpositionInline, AbrechnungsergebnisInline)
    actions = ("action_mark_ready", "action_reopen")
    history_list_display = ("status", "gesamtkosten", "history_user", "history_date")

    @admin.action(description="Als bereit markieren (Ergebnisse berechnen)")
    def action_mark_ready(self, request, queryset):
        for statement in queryset:
            try:
                StatementLifecycleService(statement=statement).mark_ready()
            except ValidationError as exc:
                self.message_user(request, f"{statement}: {' '.join(exc.messages)}", level=messages.ERROR)
            else:
                self.message_user(request, f"{statement}: bereit.", level=messages.SUCCESS)

    @admin.action(description="Wieder als Entwurf öffnen")
    def action_reopen(self, request, queryset):
        for statement in queryset:
            try:
                StatementLifecycleService(statement=statement).reopen()
            except ValidationError as exc:
                self.message_user(request, f"{statement}: {' '.join(exc.messages)}", level=messages.ERROR)
            else:
                self.message_user(request, f"{statement}: wieder im Entwurf.", level=messages.SUCCESS)


@admin.register(Kostenposition)
class KostenpositionAdmin(SimpleHistoryAdmin):
    list_display = ("kostenart", "abrechnung", "verteilerschluessel", "betrag", "gruppe", "is_section_35a")
    list_filter = ("verteilerschluessel", "is_section_35a", "abrechnung__jahr")
    search_fields = ("kostenart", "gruppe", "abrechnung__liegenschaft__name")


@admin.register(Abrechnungsdokument)
class AbrechnungsdokumentAdmin(admin.ModelAdmin):
    list_display = ("filename", "abrechnung", "mietervertrag", "is_stale", "generated_at")
    list_filter = ("is_stale",)
    readonly_fields = ("generated_at",)


@admin.register(Versandprotokoll)
class VersandprotokollAdmin(admin.ModelAdmin):
    list_display = ("abrechnung", "mietervertrag", "recipient_email", "status", "sent_at")
    list_filter = ("status",)
    search_fields = ("recipient_email", "error_message")
    readonly_fields = (
        "abrechnung",
        "mietervertrag",
        "dokument",
        "recipient_email",
        "status",
        "error_message",
        "sent_at",
    )


class KostenvorlagePositionInline(admin.TabularInline):
    model = KostenvorlagePosition
    extra = 0


@admin.register(Kostenvorlage)
class KostenvorlageAdmin(admin.ModelAdmin):
    list_display = ("name", "liegenschaft", "einheit", "updated_at")
    list_filter = ("liegenschaft",)
    inlines = (KostenvorlagePositionInline,)
