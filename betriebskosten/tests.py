import shutil
import tempfile
from datetime import date
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core import mail
from django.core.exceptions import ValidationError
from django.core.management import CommandError, call_command
from django.test import SimpleTestCase, TestCase, override_settings

from .models import (
    Abrechnungsdokument,
    Abrechnungsergebnis,
    Betriebskostenabrechnung,
    Kostenposition,
    Kostenvorlage,
    LeaseAgreement,
    Manager,
    Property,
    Tenant,
    Unit,
    Verteilerschluessel,
    Versandprotokoll,
    Vorauszahlung,
)
from .services.annual_statement_pdf_service import AnnualStatementPdfService
from .services.annual_statement_run_service import AnnualStatementRunService
from .services.annual_statement_storage_service import AnnualStatementStorageService
from .services.cost_record_store import (
    DjangoCostRecordStore,
    StatementLockedError,
    StatementNotFoundError,
)
from .services.cost_template_service import CostTemplateService
from .services.operating_cost_service import (
    AllocationBasis,
    BillingPeriod,
    CostLineItem,
    OccupancyUnit,
    OperatingCostAllocator,
    OperatingCostService,
    TenancySegment,
)
from .services.operating_cost_statement_service import OperatingCostStatementService
from .services.payment_qr_code_service import PaymentQrCodeService
from .services.statement_lifecycle_service import (
    InvalidStatusTransitionError,
    StatementLifecycleService,
)
from .services.statement_mailer import StatementMailer, StatementSendError

ENGINE_LOGGER = "betriebskosten.services.operating_cost_service"
FAKE_PDF = b"%PDF-1.4 test"


class BetriebskostenTestMixin:
    def _create_base_data(self, *, year: int = 2023):
        self.year = year
        self.manager = Manager.objects.create(
            company_name="HV Muster GmbH",
            contact_person="Max Muster",
            email="office@example.com",
            iban="DE89 3704 0044 0532 0130 00",
            bic="COBADEFFXXX",
        )
        self.property = Property.objects.create(
            name="Objekt Lindenhof",
            zip_code="10115",
            city="Berlin",
            street_address="Lindenstraße 5",
            manager=self.manager,
        )
        self.unit_a = Unit.objects.create(
            property=self.property,
            door_number="1",
            name="Top 1",
            usable_area=Decimal("60.00"),
            mea="600/1000",
        )
        self.unit_b = Unit.objects.create(
            property=self.property,
            door_number="2",
            name="Top 2",
            usable_area=Decimal("40.00"),
            mea="400/1000",
        )
        self.tenant_a = Tenant.objects.create(
            salutation=Tenant.Salutation.FRAU,
            first_name="Anna",
            last_name="Beispiel",
            email="anna@example.com",
        )
        self.tenant_b = Tenant.objects.create(
            salutation=Tenant.Salutation.HERR,
            first_name="Bernd",
            last_name="Muster",
            email="bernd@example.com",
        )
        self.lease_a = self._lease(self.unit_a, self.tenant_a, household_size=2)
        self.lease_b = self._lease(self.unit_b, self.tenant_b, household_size=1)

    def _lease(self, unit, tenant, *, entry=None, exit_date=None, household_size=1):
        lease = LeaseAgreement.objects.create(
            unit=unit,
            entry_date=entry or date(self.year - 3, 1, 1),
            exit_date=exit_date,
            household_size=household_size,
        )
        lease.tenants.add(tenant)
        return lease

    def _statement(self, **kwargs):
        kwargs.setdefault("liegenschaft", self.property)
        kwargs.setdefault("jahr", self.year)
        return Betriebskostenabrechnung.objects.create(**kwargs)

    def _item(self, statement, kostenart, key, amount, **kwargs):
        return Kostenposition.objects.create(
            abrechnung=statement,
            kostenart=kostenart,
            verteilerschluessel=key,
            betrag=Decimal(amount),
            **kwargs,
        )

    def _results_by_lease(self, statement):
        results = OperatingCostService().compute_results(statement.pk)
        return {result.lease_id: result for result in results}

    def _use_temp_media(self):
        media_root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, media_root, ignore_errors=True)
        settings_override = override_settings(MEDIA_ROOT=media_root)
        settings_override.enable()
        self.addCleanup(settings_override.disable)


class OperatingCostServiceTests(BetriebskostenTestMixin, TestCase):
    def setUp(self):
        self._create_base_data()

    def test_area_allocation_full_year_with_prepayments(self):
        statement = self._statement()
        self._item(statement, "Gebäudeversicherung", Verteilerschluessel.AREA, "1000.00")
        Vorauszahlung.objects.create(mietervertrag=self.lease_a, datum=date(2023, 3, 1), betrag=Decimal("650.00"))
        Vorauszahlung.objects.create(mietervertrag=self.lease_a, datum=date(2022, 12, 31), betrag=Decimal("99.00"))

        results = self._results_by_lease(statement)

        result_a = results[self.lease_a.pk]
        result_b = results[self.lease_b.pk]
        self.assertEqual(result_a.cost_share, Decimal("600.00"))
        self.assertEqual(result_a.prepayments, Decimal("650.00"))
        self.assertEqual(result_a.balance, Decimal("-50.00"))
        self.assertTrue(result_a.is_refund)
        self.assertEqual(result_b.cost_share, Decimal("400.00"))
        self.assertEqual(result_b.prepayments, Decimal("0.00"))
        self.assertEqual(result_b.balance, Decimal("400.00"))
        self.assertGreater(result_b.balance, 0)
        self.assertEqual(result_a.days_in_period, 365)
        self.assertEqual(result_a.tenant_id, self.tenant_a.pk)
        self.assertEqual(result_a.tenant_name, "Anna Beispiel")

    def test_partial_occupancy_is_prorated_by_days(self):
        self.lease_a.exit_date = date(2023, 7, 1)
        self.lease_a.save()
        statement = self._statement()
        self._item(statement, "Gebäudeversicherung", Verteilerschluessel.AREA, "1000.00")

        results = self._results_by_lease(statement)

        self.assertEqual(results[self.lease_a.pk].days_in_period, 182)
        self.assertEqual(results[self.lease_a.pk].period_end, date(2023, 7, 1))
        self.assertEqual(results[self.lease_a.pk].cost_share, Decimal("299.18"))
        self.assertEqual(results[self.lease_b.pk].cost_share, Decimal("400.00"))

    def test_leap_year_uses_366_days(self):
        self.lease_b.entry_date = date(2024, 7, 1)
        self.lease_b.save()
        statement = self._statement(jahr=2024)
        self._item(statement, "Gebäudeversicherung", Verteilerschluessel.AREA, "1000.00")

        period = DjangoCostRecordStore().get_statement(statement.pk)
        results = self._results_by_lease(statement)

        self.assertEqual(period.total_days, 366)
        self.assertEqual(results[self.lease_a.pk].days_in_period, 366)
        self.assertEqual(results[self.lease_a.pk].cost_share, Decimal("600.00"))
        self.assertEqual(results[self.lease_b.pk].days_in_period, 184)
        self.assertEqual(results[self.lease_b.pk].cost_share, Decimal("201.09"))

    def test_tenancy_starting_after_period_is_excluded(self):
        LeaseAgreement.objects.filter(pk=self.lease_b.pk).update(entry_date=date(2024, 1, 1))
        statement = self._statement()
        self._item(statement, "Müllabfuhr", Verteilerschluessel.UNITS, "100.00")

        results = self._results_by_lease(statement)

        self.assertEqual(list(results), [self.lease_a.pk])
        self.assertEqual(results[self.lease_a.pk].cost_share, Decimal("50.00"))

    def test_zero_total_area_yields_zero_shares_without_error(self):
        Unit.objects.filter(property=self.property).update(usable_area=None)
        statement = self._statement()
        self._item(statement, "Gebäudeversicherung", Verteilerschluessel.AREA, "1000.00")

        with self.assertLogs(ENGINE_LOGGER, level="WARNING"):
            outcome = OperatingCostService().compute(statement.pk)

        self.assertEqual([result.cost_share for result in outcome.results], [Decimal("0.00"), Decimal("0.00")])
        self.assertIn("degenerate_denominator", [warning.code for warning in outcome.warnings])

    def test_compute_is_idempotent(self):
        statement = self._statement()
        self._item(statement, "Gebäudeversicherung", Verteilerschluessel.AREA, "1000.00")
        self._item(statement, "Hauswart", Verteilerschluessel.PERSONS, "333.33")

        service = OperatingCostService()
        first = service.compute_results(statement.pk)
        second = service.compute_results(statement.pk)

        self.assertEqual(first, second)

    def test_unknown_statement_raises_not_found(self):
        with self.assertRaises(StatementNotFoundError):
            OperatingCostService().compute_results(999999)

    def test_property_without_tenancies_returns_empty_list(self):
        empty_property = Property.objects.create(
            name="Leerstand",
            zip_code="10117",
            city="Berlin",
            street_address="Leerweg 1",
        )
        Unit.objects.create(property=empty_property, name="Top 1", usable_area=Decimal("50.00"))
        statement = self._statement(liegenschaft=empty_property)
        self._item(statement, "Gebäudeversicherung", Verteilerschluessel.AREA, "500.00")

        self.assertEqual(OperatingCostService().compute_results(statement.pk), [])

    def test_unknown_allocation_key_is_skipped_with_warning(self):
        statement = self._statement()
        self._item(statement, "Sonderposten", "mieteinheiten", "120.00")
        self._item(statement, "Müllabfuhr", Verteilerschluessel.UNITS, "100.00")

        with self.assertLogs(ENGINE_LOGGER, level="WARNING") as logs:
            outcome = OperatingCostService().compute(statement.pk)

        self.assertEqual([warning.code for warning in outcome.warnings], ["invalid_allocation_key"])
        self.assertIn("mieteinheiten", logs.output[0])
        for result in outcome.results:
            self.assertEqual(result.breakdown[0].share, Decimal("0.00"))
            self.assertEqual(result.cost_share, Decimal("50.00"))

    def test_consumption_key_without_metering_data_yields_zero(self):
        statement = self._statement()
        self._item(statement, "Wasser", Verteilerschluessel.CONSUMPTION, "300.00")

        with self.assertLogs(ENGINE_LOGGER, level="WARNING"):
            outcome = OperatingCostService().compute(statement.pk)

        self.assertEqual([warning.code for warning in outcome.warnings], ["consumption_without_data"])
        self.assertTrue(all(result.cost_share == Decimal("0.00") for result in outcome.results))

    def test_missing_household_size_counts_as_zero_persons(self):
        LeaseAgreement.objects.filter(pk=self.lease_b.pk).update(household_size=None)
        statement = self._statement()
        self._item(statement, "Treppenhausreinigung", Verteilerschluessel.PERSONS, "300.00")

        with self.assertLogs(ENGINE_LOGGER, level="WARNING"):
            outcome = OperatingCostService().compute(statement.pk)

        results = {result.lease_id: result for result in outcome.results}
        self.assertEqual(results[self.lease_a.pk].cost_share, Decimal("300.00"))
        self.assertEqual(results[self.lease_b.pk].cost_share, Decimal("0.00"))
        self.assertEqual(results[self.lease_b.pk].household_size, 0)
        self.assertEqual(
            [(warning.code, warning.lease_id) for warning in outcome.warnings],
            [("partial_data_gap", self.lease_b.pk)],
        )

    def test_mea_key_uses_fraction_numerators(self):
        statement = self._statement()
        self._item(statement, "Verwaltung", Verteilerschluessel.MEA, "500.00")

        results = self._results_by_lease(statement)

        self.assertEqual(results[self.lease_a.pk].cost_share, Decimal("300.00"))
        self.assertEqual(results[self.lease_b.pk].cost_share, Decimal("200.00"))

    def test_stored_allocation_basis_overrides_computed_totals(self):
        statement = self._statement(alloc_total_area=Decimal("200.00"))
        self._item(statement, "Gebäudeversicherung", Verteilerschluessel.AREA, "1000.00")

        results = self._results_by_lease(statement)

        self.assertEqual(results[self.lease_a.pk].cost_share, Decimal("300.00"))
        self.assertEqual(results[self.lease_b.pk].cost_share, Decimal("200.00"))

    def test_unit_scoped_statement_keeps_property_wide_denominators(self):
        statement = self._statement(einheit=self.unit_a)
        self._item(statement, "Gebäudeversicherung", Verteilerschluessel.AREA, "1000.00")

        results = self._results_by_lease(statement)

        self.assertEqual(list(results), [self.lease_a.pk])
        self.assertEqual(results[self.lease_a.pk].cost_share, Decimal("600.00"))

    def test_full_occupancy_conserves_odd_amounts_for_every_key(self):
        unit_c = Unit.objects.create(
            property=self.property,
            door_number="3",
            name="Top 3",
            usable_area=Decimal("27.00"),
            mea="333/1000",
        )
        tenant_c = Tenant.objects.create(first_name="Clara", last_name="Dorn", email="clara@example.com")
        self._lease(unit_c, tenant_c, household_size=4)
        statement = self._statement()
        keys = (
            Verteilerschluessel.AREA,
            Verteilerschluessel.UNITS,
            Verteilerschluessel.PERSONS,
            Verteilerschluessel.MEA,
        )
        for key in keys:
            self._item(statement, f"Position {key}", key, "333.33")

        results = OperatingCostService().compute_results(statement.pk)

        self.assertEqual(len(results), 3)
        for index, key in enumerate(keys):
            with self.subTest(key=key):
                self.assertEqual(
                    sum((result.breakdown[index].share for result in results), Decimal("0.00")),
                    Decimal("333.33"),
                )

    def test_direct_key_charges_full_amount_to_unit_statement(self):
        statement = self._statement(einheit=self.unit_a)
        self._item(statement, "Heizkosten laut Messdienst", Verteilerschluessel.CONSUMPTION_BILLING, "812.40")
        self._item(statement, "Reparatur Therme", Verteilerschluessel.DIRECT, "150.00")

        results = self._results_by_lease(statement)

        self.assertEqual(list(results), [self.lease_a.pk])
        self.assertEqual(
            [line.share for line in results[self.lease_a.pk].breakdown],
            [Decimal("812.40"), Decimal("150.00")],
        )
        self.assertEqual(results[self.lease_a.pk].cost_share, Decimal("962.40"))

    def test_direct_key_is_prorated_across_tenant_change(self):
        self.lease_a.exit_date = date(2023, 6, 30)
        self.lease_a.save()
        successor = Tenant.objects.create(first_name="Dora", last_name="Neu", email="dora@example.com")
        next_lease = self._lease(self.unit_a, successor, entry=date(2023, 7, 1), household_size=1)
        statement = self._statement(einheit=self.unit_a)
        self._item(statement, "Reparatur Therme", Verteilerschluessel.DIRECT, "365.00")

        results = self._results_by_lease(statement)

        self.assertEqual(results[self.lease_a.pk].cost_share, Decimal("181.00"))
        self.assertEqual(results[next_lease.pk].cost_share, Decimal("184.00"))

    def test_direct_key_on_property_statement_yields_zero_with_warning(self):
        statement = self._statement()
        self._item(statement, "Reparatur Therme", Verteilerschluessel.DIRECT, "150.00")

        with self.assertLogs(ENGINE_LOGGER, level="WARNING"):
            outcome = OperatingCostService().compute(statement.pk)

        self.assertEqual([warning.code for warning in outcome.warnings], ["direct_without_unit"])
        self.assertTrue(all(result.cost_share == Decimal("0.00") for result in outcome.results))

    def test_custom_unit_mea_replaces_unit_share_on_unit_statement(self):
        statement = self._statement(einheit=self.unit_a)
        self._item(
            statement,
            "Verwaltung",
            Verteilerschluessel.MEA,
            "1000.00",
            custom_unit_mea=Decimal("250"),
        )

        results = self._results_by_lease(statement)

        self.assertEqual(results[self.lease_a.pk].cost_share, Decimal("250.00"))

    def test_custom_unit_mea_is_ignored_on_property_statement(self):
        statement = self._statement()
        self._item(
            statement,
            "Verwaltung",
            Verteilerschluessel.MEA,
            "500.00",
            custom_unit_mea=Decimal("250"),
        )

        with self.assertLogs(ENGINE_LOGGER, level="WARNING"):
            outcome = OperatingCostService().compute(statement.pk)

        results = {result.lease_id: result for result in outcome.results}
        self.assertEqual([warning.code for warning in outcome.warnings], ["custom_mea_ignored"])
        self.assertEqual(results[self.lease_a.pk].cost_share, Decimal("300.00"))
        self.assertEqual(results[self.lease_b.pk].cost_share, Decimal("200.00"))

    def test_allocation_defaults_reflect_current_units_and_leases(self):
        statement = self._statement()

        basis = OperatingCostService().allocation_defaults(statement.pk)

        self.assertEqual(basis.total_area, Decimal("100.00"))
        self.assertEqual(basis.unit_count, 2)
        self.assertEqual(basis.total_persons, 3)
        self.assertEqual(basis.total_mea, Decimal("1000.0000"))

    def test_shared_lease_reports_all_tenant_names(self):
        partner = Tenant.objects.create(first_name="Carla", last_name="Adler")
        self.lease_a.tenants.add(partner)
        statement = self._statement()
        self._item(statement, "Müllabfuhr", Verteilerschluessel.UNITS, "100.00")

        result = self._results_by_lease(statement)[self.lease_a.pk]

        self.assertEqual(result.tenant_id, partner.pk)
        self.assertEqual(result.tenant_name, "Carla Adler, Anna Beispiel")

    def test_section_35a_items_are_totalled_separately(self):
        statement = self._statement()
        self._item(
            statement,
            "Gartenpflege",
            Verteilerschluessel.AREA,
            "200.00",
            is_section_35a=True,
            section_35a_kategorie=Kostenposition.Section35aKategorie.HAUSHALTSNAHE_DIENSTLEISTUNGEN,
            gruppe="Außenanlagen",
        )
        self._item(statement, "Grundsteuer", Verteilerschluessel.AREA, "100.00")

        result = self._results_by_lease(statement)[self.lease_a.pk]

        self.assertEqual(result.cost_share, Decimal("180.00"))
        self.assertEqual(result.section_35a_totals, {"haushaltsnahe_dienstleistungen": Decimal("120.00")})
        self.assertEqual(result.breakdown[0].group_label, "Außenanlagen")

    def test_save_results_overwrites_previous_records(self):
        statement = self._statement()
        self._item(statement, "Gebäudeversicherung", Verteilerschluessel.AREA, "1000.00")
        service = OperatingCostService()

        service.compute_results(statement.pk, save=True)
        service.compute_results(statement.pk, save=True)

        records = Abrechnungsergebnis.objects.filter(abrechnung=statement)
        self.assertEqual(records.count(), 2)
        statement.refresh_from_db()
        self.assertIsNotNone(statement.results_computed_at)
        stored = DjangoCostRecordStore.stored_results(statement)
        self.assertEqual(sorted(result.cost_share for result in stored), [Decimal("400.00"), Decimal("600.00")])

    def test_list_advance_payments_sums_period_payments(self):
        statement = self._statement()
        for month in (1, 6, 12):
            Vorauszahlung.objects.create(
                mietervertrag=self.lease_b,
                datum=date(2023, month, 3),
                betrag=Decimal("40.10"),
            )

        total = DjangoCostRecordStore().list_advance_payments(self.lease_b.pk, statement.pk)

        self.assertEqual(total, Decimal("120.30"))


class OperatingCostAllocatorTests(SimpleTestCase):
    def setUp(self):
        self.period = BillingPeriod(
            statement_id=1,
            property_id=1,
            start=date(2023, 1, 1),
            end=date(2023, 1, 10),
        )

    def test_half_period_tenant_pays_half_of_identical_unit(self):
        units = [
            OccupancyUnit(unit_id=1, label="A", area_sqm=Decimal("50")),
            OccupancyUnit(unit_id=2, label="B", area_sqm=Decimal("50")),
        ]
        segments = [
            TenancySegment(lease_id=10, unit_id=1, start=date(2023, 1, 1), end=date(2023, 1, 10)),
            TenancySegment(lease_id=20, unit_id=2, start=date(2023, 1, 6), end=date(2023, 1, 10)),
        ]
        item = CostLineItem(cost_type="Versicherung", allocation_key="area", amount=Decimal("100.00"))

        outcome = OperatingCostAllocator().allocate(
            period=self.period,
            line_items=[item],
            units=units,
            segments=segments,
        )

        full, half = outcome.results
        self.assertEqual(full.cost_share, Decimal("50.00"))
        self.assertEqual(half.cost_share, Decimal("25.00"))
        self.assertEqual(half.cost_share * 2, full.cost_share)

    def test_rounding_correction_preserves_item_total(self):
        units = [OccupancyUnit(unit_id=index, label=f"Top {index}") for index in (1, 2, 3)]
        segments = [
            TenancySegment(lease_id=index * 10, unit_id=index, start=self.period.start, end=self.period.end)
            for index in (1, 2, 3)
        ]
        items = [
            CostLineItem(cost_type="Müll", allocation_key="units", amount=Decimal("100.00")),
            CostLineItem(cost_type="Strom", allocation_key="units", amount=Decimal("0.02")),
        ]

        outcome = OperatingCostAllocator().allocate(
            period=self.period,
            line_items=items,
            units=units,
            segments=segments,
        )

        for index, item in enumerate(items):
            shares = [result.breakdown[index].share for result in outcome.results]
            self.assertEqual(sum(shares), item.amount)
        self.assertEqual(
            sorted(result.breakdown[0].share for result in outcome.results),
            [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")],
        )

    def test_allocation_basis_counts_replace_computed_values(self):
        period = BillingPeriod(
            statement_id=1,
            property_id=1,
            start=self.period.start,
            end=self.period.end,
            basis=AllocationBasis(unit_count=4, total_persons=10),
        )
        units = [OccupancyUnit(unit_id=1, label="A")]
        segments = [
            TenancySegment(lease_id=10, unit_id=1, start=period.start, end=period.end, household_size=5)
        ]
        items = [
            CostLineItem(cost_type="Müll", allocation_key="units", amount=Decimal("100.00")),
            CostLineItem(cost_type="Reinigung", allocation_key="persons", amount=Decimal("100.00")),
        ]

        result = OperatingCostAllocator().allocate(
            period=period,
            line_items=items,
            units=units,
            segments=segments,
        ).results[0]

        self.assertEqual([line.share for line in result.breakdown], [Decimal("25.00"), Decimal("50.00")])

    def test_negative_amount_is_rejected(self):
        with self.assertRaises(ValueError):
            CostLineItem(cost_type="Gutschrift", allocation_key="area", amount=Decimal("-1.00"))

    def test_segment_outside_period_is_not_created(self):
        segment = TenancySegment.from_contract(
            period=self.period,
            lease_id=1,
            unit_id=1,
            contract_start=date(2023, 2, 1),
            contract_end=None,
        )
        self.assertIsNone(segment)


class StatementLifecycleTests(BetriebskostenTestMixin, TestCase):
    def setUp(self):
        self._create_base_data()
        self.statement = self._statement()
        self._item(self.statement, "Gebäudeversicherung", Verteilerschluessel.AREA, "1000.00")

    def test_mark_ready_computes_and_stores_results(self):
        StatementLifecycleService(statement=self.statement).mark_ready()

        self.statement.refresh_from_db()
        self.assertEqual(self.statement.status, Betriebskostenabrechnung.Status.READY)
        self.assertEqual(self.statement.ergebnisse.count(), 2)

    def test_mark_ready_without_tenancies_is_rejected(self):
        LeaseAgreement.objects.filter(unit__property=self.property).update(exit_date=date(2020, 12, 31))

        with self.assertRaises(InvalidStatusTransitionError):
            StatementLifecycleService(statement=self.statement).mark_ready()

        self.statement.refresh_from_db()
        self.assertEqual(self.statement.status, Betriebskostenabrechnung.Status.DRAFT)
        self.assertEqual(self.statement.ergebnisse.count(), 0)

    def test_reopen_returns_ready_statement_to_draft(self):
        lifecycle = StatementLifecycleService(statement=self.statement)
        lifecycle.mark_ready()
        Abrechnungsdokument.objects.create(
            abrechnung=self.statement,
            mietervertrag=self.lease_a,
            file="betriebskosten/test.pdf",
            filename="test.pdf",
        )

        lifecycle.reopen()

        self.assertEqual(self.statement.status, Betriebskostenabrechnung.Status.DRAFT)
        self.assertTrue(Abrechnungsdokument.objects.get(abrechnung=self.statement).is_stale)

    def test_reopen_draft_is_rejected(self):
        with self.assertRaises(InvalidStatusTransitionError):
            StatementLifecycleService(statement=self.statement).reopen()

    def test_sent_statement_is_locked(self):
        Betriebskostenabrechnung.objects.filter(pk=self.statement.pk).update(
            status=Betriebskostenabrechnung.Status.SENT
        )
        self.statement.refresh_from_db()

        with self.assertRaises(StatementLockedError):
            OperatingCostStatementService.add_line_item(
                statement=self.statement,
                kostenart="Aufzug",
                verteilerschluessel=Verteilerschluessel.UNITS,
                betrag=Decimal("50.00"),
            )
        with self.assertRaises(StatementLockedError):
            self._item(self.statement, "Aufzug", Verteilerschluessel.UNITS, "50.00")
        with self.assertRaises(StatementLockedError):
            OperatingCostService().compute_results(self.statement.pk, save=True)
        with self.assertRaises(InvalidStatusTransitionError):
            StatementLifecycleService(statement=self.statement).reopen()

    def test_edit_in_ready_marks_documents_stale(self):
        StatementLifecycleService(statement=self.statement).mark_ready()
        document = Abrechnungsdokument.objects.create(
            abrechnung=self.statement,
            mietervertrag=self.lease_a,
            file="betriebskosten/test.pdf",
            filename="test.pdf",
        )

        OperatingCostStatementService.add_line_item(
            statement=self.statement,
            kostenart="Aufzug",
            verteilerschluessel=Verteilerschluessel.UNITS,
            betrag=Decimal("50.00"),
        )

        document.refresh_from_db()
        self.assertTrue(document.is_stale)
        self.assertEqual(self.statement.gesamtkosten, Decimal("1050.00"))

    def test_mark_sent_requires_successful_delivery(self):
        lifecycle = StatementLifecycleService(statement=self.statement)
        lifecycle.mark_ready()
        Versandprotokoll.objects.create(
            abrechnung=self.statement,
            mietervertrag=self.lease_a,
            recipient_email="anna@example.com",
            status=Versandprotokoll.Status.FAILED,
            error_message="SMTP down",
        )
        self.assertFalse(lifecycle.mark_sent_if_delivered())

        Versandprotokoll.objects.create(
            abrechnung=self.statement,
            mietervertrag=self.lease_a,
            recipient_email="anna@example.com",
            status=Versandprotokoll.Status.SUCCESS,
        )
        self.assertTrue(lifecycle.mark_sent_if_delivered())
        self.assertEqual(self.statement.status, Betriebskostenabrechnung.Status.SENT)


class OperatingCostStatementServiceTests(BetriebskostenTestMixin, TestCase):
    def setUp(self):
        self._create_base_data()

    def test_create_statement_validates_period(self):
        with self.assertRaises(ValidationError):
            OperatingCostStatementService.create_statement(
                property_obj=self.property,
                year=2023,
                period_start=date(2023, 6, 1),
            )
        with self.assertRaises(ValidationError):
            OperatingCostStatementService.create_statement(
                property_obj=self.property,
                year=2023,
                period_start=date(2023, 6, 1),
                period_end=date(2023, 5, 1),
            )

    def test_custom_period_uses_its_own_length(self):
        statement = OperatingCostStatementService.create_statement(
            property_obj=self.property,
            year=2023,
            period_start=date(2023, 7, 1),
            period_end=date(2024, 6, 30),
        )
        self._item(statement, "Müllabfuhr", Verteilerschluessel.UNITS, "100.00")

        period = DjangoCostRecordStore().get_statement(statement.pk)
        results = self._results_by_lease(statement)

        self.assertEqual(period.total_days, 366)
        self.assertEqual(results[self.lease_a.pk].cost_share, Decimal("50.00"))

    def test_upsert_line_items_replaces_items_and_total(self):
        statement = self._statement()
        kept = self._item(statement, "Grundsteuer", Verteilerschluessel.AREA, "100.00")
        self._item(statement, "Aufzug", Verteilerschluessel.UNITS, "80.00")

        saved = OperatingCostStatementService.upsert_line_items(
            statement=statement,
            items=[
                {"id": kept.pk, "betrag": Decimal("150.00")},
                {
                    "kostenart": "Hausmeister",
                    "verteilerschluessel": Verteilerschluessel.PERSONS,
                    "betrag": Decimal("90.00"),
                },
            ],
        )

        self.assertEqual([position.kostenart for position in saved], ["Grundsteuer", "Hausmeister"])
        self.assertEqual(saved[0].pk, kept.pk)
        self.assertEqual(statement.positionen.count(), 2)
        self.assertEqual(statement.gesamtkosten, Decimal("240.00"))

    def test_upsert_rejects_negative_amount(self):
        statement = self._statement()

        with self.assertRaises(ValidationError):
            OperatingCostStatementService.upsert_line_items(
                statement=statement,
                items=[{"kostenart": "Gutschrift", "verteilerschluessel": "area", "betrag": Decimal("-5.00")}],
            )

    def test_delete_line_item_updates_total(self):
        statement = self._statement()
        self._item(statement, "Grundsteuer", Verteilerschluessel.AREA, "100.00")
        position = self._item(statement, "Aufzug", Verteilerschluessel.UNITS, "80.00")

        OperatingCostStatementService.delete_line_item(position=position)

        statement.refresh_from_db()
        self.assertEqual(statement.gesamtkosten, Decimal("100.00"))

    def test_delete_statement_only_in_draft(self):
        statement = self._statement()
        self._item(statement, "Grundsteuer", Verteilerschluessel.AREA, "100.00")
        StatementLifecycleService(statement=statement).mark_ready()

        with self.assertRaises(StatementLockedError):
            OperatingCostStatementService.delete_statement(statement=statement)

        StatementLifecycleService(statement=statement).reopen()
        OperatingCostStatementService.delete_statement(statement=statement)
        self.assertFalse(Betriebskostenabrechnung.objects.filter(pk=statement.pk).exists())
        self.assertFalse(Kostenposition.objects.filter(abrechnung_id=statement.pk).exists())

    def test_delete_reopened_statement_with_send_log_is_rejected(self):
        self._use_temp_media()
        statement = self._statement()
        self._item(statement, "Grundsteuer", Verteilerschluessel.AREA, "100.00")
        lifecycle = StatementLifecycleService(statement=statement)
        lifecycle.mark_ready()
        document = AnnualStatementStorageService.persist_statement_pdf(
            statement=statement,
            lease=self.lease_a,
            filename="brief.pdf",
            pdf_bytes=FAKE_PDF,
        )
        Versandprotokoll.objects.create(
            abrechnung=statement,
            mietervertrag=self.lease_a,
            dokument=document,
            recipient_email="anna@example.com",
            status=Versandprotokoll.Status.FAILED,
            error_message="SMTP down",
        )
        lifecycle.reopen()

        with self.assertRaises(StatementLockedError):
            OperatingCostStatementService.delete_statement(statement=statement)

        self.assertTrue(Betriebskostenabrechnung.objects.filter(pk=statement.pk).exists())
        document.refresh_from_db()
        self.assertTrue(document.file.storage.exists(document.file.name))

    def test_delete_statement_removes_pdf_files_after_commit(self):
        self._use_temp_media()
        statement = self._statement()
        document = AnnualStatementStorageService.persist_statement_pdf(
            statement=statement,
            lease=self.lease_a,
            filename="brief.pdf",
            pdf_bytes=FAKE_PDF,
        )
        storage, name = document.file.storage, document.file.name

        with self.captureOnCommitCallbacks(execute=True):
            OperatingCostStatementService.delete_statement(statement=statement)
            self.assertTrue(storage.exists(name))

        self.assertFalse(storage.exists(name))
        self.assertFalse(Abrechnungsdokument.objects.filter(pk=document.pk).exists())

    def test_apply_allocation_defaults_fills_only_missing_values(self):
        statement = self._statement(alloc_total_area=Decimal("120.00"))

        OperatingCostStatementService.apply_allocation_defaults(statement=statement)

        statement.refresh_from_db()
        self.assertEqual(statement.alloc_total_area, Decimal("120.00"))
        self.assertEqual(statement.alloc_total_units, 2)
        self.assertEqual(statement.alloc_total_persons, 3)
        self.assertEqual(statement.alloc_total_mea, Decimal("1000.0000"))

        OperatingCostStatementService.apply_allocation_defaults(statement=statement, overwrite=True)

        statement.refresh_from_db()
        self.assertEqual(statement.alloc_total_area, Decimal("100.00"))

    def test_apply_allocation_defaults_rejects_sent_statement(self):
        statement = self._statement(status=Betriebskostenabrechnung.Status.SENT)

        with self.assertRaises(StatementLockedError):
            OperatingCostStatementService.apply_allocation_defaults(statement=statement)

    def test_custom_unit_mea_requires_mea_key(self):
        statement = self._statement(einheit=self.unit_a)

        with self.assertRaises(ValidationError):
            OperatingCostStatementService.add_line_item(
                statement=statement,
                kostenart="Grundsteuer",
                verteilerschluessel=Verteilerschluessel.AREA,
                betrag=Decimal("100.00"),
                custom_unit_mea=Decimal("250"),
            )

    def test_list_statements_filters_by_year_and_search(self):
        self._statement(jahr=2022)
        current = self._statement(jahr=2023)

        self.assertEqual(list(OperatingCostStatementService.list_statements(year=2023)), [current])
        self.assertEqual(
            OperatingCostStatementService.list_statements(search="linden").count(),
            2,
        )
        self.assertEqual(OperatingCostStatementService.list_statements(search="nirgendwo").count(), 0)

    def test_statement_detail_contains_stored_results(self):
        statement = self._statement()
        self._item(statement, "Grundsteuer", Verteilerschluessel.AREA, "100.00")
        StatementLifecycleService(statement=statement).mark_ready()

        detail = OperatingCostStatementService.statement_detail(statement)

        self.assertEqual(len(detail["results"]), 2)
        self.assertTrue(detail["results_are_current"])
        self.assertEqual(detail["period_start"], date(2023, 1, 1))


class CostTemplateServiceTests(BetriebskostenTestMixin, TestCase):
    def setUp(self):
        self._create_base_data()

    def test_template_prefills_next_year_statement(self):
        statement = self._statement(alloc_total_area=Decimal("120.00"))
        self._item(statement, "Grundsteuer", Verteilerschluessel.AREA, "100.00", sort_order=10)
        self._item(
            statement,
            "Gartenpflege",
            Verteilerschluessel.UNITS,
            "80.00",
            sort_order=20,
            is_section_35a=True,
            section_35a_kategorie=Kostenposition.Section35aKategorie.HANDWERKERLEISTUNGEN,
        )

        template = CostTemplateService.save_from_statement(statement=statement, name="Standard")
        next_statement = OperatingCostStatementService.create_statement(property_obj=self.property, year=2024)

        self.assertEqual(Kostenvorlage.objects.count(), 1)
        self.assertEqual(template.positionen.count(), 2)
        positions = list(next_statement.positionen.all())
        self.assertEqual([position.kostenart for position in positions], ["Grundsteuer", "Gartenpflege"])
        self.assertTrue(all(position.betrag == Decimal("0.00") for position in positions))
        self.assertTrue(positions[1].is_section_35a)
        next_statement.refresh_from_db()
        self.assertEqual(next_statement.alloc_total_area, Decimal("120.00"))

    def test_unit_template_wins_over_property_template(self):
        property_statement = self._statement()
        self._item(property_statement, "Grundsteuer", Verteilerschluessel.AREA, "100.00")
        CostTemplateService.save_from_statement(statement=property_statement)
        unit_statement = self._statement(einheit=self.unit_a)
        self._item(unit_statement, "Aufzug", Verteilerschluessel.UNITS, "10.00")
        unit_template = CostTemplateService.save_from_statement(statement=unit_statement)

        self.assertEqual(
            CostTemplateService.template_for(property_obj=self.property, unit=self.unit_a),
            unit_template,
        )
        self.assertIsNone(CostTemplateService.template_for(property_obj=self.property, unit=self.unit_b).einheit)


class AnnualStatementRunTests(BetriebskostenTestMixin, TestCase):
    def setUp(self):
        self._create_base_data()
        self._use_temp_media()
        self.statement = self._statement()
        self._item(
            self.statement,
            "Gebäudeversicherung",
            Verteilerschluessel.AREA,
            "1000.00",
            gruppe="Versicherungen",
        )
        Vorauszahlung.objects.create(mietervertrag=self.lease_a, datum=date(2023, 3, 1), betrag=Decimal("650.00"))

    def test_format_money_uses_german_separators(self):
        self.assertEqual(AnnualStatementRunService._format_money_at(Decimal("1234.5")), "1.234,50")
        self.assertEqual(AnnualStatementRunService._format_money_at(None), "0,00")

    def test_payload_for_amount_owed_contains_payment_qr(self):
        run = AnnualStatementRunService(statement=self.statement)
        results = {result.lease_id: result for result in run.results()}

        owed = run.payload_for_result(result=results[self.lease_b.pk])
        refund = run.payload_for_result(result=results[self.lease_a.pk])

        self.assertEqual(owed["payment_type"], "nachzahlung")
        self.assertEqual(owed["balance_display"], "400,00")
        self.assertTrue(owed["payment_qr_data_uri"].startswith("data:image/svg+xml;base64,"))
        self.assertEqual(owed["greeting_text"], "Sehr geehrter Herr Muster,")
        self.assertEqual(refund["payment_type"], "guthaben")
        self.assertEqual(refund["payment_qr_data_uri"], "")
        self.assertEqual(refund["breakdown_sections"][0]["label"], "Versicherungen")

    def test_render_html_contains_breakdown(self):
        run = AnnualStatementRunService(statement=self.statement)
        result = [result for result in run.results() if result.lease_id == self.lease_b.pk][0]

        html = AnnualStatementPdfService.render_html(payload=run.payload_for_result(result=result))

        self.assertIn("Betriebskostenabrechnung 2023", html)
        self.assertIn("Gebäudeversicherung", html)
        self.assertIn("400,00", html)

    def test_generate_documents_marks_ready_and_skips_current_documents(self):
        run = AnnualStatementRunService(statement=self.statement)

        with patch.object(AnnualStatementPdfService, "generate_letter_pdf", return_value=FAKE_PDF) as pdf_mock:
            documents = run.generate_documents()
            run.generate_documents()

        self.assertEqual(len(documents), 2)
        self.assertEqual(pdf_mock.call_count, 2)
        self.statement.refresh_from_db()
        self.assertEqual(self.statement.status, Betriebskostenabrechnung.Status.READY)
        self.assertTrue(all(document.filename.endswith(".pdf") for document in documents))

    def test_regenerated_letters_use_items_added_after_release(self):
        run = AnnualStatementRunService(statement=self.statement)

        with patch.object(AnnualStatementPdfService, "generate_letter_pdf", return_value=FAKE_PDF) as pdf_mock:
            run.generate_documents()
            OperatingCostStatementService.add_line_item(
                statement=self.statement,
                kostenart="Aufzug",
                verteilerschluessel=Verteilerschluessel.AREA,
                betrag=Decimal("1000.00"),
            )
            pdf_mock.reset_mock()
            run.generate_documents()

        payloads = {
            call.kwargs["payload"]["tenant_names"]: call.kwargs["payload"]
            for call in pdf_mock.call_args_list
        }
        self.assertEqual(payloads["Anna Beispiel"]["cost_share_display"], "1.200,00")
        self.assertEqual(payloads["Anna Beispiel"]["balance"], Decimal("550.00"))
        self.assertEqual(payloads["Bernd Muster"]["cost_share_display"], "800,00")
        stored = {result.lease_id: result for result in DjangoCostRecordStore.stored_results(self.statement)}
        self.assertEqual(stored[self.lease_a.pk].cost_share, Decimal("1200.00"))
        self.assertFalse(self.statement.dokumente.filter(is_stale=True).exists())

    def test_results_pick_up_payments_recorded_after_release(self):
        run = AnnualStatementRunService(statement=self.statement)
        run.results()
        Vorauszahlung.objects.create(mietervertrag=self.lease_b, datum=date(2023, 9, 1), betrag=Decimal("400.00"))

        results = {result.lease_id: result for result in run.results()}

        self.assertEqual(results[self.lease_b.pk].prepayments, Decimal("400.00"))
        self.assertEqual(results[self.lease_b.pk].balance, Decimal("0.00"))

    def test_generate_letters_zip_contains_one_pdf_per_tenancy(self):
        run = AnnualStatementRunService(statement=self.statement)

        with patch.object(AnnualStatementPdfService, "generate_letter_pdf", return_value=FAKE_PDF):
            zip_bytes, count = run.generate_letters_zip()

        self.assertEqual(count, 2)
        self.assertTrue(zip_bytes.startswith(b"PK"))

    def test_persist_replaces_existing_document(self):
        first = AnnualStatementStorageService.persist_statement_pdf(
            statement=self.statement,
            lease=self.lease_a,
            filename="brief.pdf",
            pdf_bytes=FAKE_PDF,
        )
        Abrechnungsdokument.objects.filter(pk=first.pk).update(is_stale=True)

        second = AnnualStatementStorageService.persist_statement_pdf(
            statement=self.statement,
            lease=self.lease_a,
            filename="brief.pdf",
            pdf_bytes=b"%PDF-1.4 neu",
        )

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Abrechnungsdokument.objects.filter(abrechnung=self.statement).count(), 1)
        second.refresh_from_db()
        self.assertFalse(second.is_stale)
        with second.file.open("rb") as handle:
            self.assertEqual(handle.read(), b"%PDF-1.4 neu")


class PaymentQrCodeServiceTests(SimpleTestCase):
    def test_epc_payload_layout(self):
        payload = PaymentQrCodeService.epc_payload(
            name="HV Muster GmbH",
            iban="de89 3704 0044 0532 0130 00",
            bic="COBADEFFXXX",
            amount=Decimal("400.00"),
            remittance="Betriebskostenabrechnung 2023",
        )

        lines = payload.split("\n")
        self.assertEqual(lines[:4], ["BCD", "002", "1", "SCT"])
        self.assertEqual(lines[6], "DE89370400440532013000")
        self.assertEqual(lines[7], "EUR400.00")
        self.assertEqual(lines[-1], "Betriebskostenabrechnung 2023")

    def test_no_payload_without_iban_or_amount(self):
        self.assertEqual(
            PaymentQrCodeService.qr_data_uri(name="HV", iban="", amount=Decimal("10.00"), remittance="x"),
            "",
        )
        self.assertEqual(
            PaymentQrCodeService.epc_payload(name="HV", iban="DE89", amount=Decimal("0.00"), remittance="x"),
            "",
        )


@override_settings(EMAIL_BACKEND="django.core.mail.backends.locmem.EmailBackend")
class StatementMailerTests(BetriebskostenTestMixin, TestCase):
    def setUp(self):
        self._create_base_data()
        self._use_temp_media()
        self.statement = self._statement()
        self._item(self.statement, "Gebäudeversicherung", Verteilerschluessel.AREA, "1000.00")
        pdf_patch = patch.object(AnnualStatementPdfService, "generate_letter_pdf", return_value=FAKE_PDF)
        pdf_patch.start()
        self.addCleanup(pdf_patch.stop)

    def test_send_all_delivers_and_marks_statement_sent(self):
        summary = StatementMailer(statement=self.statement).send_all()

        self.assertEqual(summary["sent"], 2)
        self.assertEqual(len(mail.outbox), 2)
        self.assertEqual(mail.outbox[0].attachments[0][2], "application/pdf")
        self.assertEqual(
            Versandprotokoll.objects.filter(status=Versandprotokoll.Status.SUCCESS).count(),
            2,
        )
        self.statement.refresh_from_db()
        self.assertEqual(self.statement.status, Betriebskostenabrechnung.Status.SENT)

    def test_second_run_skips_delivered_tenancies_unless_forced(self):
        mailer = StatementMailer(statement=self.statement)
        mailer.send_all()

        summary = mailer.send_all()
        self.assertEqual(summary["skipped"], 2)
        self.assertEqual(len(mail.outbox), 2)

        forced = mailer.send_all(force=True)
        self.assertEqual(forced["sent"], 2)
        self.assertEqual(len(mail.outbox), 4)

    def test_send_uses_current_figures_after_edit_in_ready(self):
        StatementLifecycleService(statement=self.statement).mark_ready()
        Vorauszahlung.objects.create(mietervertrag=self.lease_b, datum=date(2023, 9, 1), betrag=Decimal("400.00"))

        StatementMailer(statement=self.statement).send_all()

        bodies = {message.to[0]: message.body for message in mail.outbox}
        self.assertIn("ausgeglichen", bodies["bernd@example.com"])
        self.assertIn("Nachzahlung in Höhe von 600,00 EUR", bodies["anna@example.com"])

    def test_missing_email_is_logged_as_failure(self):
        Tenant.objects.filter(pk=self.tenant_b.pk).update(email="")

        summary = StatementMailer(statement=self.statement).send_all()

        self.assertEqual(summary["sent"], 1)
        self.assertEqual(summary["failed"], 1)
        failed = Versandprotokoll.objects.get(status=Versandprotokoll.Status.FAILED)
        self.assertEqual(failed.mietervertrag_id, self.lease_b.pk)
        self.assertIn("keine E-Mail-Adresse", failed.error_message)

    def test_only_failures_keep_statement_ready(self):
        Tenant.objects.update(email="")
        mailer = StatementMailer(statement=self.statement)
        result = mailer.run_service.results()[0]

        with self.assertRaises(StatementSendError):
            mailer.send_result(result=result)

        self.statement.refresh_from_db()
        self.assertEqual(self.statement.status, Betriebskostenabrechnung.Status.READY)
        self.assertEqual(Versandprotokoll.objects.count(), 1)

    def test_pdf_generation_failure_is_logged(self):
        mailer = StatementMailer(statement=self.statement)
        result = mailer.run_service.results()[0]

        with patch.object(AnnualStatementRunService, "generate_document", side_effect=RuntimeError("PDF kaputt")):
            with self.assertRaises(StatementSendError):
                mailer.send_result(result=result)

        log_entry = Versandprotokoll.objects.get()
        self.assertEqual(log_entry.status, Versandprotokoll.Status.FAILED)
        self.assertEqual(log_entry.error_message, "PDF kaputt")


@override_settings(EMAIL_BACKEND="django.core.mail.backends.locmem.EmailBackend")
class ManagementCommandTests(BetriebskostenTestMixin, TestCase):
    def setUp(self):
        self._create_base_data()
        self._use_temp_media()
        self.statement = self._statement()
        self._item(self.statement, "Gebäudeversicherung", Verteilerschluessel.AREA, "1000.00")

    def test_compute_command_prints_and_saves_results(self):
        out = StringIO()

        call_command("compute_operating_costs", str(self.statement.pk), "--save", stdout=out)

        output = out.getvalue()
        self.assertIn("Saldo: 600.00", output)
        self.assertIn("2 Ergebnis(se) gespeichert", output)
        self.assertEqual(self.statement.ergebnisse.count(), 2)

    def test_compute_command_unknown_statement(self):
        with self.assertRaises(CommandError):
            call_command("compute_operating_costs", "999999", stdout=StringIO())

    def test_send_command_dry_run_sends_nothing(self):
        out = StringIO()

        call_command("send_operating_cost_statements", str(self.statement.pk), "--dry-run", stdout=out)

        self.assertIn("Geplant: 2", out.getvalue())
        self.assertEqual(len(mail.outbox), 0)
        self.assertFalse(Versandprotokoll.objects.exists())
        self.statement.refresh_from_db()
        self.assertEqual(self.statement.status, Betriebskostenabrechnung.Status.DRAFT)

    def test_send_command_delivers_letters(self):
        out = StringIO()

        with patch.object(AnnualStatementPdfService, "generate_letter_pdf", return_value=FAKE_PDF):
            call_command("send_operating_cost_statements", str(self.statement.pk), stdout=out)

        self.assertIn("Versendet: 2", out.getvalue())
        self.assertEqual(len(mail.outbox), 2)
        self.statement.refresh_from_db()
        self.assertEqual(self.statement.status, Betriebskostenabrechnung.Status.SENT)


class MigrationTests(TestCase):
    def test_models_match_committed_migrations(self):
        out = StringIO()

        call_command("makemigrations", "betriebskosten", "--check", "--dry-run", stdout=out)

        self.assertIn("No changes detected", out.getvalue())
