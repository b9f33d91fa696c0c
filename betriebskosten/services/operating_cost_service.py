from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Mapping, Protocol

from ..models import Verteilerschluessel

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
RAW = Decimal("0.0000001")
ZERO = Decimal("0.00")


def quantize_cent(value: Decimal | str | int | None) -> Decimal:
    return Decimal(value or ZERO).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_raw(value: Decimal | str | int | None) -> Decimal:
    return Decimal(value or ZERO).quantize(RAW, rounding=ROUND_HALF_UP)


def _decimal_or_none(value: Decimal | str | int | None) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))


@dataclass(frozen=True, slots=True)
class AllocationBasis:
    """Stored denominators that replace the computed property totals."""

    total_area: Decimal | None = None
    unit_count: int | None = None
    total_persons: int | None = None
    total_mea: Decimal | None = None


@dataclass(frozen=True, slots=True)
class BillingPeriod:
    statement_id: int
    property_id: int
    start: date
    end: date
    unit_id: int | None = None
    status: str = "draft"
    basis: AllocationBasis = field(default_factory=AllocationBasis)

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("Billing period ends before it starts.")

    @classmethod
    def for_year(cls, *, statement_id: int, property_id: int, year: int, **kwargs) -> BillingPeriod:
        return cls(
            statement_id=statement_id,
            property_id=property_id,
            start=date(int(year), 1, 1),
            end=date(int(year), 12, 31),
            **kwargs,
        )

    @property
    def total_days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass(frozen=True, slots=True)
class CostLineItem:
    cost_type: str
    allocation_key: str
    amount: Decimal
    item_id: int | None = None
    group_label: str = ""
    is_section_35a: bool = False
    section_35a_category: str = ""
    custom_unit_mea: Decimal | None = None

    def __post_init__(self) -> None:
        amount = quantize_cent(self.amount)
        if amount < ZERO:
            raise ValueError(f"Cost line item '{self.cost_type}' has a negative amount.")
        object.__setattr__(self, "amount", amount)
        object.__setattr__(self, "custom_unit_mea", _decimal_or_none(self.custom_unit_mea))


@dataclass(frozen=True, slots=True)
class OccupancyUnit:
    unit_id: int
    label: str = ""
    area_sqm: Decimal | None = None
    mea: Decimal | None = None


@dataclass(frozen=True, slots=True)
class TenancySegment:
    lease_id: int
    unit_id: int
    start: date
    end: date
    tenant_id: int | None = None
    tenant_name: str = ""
    household_size: int | None = None

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("Tenancy segment ends before it starts.")

    @classmethod
    def from_contract(
        cls,
        *,
        period: BillingPeriod,
        lease_id: int,
        unit_id: int,
        contract_start: date,
        contract_end: date | None,
        tenant_id: int | None = None,
        tenant_name: str = "",
        household_size: int | None = None,
    ) -> TenancySegment | None:
        effective_start = max(contract_start, period.start)
        effective_end = min(contract_end or period.end, period.end)
        if effective_end < effective_start:
            return None
        return cls(
            lease_id=lease_id,
            unit_id=unit_id,
            start=effective_start,
            end=effective_end,
            tenant_id=tenant_id,
            tenant_name=tenant_name,
            household_size=household_size,
        )

    @property
    def days_in_period(self) -> int:
        return (self.end - self.start).days + 1


@dataclass(frozen=True, slots=True)
class CostShareLine:
    cost_type: str
    allocation_key: str
    source_amount: Decimal
    share: Decimal
    group_label: str = ""
    is_section_35a: bool = False
    section_35a_category: str = ""

    def as_dict(self) -> dict[str, object]:
        return {
            "cost_type": self.cost_type,
            "allocation_key": self.allocation_key,
            "source_amount": str(self.source_amount),
            "share": str(self.share),
            "group_label": self.group_label,
            "is_section_35a": self.is_section_35a,
            "section_35a_category": self.section_35a_category,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CostShareLine:
        return cls(
            cost_type=str(data.get("cost_type") or ""),
            allocation_key=str(data.get("allocation_key") or ""),
            source_amount=quantize_cent(data.get("source_amount")),
            share=quantize_cent(data.get("share")),
            group_label=str(data.get("group_label") or ""),
            is_section_35a=bool(data.get("is_section_35a")),
            section_35a_category=str(data.get("section_35a_category") or ""),
        )


@dataclass(frozen=True, slots=True)
class AllocationResult:
    lease_id: int
    unit_id: int
    tenant_id: int | None
    tenant_name: str
    period_start: date
    period_end: date
    days_in_period: int
    area_sqm: Decimal
    household_size: int
    breakdown: tuple[CostShareLine, ...]
    cost_share: Decimal
    prepayments: Decimal
    balance: Decimal

    @property
    def is_refund(self) -> bool:
        return self.balance < ZERO

    @property
    def section_35a_totals(self) -> dict[str, Decimal]:
        totals: dict[str, Decimal] = {}
        for line in self.breakdown:
            if not line.is_section_35a:
                continue
            key = line.section_35a_category or "ohne_kategorie"
            totals[key] = (totals.get(key, ZERO) + line.share).quantize(CENT)
        return totals

    def as_dict(self) -> dict[str, object]:
        return {
            "lease_id": self.lease_id,
            "unit_id": self.unit_id,
            "tenant_id": self.tenant_id,
            "tenant_name": self.tenant_name,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "days_in_period": self.days_in_period,
            "area_sqm": str(self.area_sqm),
            "household_size": self.household_size,
            "breakdown": [line.as_dict() for line in self.breakdown],
            "cost_share": str(self.cost_share),
            "prepayments": str(self.prepayments),
            "balance": str(self.balance),
        }


@dataclass(frozen=True, slots=True)
class AllocationWarning:
    code: str
    message: str
    item_id: int | None = None
    lease_id: int | None = None
    unit_id: int | None = None


@dataclass(frozen=True, slots=True)
class AllocationOutcome:
    results: tuple[AllocationResult, ...]
    warnings: tuple[AllocationWarning, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.results


class AllocationContext:
    """Denominators and lookups computed once per allocation run."""

    def __init__(
        self,
        *,
        period: BillingPeriod,
        units: Iterable[OccupancyUnit],
        segments: Iterable[TenancySegment],
    ) -> None:
        self.period = period
        self.units_by_id = {unit.unit_id: unit for unit in units}
        segment_list = list(segments)
        basis = period.basis

        computed_area = sum(
            (unit.area_sqm for unit in self.units_by_id.values() if unit.area_sqm is not None),
            ZERO,
        )
        computed_mea = sum(
            (unit.mea for unit in self.units_by_id.values() if unit.mea is not None),
            Decimal("0"),
        )
        computed_persons = sum(int(segment.household_size or 0) for segment in segment_list)

        self.total_area = _decimal_or_none(basis.total_area)
        if self.total_area is None:
            self.total_area = computed_area
        self.unit_count = int(basis.unit_count) if basis.unit_count is not None else len(self.units_by_id)
        self.total_persons = (
            int(basis.total_persons) if basis.total_persons is not None else computed_persons
        )
        self.total_mea = _decimal_or_none(basis.total_mea)
        if self.total_mea is None:
            self.total_mea = computed_mea

    def unit_for(self, segment: TenancySegment) -> OccupancyUnit | None:
        return self.units_by_id.get(segment.unit_id)

    def day_factor(self, segment: TenancySegment) -> Decimal:
        return Decimal(segment.days_in_period) / Decimal(self.period.total_days)


class AllocationStrategy(Protocol):
    key: str
    label: str

    def denominator(self, context: AllocationContext) -> Decimal:
        ...

    def weight(self, segment: TenancySegment, context: AllocationContext) -> Decimal | None:
        ...


class AreaAllocationStrategy:
    key = Verteilerschluessel.AREA.value
    label = "Wohnfläche"

    def denominator(self, context: AllocationContext) -> Decimal:
        return Decimal(context.total_area)

    def weight(self, segment: TenancySegment, context: AllocationContext) -> Decimal | None:
        unit = context.unit_for(segment)
        if unit is None or unit.area_sqm is None:
            return None
        return Decimal(unit.area_sqm)


class UnitCountAllocationStrategy:
    key = Verteilerschluessel.UNITS.value
    label = "Wohneinheiten"

    def denominator(self, context: AllocationContext) -> Decimal:
        return Decimal(context.unit_count)

    def weight(self, segment: TenancySegment, context: AllocationContext) -> Decimal | None:
        return Decimal("1")


class PersonsAllocationStrategy:
    key = Verteilerschluessel.PERSONS.value
    label = "Personen"

    def denominator(self, context: AllocationContext) -> Decimal:
        return Decimal(context.total_persons)

    def weight(self, segment: TenancySegment, context: AllocationContext) -> Decimal | None:
        if segment.household_size is None:
            return None
        return Decimal(segment.household_size)


class MeaAllocationStrategy:
    key = Verteilerschluessel.MEA.value
    label = "Miteigentumsanteile"

    def denominator(self, context: AllocationContext) -> Decimal:
        return Decimal(context.total_mea)

    def weight(self, segment: TenancySegment, context: AllocationContext) -> Decimal | None:
        unit = context.unit_for(segment)
        if unit is None or unit.mea is None:
            return None
        return Decimal(unit.mea)


class ConsumptionAllocationStrategy:
    # Verbrauchsdaten sind nicht angebunden: gültiger Schlüssel, Anteil immer 0.
    key = Verteilerschluessel.CONSUMPTION.value
    label = "Verbrauch"

    def denominator(self, context: AllocationContext) -> Decimal:
        return ZERO

    def weight(self, segment: TenancySegment, context: AllocationContext) -> Decimal | None:
        return ZERO


class DirectAllocationStrategy:
    """Voller Betrag an die abgerechnete Einheit, nur tagesanteilig gekürzt."""

    def __init__(self, key: str, label: str) -> None:
        self.key = key
        self.label = label

    def denominator(self, context: AllocationContext) -> Decimal:
        return Decimal("1")

    def weight(self, segment: TenancySegment, context: AllocationContext) -> Decimal | None:
        return Decimal("1")


DEFAULT_STRATEGIES: tuple[AllocationStrategy, ...] = (
    AreaAllocationStrategy(),
    UnitCountAllocationStrategy(),
    PersonsAllocationStrategy(),
    ConsumptionAllocationStrategy(),
    MeaAllocationStrategy(),
    DirectAllocationStrategy(Verteilerschluessel.DIRECT.value, "Direktzuordnung"),
    DirectAllocationStrategy(Verteilerschluessel.CONSUMPTION_BILLING.value, "Verbrauchsabrechnung"),
)

UNIT_SCOPED_KEYS = frozenset(
    {Verteilerschluessel.DIRECT.value, Verteilerschluessel.CONSUMPTION_BILLING.value}
)

_MISSING_FIELD_BY_KEY = {
    Verteilerschluessel.AREA.value: "Wohnfläche",
    Verteilerschluessel.PERSONS.value: "Personenanzahl",
    Verteilerschluessel.MEA.value: "Miteigentumsanteil",
}


class OperatingCostAllocator:
    """Verteilt Kostenpositionen tagesgenau auf Mietverhältnisse.

    Reine Berechnung ohne Datenbankzugriff: gleiche Eingaben liefern
    immer dieselben Ergebnisse.
    """

    def __init__(self, strategies: Iterable[AllocationStrategy] | None = None) -> None:
        self.strategies = {
            strategy.key: strategy for strategy in (strategies or DEFAULT_STRATEGIES)
        }

    def allocate(
        self,
        *,
        period: BillingPeriod,
        line_items: Iterable[CostLineItem],
        units: Iterable[OccupancyUnit],
        segments: Iterable[TenancySegment],
        prepayments: Mapping[int, Decimal] | None = None,
    ) -> AllocationOutcome:
        all_segments = list(segments)
        context = AllocationContext(period=period, units=units, segments=all_segments)
        billed_segments = self._billed_segments(period=period, segments=all_segments, context=context)
        if not billed_segments:
            return AllocationOutcome(results=())

        items = list(line_items)
        warnings: list[AllocationWarning] = []
        seen_warnings: set[tuple[str, str]] = set()

        def warn(code: str, message: str, **refs) -> None:
            marker = (code, message)
            if marker in seen_warnings:
                return
            seen_warnings.add(marker)
            warnings.append(AllocationWarning(code=code, message=message, **refs))

        shares_by_segment: list[list[CostShareLine]] = [[] for _ in billed_segments]
        for item in items:
            shares = self._distribute_item(
                item=item,
                segments=billed_segments,
                context=context,
                warn=warn,
            )
            for index, share in enumerate(shares):
                shares_by_segment[index].append(
                    CostShareLine(
                        cost_type=item.cost_type,
                        allocation_key=item.allocation_key,
                        source_amount=item.amount,
                        share=share,
                        group_label=item.group_label,
                        is_section_35a=item.is_section_35a,
                        section_35a_category=item.section_35a_category,
                    )
                )

        prepayment_map = prepayments or {}
        results: list[AllocationResult] = []
        for segment, breakdown in zip(billed_segments, shares_by_segment):
            unit = context.unit_for(segment)
            cost_share = sum((line.share for line in breakdown), ZERO).quantize(CENT)
            paid = quantize_cent(prepayment_map.get(segment.lease_id))
            results.append(
                AllocationResult(
                    lease_id=segment.lease_id,
                    unit_id=segment.unit_id,
                    tenant_id=segment.tenant_id,
                    tenant_name=segment.tenant_name,
                    period_start=segment.start,
                    period_end=segment.end,
                    days_in_period=segment.days_in_period,
                    area_sqm=quantize_cent(unit.area_sqm if unit else None),
                    household_size=int(segment.household_size or 0),
                    breakdown=tuple(breakdown),
                    cost_share=cost_share,
                    prepayments=paid,
                    balance=(cost_share - paid).quantize(CENT),
                )
            )

        return AllocationOutcome(results=tuple(results), warnings=tuple(warnings))

    @staticmethod
    def _billed_segments(
        *,
        period: BillingPeriod,
        segments: list[TenancySegment],
        context: AllocationContext,
    ) -> list[TenancySegment]:
        billed = [
            segment
            for segment in segments
            if period.unit_id is None or segment.unit_id == period.unit_id
        ]
        billed.sort(
            key=lambda segment: (
                (context.unit_for(segment).label if context.unit_for(segment) else "").casefold(),
                segment.unit_id,
                segment.start,
                segment.lease_id,
            )
        )
        return billed

    def _distribute_item(
        self,
        *,
        item: CostLineItem,
        segments: list[TenancySegment],
        context: AllocationContext,
        warn,
    ) -> list[Decimal]:
        zeros = [ZERO for _ in segments]
        strategy = self.strategies.get(item.allocation_key)
        if strategy is None:
            warn(
                "invalid_allocation_key",
                f"Kostenposition '{item.cost_type}' hat einen unbekannten Verteilerschlüssel "
                f"'{item.allocation_key}' und wird nicht verteilt.",
                item_id=item.item_id,
            )
            return zeros

        if item.allocation_key == Verteilerschluessel.CONSUMPTION:
            if item.amount > ZERO:
                warn(
                    "consumption_without_data",
                    f"Für '{item.cost_type}' liegen keine Verbrauchsdaten vor; Anteil 0,00.",
                    item_id=item.item_id,
                )
            return zeros

        if item.allocation_key in UNIT_SCOPED_KEYS and context.period.unit_id is None:
            if item.amount > ZERO:
                warn(
                    "direct_without_unit",
                    f"'{item.cost_type}' ist direkt zugeordnet, die Abrechnung gilt aber für die "
                    "ganze Liegenschaft; Anteil 0,00.",
                    item_id=item.item_id,
                )
            return zeros

        unit_mea_override = item.custom_unit_mea
        if unit_mea_override is not None and (
            item.allocation_key != Verteilerschluessel.MEA or context.period.unit_id is None
        ):
            warn(
                "custom_mea_ignored",
                f"Abweichender Miteigentumsanteil bei '{item.cost_type}' gilt nur für "
                "Einheitenabrechnungen mit Schlüssel Miteigentumsanteile und wird ignoriert.",
                item_id=item.item_id,
            )
            unit_mea_override = None

        denominator = strategy.denominator(context)
        if denominator <= ZERO:
            if item.amount > ZERO:
                warn(
                    "degenerate_denominator",
                    f"Summe für Verteilerschlüssel '{strategy.label}' ist 0; "
                    f"'{item.cost_type}' wird nicht verteilt.",
                    item_id=item.item_id,
                )
            return zeros

        raw_shares: list[Decimal] = []
        for segment in segments:
            if unit_mea_override is not None:
                weight = unit_mea_override
            else:
                weight = strategy.weight(segment, context)
            if weight is None:
                warn(
                    "partial_data_gap",
                    f"{_MISSING_FIELD_BY_KEY.get(item.allocation_key, 'Wert')} fehlt für "
                    f"Mietvertrag {segment.lease_id}; es wird mit 0 gerechnet.",
                    lease_id=segment.lease_id,
                    unit_id=segment.unit_id,
                )
                weight = ZERO
            if weight <= ZERO:
                raw_shares.append(ZERO)
                continue
            raw_shares.append(
                quantize_raw(item.amount * weight / denominator * context.day_factor(segment))
            )

        return self._round_with_correction(raw_shares)

    @staticmethod
    def _round_with_correction(raw_shares: list[Decimal]) -> list[Decimal]:
        rounded = [quantize_cent(raw) for raw in raw_shares]
        target = quantize_cent(sum(raw_shares, ZERO))
        diff = (target - sum(rounded, ZERO)).quantize(CENT)
        if diff == ZERO:
            return rounded

        step = CENT if diff > ZERO else -CENT
        candidates = [index for index, raw in enumerate(raw_shares) if raw > ZERO]
        if not candidates:
            return rounded
        candidates.sort(
            key=lambda index: raw_shares[index] - rounded[index],
            reverse=diff > ZERO,
        )
        cents_to_allocate = int((diff.copy_abs() / CENT).to_integral_value())
        for offset in range(cents_to_allocate):
            index = candidates[offset % len(candidates)]
            rounded[index] = (rounded[index] + step).quantize(CENT)
        return rounded


class OperatingCostService:
    """Einstiegspunkt für die Berechnung einer Betriebskostenabrechnung."""

    def __init__(self, *, store=None, allocator: OperatingCostAllocator | None = None) -> None:
        if store is None:
            from .cost_record_store import DjangoCostRecordStore

            store = DjangoCostRecordStore()
        self.store = store
        self.allocator = allocator or OperatingCostAllocator()

    def compute(self, statement_id: int) -> AllocationOutcome:
        with self.store.snapshot():
            period = self.store.get_statement(statement_id)
            line_items = self.store.list_cost_line_items(statement_id)
            units = self.store.list_units(period.property_id)
            segments = self.store.list_active_tenancies_overlapping(
                period.property_id,
                period.start,
                period.end,
                period=period,
            )
            lease_ids = [
                segment.lease_id
                for segment in segments
                if period.unit_id is None or segment.unit_id == period.unit_id
            ]
            prepayments = self.store.advance_payments_by_lease(lease_ids=lease_ids, period=period)

        outcome = self.allocator.allocate(
            period=period,
            line_items=line_items,
            units=units,
            segments=segments,
            prepayments=prepayments,
        )
        for warning in outcome.warnings:
            logger.warning(
                "Abrechnung %s: %s (%s)",
                statement_id,
                warning.message,
                warning.code,
            )
        if outcome.is_empty:
            logger.info(
                "Abrechnung %s: keine Mietverhältnisse im Zeitraum %s bis %s.",
                statement_id,
                period.start.isoformat(),
                period.end.isoformat(),
            )
        return outcome

    def compute_results(self, statement_id: int, *, save: bool = False) -> list[AllocationResult]:
        outcome = self.compute(statement_id)
        if save:
            self.store.save_results(statement_id, outcome.results)
        return list(outcome.results)

    def allocation_defaults(self, statement_id: int) -> AllocationBasis:
        """Aktuelle Summen aus Einheiten und Mietverhältnissen als Vorschlag für die Verteilungsbasis."""
        with self.store.snapshot():
            period = self.store.get_statement(statement_id)
            units = self.store.list_units(period.property_id)
            segments = self.store.list_active_tenancies_overlapping(
                period.property_id,
                period.start,
                period.end,
                period=period,
            )
        context = AllocationContext(
            period=replace(period, basis=AllocationBasis()),
            units=units,
            segments=segments,
        )
        return AllocationBasis(
            total_area=quantize_cent(context.total_area) or None,
            unit_count=context.unit_count or None,
            total_persons=context.total_persons or None,
            total_mea=Decimal(context.total_mea).quantize(Decimal("0.0001")) or None,
        )
