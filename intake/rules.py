"""Rule engine for buy box matching.

A buy box item is a conjunction of predicates (status, make, model, year
range, mileage range, trim). Each predicate yields a RuleTrace so every
match or rejection can be audited.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from .config import settings

logger = logging.getLogger(__name__)


class RuleType(str, Enum):
    """Predicates evaluated per buy box item, in evaluation order."""
    ACTIVE = "active"
    MAKE = "make"
    MODEL = "model"
    YEAR_RANGE = "year_range"
    MILEAGE_RANGE = "mileage_range"
    TRIM = "trim"


class RuleStatus(str, Enum):
    """Rule evaluation status."""
    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"


@dataclass
class RuleTrace:
    """Audit trace for a single predicate evaluation."""
    rule_id: str
    name: str
    status: RuleStatus
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "status": self.status.value,
            "reason": self.reason,
        }


@dataclass
class BuyBoxCriterion:
    """Acquisition criteria as the engine sees them.

    Bounds are inclusive and each side is independently optional. Price
    bounds are carried for callers but not evaluated.
    """
    id: int
    dealer_id: int
    make: str
    model: str
    trim: str | None = None
    year_min: int | None = None
    year_max: int | None = None
    mileage_min: int | None = None
    mileage_max: int | None = None
    price_min: int | None = None
    price_max: int | None = None
    status: str = "active"

    @classmethod
    def from_model(cls, item: Any) -> BuyBoxCriterion:
        """Build from a BuyBoxItem row (or anything with the same attributes)."""
        return cls(
            id=item.id,
            dealer_id=item.dealer_id,
            make=item.make,
            model=item.model,
            trim=item.trim,
            year_min=item.year_min,
            year_max=item.year_max,
            mileage_min=item.mileage_min,
            mileage_max=item.mileage_max,
            price_min=item.price_min,
            price_max=item.price_max,
            status=item.status,
        )


@dataclass
class VehicleFacts:
    """Normalized vehicle attributes used for matching.

    make/model None means unresolved and never equals a criterion value.
    """
    make: str | None
    model: str | None
    year: int | None = None
    mileage: int | None = None
    trim: str | None = None
    vehicle_id: int | None = None

    @classmethod
    def from_model(
        cls,
        vehicle: Any,
        normalize: Callable[[str | None, str | None], tuple[str | None, str | None]] | None = None,
    ) -> VehicleFacts:
        """Build from a Vehicle row, optionally running make/model through aliases."""
        make, model = vehicle.make, vehicle.model
        if normalize is not None:
            make, model = normalize(make, model)
        return cls(
            make=make,
            model=model,
            year=vehicle.year,
            mileage=vehicle.mileage,
            trim=vehicle.trim,
            vehicle_id=vehicle.id,
        )


@dataclass
class CriterionEvaluation:
    """Outcome of evaluating one vehicle against one criterion."""
    criterion: BuyBoxCriterion
    passed: bool
    traces: list[RuleTrace] = field(default_factory=list)


class RuleEngine:
    """Evaluates vehicles against buy box criteria.

    All predicates must pass. A predicate whose vehicle value is absent is
    SKIPPED rather than failed, so a vehicle with unknown mileage still
    matches a box with a mileage cap.
    """

    def __init__(self, active_status: str | None = None):
        """Initialize rule engine.

        Args:
            active_status: Status value marking a criterion as active
        """
        self.active_status = active_status or settings.matching.active_status

    def evaluate(self, vehicle: VehicleFacts, criterion: BuyBoxCriterion) -> tuple[bool, list[RuleTrace]]:
        """Evaluate every predicate of one criterion.

        Args:
            vehicle: Normalized vehicle facts
            criterion: Buy box criterion

        Returns:
            Tuple of (passed, rule_traces). Evaluation stops at the first FAIL.
        """
        traces = []
        for rule_type, check in self._checks():
            trace = check(rule_type, vehicle, criterion)
            traces.append(trace)
            if trace.status == RuleStatus.FAIL:
                return False, traces
        return True, traces

    def match(self, vehicle: VehicleFacts, criteria: Iterable[BuyBoxCriterion]) -> list[BuyBoxCriterion]:
        """Return the criteria the vehicle satisfies, in input order."""
        return [c for c in criteria if self.evaluate(vehicle, c)[0]]

    def evaluate_all(
        self,
        vehicle: VehicleFacts,
        criteria: Iterable[BuyBoxCriterion],
    ) -> list[CriterionEvaluation]:
        evaluations = []
        for criterion in criteria:
            passed, traces = self.evaluate(vehicle, criterion)
            evaluations.append(CriterionEvaluation(criterion, passed, traces))
        return evaluations

    def _checks(self) -> list[tuple[RuleType, Callable[[RuleType, VehicleFacts, BuyBoxCriterion], RuleTrace]]]:
        return [
            (RuleType.ACTIVE, self._eval_active),
            (RuleType.MAKE, self._eval_make),
            (RuleType.MODEL, self._eval_model),
            (RuleType.YEAR_RANGE, self._eval_year),
            (RuleType.MILEAGE_RANGE, self._eval_mileage),
            (RuleType.TRIM, self._eval_trim),
        ]

    @staticmethod
    def _trace(rule_type: RuleType, criterion: BuyBoxCriterion, status: RuleStatus, reason: str) -> RuleTrace:
        return RuleTrace(
            rule_id=f"{criterion.id}:{rule_type.value}",
            name=rule_type.value,
            status=status,
            reason=reason,
        )

    def _eval_active(self, rule_type: RuleType, vehicle: VehicleFacts, criterion: BuyBoxCriterion) -> RuleTrace:
        if criterion.status != self.active_status:
            return self._trace(rule_type, criterion, RuleStatus.FAIL, f"Criterion status is {criterion.status}")
        return self._trace(rule_type, criterion, RuleStatus.PASS, "Criterion is active")

    def _eval_make(self, rule_type: RuleType, vehicle: VehicleFacts, criterion: BuyBoxCriterion) -> RuleTrace:
        return self._equals(rule_type, criterion, vehicle.make, criterion.make)

    def _eval_model(self, rule_type: RuleType, vehicle: VehicleFacts, criterion: BuyBoxCriterion) -> RuleTrace:
        return self._equals(rule_type, criterion, vehicle.model, criterion.model)

    def _equals(self, rule_type: RuleType, criterion: BuyBoxCriterion, actual: str | None, expected: str) -> RuleTrace:
        if actual is None:
            return self._trace(rule_type, criterion, RuleStatus.FAIL, f"Vehicle {rule_type.value} unresolved")
        if actual != expected:
            return self._trace(rule_type, criterion, RuleStatus.FAIL, f"{actual!r} != {expected!r}")
        return self._trace(rule_type, criterion, RuleStatus.PASS, f"{actual!r} matches")

    def _eval_year(self, rule_type: RuleType, vehicle: VehicleFacts, criterion: BuyBoxCriterion) -> RuleTrace:
        return self._in_range(rule_type, criterion, vehicle.year, criterion.year_min, criterion.year_max)

    def _eval_mileage(self, rule_type: RuleType, vehicle: VehicleFacts, criterion: BuyBoxCriterion) -> RuleTrace:
        return self._in_range(rule_type, criterion, vehicle.mileage, criterion.mileage_min, criterion.mileage_max)

    def _in_range(
        self,
        rule_type: RuleType,
        criterion: BuyBoxCriterion,
        value: int | None,
        lower: int | None,
        upper: int | None,
    ) -> RuleTrace:
        if value is None:
            return self._trace(rule_type, criterion, RuleStatus.SKIP, "Vehicle value unknown")
        if lower is not None and value < lower:
            return self._trace(rule_type, criterion, RuleStatus.FAIL, f"{value} < minimum {lower}")
        if upper is not None and value > upper:
            return self._trace(rule_type, criterion, RuleStatus.FAIL, f"{value} > maximum {upper}")
        return self._trace(rule_type, criterion, RuleStatus.PASS, f"{value} within [{lower}, {upper}]")

    def _eval_trim(self, rule_type: RuleType, vehicle: VehicleFacts, criterion: BuyBoxCriterion) -> RuleTrace:
        if not criterion.trim:
            return self._trace(rule_type, criterion, RuleStatus.SKIP, "No trim required")
        if not vehicle.trim:
            return self._trace(rule_type, criterion, RuleStatus.SKIP, "Vehicle trim unknown")
        if vehicle.trim != criterion.trim:
            return self._trace(rule_type, criterion, RuleStatus.FAIL, f"{vehicle.trim!r} != {criterion.trim!r}")
        return self._trace(rule_type, criterion, RuleStatus.PASS, f"{vehicle.trim!r} matches")


def evaluate(vehicle: VehicleFacts, criterion: BuyBoxCriterion) -> tuple[bool, list[RuleTrace]]:
    """Evaluate one criterion with a default engine."""
    return RuleEngine().evaluate(vehicle, criterion)


def match_vehicle(vehicle: VehicleFacts, criteria: Iterable[BuyBoxCriterion]) -> list[BuyBoxCriterion]:
    """Return every criterion the vehicle satisfies."""
    return RuleEngine().match(vehicle, criteria)
