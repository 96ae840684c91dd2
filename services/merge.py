"""Reconcile reviewed receipt lines against a pantry snapshot.

Every function here is pure: decisions depend only on the line, the
snapshot and the threshold passed in. Persistence applies the decisions.
"""
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from services.confidence import LOW_CONFIDENCE_THRESHOLD
from services.normalize import are_units_compatible, normalize_name, normalize_unit
from services.quantity import format_quantity

SKIP_IGNORED = "ignored"
SKIP_UNCONFIRMED = "unconfirmed"
SKIP_MISSING_NAME = "missing_name"


@dataclass(frozen=True)
class PantryItem:
    id: Any
    name: str
    normalized_name: str
    quantity: Optional[str] = None
    quantity_value: Optional[float] = None
    unit: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PantryItem":
        return cls(
            id=row["id"],
            name=row.get("name") or "",
            normalized_name=row.get("normalized_name") or normalize_name(row.get("name")),
            quantity=row.get("quantity"),
            quantity_value=row.get("quantity_value"),
            unit=row.get("unit"),
        )


@dataclass
class ReviewedLine:
    """A parsed receipt row after the reviewer has had a chance to edit it.

    ``normalized_name`` always follows ``name``; a stored value from the parse
    step is ignored so a rename during review takes effect.
    """

    name: str
    quantity_value: Optional[float] = None
    unit: Optional[str] = None
    raw_line: Optional[str] = None
    confidence: Optional[float] = None
    confirmed: bool = False
    ignored: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewedLine":
        return cls(
            name=str(data.get("name") or ""),
            quantity_value=data.get("quantity_value"),
            unit=data.get("unit"),
            raw_line=data.get("raw_line"),
            confidence=data.get("confidence"),
            confirmed=bool(data.get("confirmed", False)),
            ignored=bool(data.get("ignored", False)),
        )

    @property
    def normalized_name(self) -> str:
        return normalize_name(self.name)


@dataclass(frozen=True)
class PantryChange:
    name: str
    normalized_name: str
    quantity_value: Optional[float]
    quantity: Optional[str]
    unit: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "normalized_name": self.normalized_name,
            "quantity_value": self.quantity_value,
            "quantity": self.quantity,
            "unit": self.unit,
        }


@dataclass(frozen=True)
class MergeUpdate:
    pantry_item_id: Any
    data: PantryChange
    action: str = field(default="update", init=False)


@dataclass(frozen=True)
class MergeCreate:
    data: PantryChange
    action: str = field(default="create", init=False)


@dataclass(frozen=True)
class MergeSkip:
    reason: str
    action: str = field(default="skip", init=False)


MergeDecision = Union[MergeUpdate, MergeCreate, MergeSkip]


def _finite_or_none(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def decide_merge_for_line(
    line: ReviewedLine,
    pantry_snapshot: Sequence[PantryItem],
    threshold: float = LOW_CONFIDENCE_THRESHOLD,
) -> MergeDecision:
    normalized = line.normalized_name
    if not normalized:
        return MergeSkip(SKIP_MISSING_NAME)

    if line.ignored:
        return MergeSkip(SKIP_IGNORED)

    if not line.confirmed and (line.confidence or 0.0) < threshold:
        return MergeSkip(SKIP_UNCONFIRMED)

    unit = normalize_unit(line.unit)
    quantity_value = _finite_or_none(line.quantity_value)

    # First compatible entry in snapshot order wins when several share a name.
    match = next(
        (
            item
            for item in pantry_snapshot
            if item.normalized_name == normalized and are_units_compatible(item.unit, unit)
        ),
        None,
    )

    if match is not None:
        existing_value = _finite_or_none(match.quantity_value)
        if quantity_value is not None and existing_value is not None:
            next_value: Optional[float] = round(existing_value + quantity_value, 3)
        else:
            next_value = existing_value if existing_value is not None else quantity_value

        return MergeUpdate(
            pantry_item_id=match.id,
            data=PantryChange(
                name=match.name,
                normalized_name=normalized,
                quantity_value=next_value,
                quantity=format_quantity(next_value),
                unit=normalize_unit(match.unit) or unit,
            ),
        )

    return MergeCreate(
        data=PantryChange(
            name=(line.name or "").strip() or normalized,
            normalized_name=normalized,
            quantity_value=quantity_value,
            quantity=format_quantity(quantity_value),
            unit=unit,
        )
    )


def apply_decision_to_snapshot(
    snapshot: Sequence[PantryItem],
    decision: MergeDecision,
    item_id: Any = None,
) -> List[PantryItem]:
    """Return a new snapshot with one decision folded in.

    ``item_id`` is the identity the store assigned to a created row.
    """
    items = list(snapshot)
    if isinstance(decision, MergeUpdate):
        for index, item in enumerate(items):
            if item.id == decision.pantry_item_id:
                items[index] = replace(
                    item,
                    quantity=decision.data.quantity,
                    quantity_value=decision.data.quantity_value,
                    unit=decision.data.unit,
                )
                break
    elif isinstance(decision, MergeCreate):
        items.append(
            PantryItem(
                id=item_id,
                name=decision.data.name,
                normalized_name=decision.data.normalized_name,
                quantity=decision.data.quantity,
                quantity_value=decision.data.quantity_value,
                unit=decision.data.unit,
            )
        )
    return items


def plan_merges(
    lines: Sequence[ReviewedLine],
    pantry_snapshot: Sequence[PantryItem],
    threshold: float = LOW_CONFIDENCE_THRESHOLD,
) -> List[Tuple[ReviewedLine, MergeDecision]]:
    """Decide a whole batch against one snapshot without touching storage.

    Creates get a provisional ``pending-N`` id so a later line with the same
    name merges into them instead of creating a duplicate. The store runs
    the same fold with real ids when it applies a batch.
    """
    working = list(pantry_snapshot)
    plan: List[Tuple[ReviewedLine, MergeDecision]] = []
    for index, line in enumerate(lines):
        decision = decide_merge_for_line(line, working, threshold)
        working = apply_decision_to_snapshot(working, decision, item_id=f"pending-{index}")
        plan.append((line, decision))
    return plan


def describe_decision(line: ReviewedLine, decision: MergeDecision) -> Dict[str, Any]:
    """JSON-friendly view of one planned decision, for dry runs."""
    entry: Dict[str, Any] = {"line": line.name, "action": decision.action}
    if isinstance(decision, MergeSkip):
        entry["reason"] = decision.reason
        return entry
    if isinstance(decision, MergeUpdate):
        entry["pantry_item_id"] = decision.pantry_item_id
    entry["result"] = decision.data.to_dict()
    return entry
