from services.merge import (
    SKIP_IGNORED,
    SKIP_MISSING_NAME,
    SKIP_UNCONFIRMED,
    MergeCreate,
    MergeSkip,
    MergeUpdate,
    PantryItem,
    ReviewedLine,
    apply_decision_to_snapshot,
    decide_merge_for_line,
    describe_decision,
    plan_merges,
)


def _pantry(*items):
    return [
        PantryItem(id=i + 1, name=name, normalized_name=norm, quantity=qty_text, quantity_value=qty, unit=unit)
        for i, (name, norm, qty_text, qty, unit) in enumerate(items)
    ]


def test_matching_line_updates_and_sums_quantity():
    snapshot = _pantry(("Tomatoes", "tomato", "4", 4.0, None))
    decision = decide_merge_for_line(ReviewedLine(name="Tomato", quantity_value=2, confidence=0.9), snapshot)

    assert isinstance(decision, MergeUpdate)
    assert decision.action == "update"
    assert decision.pantry_item_id == 1
    assert decision.data.name == "Tomatoes"
    assert decision.data.quantity_value == 6.0
    assert decision.data.quantity == "6"


def test_incompatible_unit_creates_new_item():
    snapshot = _pantry(("Rice", "rice", "2", 2.0, "cup"))
    decision = decide_merge_for_line(
        ReviewedLine(name="Rice", quantity_value=1, unit="kg", confidence=0.95), snapshot
    )

    assert isinstance(decision, MergeCreate)
    assert decision.data.unit == "kg"
    assert decision.data.quantity == "1"


def test_unit_aliases_are_compatible():
    snapshot = _pantry(("Bananas", "banana", "1", 1.0, "lbs"))
    decision = decide_merge_for_line(
        ReviewedLine(name="Bananas", quantity_value=2, unit="lb", confidence=0.95), snapshot
    )

    assert isinstance(decision, MergeUpdate)
    assert decision.data.unit == "lb"
    assert decision.data.quantity_value == 3.0


def test_missing_quantity_keeps_existing_value():
    snapshot = _pantry(("Onion", "onion", "3", 3.0, None))
    decision = decide_merge_for_line(ReviewedLine(name="Onions", confidence=0.9), snapshot)
    assert decision.data.quantity_value == 3.0

    snapshot = _pantry(("Onion", "onion", None, None, None))
    decision = decide_merge_for_line(ReviewedLine(name="Onion", quantity_value=2, confidence=0.9), snapshot)
    assert decision.data.quantity_value == 2
    assert decision.data.quantity == "2"


def test_sum_is_rounded_to_three_decimals():
    snapshot = _pantry(("Flour", "flour", "0.1", 0.1, "kg"))
    decision = decide_merge_for_line(
        ReviewedLine(name="Flour", quantity_value=0.2, unit="kg", confidence=0.9), snapshot
    )
    assert decision.data.quantity_value == 0.3
    assert decision.data.quantity == "0.3"


def test_skip_reasons():
    assert decide_merge_for_line(ReviewedLine(name="  ", confidence=0.99), []) == MergeSkip(SKIP_MISSING_NAME)
    assert decide_merge_for_line(
        ReviewedLine(name="", ignored=True, confidence=0.99), []
    ) == MergeSkip(SKIP_MISSING_NAME)
    assert decide_merge_for_line(
        ReviewedLine(name="Milk", ignored=True, confirmed=True, confidence=0.99), []
    ) == MergeSkip(SKIP_IGNORED)
    assert decide_merge_for_line(ReviewedLine(name="Milk", confidence=0.5), []) == MergeSkip(SKIP_UNCONFIRMED)
    assert decide_merge_for_line(ReviewedLine(name="Milk"), []) == MergeSkip(SKIP_UNCONFIRMED)


def test_confirmed_low_confidence_line_is_merged():
    decision = decide_merge_for_line(ReviewedLine(name="Milk", confidence=0.3, confirmed=True), [])
    assert isinstance(decision, MergeCreate)


def test_threshold_is_a_parameter():
    line = ReviewedLine(name="Milk", confidence=0.75)
    assert isinstance(decide_merge_for_line(line, [], threshold=0.7), MergeCreate)
    assert isinstance(decide_merge_for_line(line, [], threshold=0.8), MergeSkip)


def test_first_compatible_item_wins():
    snapshot = _pantry(
        ("Milk", "milk", "1", 1.0, "gallon"),
        ("Milk", "milk", "2", 2.0, None),
        ("Milk", "milk", "1", 1.0, "gallon"),
    )
    unitless = decide_merge_for_line(ReviewedLine(name="Milk", quantity_value=1, confidence=0.9), snapshot)
    gallons = decide_merge_for_line(
        ReviewedLine(name="Milk", quantity_value=1, unit="gal", confidence=0.9), snapshot
    )

    assert unitless.pantry_item_id == 2
    assert gallons.pantry_item_id == 1


def test_decisions_do_not_mutate_snapshot():
    snapshot = _pantry(("Tomatoes", "tomato", "4", 4.0, None))
    decide_merge_for_line(ReviewedLine(name="Tomato", quantity_value=2, confidence=0.9), snapshot)
    assert snapshot[0].quantity_value == 4.0


def test_apply_decision_to_snapshot():
    snapshot = _pantry(("Tomatoes", "tomato", "4", 4.0, None))
    update = decide_merge_for_line(ReviewedLine(name="Tomato", quantity_value=2, confidence=0.9), snapshot)
    updated = apply_decision_to_snapshot(snapshot, update)
    assert updated[0].quantity_value == 6.0
    assert snapshot[0].quantity_value == 4.0

    create = decide_merge_for_line(ReviewedLine(name="Basil", confidence=0.9), updated)
    created = apply_decision_to_snapshot(updated, create, item_id=99)
    assert [item.id for item in created] == [1, 99]

    skip = MergeSkip(SKIP_IGNORED)
    assert apply_decision_to_snapshot(created, skip) == created


def test_plan_merges_folds_duplicates_within_batch():
    lines = [
        ReviewedLine(name="Bananas", quantity_value=2, unit="lb", confidence=0.95),
        ReviewedLine(name="banana", quantity_value=1, unit="lbs", confidence=0.95),
        ReviewedLine(name="Receipt noise", confidence=0.2),
    ]
    plan = plan_merges(lines, [])

    actions = [decision.action for _, decision in plan]
    assert actions == ["create", "update", "skip"]
    assert plan[1][1].pantry_item_id == "pending-0"
    assert plan[1][1].data.quantity_value == 3.0


def test_reviewed_line_from_dict():
    line = ReviewedLine.from_dict(
        {"name": "Milk", "quantity_value": 1, "unit": "gal", "confidence": 0.8, "confirmed": 1}
    )
    assert line.confirmed is True
    assert line.ignored is False
    assert line.unit == "gal"


def test_describe_decision_for_each_action():
    snapshot = _pantry(("Rice", "rice", "2", 2.0, "cup"))
    update_line = ReviewedLine(name="Rice", quantity_value=1, unit="cups", confidence=0.9)
    skip_line = ReviewedLine(name="Rice", ignored=True)

    updated = describe_decision(update_line, decide_merge_for_line(update_line, snapshot))
    skipped = describe_decision(skip_line, decide_merge_for_line(skip_line, snapshot))

    assert updated["action"] == "update"
    assert updated["pantry_item_id"] == 1
    assert updated["result"]["quantity"] == "3"
    assert skipped == {"line": "Rice", "action": "skip", "reason": SKIP_IGNORED}


def test_renamed_row_ignores_stale_normalized_name():
    snapshot = _pantry(("Banana", "banana", "2", 2.0, "lb"))
    line = ReviewedLine.from_dict(
        {"name": "Apples", "normalized_name": "banana", "quantity_value": 1, "unit": "lb", "confirmed": True}
    )

    decision = decide_merge_for_line(line, snapshot)

    assert line.normalized_name == "apple"
    assert isinstance(decision, MergeCreate)
    assert decision.data.name == "Apples"
    assert decision.data.normalized_name == "apple"
