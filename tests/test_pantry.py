import pytest

from services import memory, pantry
from services.merge import PantryItem


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(memory, "DB_PATH", tmp_path / "pantry_test.db")
    memory.init_db()
    yield


def test_create_pantry_item_parses_quantity():
    item = pantry.create_pantry_item("Rice", "2", "cups")

    assert item["name"] == "Rice"
    assert item["normalized_name"] == "rice"
    assert item["quantity"] == "2"
    assert item["quantity_value"] == 2.0
    assert item["unit"] == "cup"


def test_create_pantry_item_with_freeform_quantity():
    item = pantry.create_pantry_item("Basil", "a handful")
    assert item["quantity"] == "a handful"
    assert item["quantity_value"] is None

    bare = pantry.create_pantry_item("Onions")
    assert bare["quantity"] is None
    assert bare["normalized_name"] == "onion"


def test_create_pantry_item_requires_name():
    with pytest.raises(ValueError):
        pantry.create_pantry_item("  ", "1")


def test_list_is_newest_first_and_snapshot_is_creation_order():
    pantry.create_pantry_item("Rice", "2", "cups")
    pantry.create_pantry_item("Milk", "1", "gal")

    assert [item["name"] for item in pantry.list_pantry_items()] == ["Milk", "Rice"]

    snapshot = pantry.get_pantry_snapshot()
    assert all(isinstance(item, PantryItem) for item in snapshot)
    assert [item.name for item in snapshot] == ["Rice", "Milk"]
    assert snapshot[1].unit == "gallon"


def test_delete_pantry_item():
    item = pantry.create_pantry_item("Rice", "2", "cups")

    assert pantry.delete_pantry_item(item["id"]) is True
    assert pantry.delete_pantry_item(item["id"]) is False
    assert pantry.list_pantry_items() == []


def test_seed_replaces_pantry():
    pantry.create_pantry_item("Caviar", "1", "jar")

    assert pantry.seed_pantry_items() == 5
    assert pantry.seed_pantry_items() == 5

    names = [item.name for item in pantry.get_pantry_snapshot()]
    assert names == ["Rice", "Chickpeas", "Tomatoes", "Olive oil", "Onion"]
    tomatoes = pantry.get_pantry_snapshot()[2]
    assert tomatoes.normalized_name == "tomato"
    assert tomatoes.quantity_value == 4.0
    assert tomatoes.unit is None
