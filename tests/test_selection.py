import pytest

from conftest import make_drop, ramen_menu
from errors import IncompleteSelection
from selection import ModifierSelection, freeze_selections, validate_selections


@pytest.fixture
def ramen():
    return make_drop(menu_items=ramen_menu())


def test_valid_selection_passes(ramen):
    validate_selections(ramen, {"bowl": {"broth": ["shoyu"], "toppings": ["egg"]}})


def test_missing_required_group_names_item_and_group(ramen):
    with pytest.raises(IncompleteSelection) as exc:
        validate_selections(ramen, {"bowl": {"toppings": ["egg"]}})

    assert exc.value.details["item_id"] == "bowl"
    assert exc.value.details["group_id"] == "broth"
    assert exc.value.details["reason"] == "below_minimum"
    assert 'Please select at least 1 option(s) for "Broth" in "Ramen Bowl".' == exc.value.message


def test_empty_selections_fail_required_group(ramen):
    with pytest.raises(IncompleteSelection):
        validate_selections(ramen, {})


def test_too_many_picks(ramen):
    with pytest.raises(IncompleteSelection) as exc:
        validate_selections(ramen, {
            "bowl": {"broth": ["shoyu"], "toppings": ["egg", "chashu", "nori"]}
        })

    assert exc.value.details["reason"] == "above_maximum"


def test_duplicate_pick(ramen):
    with pytest.raises(IncompleteSelection) as exc:
        validate_selections(ramen, {"bowl": {"broth": ["shoyu", "shoyu"]}})

    assert exc.value.details["reason"] == "duplicate_option"


def test_unknown_ids(ramen):
    with pytest.raises(IncompleteSelection) as exc:
        validate_selections(ramen, {"soup": {"broth": ["shoyu"]}})
    assert exc.value.details["reason"] == "unknown_item"

    with pytest.raises(IncompleteSelection) as exc:
        validate_selections(ramen, {"bowl": {"broth": ["shoyu"], "sauce": ["x"]}})
    assert exc.value.details["reason"] == "unknown_group"

    with pytest.raises(IncompleteSelection) as exc:
        validate_selections(ramen, {"bowl": {"broth": ["miso"]}})
    assert exc.value.details["reason"] == "unknown_option"


def test_drop_without_menu_accepts_empty_selection():
    validate_selections(make_drop(), {})
    validate_selections(make_drop(), None)


def test_single_choice_group_swaps_pick(ramen):
    selection = ModifierSelection(ramen)

    assert selection.toggle("bowl", "broth", "shoyu")
    assert selection.toggle("bowl", "broth", "tonkotsu")

    assert selection.selected("bowl", "broth") == ["tonkotsu"]


def test_multi_choice_group_refuses_past_cap(ramen):
    selection = ModifierSelection(ramen)

    assert selection.toggle("bowl", "toppings", "egg")
    assert selection.toggle("bowl", "toppings", "chashu")
    assert selection.toggle("bowl", "toppings", "nori") is False

    assert selection.selected("bowl", "toppings") == ["egg", "chashu"]


def test_toggle_removes_existing_pick(ramen):
    selection = ModifierSelection(ramen, {"bowl": {"toppings": ["egg"]}})

    assert selection.toggle("bowl", "toppings", "egg")
    assert selection.selected("bowl", "toppings") == []


def test_builder_output_passes_gate(ramen):
    selection = ModifierSelection(ramen)
    selection.toggle("bowl", "broth", "shoyu")
    selection.toggle("bowl", "toppings", "nori")

    validate_selections(ramen, selection.as_dict())


def test_freeze_captures_names_and_prices(ramen):
    frozen = freeze_selections(ramen, {"bowl": {"broth": ["tonkotsu"], "toppings": ["egg"]}})

    assert frozen == [{
        "itemId": "bowl",
        "name": "Ramen Bowl",
        "basePrice": 12.0,
        "selectedModifiers": [
            {
                "groupId": "broth",
                "groupName": "Broth",
                "options": [{"id": "tonkotsu", "name": "Tonkotsu", "additionalPrice": 2.5}],
            },
            {
                "groupId": "toppings",
                "groupName": "Toppings",
                "options": [{"id": "egg", "name": "Ajitama Egg", "additionalPrice": 1.5}],
            },
        ],
    }]
