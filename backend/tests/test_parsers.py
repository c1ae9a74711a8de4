import pytest

from common.parsers import (
    BROWSE_NEXT, BROWSE_NONE, BROWSE_THIS_IS_MINE, CONDITION_ACCEPTABLE, CONDITION_GOOD, CONDITION_LIKE_NEW,
    CONDITION_NEW_WITH_TAGS, PRICE_TYPE_BEST_PRICE, PRICE_TYPE_QUICK_SALE,
    is_show_similar, is_trigger, parse_browse_command, parse_choice, parse_condition, parse_description,
    parse_floor_price, parse_price_type, parse_yes_no,
)


@pytest.mark.parametrize(
    "body,expected",
    [
        ("new with tags", CONDITION_NEW_WITH_TAGS),
        ("NWT", CONDITION_NEW_WITH_TAGS),
        ("brand new, tags still on", CONDITION_NEW_WITH_TAGS),
        ("like new", CONDITION_LIKE_NEW),
        ("Like-new honestly", CONDITION_LIKE_NEW),
        ("fair", CONDITION_ACCEPTABLE),
        ("good enough, acceptable", CONDITION_ACCEPTABLE),
        ("pretty good", CONDITION_GOOD),
        ("Used – Good", CONDITION_GOOD),
        ("no idea", None),
        ("", None),
    ],
)
def test_condition_table_first_match_wins(body, expected):
    assert parse_condition(body) == expected


@pytest.mark.parametrize(
    "body,expected",
    [
        ("25", "25"),
        ("$25", "25"),
        ("$25.50", "25.50"),
        ("at least 40 bucks", "40"),
        ("no floor", None),
        ("", None),
    ],
)
def test_floor_price_takes_first_numeric_token(body, expected):
    assert parse_floor_price(body) == expected


def test_trigger_phrase_and_loose_match():
    assert is_trigger("i want to sell something")
    assert is_trigger("  I WANT TO SELL SOMETHING! ")
    assert is_trigger("I want to sell my jacket")
    assert not is_trigger("sell")
    assert not is_trigger("")


def test_yes_no_synonyms():
    assert parse_yes_no("Yes") is True
    assert parse_yes_no("list it") is True
    assert parse_yes_no("yep.") is True
    assert parse_yes_no("not yet") is False
    assert parse_yes_no("No") is False
    assert parse_yes_no("yes but the size is wrong") is None


def test_price_type_accepts_values_and_words():
    assert parse_price_type("quick_sale") == PRICE_TYPE_QUICK_SALE
    assert parse_price_type("Quick sale please") == PRICE_TYPE_QUICK_SALE
    assert parse_price_type("best_price") == PRICE_TYPE_BEST_PRICE
    assert parse_price_type("I want the max") == PRICE_TYPE_BEST_PRICE
    assert parse_price_type("whatever") is None


def test_browse_commands():
    assert parse_browse_command("this_is_mine") == BROWSE_THIS_IS_MINE
    assert parse_browse_command("That's it") == BROWSE_THIS_IS_MINE
    assert parse_browse_command("next") == BROWSE_NEXT
    assert parse_browse_command("None of these") == BROWSE_NONE
    assert parse_browse_command("maybe") is None


def test_show_similar():
    assert is_show_similar("show_similar")
    assert is_show_similar("Show similar")
    assert not is_show_similar("yes")


def test_choice_by_value_or_index():
    choices = ["9", "10", "Black"]
    assert parse_choice("10", choices) == "10"
    assert parse_choice("black", choices) == "Black"
    assert parse_choice("3", choices) == "Black"
    assert parse_choice("4", choices) is None
    assert parse_choice("red", choices) is None
    assert parse_choice("9", []) is None


def test_description_prefix():
    assert parse_description("description: worn twice, no box") == "worn twice, no box"
    assert parse_description("Desc - small scuff on toe") == "small scuff on toe"
    assert parse_description("description:") is None
    assert parse_description("yes") is None
