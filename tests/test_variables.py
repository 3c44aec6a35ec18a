"""Tests for the variable store and template substitution."""
import pytest

from core.templating import substitute, substitute_all
from core.variables import NAME_ALIASES, VariableStore, format_scalar, is_name_like


class TestFormatScalar:
    def test_none_is_empty(self):
        assert format_scalar(None) == ""

    def test_bools_are_lowercase(self):
        assert format_scalar(True) == "true"
        assert format_scalar(False) == "false"

    def test_integral_float_drops_fraction(self):
        assert format_scalar(3.0) == "3"
        assert format_scalar(2.5) == "2.5"

    def test_int_and_str(self):
        assert format_scalar(42) == "42"
        assert format_scalar("hi") == "hi"


class TestVariableStore:
    def test_set_and_get(self):
        store = VariableStore()
        store.set("plan", "pro")
        assert store.get("plan") == "pro"
        assert "plan" in store
        assert len(store) == 1

    def test_missing_key(self):
        store = VariableStore()
        assert store.get("nope") is None
        assert store.get_text("nope") == ""
        assert not store.has_value("nope")

    def test_empty_string_counts_as_unset(self):
        store = VariableStore({"email": ""})
        assert "email" in store
        assert not store.has_value("email")

    def test_name_like_field_fans_out(self):
        store = VariableStore()
        written = store.set_with_aliases(["full_name"], "Ada")
        assert written[0] == "full_name"
        assert set(written) == {"full_name", *NAME_ALIASES}
        for key in NAME_ALIASES:
            assert store.get(key) == "Ada"

    def test_alias_field_writes_other_aliases(self):
        store = VariableStore()
        written = store.set_with_aliases(["first_name"], "Ada")
        assert sorted(written) == sorted(NAME_ALIASES)

    def test_plain_field_does_not_fan_out(self):
        store = VariableStore()
        assert store.set_with_aliases(["email"], "a@b.co") == ["email"]
        assert store.get("name") is None

    def test_copy_is_independent(self):
        store = VariableStore({"a": 1})
        clone = store.copy()
        clone.set("a", 2)
        assert store.get("a") == 1

    def test_as_dict_is_a_copy(self):
        store = VariableStore({"a": 1})
        data = store.as_dict()
        data["a"] = 99
        assert store.get("a") == 1

    @pytest.mark.parametrize("field,expected", [
        ("full_name", True), ("Company_Name", True), ("first_name", True),
        ("user_name", True), ("email", False), ("phone", False),
    ])
    def test_is_name_like(self, field, expected):
        assert is_name_like(field) is expected


class TestSubstitute:
    def test_single_and_double_braces(self):
        values = {"name": "Ada", "plan": "pro"}
        assert substitute("Hi {name}, plan {{plan}}", values) == "Hi Ada, plan pro"

    def test_whitespace_inside_braces(self):
        assert substitute("Hi {{ name }}", {"name": "Ada"}) == "Hi Ada"

    def test_unknown_placeholder_left_verbatim(self):
        assert substitute("Hi {nobody}", {}) == "Hi {nobody}"

    def test_empty_value_left_verbatim(self):
        assert substitute("Hi {name}", {"name": ""}) == "Hi {name}"

    def test_name_alias_group_fallback(self):
        assert substitute("Hi {first_name}", {"contact_name": "Grace"}) == "Hi Grace"

    def test_own_value_beats_alias(self):
        values = {"first_name": "Ada", "name": "Ada Lovelace"}
        assert substitute("{first_name}", values) == "Ada"

    def test_non_alias_has_no_fallback(self):
        assert substitute("{email}", {"name": "Ada"}) == "{email}"

    def test_inserted_text_is_not_rescanned(self):
        values = {"a": "{b}", "b": "boom"}
        assert substitute("{a}", values) == "{b}"

    @pytest.mark.parametrize("text", [
        "Hi {name}, your plan is {{plan}}.",
        "Order {order_id} for {first_name} ({email})",
        "{unknown} stays, {plan} goes",
        "No placeholders at all",
    ])
    def test_second_pass_changes_nothing(self, text):
        values = VariableStore({"plan": "Pro", "order_id": 42})
        values.set_with_aliases(["full_name"], "Ada Lovelace")
        once = substitute(text, values)
        assert substitute(once, values) == once

    def test_scalar_formatting(self):
        values = {"count": 3.0, "vip": True}
        assert substitute("{count} items, vip={vip}", values) == "3 items, vip=true"

    def test_accepts_variable_store(self):
        assert substitute("Hi {name}", VariableStore({"name": "Ada"})) == "Hi Ada"

    def test_empty_text(self):
        assert substitute("", {"a": 1}) == ""

    def test_substitute_all(self):
        assert substitute_all(["{a}", "b"], {"a": "x"}) == ["x", "b"]
