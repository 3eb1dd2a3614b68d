"""Tests for the condition DSL parser and evaluator."""
from datetime import datetime, timezone

import pytest

from models.schemas import ContactInfo, MessageContext
from utils.conditions import (
    ContactComparison, FunctionCall, evaluate, evaluate_condition_result,
    get_nested_value, parse_condition,
)


def ctx(text="", media=None, at=None, tz="UTC", contact=None):
    return MessageContext(
        message_text=text,
        media_type=media,
        timestamp=at or datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc),
        contact=contact or ContactInfo(id="c1", name="Ana", tags=["vip"], attributes={"plan": "gold"}),
        timezone=tz,
    )


def at(hour, minute=0):
    return datetime(2024, 5, 6, hour, minute, tzinfo=timezone.utc)


class TestParsing:
    def test_function_call_ast(self):
        parsed = parse_condition("Contains('hello', true)")
        assert parsed.ok
        assert parsed.ast == FunctionCall(name="Contains", args=("hello", True))

    def test_contact_comparison_ast(self):
        parsed = parse_condition("Contact.name == 'Ana'")
        assert parsed.ast == ContactComparison(attribute="name", value="Ana")

    def test_escaped_quote_in_argument(self):
        parsed = parse_condition(r"Contains('it\'s')")
        assert parsed.ast.args == ("it's",)

    def test_parse_is_memoized(self):
        assert parse_condition("HasMedia()") is parse_condition("HasMedia()")

    @pytest.mark.parametrize("text,code", [
        ("", "malformed_condition"),
        ("Contains('x'", "malformed_condition"),
        ("Teleport('x')", "unknown_function"),
        ("Contains()", "invalid_arguments"),
        ("Contains('x', 'y')", "invalid_arguments"),
        ("HasMedia('x')", "invalid_arguments"),
    ])
    def test_malformed_conditions_report(self, text, code):
        parsed = parse_condition(text)
        assert parsed.ast is None
        assert parsed.diagnostics[0].code == code


class TestStringFunctions:
    def test_contains_folds_case_by_default(self):
        assert evaluate("Contains('HELLO')", ctx("say hello now")) is True

    def test_contains_case_sensitive_flag(self):
        assert evaluate("Contains('HELLO', true)", ctx("say hello now")) is False

    def test_exact_match_trims(self):
        assert evaluate("ExactMatch('yes')", ctx("  YES ")) is True
        assert evaluate("ExactMatch('yes')", ctx("yes please")) is False

    def test_starts_and_ends_with(self):
        assert evaluate("StartsWith('order')", ctx("Order #42")) is True
        assert evaluate("EndsWith('42')", ctx("Order #42")) is True
        assert evaluate("EndsWith('#', true)", ctx("Order #42")) is False


class TestRegex:
    def test_regex_match(self):
        assert evaluate(r"RegexMatch('^\d{4}$')", ctx("2024")) is True

    def test_invalid_regex_is_false_with_diagnostic(self):
        diagnostics = []
        assert evaluate("RegexMatch('([a-z')", ctx("abc"), diagnostics) is False
        assert [d.code for d in diagnostics] == ["invalid_regex"]


class TestMedia:
    def test_has_media(self):
        assert evaluate("HasMedia()", ctx(media="image")) is True
        assert evaluate("HasMedia()", ctx()) is False

    def test_media_type(self):
        assert evaluate("MediaType('Image')", ctx(media="image")) is True
        assert evaluate("MediaType('video')", ctx(media="image")) is False


class TestTime:
    def test_time_between_inside(self):
        assert evaluate("TimeBetween('09:00,17:00')", ctx(at=at(12))) is True

    def test_time_between_is_half_open(self):
        assert evaluate("TimeBetween('09:00,17:00')", ctx(at=at(9))) is True
        assert evaluate("TimeBetween('09:00,17:00')", ctx(at=at(17))) is False

    def test_time_between_wraps_midnight(self):
        assert evaluate("TimeBetween('22:00,06:00')", ctx(at=at(23, 30))) is True
        assert evaluate("TimeBetween('22:00,06:00')", ctx(at=at(3))) is True
        assert evaluate("TimeBetween('22:00,06:00')", ctx(at=at(12))) is False

    def test_time_between_two_arguments(self):
        assert evaluate("TimeBetween('09:00', '17:00')", ctx(at=at(10))) is True

    def test_timezone_conversion(self):
        # 12:00 UTC is 08:00 in New York (EDT)
        condition = "TimeBefore('09:00')"
        assert evaluate(condition, ctx(at=at(12), tz="America/New_York")) is True
        assert evaluate(condition, ctx(at=at(12), tz="UTC")) is False

    def test_time_after(self):
        assert evaluate("TimeAfter('12:00')", ctx(at=at(12))) is True
        assert evaluate("TimeAfter('12:01')", ctx(at=at(12))) is False

    def test_invalid_time_is_false(self):
        diagnostics = []
        assert evaluate("TimeBefore('25:00')", ctx(), diagnostics) is False
        assert diagnostics[0].code == "invalid_time"

    def test_unknown_timezone_falls_back_to_utc(self):
        result = evaluate_condition_result("TimeAfter('11:00')", ctx(at=at(12), tz="Mars/Olympus"))
        assert result.matched is True
        assert [d.code for d in result.diagnostics] == ["unknown_timezone"]


class TestContact:
    def test_field_compare_is_case_sensitive(self):
        assert evaluate("Contact.name == 'Ana'", ctx()) is True
        assert evaluate("Contact.name == 'ana'", ctx()) is False

    def test_tags_membership(self):
        assert evaluate("Contact.tags == 'vip'", ctx()) is True
        assert evaluate("Contact.tags == 'churned'", ctx()) is False

    def test_custom_attribute(self):
        assert evaluate("Contact.plan == 'gold'", ctx()) is True

    def test_unknown_attribute_reports(self):
        result = evaluate_condition_result("Contact.shoeSize == '42'", ctx())
        assert not result
        assert result.diagnostics[0].code == "unknown_contact_attribute"


class TestPurity:
    def test_context_not_mutated_and_deterministic(self):
        context = ctx("hello")
        before = context.model_dump()
        first = evaluate("Contains('hell')", context)
        second = evaluate("Contains('hell')", context)
        assert first == second is True
        assert context.model_dump() == before

    def test_malformed_never_raises(self):
        assert evaluate("))((", ctx()) is False


class TestNestedValue:
    def test_dict_and_model_paths(self):
        data = {"contact": ContactInfo(id="c1", name="Ana"), "a": {"b": {"c": 3}}}
        assert get_nested_value(data, "a.b.c") == 3
        assert get_nested_value(data, "contact.name") == "Ana"
        assert get_nested_value(data, "a.missing.c") is None
