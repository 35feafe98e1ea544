"""Tests for category rule matching."""

import pytest
from conftest import make_message

from casemail.classifier import classify
from casemail.config_schema import CategoryRule


def _rule(category: str, **conditions: list[str]) -> CategoryRule:
    return CategoryRule(category=category, conditions=conditions)


@pytest.fixture
def rules() -> list[CategoryRule]:
    return [
        _rule("EMAIL_COURTS_SUPREME_COURT", from_includes=["supremecourt"]),
        _rule("EMAIL_COMPLAINTS_ICO", from_includes=["ico.org.uk"]),
        _rule("EMAIL_CLAIMANT_SMITH", subject_includes=["smith v"]),
        _rule("EMAIL_INBOX_CASES", to_includes=["cases@"]),
    ]


class TestClassify:
    """Tests for classify()."""

    def test_supreme_court_routing(self, rules: list[CategoryRule]) -> None:
        message = make_message(
            sender="admin@supremecourt.uk",
            subject="Appeal hearing scheduled",
            to="clerk@firm.example",
        )

        result = classify(message, rules)

        assert result.matched
        assert result.categories == ("EMAIL_COURTS_SUPREME_COURT",)

    def test_multiple_categories_in_rule_order(self, rules: list[CategoryRule]) -> None:
        message = make_message(
            sender="listing@supremecourt.uk",
            subject="Smith v Jones: listing",
            to="cases@firm.example",
        )

        result = classify(message, rules)

        assert result.categories == (
            "EMAIL_COURTS_SUPREME_COURT",
            "EMAIL_CLAIMANT_SMITH",
            "EMAIL_INBOX_CASES",
        )

    def test_case_insensitive(self) -> None:
        rules = [_rule("EMAIL_X", subject_includes=["Court Of Appeal"])]
        message = make_message(subject="COURT OF APPEAL ORDER", to="x@y.z")
        assert classify(message, rules).categories == ("EMAIL_X",)

    def test_any_field_fires_the_rule(self) -> None:
        rule = _rule("EMAIL_X", from_includes=["nomatch"], subject_includes=["order"])
        message = make_message(sender="a@b.c", subject="Sealed order", to="x@y.z")
        assert classify(message, [rule]).matched

    def test_no_match(self, rules: list[CategoryRule]) -> None:
        message = make_message(sender="friend@example.com", subject="Lunch?", to="me@home.example")

        result = classify(message, rules)

        assert not result.matched
        assert result.categories == ()

    def test_duplicate_categories_collapsed(self) -> None:
        rules = [
            _rule("EMAIL_ICO", from_includes=["ico.org.uk"]),
            _rule("EMAIL_ICO", subject_includes=["information commissioner"]),
        ]
        message = make_message(
            sender="casework@ico.org.uk", subject="Information Commissioner decision", to="x@y.z"
        )

        assert classify(message, rules).categories == ("EMAIL_ICO",)

    def test_empty_pattern_ignored(self) -> None:
        rules = [_rule("EMAIL_X", from_includes=["", "court"])]
        message = make_message(sender="friend@example.com", subject="Hi", to="x@y.z")
        assert not classify(message, rules).matched

    def test_empty_rule_list(self) -> None:
        assert not classify(make_message(), []).matched
