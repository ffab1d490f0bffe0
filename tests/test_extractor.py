import pytest

from engine.errors import EmptyInput, NoEmailColumn, NoValidRows
from engine.extractor import extract_candidates, find_email_columns
from engine.models import VerificationVerdict
from engine.result_filter import filter_rows
from engine.syntax import is_plausible, normalize


def test_find_email_columns_is_case_insensitive_substring_match() -> None:
    header = ["Name", "Work EMAIL", "phone", "email_2", "Emai"]
    assert find_email_columns(header) == [1, 3]


def test_normalize_trims_lowercases_and_rejects_implausible() -> None:
    assert normalize("  Alice@Example.COM ") == "alice@example.com"
    assert normalize("not-an-email") is None
    assert normalize("a@b") is None
    assert normalize("a b@x.com") is None
    assert normalize("") is None
    assert normalize(None) is None
    assert is_plausible("x@y.co")


def test_extract_candidates_dedupes_in_first_seen_order() -> None:
    header = ["Name", "Email", "Backup Email"]
    rows = [
        ["Alice", "A@x.com", "alt@x.com"],
        ["Bob", "not-an-email", ""],
        ["Carl", "c@x.com", " a@X.com "],
        ["Short"],
    ]

    result = extract_candidates(header, rows)

    assert result.email_columns == [1, 2]
    assert result.candidates == ["a@x.com", "alt@x.com", "c@x.com"]
    assert result.rejected == 1


def test_extract_candidates_without_email_header_raises() -> None:
    with pytest.raises(NoEmailColumn):
        extract_candidates(["Name", "Phone"], [["Alice", "555"]])


def test_extract_candidates_with_no_rows_raises_empty_input() -> None:
    with pytest.raises(EmptyInput):
        extract_candidates(["Email"], [])
    with pytest.raises(EmptyInput):
        extract_candidates([], [["a@x.com"]])


def test_extract_candidates_with_only_invalid_cells_returns_empty_candidates() -> None:
    result = extract_candidates(["Email"], [["nope"], [""]])
    assert result.candidates == []
    assert result.rejected == 1


def _verdict(email: str, verified: bool) -> VerificationVerdict:
    return VerificationVerdict(email=email, syntax=True, mx_record=verified, smtp=verified, verified=verified)


def test_filter_rows_keeps_rows_with_any_verified_email_in_order() -> None:
    header = ["Name", "Email", "Other Email"]
    rows = [
        ["Alice", "A@x.com", ""],
        ["Bob", "bad@x.com", ""],
        ["Carl", "bad@x.com", "c@x.com"],
        ["Dana"],
    ]
    verdicts = {
        "a@x.com": _verdict("a@x.com", True),
        "bad@x.com": _verdict("bad@x.com", False),
        "c@x.com": _verdict("c@x.com", True),
    }

    cleaned = filter_rows(header, rows, [1, 2], verdicts)

    assert cleaned == [header, ["Alice", "A@x.com", ""], ["Carl", "bad@x.com", "c@x.com"]]


def test_filter_rows_with_nothing_verified_raises() -> None:
    verdicts = {"a@x.com": VerificationVerdict.failed("a@x.com", "timeout")}
    with pytest.raises(NoValidRows):
        filter_rows(["Email"], [["a@x.com"]], [0], verdicts)
