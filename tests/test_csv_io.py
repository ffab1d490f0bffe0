import pytest

from engine.csv_io import parse_csv, write_csv
from engine.errors import EmptyInput


def test_parse_csv_strips_bom_and_blank_lines() -> None:
    data = "\ufeffName,Email\r\n\r\nAlice,a@x.com\r\n,\r\n\"Smith, Bob\",b@x.com\r\n".encode("utf-8")

    header, rows = parse_csv(data)

    assert header == ["Name", "Email"]
    assert rows == [["Alice", "a@x.com"], ["Smith, Bob", "b@x.com"]]


def test_parse_csv_falls_back_to_latin1() -> None:
    data = "Name,Email\nJos\xe9,j@x.com\n".encode("latin-1")

    header, rows = parse_csv(data)

    assert rows == [["Jos\xe9", "j@x.com"]]


def test_parse_csv_empty_raises() -> None:
    with pytest.raises(EmptyInput):
        parse_csv(b"")
    with pytest.raises(EmptyInput):
        parse_csv(b"\n\n  \n")


def test_write_csv_quotes_fields_and_uses_crlf() -> None:
    out = write_csv([["Name", "Email"], ["Smith, Bob", "b@x.com"]])
    assert out == b'Name,Email\r\n"Smith, Bob",b@x.com\r\n'
