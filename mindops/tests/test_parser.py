"""Tests for tabular parsing and text sanitization."""

import io

import pytest

from mindops.common.errors import InputValidationError
from mindops.ingest.parser import parse_table, sanitize_text, source_type_for


class TestSanitizeText:
    def test_removes_literal_escape_sequences(self):
        assert sanitize_text("a\\u0000b") == "ab"
        assert sanitize_text("a\\x1fb") == "ab"

    def test_simple_escapes_become_spaces(self):
        assert sanitize_text("line\\nnext") == "line next"
        assert sanitize_text("col\\tcol") == "col col"

    def test_removes_control_characters_and_nulls(self):
        assert sanitize_text("a\x00b\x07c\x7f") == "abc"

    def test_removes_surrogates_and_non_characters(self):
        assert sanitize_text("a\ud800b\uffffc") == "abc"

    def test_collapses_whitespace(self):
        assert sanitize_text("  Widget A \t\n\n  120  ") == "Widget A 120"

    def test_keeps_accents_and_delimiters(self):
        assert sanitize_text("Región | Año") == "Región | Año"

    def test_empty(self):
        assert sanitize_text("") == ""


class TestParseTable:
    def test_csv_rows_joined_with_delimiter(self, sales_csv):
        docs = parse_table("sales.csv", sales_csv)

        assert [d.content for d in docs] == [
            "product | units | region",
            "Widget A | 120 | North",
            "Widget B | 75 | South",
        ]
        assert [d.row_index for d in docs] == [0, 1, 2]
        assert all(d.sheet_name is None for d in docs)

    def test_blank_rows_skipped(self):
        docs = parse_table("a.csv", b"name,qty\n,\nbolt,4\n")
        assert [d.content for d in docs] == ["name | qty", "bolt | 4"]

    def test_tsv(self):
        docs = parse_table("stock.tsv", b"sku\tqty\nA-1\t9\n")
        assert docs[1].content == "A-1 | 9"

    def test_latin1_fallback(self):
        docs = parse_table("a.csv", "café,1\n".encode("latin-1"))
        assert docs[0].content == "café | 1"

    def test_xlsx_sheets(self):
        from openpyxl import Workbook

        wb = Workbook()
        ws = wb.active
        ws.title = "Q1"
        ws.append(["product", "units"])
        ws.append(["Widget A", 120])
        ws2 = wb.create_sheet("Q2")
        ws2.append(["Widget B", 75.0])
        buf = io.BytesIO()
        wb.save(buf)

        docs = parse_table("report.xlsx", buf.getvalue())

        assert [(d.sheet_name, d.content) for d in docs] == [
            ("Q1", "product | units"),
            ("Q1", "Widget A | 120"),
            ("Q2", "Widget B | 75"),
        ]

    def test_invalid_xlsx(self):
        with pytest.raises(InputValidationError, match="Invalid XLSX"):
            parse_table("broken.xlsx", b"not a zip file")

    def test_oversized_csv_field_rejected(self):
        data = b'product,notes\nWidget A,"' + b"x" * 200_000 + b'"\n'

        with pytest.raises(InputValidationError, match="Invalid delimited file at line"):
            parse_table("huge.csv", data)

    def test_unsupported_extension(self):
        with pytest.raises(InputValidationError, match="Unsupported file type"):
            source_type_for("notes.pdf")
        with pytest.raises(InputValidationError):
            parse_table("notes.pdf", b"data")

    def test_empty_content(self):
        with pytest.raises(InputValidationError):
            parse_table("empty.csv", b"")
        with pytest.raises(InputValidationError, match="No content"):
            parse_table("blank.csv", b",,\n,,\n")
