"""
Unit tests for token formatting and error messages.
"""

import pytest

from parsedice import (
    ErrorKind,
    Number,
    OperationKind,
    TextSlice,
    error_to_string,
    format_errors,
    format_expression,
    format_token,
    operation_to_char,
    parse,
)


class TestFormatting:
    """Tests for rendering tokens and expressions."""

    def test_format_expression(self):
        assert format_expression(parse("(1d4 + 2) * 2")) == "( 1d4 + 2 ) * 2"

    def test_format_number(self):
        assert format_token(Number(32.5)) == "32.5"
        assert format_token(Number(50)) == "50"

    def test_format_null(self):
        assert format_token(None) == "NULL"

    def test_format_error_token(self):
        assert format_token(parse("Xd2")[0]) == "ERROR"

    def test_format_non_token(self):
        with pytest.raises(TypeError):
            format_token("3d6")

    @pytest.mark.parametrize("kind,char", [
        (OperationKind.ADD, "+"),
        (OperationKind.SUB, "-"),
        (OperationKind.MUL, "*"),
        (OperationKind.DIV, "/"),
    ])
    def test_operation_to_char(self, kind, char):
        assert operation_to_char(kind) == char


class TestErrorMessages:
    """Tests for human readable error output."""

    def test_error_to_string(self):
        assert error_to_string(ErrorKind.EXPECTED_INT) == "Expected Int"
        assert error_to_string(ErrorKind.NO_MATCHES) == "No types have matched, please check your input"
        assert "internal error" in error_to_string(ErrorKind.DID_NOT_MATCH_PATTERN)

    def test_format_errors(self):
        text = "1d-"

        assert format_errors(text, parse(text)) == [
            'ERROR (Expected Int): "1d-"',
            'Stopped at: "-"',
        ]

    def test_format_errors_without_errors(self):
        assert format_errors("1d6", parse("1d6")) == []

    def test_text_slice(self):
        s = TextSlice("3d6 + x", 6, 7)

        assert s.text == "x"
        assert str(s) == "x"
        assert len(s) == 1
