"""
Unit tests for to_postfix(), the infix to postfix converter.
"""

from parsedice import (
    Dice,
    Expression,
    Number,
    OpenParen,
    Operation,
    OperationKind,
    format_expression,
    parse,
    to_postfix,
)

ADD = Operation(OperationKind.ADD)
SUB = Operation(OperationKind.SUB)
MUL = Operation(OperationKind.MUL)
DIV = Operation(OperationKind.DIV)


class TestToPostfix:
    """Tests for operator ordering."""

    def test_precedence(self):
        postfix = to_postfix(parse("3d6 - 2 * 10"))

        assert list(postfix) == [Dice(3, 6), Number(2), Number(10), MUL, SUB]

    def test_parentheses(self):
        postfix = to_postfix(parse("(3d6 - 2) * 10"))

        assert list(postfix) == [Dice(3, 6), Number(2), SUB, Number(10), MUL]

    def test_left_associative(self):
        postfix = to_postfix(parse("1 - 2 - 3"))

        assert list(postfix) == [Number(1), Number(2), SUB, Number(3), SUB]

    def test_pops_every_higher_operator(self):
        postfix = to_postfix(parse("1 * 2 / 3 + 4"))

        assert format_expression(postfix) == "1 2 * 3 / 4 +"

    def test_nested_parentheses(self):
        postfix = to_postfix(parse("((3d8 + 2) - 2) * 2d4"))

        assert format_expression(postfix) == "3d8 2 + 2 - 2d4 *"

    def test_operator_after_open_paren(self):
        postfix = to_postfix(parse("2 * (3 + 4)"))

        assert list(postfix) == [Number(2), Number(3), Number(4), ADD, MUL]

    def test_no_parentheses_in_output(self):
        postfix = to_postfix(parse("(1 + (2 * 3)) / (4 - 1)"))

        assert all(isinstance(token, (Number, Dice, Operation)) for token in postfix)

    def test_input_not_modified(self):
        infix = parse("(3d6 - 2) * 10")
        before = list(infix)

        to_postfix(infix)

        assert list(infix) == before

    def test_unmatched_close_paren_is_ignored(self):
        postfix = to_postfix(parse("1 + 2) * 3"))

        assert list(postfix) == [Number(1), Number(2), ADD, Number(3), MUL]

    def test_unmatched_open_paren_is_dropped(self):
        postfix = to_postfix(Expression.from_tokens([OpenParen(), Number(1), ADD, Number(2)]))

        assert list(postfix) == [Number(1), Number(2), ADD]

    def test_converting_postfix_again(self):
        for text in ["3d6 - 2 * 10", "1 + 2 * 3", "2d4"]:
            once = to_postfix(parse(text))
            twice = to_postfix(once)

            assert twice == once

    def test_converting_postfix_again_regroups(self):
        once = to_postfix(parse("1 - 2 - 3"))
        assert format_expression(once) == "1 2 - 3 -"

        twice = to_postfix(once)

        assert format_expression(twice) == "1 2 3 - -"
        assert format_expression(to_postfix(parse("1 * 2 - 3"))) == "1 2 * 3 -"
        assert format_expression(to_postfix(to_postfix(parse("1 * 2 - 3")))) == "1 2 3 * -"

    def test_empty(self):
        assert len(to_postfix(Expression.create())) == 0
