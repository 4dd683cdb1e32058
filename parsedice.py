#!/usr/bin/env python

import attr
import enum
import logging
import math
import operator
import re
import sys
import readline
import threading
import time
import traceback
from random import Random

import colorama
from arpeggio import ParserPython, RegExMatch, Optional, Combine, NoMatch
from colors import color

from typing import Union, List, Iterable, Iterator, Callable, Dict, TextIO
from typing import Optional as OptionalType

EXPR_COLOR = "green"
RESULT_COLOR = "red"
DETAIL_COLOR = "yellow"

# Starting size of an Expression's backing storage; doubles when full.
DEFAULT_CAPACITY = 2
# Only plain spaces separate tokens, tabs and newlines are not skipped.
WHITESPACE = ' '
PROMPT = "Enter roll> "
QUIT_WORDS = ('quit', 'exit', 'q')

logFormatter = logging.Formatter('%(asctime)s %(levelname)s: %(message)s', '%Y-%m-%d %H:%M:%S')
logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)
logger.handlers = []
logger.addHandler(logging.StreamHandler())
for handler in logger.handlers:
    handler.setFormatter(logFormatter)

class ParseDiceError(ValueError):
    pass

class InvalidDiceError(ParseDiceError):
    pass

class UnbalancedExpressionError(ParseDiceError):
    pass

class EvaluationError(ParseDiceError):
    pass

class LexError(ParseDiceError):
    '''Raised by evaluate_string() when the input could not be lexed.

    Carries the offending error token and the original text, so callers
    can point at the part of the input where lexing gave up.

    '''
    def __init__(self, error: 'ParseError', text: str):
        self.error = error
        self.text = text
        super().__init__('\n'.join(format_error(text, error)))

# Literal parsing. Only the lexer's number and integer scans use these
# rules; everything else is recognized by hand.
def Digits(): return RegExMatch('[0-9]+')
def Sign(): return ['+', '-']
def Integer(): return Optional(Sign), Digits
def FloatingPoint():
    return (
        Optional(Sign),
        [
            # e.g. '1.', '1.0'
            (Digits, '.', Optional(Digits)),
            # e.g. '.1'
            ('.', Digits),
        ]
    )
def Scientific():
    return ([FloatingPoint, Integer], RegExMatch('[eE]'), Integer)
def HexFloat():
    return (
        Optional(Sign),
        RegExMatch(r'0[xX]([0-9a-fA-F]+\.?[0-9a-fA-F]*|\.[0-9a-fA-F]+)([pP][+-]?[0-9]+)?'),
    )
def Special(): return Optional(Sign), RegExMatch(r'(?i)(inf(inity)?|nan)')
def FloatLiteral(): return Combine([HexFloat, Scientific, FloatingPoint, Integer, Special])

float_parser = ParserPython(FloatLiteral, skipws = False)
uint_parser = ParserPython(Digits, skipws = False)

def scan_literal(parser: ParserPython, text: str) -> OptionalType[str]:
    '''Return the literal that parser matches at the start of text.

    Returns None if nothing matches. Trailing text is left alone, so
    this can be used to scan one token off the front of a string.

    '''
    try:
        return parser.parse(text).flat_str()
    except NoMatch:
        return None

@attr.s(frozen = True)
class TextSlice(object):
    '''A view into the original input text.

    Only offsets are stored; the text itself is sliced out on demand,
    so error tokens stay cheap to create.

    '''
    source: str = attr.ib(repr = False)
    start: int = attr.ib()
    end: int = attr.ib()

    @property
    def text(self) -> str:
        return self.source[self.start:self.end]

    def __len__(self) -> int:
        return self.end - self.start

    def __str__(self) -> str:
        return self.text

def _validate_dice_int(instance, attribute, value):
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f'Dice {attribute.name} must be an int, not {value!r}')
    if value < 0:
        raise ValueError(f'Dice {attribute.name} must not be negative: {value!r}')

@attr.s(frozen = True)
class Dice(object):
    amount: int = attr.ib(validator = _validate_dice_int)
    faces: int = attr.ib(validator = _validate_dice_int)

    def __str__(self) -> str:
        return f'{self.amount}d{self.faces}'

class OperationKind(enum.Enum):
    ADD = '+'
    SUB = '-'
    MUL = '*'
    DIV = '/'

@attr.s(frozen = True)
class Operation(object):
    kind: OperationKind = attr.ib(validator = attr.validators.instance_of(OperationKind))

@attr.s(frozen = True)
class Number(object):
    # Python float (64-bit); values are not rounded to float32
    value: float = attr.ib(converter = float)

@attr.s(frozen = True)
class OpenParen(object):
    pass

@attr.s(frozen = True)
class CloseParen(object):
    pass

class ErrorKind(enum.Enum):
    # Recognizer fallthrough only, never returned by parse()
    DID_NOT_MATCH_PATTERN = 'did_not_match_pattern'
    NO_MATCHES = 'no_matches'
    EXPECTED_INT = 'expected_int'

@attr.s(frozen = True)
class ParseError(object):
    kind: ErrorKind = attr.ib(validator = attr.validators.instance_of(ErrorKind))
    stopped_at: TextSlice = attr.ib()

Token = Union[Dice, Operation, Number, OpenParen, CloseParen, ParseError]

@attr.s(eq = False)
class Expression(object):
    '''An ordered, growable sequence of tokens.

    The same type holds both the infix stream produced by parse() and
    the postfix stream produced by to_postfix(). Storage grows by
    doubling, and release() resets the expression to an empty,
    zero-capacity state; appending to a released expression is an
    error.

    '''
    items: List[Token] = attr.ib(factory = list)
    capacity: int = attr.ib(default = DEFAULT_CAPACITY)

    @classmethod
    def create(cls) -> 'Expression':
        return cls()

    @classmethod
    def from_tokens(cls, tokens: Iterable[Token]) -> 'Expression':
        expr = cls()
        for token in tokens:
            expr.append(token)
        return expr

    @property
    def is_released(self) -> bool:
        return self.capacity == 0

    @property
    def errors(self) -> List[ParseError]:
        return [ token for token in self.items if isinstance(token, ParseError) ]

    def append(self, token: Token) -> None:
        if self.is_released:
            raise ValueError('Cannot append to a released expression')
        if len(self.items) + 1 > self.capacity:
            self.capacity *= 2
        self.items.append(token)

    def destroy(self) -> None:
        self.items = []
        self.capacity = 0

    release = destroy

    def __enter__(self) -> 'Expression':
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[Token]:
        return iter(self.items)

    def __getitem__(self, index):
        return self.items[index]

    def __eq__(self, other) -> bool:
        if isinstance(other, Expression):
            return self.items == other.items
        return NotImplemented

    def __str__(self) -> str:
        return format_expression(self)

# Lexing

@attr.s
class Scanner(object):
    '''Cursor over the input text, shared by the token recognizers.'''
    text: str = attr.ib()
    position: int = attr.ib(default = 0)
    # Last token produced, used to tell a sign from an operator
    last_token: OptionalType[Token] = attr.ib(default = None)

    @property
    def remaining(self) -> str:
        return self.text[self.position:]

    @property
    def exhausted(self) -> bool:
        return self.position >= len(self.text)

    def peek(self) -> str:
        return self.text[self.position:self.position + 1]

    def skip_whitespace(self) -> None:
        while self.peek() == WHITESPACE:
            self.position += 1

    def match_character(self, c: str) -> bool:
        if self.peek() != c:
            return False
        self.position += 1
        return True

    def rest_slice(self) -> TextSlice:
        return TextSlice(self.text, self.position, len(self.text))

    def error(self, kind: ErrorKind) -> ParseError:
        return ParseError(kind, self.rest_slice())

    def at_operand_start(self) -> bool:
        '''True if the next token has to be an operand.'''
        return self.last_token is None or isinstance(self.last_token, (Operation, OpenParen))

def is_soft_failure(token: Token) -> bool:
    return isinstance(token, ParseError) and token.kind == ErrorKind.DID_NOT_MATCH_PATTERN

def parse_parenthesis(scanner: Scanner) -> Token:
    if scanner.match_character('('):
        return OpenParen()
    if scanner.match_character(')'):
        return CloseParen()
    return scanner.error(ErrorKind.DID_NOT_MATCH_PATTERN)

def is_signed_number(scanner: Scanner) -> bool:
    '''True if a sign at the cursor belongs to a number literal.

    A sign is folded into the number only where an operand is expected,
    and never into the amount of a dice term: '-120' is one number,
    '-3d6' is a subtraction followed by a dice term, and '2d6-1' is a
    subtraction.

    '''
    if not scanner.at_operand_start():
        return False
    literal = scan_literal(float_parser, scanner.remaining)
    if literal is None:
        return False
    return scanner.remaining[len(literal):len(literal) + 1] != 'd'

def parse_operation(scanner: Scanner) -> Token:
    if scanner.peek() in ('+', '-') and is_signed_number(scanner):
        return scanner.error(ErrorKind.DID_NOT_MATCH_PATTERN)
    for kind in OperationKind:
        if scanner.match_character(kind.value):
            return Operation(kind)
    return scanner.error(ErrorKind.DID_NOT_MATCH_PATTERN)

def parse_dice_int(scanner: Scanner) -> OptionalType[int]:
    # Digits only, so a leading '+' or '-' is never swallowed into a
    # dice term: '+3d6' must lex as [Add, Dice].
    digits = scan_literal(uint_parser, scanner.remaining)
    if digits is None:
        return None
    scanner.position += len(digits)
    return int(digits)

def parse_dice(scanner: Scanner) -> Token:
    start = scanner.position
    amount = parse_dice_int(scanner)
    if amount is None or not scanner.match_character('d'):
        scanner.position = start
        return scanner.error(ErrorKind.DID_NOT_MATCH_PATTERN)
    faces = parse_dice_int(scanner)
    if faces is None:
        # No backtracking once 'd' has been consumed
        return scanner.error(ErrorKind.EXPECTED_INT)
    return Dice(amount, faces)

def parse_number(scanner: Scanner) -> Token:
    literal = scan_literal(float_parser, scanner.remaining)
    if literal is None:
        return scanner.error(ErrorKind.DID_NOT_MATCH_PATTERN)
    scanner.position += len(literal)
    if 'x' in literal.lower():
        return Number(float.fromhex(literal))
    return Number(float(literal))

RECOGNIZERS: List[Callable[[Scanner], Token]] = [
    parse_parenthesis,
    parse_operation,
    parse_dice,
    parse_number,
]

def parse_token(scanner: Scanner) -> Token:
    '''Extract one token, trying each recognizer in order.

    The first recognizer that does not report a soft failure wins. If
    all of them fail, a NO_MATCHES error anchored at the cursor is
    returned.

    '''
    for recognizer in RECOGNIZERS:
        scanner.skip_whitespace()
        token = recognizer(scanner)
        scanner.skip_whitespace()
        if not is_soft_failure(token):
            return token
    return scanner.error(ErrorKind.NO_MATCHES)

def parse(text: str) -> Expression:
    '''Lex text into an infix Expression.

    Lexing stops at the first error, which is appended as the last
    token. Empty or blank input gives an empty Expression.

    '''
    scanner = Scanner(text)
    expr = Expression.create()
    scanner.skip_whitespace()
    while not scanner.exhausted:
        token = parse_token(scanner)
        logger.debug(f'Lexed {token!r}')
        expr.append(token)
        scanner.last_token = token
        if isinstance(token, ParseError):
            break
    return expr

# Validation and conversion

def is_balanced(expr: Expression) -> bool:
    stack: List[Token] = []
    for token in expr:
        if isinstance(token, OpenParen):
            stack.append(token)
        elif isinstance(token, CloseParen):
            if not stack:
                return False
            stack.pop()
    return len(stack) == 0

PRECEDENCE: Dict[OperationKind, int] = {
    OperationKind.ADD: 1,
    OperationKind.SUB: 1,
    OperationKind.MUL: 2,
    OperationKind.DIV: 2,
}

def to_postfix(expr: Expression) -> Expression:
    '''Convert an infix Expression to postfix order (shunting-yard).

    The input is not modified and its parentheses are not checked; run
    is_balanced() first if that matters. Operators of equal precedence
    are left associative.

    '''
    output = Expression.create()
    operators: List[Token] = []
    for token in expr:
        if isinstance(token, (Dice, Number, ParseError)):
            output.append(token)
        elif isinstance(token, Operation):
            # An OpenParen on top is not an Operation, so it stops the popping
            while (operators and isinstance(operators[-1], Operation)
                   and PRECEDENCE[operators[-1].kind] >= PRECEDENCE[token.kind]):
                output.append(operators.pop())
            operators.append(token)
        elif isinstance(token, OpenParen):
            operators.append(token)
        elif isinstance(token, CloseParen):
            while operators:
                top = operators.pop()
                if isinstance(top, OpenParen):
                    break
                output.append(top)
    while operators:
        top = operators.pop()
        # Unmatched '(' only shows up in unbalanced input
        if not isinstance(top, OpenParen):
            output.append(top)
    logger.debug(f'Postfix: {format_expression(output)}')
    return output

# Dice rolling

_rng = Random()
_rng_lock = threading.Lock()
_rng_seeded = False

def generate_seed() -> int:
    '''Seed from the wall clock: nanoseconds XOR seconds.'''
    seconds, nanoseconds = divmod(time.time_ns(), 1_000_000_000)
    return nanoseconds ^ seconds

def ensure_seeded() -> None:
    global _rng_seeded
    with _rng_lock:
        if not _rng_seeded:
            _rng.seed(generate_seed())
            _rng_seeded = True

def seed(value: int) -> None:
    '''Reseed the shared generator, making subsequent rolls reproducible.'''
    global _rng_seeded
    with _rng_lock:
        _rng.seed(value)
        _rng_seeded = True

def roll(dice: Dice, results: OptionalType[list] = None) -> float:
    '''Roll dice and return the sum.

    If results is given, each individual roll is written into it in
    draw order; it must hold at least dice.amount entries.

    '''
    if dice.faces == 0:
        raise InvalidDiceError(f"Can't roll a 0-sided die: {dice}")
    if results is not None and len(results) < dice.amount:
        raise ValueError(f'Result buffer holds {len(results)} rolls, need {dice.amount}')
    ensure_seeded()
    total = 0
    with _rng_lock:
        for i in range(dice.amount):
            r = _rng.randint(1, dice.faces)
            if results is not None:
                results[i] = r
            total += r
    logger.debug(f'Rolled {dice}: {total}')
    return float(total)

def format_dice_roll_list(rolls: List[int]) -> str:
    return '[' + color(" ".join(map(str, rolls)), DETAIL_COLOR) + ']'

@attr.s
class DiceRolled(object):
    '''Class representing the result of rolling one dice term.'''
    dice: Dice = attr.ib()
    rolls: List[int] = attr.ib(factory = list)

    def total(self) -> int:
        return sum(self.rolls)

    def __str__(self) -> str:
        prefix = '{text} rolled'.format(text=color(str(self.dice), EXPR_COLOR))
        if len(self.rolls) > 1:
            tot = ', Total: ' + color(str(self.total()), DETAIL_COLOR)
        else:
            tot = ''
        return f'{prefix}: {format_dice_roll_list(self.rolls)}{tot}'

# Evaluation

def divide(left: float, right: float) -> float:
    '''IEEE-754 division: x/0 is a signed infinity and 0/0 is nan.'''
    if right == 0:
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1.0, right)
    return left / right

OPERATIONS: Dict[OperationKind, Callable[[float, float], float]] = {
    OperationKind.ADD: operator.add,
    OperationKind.SUB: operator.sub,
    OperationKind.MUL: operator.mul,
    OperationKind.DIV: divide,
}

def evaluate(expr: Expression, roll_log: OptionalType[List[DiceRolled]] = None) -> Number:
    '''Reduce a postfix Expression to a single Number.

    Dice are rolled as they are reached. If roll_log is given, a
    DiceRolled record for every roll is appended to it.

    '''
    stack: List[float] = []
    for token in expr:
        if isinstance(token, Number):
            stack.append(token.value)
        elif isinstance(token, Dice):
            rolls = [0] * token.amount
            stack.append(roll(token, rolls))
            if roll_log is not None:
                roll_log.append(DiceRolled(token, rolls))
        elif isinstance(token, Operation):
            if len(stack) < 2:
                raise EvaluationError(f'Not enough operands for {operation_to_char(token.kind)!r}')
            right = stack.pop()
            left = stack.pop()
            stack.append(OPERATIONS[token.kind](left, right))
        else:
            raise EvaluationError(f'Unexpected token in postfix expression: {format_token(token)}')
    if len(stack) != 1:
        raise EvaluationError(f'Malformed postfix expression leaves {len(stack)} values')
    return Number(stack.pop())

# Formatting

error_messages = {
    ErrorKind.EXPECTED_INT: "Expected Int",
    ErrorKind.DID_NOT_MATCH_PATTERN: "This error should never be logged, internal error",
    ErrorKind.NO_MATCHES: "No types have matched, please check your input",
}

def error_to_string(error: Union[ErrorKind, ParseError]) -> str:
    if isinstance(error, ParseError):
        error = error.kind
    return error_messages[error]

def operation_to_char(kind: OperationKind) -> str:
    return kind.value

def format_token(token: OptionalType[Token]) -> str:
    if isinstance(token, Number):
        return f'{token.value:g}'
    elif isinstance(token, Dice):
        return str(token)
    elif isinstance(token, Operation):
        return operation_to_char(token.kind)
    elif isinstance(token, OpenParen):
        return '('
    elif isinstance(token, CloseParen):
        return ')'
    elif isinstance(token, ParseError):
        return 'ERROR'
    elif token is None:
        return 'NULL'
    else:
        raise TypeError(f'Not a token: {token!r}')

def format_expression(expr: Iterable[Token]) -> str:
    return ' '.join(format_token(token) for token in expr)

def format_error(original_text: str, error: ParseError) -> List[str]:
    return [
        f'ERROR ({error_to_string(error)}): "{original_text}"',
        f'Stopped at: "{error.stopped_at}"',
    ]

def format_errors(original_text: str, expr: Expression) -> List[str]:
    lines: List[str] = []
    for error in expr.errors:
        lines.extend(format_error(original_text, error))
    return lines

# Pipeline

def evaluate_string(text: str, roll_log: OptionalType[List[DiceRolled]] = None) -> float:
    '''Lex, check, convert and evaluate text in one go.

    Raises LexError, UnbalancedExpressionError or EvaluationError
    instead of passing bad input on to the next stage.

    '''
    with parse(text) as infix:
        errors = infix.errors
        if errors:
            raise LexError(errors[0], text)
        if len(infix) == 0:
            raise EvaluationError(f'Nothing to evaluate in {text!r}')
        if not is_balanced(infix):
            raise UnbalancedExpressionError(f'Unbalanced parentheses in {text!r}')
        with to_postfix(infix) as postfix:
            return evaluate(postfix, roll_log).value

def print_result(expr_string: str, handle: OptionalType[TextIO] = None) -> None:
    roll_log: List[DiceRolled] = []
    result = evaluate_string(expr_string, roll_log)
    for rolled in roll_log:
        print(str(rolled), file=handle)
    print('Result: {result} (rolled {expr})'.format(
        expr=color(expr_string.strip(), EXPR_COLOR),
        result=color(f'{result:g}', RESULT_COLOR),
    ), file=handle)

def read_input(handle: TextIO = sys.stdin) -> str:
    if handle == sys.stdin:
        return input(PROMPT)
    else:
        line = handle.readline()
        if not line:
            raise EOFError()
        return line.rstrip('\n')

def roll_once(expr_string: str) -> int:
    try:
        print_result(expr_string)
    except ParseDiceError as exc:
        logger.error("Error while rolling: %s", exc)
        return 1
    return 0

def interactive_loop(handle: TextIO) -> int:
    while True:
        try:
            input_string = read_input(handle)
            if input_string.strip() in QUIT_WORDS:
                raise EOFError()
            if re.search("\\S", input_string):
                print_result(input_string)
        except KeyboardInterrupt:
            print('')
        except EOFError:
            print('')
            logger.info('Quitting.')
            return 0
        except ParseDiceError:
            logger.error('Error while evaluating {expr!r}:\n{tb}'.format(
                expr=input_string,
                tb=traceback.format_exc(),
            ))

def main(argv: OptionalType[List[str]] = None, handle: OptionalType[TextIO] = None) -> int:
    '''Roll the expression given on the command line, or start a prompt.'''
    if argv is None:
        argv = sys.argv[1:]
    if handle is None:
        handle = sys.stdin
    expr_string = " ".join(argv)
    colorama.init()
    try:
        if re.search("\\S", expr_string):
            return roll_once(expr_string)
        return interactive_loop(handle)
    finally:
        colorama.deinit()

if __name__ == '__main__':
    sys.exit(main())
