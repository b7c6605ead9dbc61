# Copyright 2025 Xdynix
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# This file includes portions of logic and structure adapted from the
# Kubernetes project (https://github.com/kubernetes/kubernetes), originally
# licensed under the Apache License, Version 2.0. Significant modifications
# have been made to port and restructure the code for use in Python.


"""Selector expression parsing.

This module turns a Kubernetes (K8s) style label selector string into a sequence of
structured expressions. Six forms are understood: `key in (v1,v2)`,
`key notin (v1,v2)`, `!key`, `key`, `key=value` (or `key==value`) and `key!=value`.
Fragments are separated by commas and whitespace.

Parsing is layered. A top-level lexer splits the selector into fragments, and each
fragment is handed to an equality or set sub-lexer, which in turn hands parenthesized
value lists to a value-list sub-lexer. A fragment that cannot be reduced to an
expression is reported as a whole, together with its UTF-8 byte span in the selector.

Note that members of a value list are restricted to `[a-zA-Z_-]+`, which is narrower
than what keys and equality values accept: `a=v1` parses, `a in (v1)` does not.

Example:
    >>> expressions = parse("env=prod, tier in (frontend,backend,frontend), !debug")
    >>> [str(expression) for expression in expressions]
    ['env=prod', 'tier in (backend,frontend)', '!debug']

    >>> # Fragments can be consumed one at a time, errors included.
    >>> for result in ExpressionLexer("a()d").results():
    ...     print(result)
    a
    failed to parse value as expression: '(' at 1..2
    failed to parse value as expression: ')' at 2..3
    d
"""

__all__ = (
    "DoesNotExist",
    "Equal",
    "Exists",
    "Expression",
    "ExpressionLexer",
    "Expressions",
    "In",
    "NotEqual",
    "NotIn",
    "Operator",
    "ParseError",
    "Span",
    "StringParseError",
    "build_expression",
    "parse",
)

import logging
import re
from collections.abc import Callable, Iterator, Sequence
from enum import Enum, StrEnum, auto
from functools import total_ordering
from typing import Annotated, Any, ClassVar, Literal, NamedTuple, Self, TypeVar

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    GetCoreSchemaHandler,
    RootModel,
    StringConstraints,
    TypeAdapter,
)
from pydantic_core import CoreSchema, core_schema

logger = logging.getLogger(__name__)

# ==== Grammar ====

KEY = r"[-./\w]+"
VALUE = r"[-.\w]+"
LIST_VALUE = r"[a-zA-Z_-]+"
# Unicode White_Space. Python's `\s` also matches the separators `\x1c`-`\x1f`.
WS_CHARS = r"\t\n\v\f\r \x85\xa0\u1680\u2000-\u200a\u2028\u2029\u202f\u205f\u3000"
WS = f"[{WS_CHARS}]"
VALUES_LIST = rf"\([-.\w{WS_CHARS},]*\)"

Key = Annotated[str, StringConstraints(pattern=f"^{KEY}$")]
Value = Annotated[str, StringConstraints(pattern=f"^{VALUE}$")]
ListValue = Annotated[str, StringConstraints(pattern=f"^{LIST_VALUE}$")]

KEYWORDS = frozenset({"in", "notin"})


def not_keyword(key: str) -> str:
    if key in KEYWORDS:
        raise ValueError(f"'{key}' is a keyword, not a set or presence key")
    return key


# Set and presence fragments read `in` and `notin` as keywords, never as keys.
SetKey = Annotated[Key, AfterValidator(not_keyword)]


def unique_sorted(values: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(sorted(set(values)))


# Duplicates collapse and members are kept in lexicographic order.
ValueSet = Annotated[tuple[ListValue, ...], AfterValidator(unique_sorted)]


# ==== Expressions ====


class Operator(StrEnum):
    """Enumeration of selector expression operators."""

    # Set Operator
    IN = "In"
    NOT_IN = "NotIn"

    # Equality Operator
    EQUAL = "Equal"
    NOT_EQUAL = "NotEqual"

    # Presence Operator
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


@total_ordering
class BaseExpression(BaseModel):
    """Abstract representation of a single parsed selector expression.

    Expressions are immutable and hashable. Their string form is valid selector syntax
    that parses back into an equal expression.

    Attributes:
        key (str): The label key the expression applies to.
        operator (Operator): The operator, which also selects the concrete variant.
    """

    key: Key
    operator: Operator

    model_config = ConfigDict(frozen=True, extra="forbid", regex_engine="python-re")

    def __str__(self) -> str:
        match self.operator:
            case Operator.IN:
                return f"{self.key} in ({','.join(self.operands)})"
            case Operator.NOT_IN:
                return f"{self.key} notin ({','.join(self.operands)})"
            case Operator.EQUAL:
                return f"{self.key}={self.operands[0]}"
            case Operator.NOT_EQUAL:
                return f"{self.key}!={self.operands[0]}"
            case Operator.EXISTS:
                return self.key
            case Operator.DOES_NOT_EXIST:
                return f"!{self.key}"
            case _:  # pragma: no cover (not reachable)
                raise ValueError(f"unexpected operator: {self.operator}")

    def __lt__(self, other: Any) -> bool:
        if not isinstance(other, BaseExpression):
            return NotImplemented
        return self.sort_key < other.sort_key

    @property
    def sort_key(self) -> tuple[str, Operator, tuple[str, ...]]:
        return self.key, self.operator, self.operands

    @property
    def operands(self) -> tuple[str, ...]:
        """Values the expression compares against, empty for presence checks."""
        return ()


class In(BaseExpression):
    """Key exists and its value is one of `values`."""

    key: SetKey
    operator: Literal[Operator.IN] = Operator.IN
    values: ValueSet

    @property
    def operands(self) -> tuple[str, ...]:
        return self.values


class NotIn(BaseExpression):
    """Key does not exist or its value is none of `values`."""

    key: SetKey
    operator: Literal[Operator.NOT_IN] = Operator.NOT_IN
    values: ValueSet

    @property
    def operands(self) -> tuple[str, ...]:
        return self.values


class Equal(BaseExpression):
    """Key exists and its value equals `value`."""

    operator: Literal[Operator.EQUAL] = Operator.EQUAL
    value: Value

    @property
    def operands(self) -> tuple[str, ...]:
        return (self.value,)


class NotEqual(BaseExpression):
    """Key does not exist or its value differs from `value`."""

    operator: Literal[Operator.NOT_EQUAL] = Operator.NOT_EQUAL
    value: Value

    @property
    def operands(self) -> tuple[str, ...]:
        return (self.value,)


class Exists(BaseExpression):
    """Key exists."""

    key: SetKey
    operator: Literal[Operator.EXISTS] = Operator.EXISTS


class DoesNotExist(BaseExpression):
    """Key does not exist."""

    key: SetKey
    operator: Literal[Operator.DOES_NOT_EXIST] = Operator.DOES_NOT_EXIST


Expression = Annotated[
    In | NotIn | Equal | NotEqual | Exists | DoesNotExist,
    Field(discriminator="operator"),
]

_NOT_SET = object()
_expression_adapter = TypeAdapter[Expression](Expression)


def build_expression(
    key: str,
    operator: str,
    operand: Any = _NOT_SET,
) -> Expression:
    """Shortcut for creating a selector expression.

    `operand` is the single value of an equality expression or the collection of
    values of a set expression. It is omitted for presence expressions.
    """
    obj = {"key": key, "operator": operator}
    if operand is not _NOT_SET:
        if operator in (Operator.EQUAL, Operator.NOT_EQUAL):
            obj["value"] = operand
        else:
            obj["values"] = operand
    return _expression_adapter.validate_python(obj)


class Expressions(RootModel[tuple[Expression, ...]]):
    """Ordered sequence of parsed expressions, in the order they appear in the source.

    Example:
        >>> from pydantic import BaseModel
        >>> class Watch(BaseModel):
        ...     selector: Expressions
        >>> watch = Watch.model_validate({"selector": "app=web, !canary"})
        >>> len(watch.selector), str(watch.selector)
        (2, 'app=web, !canary')
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        frozen=True,
        json_schema_extra={"description": "An ordered list of selector expressions."},
    )

    def __str__(self) -> str:
        return ", ".join(str(expression) for expression in self.root)

    def __iter__(self) -> Iterator[Expression]:  # type: ignore[override]
        return iter(self.root)

    def __len__(self) -> int:
        return len(self.root)

    def __getitem__(self, index: int) -> Expression:
        return self.root[index]

    @classmethod
    def from_str(cls, s: str) -> Self:
        """Create an Expressions sequence from a selector string.

        Args:
            s: The selector string to parse.

        Returns:
            A new Expressions instance, empty for an empty selector.

        Raises:
            StringParseError: On the first fragment that is not a valid expression.
        """
        return cls.model_validate(tuple(ExpressionLexer(s)))

    @classmethod
    def __get_pydantic_core_schema__(
        cls,
        source_type: Any,
        handler: "GetCoreSchemaHandler",
    ) -> "CoreSchema":
        default_schema = handler(source_type)
        from_str_schema = core_schema.chain_schema(
            [
                core_schema.str_schema(),
                core_schema.no_info_plain_validator_function(cls.from_str),
                default_schema,
            ]
        )
        return core_schema.union_schema([default_schema, from_str_schema])


# ==== Errors ====


class Span(NamedTuple):
    """Half-open `[start, end)` range of UTF-8 byte offsets into a selector."""

    start: int
    end: int

    def __str__(self) -> str:
        return f"{self.start}..{self.end}"


class ParseError(ValueError):
    """Base class for selector parsing failures."""


class StringParseError(ParseError):
    """A fragment of the selector could not be parsed as an expression.

    Attributes:
        fragment (str): The offending text, exactly as it was matched.
        span (Span): Position of the fragment in the selector.
    """

    def __init__(self, fragment: str, span: Span) -> None:
        super().__init__(f"failed to parse value as expression: '{fragment}' at {span}")
        self.fragment = fragment
        self.span = span


# ==== Lexers ====


class Token(Enum):
    # Misc
    ERROR = auto()
    IDENTIFIER = auto()
    VALUES_LIST = auto()
    # Equality Operator
    EQUALS = auto()
    NOT_EQUALS = auto()
    # Set Operator
    IN = auto()
    NOT_IN = auto()
    # Presence Operator
    NOT = auto()


T = TypeVar("T")

Rule = tuple[re.Pattern[str], T]


def longest_match(
    rules: Sequence[Rule[T]],
    s: str,
    pos: int,
) -> tuple[re.Match[str], T] | None:
    """Returns the longest non-empty rule match at `pos`, earlier rules win ties."""
    best: tuple[re.Match[str], T] | None = None
    for pattern, tag in rules:
        m = pattern.match(s, pos)
        if m is None or m.end() == pos:
            continue
        if best is None or m.end() > best[0].end():
            best = m, tag
    return best


def lex(
    s: str,
    separator: re.Pattern[str],
    rules: Sequence[Rule[Token]],
) -> Iterator[tuple[Token, str]]:
    """Tokenizes a fragment, yielding an error token for each unknown character."""
    length = len(s)
    pos = 0
    while pos < length:
        if m := separator.match(s, pos):
            pos = m.end()
            continue

        best = longest_match(rules, s, pos)
        if best is None:
            yield Token.ERROR, s[pos]
            pos += 1
        else:
            m, token = best
            yield token, m.group()
            pos = m.end()


WHITESPACE = re.compile(f"{WS}+")

EQUALITY_RULES: tuple[Rule[Token], ...] = (
    (re.compile("=="), Token.EQUALS),
    (re.compile("="), Token.EQUALS),
    (re.compile("!="), Token.NOT_EQUALS),
    (re.compile(KEY), Token.IDENTIFIER),
)

SET_SEPARATOR = re.compile(f"[,{WS_CHARS}]+")
SET_RULES: tuple[Rule[Token], ...] = (
    (re.compile("!"), Token.NOT),
    (re.compile(VALUES_LIST), Token.VALUES_LIST),
    # Keywords are listed before identifiers so that they win equal-length matches.
    (re.compile("in"), Token.IN),
    (re.compile("notin"), Token.NOT_IN),
    (re.compile(KEY), Token.IDENTIFIER),
)

VALUES_LIST_SEPARATOR = re.compile(f"[,(){WS_CHARS}]+")
VALUES_LIST_RULES: tuple[Rule[Token], ...] = (
    (re.compile(LIST_VALUE), Token.IDENTIFIER),
)


def parse_equality(source: str) -> Expression | None:
    """Parses an equality based fragment such as `key=value` or `key != value`."""
    match list(lex(source, WHITESPACE, EQUALITY_RULES)):
        case [(Token.IDENTIFIER, key), (Token.EQUALS, _), (Token.IDENTIFIER, value)]:
            return Equal(key=key, value=value)
        case [(Token.IDENTIFIER, key), (Token.NOT_EQUALS, _), (Token.IDENTIFIER, val)]:
            return NotEqual(key=key, value=val)
    return None


def parse_set(source: str) -> Expression | None:
    """Parses a set or presence based fragment.

    Accepted forms are `!key`, `key`, `key in (...)` and `key notin (...)`. The value
    list becomes a set here: duplicates are dropped and members are sorted.
    """
    match list(lex(source, SET_SEPARATOR, SET_RULES)):
        case [(Token.NOT, _), (Token.IDENTIFIER, key)]:
            return DoesNotExist(key=key)
        case [(Token.IDENTIFIER, key)]:
            return Exists(key=key)
        case [(Token.IDENTIFIER, key), (Token.IN, _), (Token.VALUES_LIST, values_list)]:
            if (values := parse_value_list(values_list)) is not None:
                return In(key=key, values=values)
        case [
            (Token.IDENTIFIER, key),
            (Token.NOT_IN, _),
            (Token.VALUES_LIST, values_list),
        ]:
            if (values := parse_value_list(values_list)) is not None:
                return NotIn(key=key, values=values)
    return None


def parse_value_list(source: str) -> list[str] | None:
    """Parses a parenthesized value list into its members, in source order."""
    values = []
    for token, value in lex(source, VALUES_LIST_SEPARATOR, VALUES_LIST_RULES):
        if token != Token.IDENTIFIER:
            return None
        values.append(value)
    return values


SEPARATOR = re.compile(r"[, \t\n\f]+")

# Rules are tried at every position. The longest match owns the fragment and, when two
# rules match the same text, the earlier one wins.
EXPRESSION_RULES: tuple[Rule[Callable[[str], Expression | None]], ...] = (
    (re.compile(f"{KEY}{WS}+in{WS}*{VALUES_LIST}"), parse_set),
    (re.compile(f"{KEY}{WS}+notin{WS}*{VALUES_LIST}"), parse_set),
    (re.compile(rf"!{KEY}"), parse_set),
    (re.compile(KEY), parse_set),
    (re.compile(f"{KEY}{WS}*={WS}*{VALUE}"), parse_equality),
    (re.compile(f"{KEY}{WS}*=={WS}*{VALUE}"), parse_equality),
    (re.compile(f"{KEY}{WS}*!={WS}*{VALUE}"), parse_equality),
)


# ==== Parser ====


class ExpressionLexer(Iterator[Expression]):
    """Forward-only cursor producing one expression per selector fragment.

    A fragment that cannot be parsed raises `StringParseError` with the whole fragment
    as the offending text. Text that matches no fragment form at all is reported one
    character at a time. In both cases the cursor has already moved past the bad text,
    so the caller may keep asking for expressions, stop, or collect the errors.

    Example:
        >>> lexer = ExpressionLexer("a=b, c in (e,d)")
        >>> str(lexer.next_expression()), str(lexer.next_expression())
        ('a=b', 'c in (d,e)')
        >>> lexer.next_expression() is None
        True
    """

    def __init__(self, source: str) -> None:
        self.source = source
        self.pos = 0
        # UTF-8 byte offset of `pos`.
        self.offset = 0

    def __next__(self) -> Expression:
        expression = self.next_expression()
        if expression is None:
            raise StopIteration
        return expression

    def next_expression(self) -> Expression | None:
        """Parses the next fragment.

        Returns:
            The next expression, or None once the selector is exhausted.

        Raises:
            StringParseError: If the next fragment is not a valid expression.
        """
        source = self.source
        if m := SEPARATOR.match(source, self.pos):
            self.advance(m.end())
        if self.pos >= len(source):
            return None

        best = longest_match(EXPRESSION_RULES, source, self.pos)
        if best is None:
            fragment = source[self.pos]
            span = self.advance(self.pos + 1)
        else:
            m, handler = best
            fragment = m.group()
            span = self.advance(m.end())
            if (expression := handler(fragment)) is not None:
                return expression

        logger.debug("Rejected selector fragment %r at %s", fragment, span)
        raise StringParseError(fragment, span)

    def results(self) -> Iterator[Expression | ParseError]:
        """Yields every remaining fragment's outcome, errors included."""
        while True:
            try:
                expression = self.next_expression()
            except ParseError as e:
                yield e
                continue
            if expression is None:
                return
            yield expression

    def advance(self, pos: int) -> Span:
        start = self.offset
        self.offset += len(self.source[self.pos : pos].encode("utf-8", "surrogatepass"))
        self.pos = pos
        return Span(start, self.offset)


def parse(selector: str) -> Expressions:
    """Parses a whole selector string, failing on the first invalid fragment.

    Example:
        >>> str(parse("a in (c,a,b,a)")[0])
        'a in (a,b,c)'
        >>> len(parse(""))
        0
    """
    return Expressions.from_str(selector)
