"""
Decoder for Clarity print-event representations.

The Stacks API exposes contract ``print`` output as a textual ``repr`` of a
Clarity value, in one of two notations::

    (tuple (amount u500000) (event "borrow-request") (evm-recipient 0x12..) (token-id "USDC"))
    {event: "borrow-request", token-id: "USDC", amount: u500000, evm-recipient: 0x12..}

This module tokenizes and parses either notation into plain Python values and
classifies the result as a borrow request, a deposit, or unrecognized
(``None``). Most log entries are irrelevant noise, so an unrecognized or
malformed representation is not an error.
"""

import re
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Union

import structlog

logger = structlog.get_logger()

BORROW_TAG = "borrow-request"
DEPOSIT_TAG = "deposit"

EVM_ADDRESS_BYTES = 20

_STACKS_PRINCIPAL_RE = re.compile(r"^S[0-9A-Z]{27,40}(\.[a-zA-Z][a-zA-Z0-9_-]*)?$")
_HEX_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

_TOKEN_RE = re.compile(
    r"""
     (?P<ws>[\s,]+)
    |(?P<open>[(\[{])
    |(?P<close>[)\]}])
    |(?P<colon>:)
    |(?P<string>u?"(?:[^"\\]|\\.)*")
    |(?P<uint>u[0-9]+)
    |(?P<buffer>0x[0-9a-fA-F]*)
    |(?P<int>-?[0-9]+)
    |(?P<principal>'[0-9A-Z]+(?:\.[a-zA-Z][a-zA-Z0-9_-]*)?)
    |(?P<symbol>[a-zA-Z][a-zA-Z0-9_.!?+*/<>=-]*)
    """,
    re.VERBOSE,
)

_ESCAPES = {'"': '"', "\\": "\\", "n": "\n", "t": "\t", "r": "\r", "0": "\0"}

_CLOSERS = {"(": ")", "[": "]", "{": "}"}


class ReprSyntaxError(ValueError):
    """Representation is not a well-formed Clarity value."""


class UInt(int):
    """Clarity unsigned integer literal (``u123``)."""


class Principal(str):
    """Clarity standard or contract principal."""


class Symbol(str):
    """Bare identifier that is not a keyword or principal."""


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int


def tokenize(text: str) -> Iterator[Token]:
    """Split a representation into tokens, dropping whitespace and commas."""
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ReprSyntaxError(f"unexpected character {text[pos]!r} at {pos}")
        kind = match.lastgroup or ""
        if kind != "ws":
            yield Token(kind, match.group(), pos)
        pos = match.end()


def _unescape(body: str) -> str:
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, text: str):
        self.tokens = list(tokenize(text))
        self.index = 0

    def peek(self) -> Optional[Token]:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def next(self) -> Token:
        token = self.peek()
        if token is None:
            raise ReprSyntaxError("unexpected end of input")
        self.index += 1
        return token

    def expect_close(self, opener: str) -> None:
        token = self.next()
        if token.kind != "close" or token.text != _CLOSERS[opener]:
            raise ReprSyntaxError(f"expected {_CLOSERS[opener]!r} at {token.pos}")

    def parse(self) -> Any:
        value = self.value()
        if self.peek() is not None:
            raise ReprSyntaxError(f"trailing input at {self.peek().pos}")
        return value

    def value(self) -> Any:
        token = self.next()
        if token.kind == "open":
            if token.text == "{":
                return self.braced_tuple()
            if token.text == "[":
                return self.sequence("[")
            return self.form()
        return self.atom(token)

    def atom(self, token: Token) -> Any:
        if token.kind == "string":
            body = token.text[2:-1] if token.text.startswith("u") else token.text[1:-1]
            return _unescape(body)
        if token.kind == "uint":
            return UInt(int(token.text[1:]))
        if token.kind == "int":
            return int(token.text)
        if token.kind == "buffer":
            digits = token.text[2:]
            if len(digits) % 2:
                raise ReprSyntaxError(f"odd-length buffer at {token.pos}")
            return bytes.fromhex(digits)
        if token.kind == "principal":
            return Principal(token.text[1:])
        if token.kind == "symbol":
            if token.text == "true":
                return True
            if token.text == "false":
                return False
            if token.text == "none":
                return None
            if _STACKS_PRINCIPAL_RE.match(token.text):
                return Principal(token.text)
            return Symbol(token.text)
        raise ReprSyntaxError(f"unexpected {token.text!r} at {token.pos}")

    def braced_tuple(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        while True:
            token = self.peek()
            if token is None:
                raise ReprSyntaxError("unterminated tuple")
            if token.kind == "close":
                self.expect_close("{")
                return result
            key = self.next()
            if key.kind != "symbol":
                raise ReprSyntaxError(f"expected tuple key at {key.pos}")
            colon = self.next()
            if colon.kind != "colon":
                raise ReprSyntaxError(f"expected ':' at {colon.pos}")
            result[key.text] = self.value()

    def sequence(self, opener: str) -> list[Any]:
        items = []
        while True:
            token = self.peek()
            if token is None:
                raise ReprSyntaxError("unterminated list")
            if token.kind == "close":
                self.expect_close(opener)
                return items
            items.append(self.value())

    def form(self) -> Any:
        head = self.peek()
        if head is None or head.kind != "symbol":
            return self.sequence("(")
        self.next()

        if head.text == "tuple":
            result: dict[str, Any] = {}
            while True:
                token = self.next()
                if token.kind == "close":
                    if token.text != ")":
                        raise ReprSyntaxError(f"expected ')' at {token.pos}")
                    return result
                if token.kind != "open" or token.text != "(":
                    raise ReprSyntaxError(f"expected tuple entry at {token.pos}")
                key = self.next()
                if key.kind != "symbol":
                    raise ReprSyntaxError(f"expected tuple key at {key.pos}")
                result[key.text] = self.value()
                self.expect_close("(")

        if head.text in ("some", "ok"):
            inner = self.value()
            self.expect_close("(")
            return inner

        if head.text == "list":
            return self.sequence("(")

        return [Symbol(head.text), *self.sequence("(")]


def parse_repr(text: str) -> Any:
    """Parse a Clarity value representation into Python values.

    Tuples become ``dict``, lists ``list``, buffers ``bytes``, strings
    ``str``, uints :class:`UInt`, principals :class:`Principal`.
    ``(some x)`` and ``(ok x)`` unwrap to ``x``.

    Raises:
        ReprSyntaxError: If the text is not a well-formed value.
    """
    return _Parser(text).parse()


@dataclass(frozen=True)
class BorrowPrint:
    """Decoded ``borrow-request`` print payload."""

    token_id: str
    amount: int
    evm_recipient: Optional[str]
    user: Optional[str] = None


@dataclass(frozen=True)
class DepositPrint:
    """Decoded ``deposit`` print payload."""

    amount: int
    balance: int
    user: Optional[str] = None


PrintEvent = Union[BorrowPrint, DepositPrint]


def _uint_field(fields: dict[str, Any], key: str) -> int:
    value = fields.get(key)
    return int(value) if isinstance(value, UInt) else 0


def _principal_field(fields: dict[str, Any], key: str) -> Optional[str]:
    value = fields.get(key)
    if isinstance(value, str) and not isinstance(value, Symbol) and value:
        return str(value)
    return None


def _evm_address_field(fields: dict[str, Any], key: str) -> Optional[str]:
    value = fields.get(key)
    if isinstance(value, bytes) and len(value) == EVM_ADDRESS_BYTES:
        return "0x" + value.hex()
    if isinstance(value, str) and _HEX_ADDRESS_RE.match(value):
        return value
    return None


def decode(representation: Optional[str]) -> Optional[PrintEvent]:
    """
    Decode a print-event representation.

    Returns a :class:`BorrowPrint` for tuples whose ``event`` contains
    ``borrow-request``, a :class:`DepositPrint` for ``event "deposit"``,
    and ``None`` for anything else.
    """
    if not representation:
        return None

    try:
        value = parse_repr(representation)
    except ReprSyntaxError as e:
        logger.debug("print_repr_unparsed", error=str(e))
        return None

    if not isinstance(value, dict):
        return None

    tag = value.get("event")
    if not isinstance(tag, str) or isinstance(tag, (Symbol, Principal)):
        return None

    if BORROW_TAG in tag:
        token_id = value.get("token-id")
        return BorrowPrint(
            token_id=token_id if type(token_id) is str else "",
            amount=_uint_field(value, "amount"),
            evm_recipient=_evm_address_field(value, "evm-recipient"),
            user=_principal_field(value, "user"),
        )

    if tag == DEPOSIT_TAG:
        return DepositPrint(
            amount=_uint_field(value, "amount"),
            balance=_uint_field(value, "balance"),
            user=_principal_field(value, "user"),
        )

    return None
