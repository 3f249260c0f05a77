#!/usr/bin/env python3
"""Parse OFX (SGML flavour) bank statements into a JSON-ready record.

The parser is a single pass over the token stream. It never builds a tree:
it keeps the path of open elements, remembers which field the next chunk of
text belongs to, and emits a transaction as soon as the ``STMTTRN`` scope is
left. Leaf elements in OFX 1.x normally have no closing tag, so an end tag
is resolved by unwinding the path until an element of that name is popped.
"""

from __future__ import annotations

import enum
import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, DecimalException
from typing import BinaryIO, Callable, Dict, Iterable, List, NamedTuple, Optional

from ofx_tokens import DEFAULT_CHUNK_SIZE, Token, TokenKind, iter_tokens

log = logging.getLogger(__name__)

MAX_PATH_DEPTH = 1000
TRANSACTION_TAG = "STMTTRN"
BALANCE_VALUE_TAG = "BALAMT"
MAX_EXACT_CENTS = Decimal("1e302")

DECIMAL_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
DATE_PREFIX_RE = re.compile(r"\d{8}")
DATETIME_RE = re.compile(
    r"(\d{4})(\d{2})(\d{2})"
    r"(?:(\d{2})(\d{2})(\d{2})?)?"
    r"(?:\.(\d{1,3}))?"
    r"(?:\[([+-]?\d{1,2}(?:\.\d+)?)(?::[^\]]*)?\])?"
)


class ParseError(RuntimeError):
    pass


class StructuralParseError(ParseError):
    """The document is broken in a way that makes the rest of it untrustworthy."""


class EncodingError(RuntimeError):
    pass


@dataclass(frozen=True, order=True)
class Amount:
    """Money as an integer count of hundredths."""

    cents: int = 0

    @classmethod
    def parse(cls, raw: str, *, exact: bool = False) -> "Amount":
        # The default path goes through a binary float and truncates, so some
        # two-decimal inputs lose a cent ("0.29" -> 28). exact=True avoids that.
        token = raw.strip()
        if not DECIMAL_RE.fullmatch(token):
            if token:
                log.warning("Unparseable amount %r, using 0.00", raw)
            return cls(0)
        if exact:
            return cls._parse_exact(raw, token)
        value = float(token) * 100
        if not math.isfinite(value):
            log.warning("Amount %r out of range, using 0.00", raw)
            return cls(0)
        return cls(int(value))

    @classmethod
    def _parse_exact(cls, raw: str, token: str) -> "Amount":
        try:
            cents = Decimal(token).scaleb(2)
        except DecimalException as exc:
            log.warning("Amount %r out of range (%s), using 0.00", raw, type(exc).__name__)
            return cls(0)
        if cents.copy_abs() >= MAX_EXACT_CENTS:
            log.warning("Amount %r out of range, using 0.00", raw)
            return cls(0)
        return cls(int(cents))

    def to_decimal(self) -> Decimal:
        return Decimal(self.cents).scaleb(-2)

    def __str__(self) -> str:
        sign = "-" if self.cents < 0 else ""
        whole, frac = divmod(abs(self.cents), 100)
        return f"{sign}{whole}.{frac:02d}"


@dataclass(frozen=True)
class TransactionRecord:
    fit_id: str
    type: str
    posted_date: Optional[date]
    memo: str
    amount: Amount
    user_date: Optional[date] = None


@dataclass
class TransactionDraft:
    fit_id: str = ""
    type: str = ""
    posted_date: Optional[date] = None
    user_date: Optional[date] = None
    memo: str = ""
    amount: Amount = field(default_factory=Amount)

    def freeze(self) -> TransactionRecord:
        return TransactionRecord(
            fit_id=self.fit_id,
            type=self.type,
            posted_date=self.posted_date,
            memo=self.memo,
            amount=self.amount,
            user_date=self.user_date,
        )


@dataclass
class StatementRecord:
    generated_at: Optional[datetime] = None
    language: str = ""
    bank_id: str = ""
    branch_id: str = ""
    account_number: str = ""
    account_type: str = ""
    currency: str = ""
    ledger_balance: Amount = field(default_factory=Amount)
    available_balance: Amount = field(default_factory=Amount)
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    transactions: List[TransactionRecord] = field(default_factory=list)


class Field(enum.Enum):
    NONE = enum.auto()
    ACCOUNT_ID = enum.auto()
    BANK_ID = enum.auto()
    BRANCH_ID = enum.auto()
    ACCOUNT_TYPE = enum.auto()
    CURRENCY = enum.auto()
    LANGUAGE = enum.auto()
    GENERATED_AT = enum.auto()
    PERIOD_START = enum.auto()
    PERIOD_END = enum.auto()
    LEDGER_BALANCE = enum.auto()
    AVAILABLE_BALANCE = enum.auto()
    AMOUNT = enum.auto()
    POSTED_DATE = enum.auto()
    USER_DATE = enum.auto()
    FIT_ID = enum.auto()
    DESCRIPTION = enum.auto()
    MEMO = enum.auto()
    TYPE = enum.auto()


TAG_FIELDS: Dict[str, Field] = {
    "ACCTID": Field.ACCOUNT_ID,
    "BANKID": Field.BANK_ID,
    "BRANCHID": Field.BRANCH_ID,
    "ACCTTYPE": Field.ACCOUNT_TYPE,
    "CURDEF": Field.CURRENCY,
    "LANGUAGE": Field.LANGUAGE,
    "DTSERVER": Field.GENERATED_AT,
    "DTSTART": Field.PERIOD_START,
    "DTEND": Field.PERIOD_END,
    "LEDGERBAL": Field.LEDGER_BALANCE,
    "AVAILBAL": Field.AVAILABLE_BALANCE,
    "TRNAMT": Field.AMOUNT,
    "DTPOSTED": Field.POSTED_DATE,
    "DTUSER": Field.USER_DATE,
    "FITID": Field.FIT_ID,
    "NAME": Field.DESCRIPTION,
    "MEMO": Field.MEMO,
    "TRNTYPE": Field.TYPE,
}

# <LEDGERBAL><BALAMT>..</BALAMT><DTASOF>..</LEDGERBAL>
BALANCE_PARENTS: Dict[str, Field] = {
    "LEDGERBAL": Field.LEDGER_BALANCE,
    "AVAILBAL": Field.AVAILABLE_BALANCE,
}


class FieldTarget(NamedTuple):
    on_transaction: bool
    attr: str
    kind: str  # text | amount | date | strict_date | datetime


FIELD_TARGETS: Dict[Field, FieldTarget] = {
    Field.ACCOUNT_ID: FieldTarget(False, "account_number", "text"),
    Field.BANK_ID: FieldTarget(False, "bank_id", "text"),
    Field.BRANCH_ID: FieldTarget(False, "branch_id", "text"),
    Field.ACCOUNT_TYPE: FieldTarget(False, "account_type", "text"),
    Field.CURRENCY: FieldTarget(False, "currency", "text"),
    Field.LANGUAGE: FieldTarget(False, "language", "text"),
    Field.GENERATED_AT: FieldTarget(False, "generated_at", "datetime"),
    Field.PERIOD_START: FieldTarget(False, "period_start", "date"),
    Field.PERIOD_END: FieldTarget(False, "period_end", "date"),
    Field.LEDGER_BALANCE: FieldTarget(False, "ledger_balance", "amount"),
    Field.AVAILABLE_BALANCE: FieldTarget(False, "available_balance", "amount"),
    Field.AMOUNT: FieldTarget(True, "amount", "amount"),
    Field.POSTED_DATE: FieldTarget(True, "posted_date", "strict_date"),
    Field.USER_DATE: FieldTarget(True, "user_date", "date"),
    Field.FIT_ID: FieldTarget(True, "fit_id", "text"),
    Field.DESCRIPTION: FieldTarget(True, "memo", "text"),
    Field.MEMO: FieldTarget(True, "memo", "text"),
    Field.TYPE: FieldTarget(True, "type", "text"),
}


def parse_ofx_date(raw: str, label: str = "date") -> date:
    """Parse the ``YYYYMMDD`` prefix of an OFX date, ignoring any time/zone suffix."""

    if len(raw) < 8:
        raise StructuralParseError(f"Invalid {label} string: {raw!r}")
    prefix = raw[:8]
    if not DATE_PREFIX_RE.fullmatch(prefix):
        raise StructuralParseError(f"Invalid {label} string: {raw!r}")
    try:
        return date(int(prefix[:4]), int(prefix[4:6]), int(prefix[6:8]))
    except ValueError as exc:
        raise StructuralParseError(f"Invalid calendar {label}: {raw!r}") from exc


def parse_ofx_datetime(raw: str, label: str = "datetime") -> datetime:
    """Parse ``YYYYMMDD[HHMM[SS]][.XXX][[offset[:TZ]]]``.

    The result is timezone-aware only when the text carries an offset.
    """

    m = DATETIME_RE.match(raw)
    if not m:
        raise StructuralParseError(f"Invalid {label} string: {raw!r}")
    year, month, day, hour, minute, second, millis, offset = m.groups()
    try:
        tz = timezone(timedelta(hours=float(offset))) if offset is not None else None
        return datetime(
            int(year),
            int(month),
            int(day),
            int(hour or 0),
            int(minute or 0),
            int(second or 0),
            int((millis or "0").ljust(3, "0")) * 1000,
            tzinfo=tz,
        )
    except ValueError as exc:
        raise StructuralParseError(f"Invalid calendar {label}: {raw!r}") from exc


class StatementParser:
    """Streaming statement builder.

    Drive it with ``feed(token)`` or through the parser-target style methods
    ``start``/``data``/``end`` and collect the result with ``close()``.
    """

    def __init__(self, *, exact_amounts: bool = False, max_depth: int = MAX_PATH_DEPTH) -> None:
        self.statement = StatementRecord()
        self.exact_amounts = exact_amounts
        self.max_depth = max_depth
        self._path: List[str] = []
        self._pending = Field.NONE
        self._current: Optional[TransactionDraft] = None
        self._converters: Dict[str, Callable[[str, str], object]] = {
            "text": lambda text, label: text,
            "amount": lambda text, label: Amount.parse(text, exact=self.exact_amounts),
            "strict_date": parse_ofx_date,
            "date": self._lenient(parse_ofx_date),
            "datetime": self._lenient(parse_ofx_datetime),
        }

    @property
    def path(self) -> List[str]:
        return list(self._path)

    @property
    def pending(self) -> Field:
        return self._pending

    def feed(self, token: Token) -> None:
        if token.kind is TokenKind.START:
            self.start(token.value)
        elif token.kind is TokenKind.DATA:
            self.data(token.value)
        else:
            self.end(token.value)

    def start(self, tag: str) -> None:
        if len(self._path) >= self.max_depth:
            raise StructuralParseError(
                f"Element nesting deeper than {self.max_depth} levels at <{tag}>"
            )
        self._path.append(tag)

        if tag == TRANSACTION_TAG:
            if self._current is not None:
                log.warning(
                    "Discarding unfinished transaction %r: new %s opened before it closed",
                    self._current.fit_id,
                    TRANSACTION_TAG,
                )
            self._current = TransactionDraft()

        selected = TAG_FIELDS.get(tag)
        if selected is None and tag == BALANCE_VALUE_TAG and len(self._path) >= 2:
            selected = BALANCE_PARENTS.get(self._path[-2])
        if selected is not None:
            self._pending = selected

    def data(self, raw: str) -> None:
        selected, self._pending = self._pending, Field.NONE
        if selected is Field.NONE:
            return

        target = FIELD_TARGETS[selected]
        if target.on_transaction:
            owner = self._current
            if owner is None:
                log.warning("Dropping %s %r found outside a transaction", selected.name, raw.strip())
                return
        else:
            owner = self.statement

        text = raw.strip()
        value = self._converters[target.kind](text, selected.name.lower())
        if value is not None:
            setattr(owner, target.attr, value)

    def end(self, tag: str) -> None:
        while self._path:
            if self._path[-1] == TRANSACTION_TAG:
                self._flush_transaction()
            popped = self._path.pop()
            if popped == tag:
                return
        log.debug("End tag </%s> matched nothing; path is now empty", tag)

    def close(self) -> StatementRecord:
        if self._path:
            log.debug("End of input with open elements: %s", "/".join(self._path))
        if self._current is not None:
            log.debug("Dropping transaction %r left open at end of input", self._current.fit_id)
        return self.statement

    def _flush_transaction(self) -> None:
        if self._current is None:
            log.debug("%s scope left with no transaction to emit", TRANSACTION_TAG)
            return
        self.statement.transactions.append(self._current.freeze())
        self._current = None

    @staticmethod
    def _lenient(convert: Callable[[str, str], object]) -> Callable[[str, str], object]:
        def wrapper(text: str, label: str):
            try:
                return convert(text, label)
            except StructuralParseError as exc:
                log.warning("Ignoring %s", exc)
                return None

        return wrapper


def parse_tokens(tokens: Iterable[Token], **options) -> StatementRecord:
    parser = StatementParser(**options)
    for token in tokens:
        parser.feed(token)
    return parser.close()


def parse_statement(
    stream: BinaryIO,
    *,
    encoding: str = "utf-8",
    exact_amounts: bool = False,
    max_depth: int = MAX_PATH_DEPTH,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> StatementRecord:
    tokens = iter_tokens(stream, encoding=encoding, chunk_size=chunk_size)
    return parse_tokens(tokens, exact_amounts=exact_amounts, max_depth=max_depth)


def _iso_or_none(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def transaction_to_json(tx: TransactionRecord) -> dict:
    return {
        "fit_id": tx.fit_id,
        "type": tx.type,
        "posted_date": _iso_or_none(tx.posted_date),
        "user_date": _iso_or_none(tx.user_date),
        "amount": str(tx.amount),
        "memo": tx.memo,
    }


def statement_to_json(statement: StatementRecord) -> dict:
    return {
        "generated_at": _iso_or_none(statement.generated_at),
        "language": statement.language,
        "bank_id": statement.bank_id,
        "branch_id": statement.branch_id,
        "account_number": statement.account_number,
        "account_type": statement.account_type,
        "currency": statement.currency,
        "ledger_balance": str(statement.ledger_balance),
        "available_balance": str(statement.available_balance),
        "period_start": _iso_or_none(statement.period_start),
        "period_end": _iso_or_none(statement.period_end),
        "transactions": [transaction_to_json(tx) for tx in statement.transactions],
    }


def render_json(statement: StatementRecord, indent: Optional[int] = None) -> str:
    try:
        return json.dumps(statement_to_json(statement), ensure_ascii=False, indent=indent)
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"Failed to encode statement as JSON: {exc}") from exc
