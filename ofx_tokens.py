"""Relaxed tokenizer for OFX/SGML statement files.

OFX 1.x files are SGML: leaf elements usually have no closing tag, bare
ampersands show up in payee names, and the file starts with a plain-text
header block. A strict XML parser rejects all of that, so tokens come from
the standard library's HTML tokenizer, which reports raw start/data/end
events without checking nesting.
"""

from __future__ import annotations

import codecs
import enum
import logging
import re
from html.parser import HTMLParser
from typing import BinaryIO, Iterator, List, NamedTuple

log = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
DECODE_ERRORS = "ofx_tokens.replace"

# OFX SGML defines only a handful of named entities. Any other "&" is literal
# text and gets escaped before the HTML tokenizer sees it, otherwise legacy
# HTML names such as "&AMP" or "&COPY" would be expanded inside payee names.
UNKNOWN_AMPERSAND_RE = re.compile(
    r"&(?!(?:amp|lt|gt|quot|apos|#[0-9]{1,7}|#[xX][0-9a-fA-F]{1,6});)"
)
MAX_REFERENCE_LEN = len("&#1114111;")


class TokenKind(enum.Enum):
    START = "start"
    DATA = "data"
    END = "end"


class Token(NamedTuple):
    kind: TokenKind
    value: str


class RawTokenizer(HTMLParser):
    """Collects markup events as ``Token`` objects.

    Tag names are upper-cased (``HTMLParser`` lower-cases them). Consecutive
    text callbacks are merged into a single DATA token that is only released
    once the next piece of markup arrives, so a value is never split at a
    read-chunk boundary. Only ``&amp;``, ``&lt;``, ``&gt;``, ``&quot;``,
    ``&apos;`` and numeric references are decoded.
    """

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._tokens: List[Token] = []
        self._text: List[str] = []
        self._held = ""

    def feed(self, data: str) -> None:
        data = self._held + data
        # A trailing "&" may start a reference that the next chunk completes.
        cut = data.rfind("&", max(0, len(data) - MAX_REFERENCE_LEN + 1))
        if cut == -1:
            self._held = ""
        else:
            data, self._held = data[:cut], data[cut:]
        super().feed(UNKNOWN_AMPERSAND_RE.sub("&amp;", data))

    def drain(self) -> List[Token]:
        out, self._tokens = self._tokens, []
        return out

    def close(self) -> None:
        if self._held:
            super().feed(UNKNOWN_AMPERSAND_RE.sub("&amp;", self._held))
            self._held = ""
        super().close()
        self._flush_text()

    def _flush_text(self) -> None:
        if self._text:
            self._tokens.append(Token(TokenKind.DATA, "".join(self._text)))
            self._text = []

    def handle_starttag(self, tag, attrs):
        self._flush_text()
        self._tokens.append(Token(TokenKind.START, tag.upper()))

    def handle_endtag(self, tag):
        self._flush_text()
        self._tokens.append(Token(TokenKind.END, tag.upper()))

    def handle_data(self, data):
        self._text.append(data)

    def handle_comment(self, data):
        self._flush_text()
        log.debug("Skipping comment: %r", data)

    def handle_decl(self, decl):
        self._flush_text()
        log.debug("Skipping declaration: %r", decl)

    def handle_pi(self, data):
        self._flush_text()
        log.debug("Skipping processing instruction: %r", data)

    def unknown_decl(self, data):
        self._flush_text()
        log.debug("Skipping unknown declaration: %r", data)


def _replace_undecodable(exc: UnicodeDecodeError):
    log.warning("Undecodable %s input (%s); replacing bad bytes", exc.encoding, exc.reason)
    return "\ufffd", exc.end


codecs.register_error(DECODE_ERRORS, _replace_undecodable)


def iter_tokens(
    stream: BinaryIO,
    *,
    encoding: str = "utf-8",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Iterator[Token]:
    """Yield tokens from a byte stream, reading it ``chunk_size`` bytes at a time."""

    # Bad bytes are replaced without resetting the decoder, so a character
    # that straddles a chunk boundary decodes the same for any chunk_size.
    decoder = codecs.getincrementaldecoder(encoding)(errors=DECODE_ERRORS)
    tokenizer = RawTokenizer()
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        tokenizer.feed(decoder.decode(chunk))
        yield from tokenizer.drain()

    tail = decoder.decode(b"", final=True)
    if tail:
        tokenizer.feed(tail)
    tokenizer.close()
    yield from tokenizer.drain()


def tokenize_text(text: str) -> List[Token]:
    """Tokenize an already-decoded document in one go."""

    tokenizer = RawTokenizer()
    tokenizer.feed(text)
    tokenizer.close()
    return tokenizer.drain()
