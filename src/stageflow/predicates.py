# predicates.py
"""
Typed condition AST for rule clauses.

Condition strings from the declarative config (`if:` expressions) are compiled
once, at parse time, into these nodes. Evaluation never touches strings again:

    $CI_COMMIT_REF_NAME == "master"           -> RefEquals("master")
    $CI_COMMIT_REF_NAME =~ /^v[0-9]+/         -> RefMatches("^v[0-9]+")
    $CI_PIPELINE_SOURCE == "web"              -> SourceEquals("web")
    $CI_COMMIT_TAG                            -> TagPresent()
    $PIPELINE == "nightly" && $X              -> And((VarEquals(...), VarDefined("X")))
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .context import Context
from .errors import ConfigurationError


class Predicate:
    def evaluate(self, ctx: Context) -> bool:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass(frozen=True)
class Always(Predicate):
    def evaluate(self, ctx: Context) -> bool:
        return True

    def __str__(self) -> str:
        return "true"


@dataclass(frozen=True)
class RefEquals(Predicate):
    value: str

    def evaluate(self, ctx: Context) -> bool:
        return ctx.ref == self.value

    def __str__(self) -> str:
        return f'$CI_COMMIT_REF_NAME == "{self.value}"'


@dataclass(frozen=True)
class RefMatches(Predicate):
    pattern: str
    flags: int = 0
    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_regex", _compile_regex(self.pattern, self.flags))

    def evaluate(self, ctx: Context) -> bool:
        return self._regex.search(ctx.ref) is not None

    def __str__(self) -> str:
        return f"$CI_COMMIT_REF_NAME =~ /{self.pattern}/"


@dataclass(frozen=True)
class SourceEquals(Predicate):
    source: str

    def evaluate(self, ctx: Context) -> bool:
        return ctx.pipeline_source.value == self.source

    def __str__(self) -> str:
        return f'$CI_PIPELINE_SOURCE == "{self.source}"'


@dataclass(frozen=True)
class TagPresent(Predicate):
    def evaluate(self, ctx: Context) -> bool:
        return ctx.is_tag

    def __str__(self) -> str:
        return "$CI_COMMIT_TAG"


@dataclass(frozen=True)
class VarDefined(Predicate):
    name: str

    def evaluate(self, ctx: Context) -> bool:
        return bool(ctx.lookup(self.name))

    def __str__(self) -> str:
        return f"${self.name}"


@dataclass(frozen=True)
class VarEquals(Predicate):
    name: str
    value: str

    def evaluate(self, ctx: Context) -> bool:
        return ctx.lookup(self.name) == self.value

    def __str__(self) -> str:
        return f'${self.name} == "{self.value}"'


@dataclass(frozen=True)
class VarMatches(Predicate):
    name: str
    pattern: str
    flags: int = 0
    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_regex", _compile_regex(self.pattern, self.flags))

    def evaluate(self, ctx: Context) -> bool:
        value = ctx.lookup(self.name)
        return value is not None and self._regex.search(value) is not None

    def __str__(self) -> str:
        return f"${self.name} =~ /{self.pattern}/"


@dataclass(frozen=True)
class Not(Predicate):
    inner: Predicate

    def evaluate(self, ctx: Context) -> bool:
        return not self.inner.evaluate(ctx)

    def __str__(self) -> str:
        return f"!({self.inner})"


@dataclass(frozen=True)
class And(Predicate):
    items: Tuple[Predicate, ...]

    def evaluate(self, ctx: Context) -> bool:
        return all(p.evaluate(ctx) for p in self.items)

    def __str__(self) -> str:
        return " && ".join(_wrap(p) for p in self.items)


@dataclass(frozen=True)
class Or(Predicate):
    items: Tuple[Predicate, ...]

    def evaluate(self, ctx: Context) -> bool:
        return any(p.evaluate(ctx) for p in self.items)

    def __str__(self) -> str:
        return " || ".join(_wrap(p) for p in self.items)


def _wrap(p: Predicate) -> str:
    return f"({p})" if isinstance(p, (And, Or)) else str(p)


_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


def _compile_regex(pattern: str, flags: int) -> re.Pattern:
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise ConfigurationError("bad_expression", f"invalid regex /{pattern}/: {e}") from None


# ----------------------------------------------------------------------
# Tokenizer
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class _Tok:
    kind: str  # var, str, regex, null, op, and, or, lparen, rparen
    value: str = ""
    flags: int = 0


_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def _tokenize(text: str) -> List[_Tok]:
    toks: List[_Tok] = []
    i, n = 0, len(text)

    def fail(msg: str) -> ConfigurationError:
        return ConfigurationError("bad_expression", msg, {"expression": text, "position": i})

    while i < n:
        c = text[i]
        if c.isspace():
            i += 1
        elif c == "$":
            if text.startswith("${", i):
                end = text.find("}", i)
                if end < 0:
                    raise fail("unterminated ${")
                name = text[i + 2:end]
                i = end + 1
            else:
                m = _NAME_RE.match(text, i + 1)
                if not m:
                    raise fail("expected variable name after $")
                name = m.group(0)
                i = m.end()
            if not _NAME_RE.fullmatch(name):
                raise fail(f"invalid variable name {name!r}")
            toks.append(_Tok("var", name))
        elif c in "\"'":
            end = text.find(c, i + 1)
            if end < 0:
                raise fail("unterminated string")
            toks.append(_Tok("str", text[i + 1:end]))
            i = end + 1
        elif c == "/":
            j = i + 1
            buf: List[str] = []
            while j < n and text[j] != "/":
                if text[j] == "\\" and j + 1 < n and text[j + 1] == "/":
                    buf.append("/")
                    j += 2
                    continue
                buf.append(text[j])
                j += 1
            if j >= n:
                raise fail("unterminated regex")
            j += 1
            flags = 0
            while j < n and text[j].isalpha():
                if text[j] not in _REGEX_FLAGS:
                    raise fail(f"unknown regex flag {text[j]!r}")
                flags |= _REGEX_FLAGS[text[j]]
                j += 1
            toks.append(_Tok("regex", "".join(buf), flags))
            i = j
        elif text.startswith(("==", "!=", "=~", "!~"), i):
            toks.append(_Tok("op", text[i:i + 2]))
            i += 2
        elif text.startswith("&&", i):
            toks.append(_Tok("and"))
            i += 2
        elif text.startswith("||", i):
            toks.append(_Tok("or"))
            i += 2
        elif c == "(":
            toks.append(_Tok("lparen"))
            i += 1
        elif c == ")":
            toks.append(_Tok("rparen"))
            i += 1
        elif text.startswith("null", i):
            toks.append(_Tok("null"))
            i += 4
        else:
            raise fail(f"unexpected character {c!r}")
    return toks


# ----------------------------------------------------------------------
# Parser (|| binds looser than &&)
# ----------------------------------------------------------------------

class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.toks = _tokenize(text)
        self.pos = 0

    def error(self, msg: str) -> ConfigurationError:
        return ConfigurationError("bad_expression", msg, {"expression": self.text})

    def peek(self) -> Optional[_Tok]:
        return self.toks[self.pos] if self.pos < len(self.toks) else None

    def take(self) -> _Tok:
        tok = self.peek()
        if tok is None:
            raise self.error("unexpected end of expression")
        self.pos += 1
        return tok

    def parse(self) -> Predicate:
        if not self.toks:
            raise self.error("empty expression")
        node = self.parse_or()
        if self.peek() is not None:
            raise self.error(f"unexpected token {self.peek().kind!r}")
        return node

    def parse_or(self) -> Predicate:
        items = [self.parse_and()]
        while self.peek() is not None and self.peek().kind == "or":
            self.take()
            items.append(self.parse_and())
        return items[0] if len(items) == 1 else Or(tuple(items))

    def parse_and(self) -> Predicate:
        items = [self.parse_primary()]
        while self.peek() is not None and self.peek().kind == "and":
            self.take()
            items.append(self.parse_primary())
        return items[0] if len(items) == 1 else And(tuple(items))

    def parse_primary(self) -> Predicate:
        tok = self.take()
        if tok.kind == "lparen":
            node = self.parse_or()
            if self.take().kind != "rparen":
                raise self.error("expected ')'")
            return node
        if tok.kind not in ("var", "str", "null", "regex"):
            raise self.error(f"unexpected token {tok.kind!r}")

        nxt = self.peek()
        if nxt is None or nxt.kind != "op":
            if tok.kind != "var":
                raise self.error("a bare literal is not a condition")
            return _defined(tok.value)

        op = self.take().value
        rhs = self.take()
        if tok.kind != "var" and rhs.kind == "var" and op in ("==", "!="):
            tok, rhs = rhs, tok
        if tok.kind != "var":
            raise self.error("comparisons need a variable on one side")
        node = self._compare(tok.value, op, rhs)
        return Not(node) if op in ("!=", "!~") else node

    def _compare(self, name: str, op: str, rhs: _Tok) -> Predicate:
        if op in ("=~", "!~"):
            if rhs.kind != "regex":
                raise self.error(f"{op} expects a /regex/")
            if name == "CI_COMMIT_REF_NAME":
                return RefMatches(rhs.value, rhs.flags)
            return VarMatches(name, rhs.value, rhs.flags)

        if rhs.kind == "null":
            return Not(_defined(name))
        if rhs.kind != "str":
            raise self.error(f"{op} expects a quoted string or null")
        if name == "CI_COMMIT_REF_NAME":
            return RefEquals(rhs.value)
        if name == "CI_PIPELINE_SOURCE":
            return SourceEquals(rhs.value)
        return VarEquals(name, rhs.value)


def _defined(name: str) -> Predicate:
    if name == "CI_COMMIT_TAG":
        return TagPresent()
    return VarDefined(name)


def compile_expression(text: str) -> Predicate:
    """Compile an `if:` expression. Raises ConfigurationError(bad_expression)."""
    return _Parser(str(text)).parse()
