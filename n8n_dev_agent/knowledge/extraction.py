"""Tolerant extraction of node metadata from n8n TypeScript sources.

This is not a TypeScript parser. It understands the subset n8n node
descriptions are written in (object literals, arrays, string/number/boolean
literals, identifiers and member expressions) and skips everything else up
to the next "," / ";" or closing bracket. Every object literal met anywhere
in a file (class fields, exported constants, function bodies) is recorded in
source order, so field lookup works on plain dicts.

Recovery policy per field (see ExtractedNode.confidence):
    parsed    value read from an object literal
    fallback  nothing usable found; a default was substituted
A file that yields no objects produces an all-fallback result, never an error.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from n8n_dev_agent.knowledge.models import Credential, Operation, Parameter, Resource

logger = logging.getLogger("n8n_dev_agent.knowledge.extraction")

# Property names that are selectors rather than configuration.
SELECTOR_PARAMS: frozenset[str] = frozenset({"resource", "operation", "authentication"})

_TRIGGER_MARKERS = ("ITriggerFunctions", "IWebhookFunctions")

# Keys that mark an object literal as (part of) a node type description.
_DESCRIPTION_KEYS = frozenset({"group", "version", "defaultVersion", "properties", "defaults", "inputs", "outputs"})


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


_TOKEN_RE = re.compile(
    r"""
     (?P<ws>\s+)
    |(?P<comment>//[^\n]*|/\*.*?\*/)
    |(?P<string>'(?:\\.|[^'\\\n])*'|"(?:\\.|[^"\\\n])*"|`(?:\\.|[^`\\])*`)
    |(?P<number>\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|\.\d+)
    |(?P<ident>[A-Za-z_$][\w$]*)
    |(?P<punct>=>|\.\.\.|\?\.|[{}\[\](),:;.=?!<>+\-*/%&|^~@\#])
    """,
    re.S | re.X,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "'": "'", '"': '"', "`": "`", "\\": "\\"}
_ESCAPE_RE = re.compile(r"\\(.)", re.S)


@dataclass(frozen=True)
class Identifier:
    """A bare identifier or member expression used as a value, e.g. NodeConnectionTypes.Main."""

    path: str

    def __str__(self) -> str:
        return self.path


@dataclass(frozen=True)
class _Tok:
    kind: str  # "string" | "number" | "ident" | "punct"
    text: str


def _unquote(raw: str) -> str:
    return _ESCAPE_RE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(1)), raw[1:-1])


def tokenize(source: str) -> list[_Tok]:
    tokens: list[_Tok] = []
    pos = 0
    end = len(source)
    while pos < end:
        m = _TOKEN_RE.match(source, pos)
        if m is None:
            pos += 1  # unknown character
            continue
        pos = m.end()
        kind = m.lastgroup
        if kind in ("ws", "comment"):
            continue
        tokens.append(_Tok(kind, m.group()))
    return tokens


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

_OPENERS = {"{": "}", "[": "]", "(": ")"}
_STOP = frozenset({",", ";", "}", "]", ")"})
_LITERALS: dict[str, Any] = {"true": True, "false": False, "null": None, "undefined": None}


class _Parser:
    def __init__(self, tokens: list[_Tok]) -> None:
        self._toks = tokens
        self._pos = 0
        self.objects: list[dict[str, Any]] = []

    def _peek(self, offset: int = 0) -> _Tok | None:
        i = self._pos + offset
        return self._toks[i] if i < len(self._toks) else None

    def _is(self, text: str, offset: int = 0) -> bool:
        tok = self._peek(offset)
        return tok is not None and tok.kind == "punct" and tok.text == text

    def parse(self) -> list[dict[str, Any]]:
        while self._pos < len(self._toks):
            if self._is("{") or self._is("["):
                self._value()
            else:
                self._pos += 1
        return self.objects

    def _value(self) -> Any:
        tok = self._peek()
        if tok is None:
            return None
        result: Any = None
        if tok.kind == "punct" and tok.text == "{":
            result = self._object()
        elif tok.kind == "punct" and tok.text == "[":
            result = self._array()
        elif tok.kind == "string":
            self._pos += 1
            result = _unquote(tok.text)
        elif tok.kind == "number":
            self._pos += 1
            result = _to_number(tok.text)
        elif tok.kind == "punct" and tok.text == "-" and (nxt := self._peek(1)) is not None and nxt.kind == "number":
            self._pos += 2
            result = -_to_number(nxt.text)
        elif tok.kind == "ident":
            result = self._identifier()
        self._skip_until_stop()
        return result

    def _identifier(self) -> Any:
        tok = self._toks[self._pos]
        self._pos += 1
        if tok.text in _LITERALS:
            return _LITERALS[tok.text]
        parts = [tok.text]
        while (self._is(".") or self._is("?.")) and (nxt := self._peek(1)) is not None and nxt.kind == "ident":
            parts.append(nxt.text)
            self._pos += 2
        return Identifier(".".join(parts))

    def _object(self) -> dict[str, Any]:
        self._pos += 1  # "{"
        obj: dict[str, Any] = {}
        self.objects.append(obj)
        while True:
            start = self._pos
            tok = self._peek()
            if tok is None:
                break
            if tok.kind == "punct" and tok.text == "}":
                self._pos += 1
                break
            if tok.kind == "punct" and tok.text in (",", ";"):
                self._pos += 1
                continue
            if tok.kind == "punct" and tok.text == "...":
                self._pos += 1
                self._value()
                continue
            if tok.kind in ("ident", "string", "number"):
                key = _unquote(tok.text) if tok.kind == "string" else tok.text
                if self._is(":", 1):
                    self._pos += 2
                    value = self._value()
                    obj.setdefault(key, value)
                    continue
                if tok.kind == "ident" and (self._is(",", 1) or self._is("}", 1)):
                    self._pos += 1
                    obj.setdefault(key, Identifier(key))
                    continue
            self._skip_statement()
            if self._pos == start:
                self._pos += 1
        return obj

    def _array(self) -> list[Any]:
        self._pos += 1  # "["
        items: list[Any] = []
        while True:
            start = self._pos
            tok = self._peek()
            if tok is None:
                break
            if tok.kind == "punct" and tok.text == "]":
                self._pos += 1
                break
            if tok.kind == "punct" and tok.text == ",":
                self._pos += 1
                continue
            if tok.kind == "punct" and tok.text == "...":
                self._pos += 1
                self._value()
                continue
            items.append(self._value())
            if self._pos == start:
                self._pos += 1
        return items

    def _skip_group(self) -> None:
        """Skip a balanced (...) group, still recording object literals inside it."""
        self._pos += 1  # "("
        while (tok := self._peek()) is not None:
            if tok.kind == "punct":
                if tok.text == ")":
                    self._pos += 1
                    return
                if tok.text in ("{", "["):
                    self._value()
                    continue
                if tok.text == "(":
                    self._skip_group()
                    continue
            self._pos += 1

    def _skip_until_stop(self) -> None:
        while (tok := self._peek()) is not None:
            if tok.kind == "punct":
                if tok.text in _STOP:
                    return
                if tok.text in ("{", "["):
                    self._value()
                    continue
                if tok.text == "(":
                    self._skip_group()
                    continue
            self._pos += 1

    def _skip_statement(self) -> None:
        self._skip_until_stop()
        if self._is(",") or self._is(";"):
            self._pos += 1


def _to_number(text: str) -> float | int:
    value = float(text)
    return int(value) if value.is_integer() and "." not in text and "e" not in text.lower() else value


def parse_objects(source: str) -> list[dict[str, Any]]:
    """Return every object literal in source, outermost first, in source order."""
    return _Parser(tokenize(source)).parse()


# ---------------------------------------------------------------------------
# Field recovery
# ---------------------------------------------------------------------------


@dataclass
class ExtractedNode:
    """Best-effort node metadata recovered from one or more source files."""

    display_name: str = ""
    name: str = ""
    description: str = ""
    group: list[str] = field(default_factory=list)
    version: float = 1
    credentials: list[Credential] = field(default_factory=list)
    resources: list[Resource] = field(default_factory=list)
    is_trigger: bool = False
    confidence: dict[str, str] = field(default_factory=dict)


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _is_description(obj: dict[str, Any]) -> bool:
    return bool(_DESCRIPTION_KEYS.intersection(obj))


def _options(value: Any) -> list[dict[str, Any]]:
    """Keep {name, value} option objects; anything else is dropped."""
    if not isinstance(value, list):
        return []
    return [
        o for o in value
        if isinstance(o, dict) and isinstance(o.get("name"), str) and isinstance(o.get("value"), (str, int, float, bool))
    ]


def _show(obj: dict[str, Any], key: str) -> list[str] | None:
    display = obj.get("displayOptions")
    if not isinstance(display, dict):
        return None
    show = display.get("show")
    if not isinstance(show, dict):
        return None
    values = show.get(key)
    if not isinstance(values, list):
        return None
    out = [str(v) for v in values if isinstance(v, (str, int, float))]
    return out or None


def _versions(value: Any) -> list[float]:
    if isinstance(value, bool):
        return []
    if isinstance(value, (int, float)):
        return [float(value)]
    if isinstance(value, list):
        return [float(v) for v in value if isinstance(v, (int, float)) and not isinstance(v, bool)]
    return []


def extract_node(source: str, fallback_name: str = "") -> ExtractedNode:
    """Recover node-level metadata from concatenated source text."""
    try:
        objects = parse_objects(source)
    except RecursionError:
        logger.warning("Source too deeply nested to parse (%s); using fallbacks", fallback_name or "?")
        objects = []

    node = ExtractedNode()
    conf = node.confidence

    header = next(
        (o for o in objects if _str(o.get("displayName")) and _str(o.get("name")) and _is_description(o)),
        None,
    )
    if header is not None:
        node.display_name = header["displayName"]
        node.name = header["name"]
        conf["displayName"] = conf["name"] = "parsed"
        desc = _str(header.get("description"))
        node.description = desc or ""
        conf["description"] = "parsed" if desc else "fallback"
    else:
        node.display_name = fallback_name
        node.name = ""
        conf["displayName"] = conf["name"] = conf["description"] = "fallback"

    descriptions = [o for o in objects if _is_description(o)]

    group = next((o["group"] for o in descriptions if isinstance(o.get("group"), list)), None)
    if group is not None:
        node.group = [g for g in group if isinstance(g, str)]
        conf["group"] = "parsed"
    else:
        conf["group"] = "fallback"

    default_version = next(
        (o["defaultVersion"] for o in objects if _versions(o.get("defaultVersion"))), None,
    )
    if default_version is not None:
        node.version = float(default_version)
        conf["version"] = "parsed"
    else:
        listed = [v for o in descriptions for v in _versions(o.get("version"))]
        if listed:
            node.version = max(listed)
            conf["version"] = "parsed"
        else:
            node.version = 1
            conf["version"] = "fallback"

    seen_creds: set[str] = set()
    for o in descriptions:
        creds = o.get("credentials")
        if not isinstance(creds, list):
            continue
        for c in creds:
            if isinstance(c, dict) and _str(c.get("name")) and c["name"] not in seen_creds:
                seen_creds.add(c["name"])
                node.credentials.append(Credential(name=c["name"], required=c.get("required") is True))
    conf["credentials"] = "parsed" if node.credentials else "fallback"

    node.resources = _extract_resources(objects)
    conf["resources"] = "parsed" if node.resources else "fallback"

    node.is_trigger = (
        "trigger" in node.group
        or "trigger" in node.name.lower()
        or any(marker in source for marker in _TRIGGER_MARKERS)
    )
    return node


def _extract_resources(objects: list[dict[str, Any]]) -> list[Resource]:
    resources: list[Resource] = []
    by_value: dict[str, Resource] = {}
    for o in objects:
        if o.get("name") != "resource" or not _str(o.get("displayName")):
            continue
        for opt in _options(o.get("options")):
            value = str(opt["value"])
            if value not in by_value:
                res = Resource(name=opt["name"], value=value)
                by_value[value] = res
                resources.append(res)

    if not resources:
        return []

    for o in objects:
        if o.get("name") != "operation" or not _str(o.get("displayName")):
            continue
        targets = _show(o, "resource")
        attach_to = [by_value[v] for v in targets if v in by_value] if targets else resources
        for opt in _options(o.get("options")):
            op = Operation(
                name=opt["name"],
                value=str(opt["value"]),
                description=_str(opt.get("action")) or _str(opt.get("description")),
            )
            for res in attach_to:
                if all(existing.value != op.value for existing in res.operations):
                    res.operations.append(op)
    return resources


def extract_parameters(source: str) -> list[Parameter]:
    """Recover parameter descriptors, deduplicated by name (first occurrence wins)."""
    try:
        objects = parse_objects(source)
    except RecursionError:
        logger.warning("Parameter source too deeply nested to parse; returning none")
        return []

    params: list[Parameter] = []
    seen: set[str] = set()
    for o in objects:
        display_name = _str(o.get("displayName"))
        name = _str(o.get("name"))
        ptype = _str(o.get("type"))
        if not (display_name and name and ptype):
            continue
        if name in SELECTOR_PARAMS or name in seen:
            continue
        seen.add(name)

        default = o.get("default")
        if isinstance(default, Identifier):
            default = str(default)
        options = [{"name": opt["name"], "value": opt["value"]} for opt in _options(o.get("options"))]
        show_for: dict[str, list[str]] = {}
        for key in ("resource", "operation"):
            values = _show(o, key)
            if values:
                show_for[key] = values

        params.append(Parameter(
            name=name,
            display_name=display_name,
            type=ptype,
            required=o.get("required") is True,
            default=_plain(default),
            description=_str(o.get("description")),
            options=options or None,
            show_for=show_for or None,
        ))
    return params


def _plain(value: Any) -> Any:
    """Convert parsed values to JSON-safe data (identifiers become strings)."""
    if isinstance(value, Identifier):
        return str(value)
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value
