"""
Module: post_record.py

This module implements the post record of a static blog as a Python dataclass,
together with the parser that builds it from the raw text of one content unit.

A content unit is a Markdown file with a YAML front-matter block:

    ---
    layout: post
    title:  "Swift: reduce vs. for...in"
    date:   2019-11-22 11:59:28 -0500
    categories: swift idioms
    tags: [swift, reduce]
    ---
    Body text, fenced code blocks and [link references][docs].

    [docs]: https://developer.apple.com/documentation/swift

Fields:
  - layout     : Template identifier for the external renderer (opaque; optional).
  - title      : Human-readable title (non-empty; excludes control and format characters).
  - date       : Publication timestamp with a fixed UTC offset (timezone-aware datetime).
  - categories : Ordered category names (space-separated string or YAML sequence).
  - tags       : Set of tag names (space-separated string or YAML sequence).
  - body       : Everything after the closing delimiter, verbatim.
  - extra      : Unrecognized front-matter keys, passed through untouched (read-only mapping).

Validation:
  - `title` and `date` are mandatory (`MissingFieldError`).
  - `date` must follow `YYYY-MM-DD HH:MM[:SS[.f]] ±HHMM` (`MalformedDateError`).
  - Fenced code blocks must be closed before end of input (`UnbalancedFenceError`).
  - `[label][ref]` references without a `[ref]: url` definition are reported as
    `DanglingReferenceWarning` and do not abort the parse (unless `strict=True`).

Usage example:
    from post_record import parse_post, dump_post

    result = parse_post(text, source="_posts/2019-11-22-reduce.md")
    record = result.record
    for warning in result.warnings:
        print(warning)
    assert parse_post(dump_post(record)).record == record

"""
from __future__ import annotations
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# Persistent schema URI for the dict serialization of PostRecord v1
SCHEMA_URI: str = "https://example.org/schema/post_record/v1"

# Line that opens and closes the front-matter block
DELIMITER: str = "---"

# Front-matter keys with a meaning of their own; anything else goes to `extra`
RECOGNIZED_KEYS: tuple[str, ...] = ("layout", "title", "date", "categories", "tags")

# Keys whose absence makes a content unit invalid, checked in this order
REQUIRED_KEYS: tuple[str, ...] = ("title", "date")

# Regex to detect invalid characters in a title: control (C0: U+0000-U+001F, C1: U+007F-U+009F)
# and format characters (Unicode category Cf)
_INVALID_TITLE_CH_PATTERN = re.compile(
    r"[\x00-\x1F\x7F-\x9F"  # C0 and C1 control
    r"\u200B-\u200F"          # ZERO WIDTH and directional marks
    r"\u202A-\u202E"          # bidirectional overrides
    r"\u2060-\u2064"          # format control
    r"\uFEFF]"                 # ZERO WIDTH NO-BREAK SPACE (BOM)
)

# Timestamp grammar: date, 'T' or spaces, time with optional seconds/fraction, offset
_DATE_PATTERN = re.compile(
    r"(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})"
    r"(?:T|[ \t]+)"
    r"(?P<hour>\d{2}):(?P<minute>\d{2})"
    r"(?::(?P<second>\d{2})(?:\.(?P<fraction>\d+))?)?"
    r"[ \t]*"
    r"(?P<offset>Z|(?P<sign>[+-])(?P<off_hour>\d{2}):?(?P<off_minute>\d{2}))"
)

# Opening fence: up to three spaces, then ``` or ~~~ (or longer), then an info string
_FENCE_OPEN_PATTERN = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})(?P<info>.*)$")
# Closing fence: same character, at least as long, nothing but whitespace after
_FENCE_CLOSE_PATTERN = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})[ \t]*$")

# Link reference definition: [ref]: url
_REF_DEFINITION_PATTERN = re.compile(
    r"^ {0,3}\[(?P<label>[^\[\]]*\S[^\[\]]*)\]:[ \t]*(?P<url><[^<>\n]*>|\S+)"
)
# Full [label][ref] and collapsed [label][] references
_REF_USE_PATTERN = re.compile(r"\[(?P<text>[^\[\]]*)\]\[(?P<ref>[^\[\]]*)\]")
# Inline code span: a run of backticks closed by a run of the same length
_CODE_SPAN_PATTERN = re.compile(r"(?<!`)(`+)(?!`).*?(?<!`)\1(?!`)")


class PostRecordError(ValueError):
    """
    Base class of fatal content-unit errors.

    Carries the source label (usually a file path) and, where known, the 1-based
    line number, both rendered by `str()`.
    """

    def __init__(self, message: str, *, source: str | None = None, line: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.source = source
        self.line = line

    def __str__(self) -> str:
        if self.source and self.line is not None:
            return f"{self.source}:{self.line}: {self.message}"
        if self.source:
            return f"{self.source}: {self.message}"
        if self.line is not None:
            return f"line {self.line}: {self.message}"
        return self.message


class FrontMatterError(PostRecordError):
    """The front-matter block is missing, unterminated, not YAML, or holds a value of the wrong shape."""


class MissingFieldError(PostRecordError):
    def __init__(self, name: str, *, source: str | None = None) -> None:
        super().__init__(f"missing required front-matter field {name!r}", source=source)
        self.field = name


class MalformedDateError(PostRecordError):
    def __init__(self, value: str, *, source: str | None = None, line: int | None = None) -> None:
        super().__init__(
            f"date {value!r} is not a timestamp like '2019-11-22 11:59:28 -0500'",
            source=source,
            line=line,
        )
        self.value = value


class UnbalancedFenceError(PostRecordError):
    def __init__(self, line: int, fence: str, *, source: str | None = None) -> None:
        super().__init__(f"code fence {fence!r} is never closed", source=source, line=line)
        self.fence = fence


class DanglingReferenceError(PostRecordError):
    """Raised in strict mode for a link reference without a definition."""

    def __init__(self, ref: str, *, source: str | None = None, line: int | None = None) -> None:
        super().__init__(f"link reference [{ref}] has no definition", source=source, line=line)
        self.ref = ref


class DanglingReferenceWarning(UserWarning):
    """
    Non-fatal diagnostic: a `[label][ref]` use with no `[ref]: url` definition.
    Collected into `ParseResult.warnings` instead of being raised.
    """

    def __init__(self, ref: str, *, source: str | None = None, line: int | None = None) -> None:
        location = f"{source}:{line}: " if source else (f"line {line}: " if line is not None else "")
        super().__init__(f"{location}link reference [{ref}] has no definition")
        self.ref = ref
        self.source = source
        self.line = line


@dataclass(frozen=True, slots=True)
class CodeBlock:
    """A fenced block of the body. `line` is the line of the opening fence."""
    language: str | None
    line: int
    code: str


@dataclass(frozen=True, slots=True)
class ReferenceUse:
    text: str
    ref: str
    line: int

    @property
    def key(self) -> str:
        return normalize_label(self.ref)


@dataclass(frozen=True, slots=True)
class BodyScan:
    """Result of a single pass over the body text."""
    code_blocks: tuple[CodeBlock, ...] = ()
    definitions: dict[str, str] = field(default_factory=dict)
    references: tuple[ReferenceUse, ...] = ()

    def dangling(self) -> list[ReferenceUse]:
        return [use for use in self.references if use.key not in self.definitions]


def _check_plain(value: Any, path: str) -> None:
    """Front-matter values are strings, sequences and mappings, nested to any depth."""
    if isinstance(value, str):
        return
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _check_plain(item, f"{path}[{index}]")
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path} keys must be strings, got {key!r}")
            _check_plain(item, f"{path}[{key!r}]")
        return
    raise ValueError(f"{path} must hold only strings, sequences and mappings, got {value!r}")


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_thaw(item) for item in value]
    return value


@dataclass(frozen=True, slots=True)
class PostRecord:
    """
    Post Record:
    Represents one content unit after its front matter has been validated.

    Attributes:
        title       : Human-readable title (validated).
        date        : Publication timestamp, timezone-aware with a fixed UTC offset.
        layout      : Rendering template name, opaque to this module.
        categories  : Ordered category names.
        tags        : Tag names.
        body        : Text after the front matter, verbatim.
        extra       : Front-matter keys outside RECOGNIZED_KEYS, untouched.
    """
    title: str                                   # Non-empty, no control/format characters
    date: datetime                               # Aware datetime (fixed offset)
    layout: str | None = None                    # Template name, not enforced
    categories: tuple[str, ...] = ()             # Ordered, may be empty
    tags: frozenset[str] = frozenset()           # Unordered, may be empty
    body: str = ""                               # Markdown body
    extra: Mapping[str, Any] = field(default_factory=dict, hash=False)  # Read-only after construction

    def __post_init__(self) -> None:
        """
        Validate every field against what the front matter can express, so that
        dump_post followed by parse_post gives back an equal record.
        Freezes `extra` into a read-only mapping.
        """
        if not isinstance(self.title, str) or not self.title.strip():
            raise ValueError("title must be a non-empty string")
        if self.title != self.title.strip():
            raise ValueError(f"title must not have surrounding whitespace: {self.title!r}")
        if _INVALID_TITLE_CH_PATTERN.search(self.title):
            raise ValueError(f"title contains invalid characters: {self.title!r}")
        if not isinstance(self.date, datetime) or self.date.utcoffset() is None:
            raise ValueError(f"date must be a timezone-aware datetime, got {self.date!r}")
        if self.date.utcoffset() % timedelta(minutes=1):
            raise ValueError(f"date offset must be a whole number of minutes, got {self.date.utcoffset()}")
        if self.layout is not None and (not isinstance(self.layout, str) or self.layout != self.layout.strip()):
            raise ValueError(f"layout must be a string without surrounding whitespace, got {self.layout!r}")
        if not isinstance(self.body, str):
            raise ValueError("body must be a string")
        if not isinstance(self.categories, tuple):
            raise ValueError("categories must be a tuple")
        if not isinstance(self.tags, frozenset):
            raise ValueError("tags must be a frozenset")
        for attr in ("categories", "tags"):
            for entry in getattr(self, attr):
                if not isinstance(entry, str) or not entry.strip() or entry != entry.strip():
                    raise ValueError(f"{attr} entries must be non-empty trimmed strings, got {entry!r}")
        if not isinstance(self.extra, Mapping):
            raise ValueError("extra must be a mapping")
        clash = set(self.extra) & set(RECOGNIZED_KEYS)
        if clash:
            raise ValueError(f"extra must not hold recognized keys: {sorted(clash)}")
        _check_plain(self.extra, "extra")
        object.__setattr__(self, "extra", _freeze(self.extra))

    def front_matter(self) -> dict[str, Any]:
        """
        Front-matter mapping in canonical key order; empty optional fields are left out.
        """
        data: dict[str, Any] = {}
        if self.layout is not None:
            data["layout"] = self.layout
        data["title"] = self.title
        data["date"] = format_date(self.date)
        if self.categories:
            data["categories"] = list(self.categories)
        if self.tags:
            data["tags"] = sorted(self.tags)
        data.update(_thaw(self.extra))
        return data

    def code_blocks(self) -> tuple[CodeBlock, ...]:
        return scan_body(self.body).code_blocks

    def references(self) -> dict[str, str]:
        return scan_body(self.body).definitions

    def to_dict(self) -> dict:
        """
        Serialize PostRecord to dict with an ISO-formatted date and schema info.
        """
        return {
            "schema_uri": SCHEMA_URI,
            "layout": self.layout,
            "title": self.title,
            "date": self.date.isoformat(),
            "categories": list(self.categories),
            "tags": sorted(self.tags),
            "body": self.body,
            "extra": _thaw(self.extra),
        }

    @classmethod
    def from_dict(cls, obj: dict) -> PostRecord:
        """
        Deserialize PostRecord from dict (date must be an ISO string with offset).
        Verifies schema_uri matches this schema version.
        """
        if obj.get("schema_uri") != SCHEMA_URI:
            raise ValueError(
                f"Schema URI mismatch: expected {SCHEMA_URI}, got {obj.get('schema_uri')}"
            )
        return cls(
            title=obj["title"],
            date=datetime.fromisoformat(obj["date"]),
            layout=obj.get("layout"),
            categories=tuple(obj.get("categories") or ()),
            tags=frozenset(obj.get("tags") or ()),
            body=obj.get("body", ""),
            extra=dict(obj.get("extra") or {}),
        )


@dataclass(frozen=True, slots=True)
class ParseResult:
    record: PostRecord
    warnings: tuple[DanglingReferenceWarning, ...] = ()


def normalize_label(label: str) -> str:
    """Reference labels match case-insensitively, with runs of whitespace collapsed."""
    return " ".join(label.split()).casefold()


def split_front_matter(text: str) -> tuple[str, str, int]:
    """
    Split a content unit into (front-matter block, body, first body line).

    The first line must be DELIMITER; the block runs until the next DELIMITER line.
    The body is returned verbatim. Line numbers are 1-based.
    """
    if text.startswith("\uFEFF"):
        text = text[1:]

    pos = 0
    line_no = 1
    block_start = None
    while pos <= len(text):
        end = text.find("\n", pos)
        next_pos = len(text) + 1 if end == -1 else end + 1
        line = text[pos:next_pos - 1] if end != -1 else text[pos:]
        is_delimiter = line.rstrip() == DELIMITER
        if block_start is None:
            if not is_delimiter:
                raise FrontMatterError(f"content must start with a {DELIMITER!r} line", line=1)
            block_start = next_pos
        elif is_delimiter:
            block = text[block_start:pos]
            body = text[next_pos:] if next_pos <= len(text) else ""
            return block, body, line_no + 1
        if end == -1:
            break
        pos = next_pos
        line_no += 1
    raise FrontMatterError(f"front matter is never closed by a {DELIMITER!r} line", line=1)


def _load_mapping(block: str, first_line: int) -> tuple[dict, dict[str, int]]:
    """Load the block with BaseLoader; also return the file line of each top-level key."""
    loader = yaml.BaseLoader(block)
    try:
        node = loader.get_single_node()
        if node is None:
            return {}, {}
        if not isinstance(node, yaml.MappingNode):
            raise FrontMatterError(
                "front matter must be a mapping of keys to values",
                line=node.start_mark.line + first_line,
            )
        data = loader.construct_document(node)
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + first_line if mark is not None else None
        raise FrontMatterError(f"invalid YAML in front matter: {exc}", line=line) from exc
    finally:
        loader.dispose()

    key_lines = {
        key_node.value: key_node.start_mark.line + first_line
        for key_node, _ in node.value
        if isinstance(key_node, yaml.ScalarNode)
    }
    return data, key_lines


def load_front_matter(block: str, first_line: int = 2) -> dict:
    """
    Parse a front-matter block into a mapping. Scalars stay as their source strings.
    """
    return _load_mapping(block, first_line)[0]


def parse_date(value: str) -> datetime:
    """
    Parse a front-matter timestamp, e.g. '2019-11-22 11:59:28 -0500', into an aware datetime.
    """
    match = _DATE_PATTERN.fullmatch(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise MalformedDateError(str(value))

    if match["offset"] == "Z":
        tz = timezone.utc
    else:
        off_hour, off_minute = int(match["off_hour"]), int(match["off_minute"])
        if off_hour > 23 or off_minute > 59:
            raise MalformedDateError(value)
        offset = timedelta(hours=off_hour, minutes=off_minute)
        tz = timezone(-offset if match["sign"] == "-" else offset)

    fraction = (match["fraction"] or "")[:6].ljust(6, "0")
    try:
        return datetime(
            int(match["year"]),
            int(match["month"]),
            int(match["day"]),
            int(match["hour"]),
            int(match["minute"]),
            int(match["second"] or 0),
            int(fraction),
            tzinfo=tz,
        )
    except ValueError as exc:
        raise MalformedDateError(value) from exc


def format_date(value: datetime) -> str:
    """
    Inverse of parse_date: 'YYYY-MM-DD HH:MM:SS[.ffffff] ±HHMM'.
    """
    offset = value.utcoffset()
    if offset is None:
        raise ValueError(f"cannot format naive datetime {value!r}")
    minutes = int(offset.total_seconds()) // 60
    sign = "-" if minutes < 0 else "+"
    off_hour, off_minute = divmod(abs(minutes), 60)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d} "
        f"{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += f".{value.microsecond:06d}"
    return f"{text} {sign}{off_hour:02d}{off_minute:02d}"


def scan_body(body: str, first_line: int = 1) -> BodyScan:
    """
    Walk the body once, collecting fenced code blocks, link reference definitions
    and link reference uses. Text inside fences is not scanned for references.

    Raises:
        UnbalancedFenceError: If a fence is still open at end of input.
    """
    code_blocks: list[CodeBlock] = []
    definitions: dict[str, str] = {}
    references: list[ReferenceUse] = []

    fence = None        # (marker, opening line, language, collected lines)
    for offset, raw in enumerate(body.split("\n")):
        line_no = first_line + offset
        line = raw.rstrip("\r")

        if fence is not None:
            marker, start, language, lines = fence
            close = _FENCE_CLOSE_PATTERN.match(line)
            if close and close["fence"][0] == marker[0] and len(close["fence"]) >= len(marker):
                code_blocks.append(CodeBlock(language, start, "\n".join(lines)))
                fence = None
            else:
                lines.append(line)
            continue

        opening = _FENCE_OPEN_PATTERN.match(line)
        if opening and not (opening["fence"][0] == "`" and "`" in opening["info"]):
            info = opening["info"].split()
            fence = (opening["fence"], line_no, info[0] if info else None, [])
            continue

        definition = _REF_DEFINITION_PATTERN.match(line)
        if definition:
            definitions.setdefault(normalize_label(definition["label"]), definition["url"].strip("<>"))
            continue

        for use in _REF_USE_PATTERN.finditer(_CODE_SPAN_PATTERN.sub("", line)):
            ref = use["ref"].strip() or use["text"].strip()
            if ref:
                references.append(ReferenceUse(use["text"], ref, line_no))

    if fence is not None:
        raise UnbalancedFenceError(fence[1], fence[0])

    return BodyScan(tuple(code_blocks), definitions, tuple(references))


def _split_names(value: Any, key: str, line: int | None) -> list[str]:
    """Jekyll accepts both 'a b c' and a YAML sequence for categories and tags."""
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list):
        names = []
        for entry in value:
            if not isinstance(entry, str):
                raise FrontMatterError(f"{key} entries must be plain values, got {entry!r}", line=line)
            if entry.strip():
                names.append(entry.strip())
        return names
    raise FrontMatterError(f"{key} must be a string or a sequence", line=line)


def parse_post(text: str, *, source: str | None = None, strict: bool = False) -> ParseResult:
    """
    Parse and validate one content unit.

    Args:
        text: Raw text of the content unit (front matter followed by body).
        source: Label used in error and warning messages, usually the file path.
        strict: If True, a dangling link reference raises DanglingReferenceError.
                If False, it is returned as a DanglingReferenceWarning.

    Returns:
        ParseResult with the immutable PostRecord and the collected warnings.

    Raises:
        FrontMatterError, MissingFieldError, MalformedDateError,
        UnbalancedFenceError, DanglingReferenceError (strict only).
    """
    try:
        block, body, body_line = split_front_matter(text)
        data, key_lines = _load_mapping(block, first_line=2)

        for key in REQUIRED_KEYS:
            value = data.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise MissingFieldError(key)

        title = data["title"]
        if not isinstance(title, str):
            raise FrontMatterError("title must be a plain value", line=key_lines.get("title"))

        date_value = data["date"]
        if not isinstance(date_value, str):
            raise MalformedDateError(str(date_value), line=key_lines.get("date"))
        try:
            date = parse_date(date_value)
        except MalformedDateError as exc:
            exc.line = key_lines.get("date")
            raise

        layout = data.get("layout")
        if layout is not None and not isinstance(layout, str):
            raise FrontMatterError("layout must be a plain value", line=key_lines.get("layout"))

        scan = scan_body(body, first_line=body_line)

        try:
            record = PostRecord(
                title=title.strip(),
                date=date,
                layout=layout.strip() if layout is not None else None,
                categories=tuple(_split_names(data.get("categories"), "categories", key_lines.get("categories"))),
                tags=frozenset(_split_names(data.get("tags"), "tags", key_lines.get("tags"))),
                body=body,
                extra={key: value for key, value in data.items() if key not in RECOGNIZED_KEYS},
            )
        except PostRecordError:
            raise
        except ValueError as exc:
            raise FrontMatterError(str(exc)) from exc

        warnings = []
        for use in scan.dangling():
            if strict:
                raise DanglingReferenceError(use.ref, line=use.line)
            warning = DanglingReferenceWarning(use.ref, source=source, line=use.line)
            logger.warning("%s", warning)
            warnings.append(warning)
    except PostRecordError as exc:
        if exc.source is None:
            exc.source = source
        raise

    logger.debug("parsed post %r from %s", record.title, source or "<text>")
    return ParseResult(record, tuple(warnings))


def dump_post(record: PostRecord) -> str:
    """
    Serialize a PostRecord back into a content unit that parse_post accepts.
    """
    block = yaml.safe_dump(
        record.front_matter(),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=2 ** 16,
    )
    return f"{DELIMITER}\n{block}{DELIMITER}\n{record.body}"
