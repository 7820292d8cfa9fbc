import pytest
from pathlib import Path
import sys

sys.path.append(str(Path(__file__).resolve().parents[1]))
import logging
from datetime import date, datetime, timedelta, timezone

from post_record import (
    CodeBlock,
    DanglingReferenceError,
    DanglingReferenceWarning,
    FrontMatterError,
    MalformedDateError,
    MissingFieldError,
    PostRecord,
    PostRecordError,
    SCHEMA_URI,
    UnbalancedFenceError,
    dump_post,
    format_date,
    load_front_matter,
    parse_date,
    parse_post,
    scan_body,
    split_front_matter,
)

EST = timezone(timedelta(hours=-5))

SAMPLE = """---
layout: post
title:  "Swift: reduce vs. for...in"
date:   2019-11-22 11:59:28 -0500
categories: swift idioms
tags: [swift, reduce]
comments: true
---
Summing an array with `reduce`:

```swift
let total = numbers.reduce(0, +)
```

See the [standard library docs][stdlib] and [Swift by Sundell][sundell].

[stdlib]: https://developer.apple.com/documentation/swift/array/reduce
[sundell]: https://www.swiftbysundell.com
"""


def make_post(body="", **front):
    # title on line 2, date on line 3, then the rest
    front = {"title": "Reduce", "date": "2019-11-22 11:59:28 -0500", **front}
    lines = ["---"] + [f"{key}: {value}" for key, value in front.items() if value is not None] + ["---"]
    return "\n".join(lines) + "\n" + body


def test_parse_sample_post():
    result = parse_post(SAMPLE)
    r = result.record

    assert result.warnings == ()
    assert r.layout == "post"
    assert r.title == "Swift: reduce vs. for...in"
    assert r.date == datetime(2019, 11, 22, 11, 59, 28, tzinfo=EST)
    assert r.categories == ("swift", "idioms")
    assert r.tags == frozenset({"swift", "reduce"})
    assert r.extra == {"comments": "true"}
    assert r.body.startswith("Summing an array")


def test_date_offset_and_calendar_date():
    r = parse_post(make_post(date="2019-11-22 11:59:28 -0500")).record
    assert r.date.utcoffset() == timedelta(hours=-5)
    assert r.date.date() == date(2019, 11, 22)


def test_title_is_trimmed_and_kept_as_text():
    assert parse_post(make_post(title="   Reduce vs. loops   ")).record.title == "Reduce vs. loops"
    assert parse_post(make_post(title="1.10")).record.title == "1.10"
    assert parse_post(make_post(title="yes")).record.title == "yes"


def test_code_blocks_and_references():
    r = parse_post(SAMPLE).record
    assert r.code_blocks() == (CodeBlock("swift", 3, "let total = numbers.reduce(0, +)"),)
    assert r.references() == {
        "stdlib": "https://developer.apple.com/documentation/swift/array/reduce",
        "sundell": "https://www.swiftbysundell.com",
    }


@pytest.mark.parametrize("missing", ["title", "date"])
def test_missing_required_field(missing):
    with pytest.raises(MissingFieldError) as excinfo:
        parse_post(make_post(**{missing: None}))
    assert excinfo.value.field == missing
    assert missing in str(excinfo.value)


def test_blank_title_counts_as_missing():
    with pytest.raises(MissingFieldError) as excinfo:
        parse_post(make_post(title='""'))
    assert excinfo.value.field == "title"


def test_title_is_checked_before_date():
    with pytest.raises(MissingFieldError) as excinfo:
        parse_post("---\nlayout: post\n---\n")
    assert excinfo.value.field == "title"


def test_errors_carry_source():
    with pytest.raises(MissingFieldError) as excinfo:
        parse_post(make_post(date=None), source="_posts/reduce.md")
    assert excinfo.value.source == "_posts/reduce.md"
    assert str(excinfo.value) == "_posts/reduce.md: missing required front-matter field 'date'"


def test_malformed_date_reports_line():
    with pytest.raises(MalformedDateError) as excinfo:
        parse_post(make_post(date="November 22, 2019"), source="post.md")
    assert excinfo.value.value == "November 22, 2019"
    assert excinfo.value.line == 3
    assert str(excinfo.value).startswith("post.md:3: ")


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2019-11-22 11:59:28 -0500", datetime(2019, 11, 22, 11, 59, 28, tzinfo=EST)),
        ("2019-11-22T11:59:28-05:00", datetime(2019, 11, 22, 11, 59, 28, tzinfo=EST)),
        ("2019-11-22 11:59 +0000", datetime(2019, 11, 22, 11, 59, tzinfo=timezone.utc)),
        ("2019-11-22 11:59:28.5 Z", datetime(2019, 11, 22, 11, 59, 28, 500000, tzinfo=timezone.utc)),
        ("  2019-11-22   08:00:00 +0530 ", datetime(2019, 11, 22, 8, tzinfo=timezone(timedelta(hours=5, minutes=30)))),
    ],
)
def test_parse_date_accepts(value, expected):
    parsed = parse_date(value)
    assert parsed == expected
    assert parsed.utcoffset() == expected.utcoffset()


@pytest.mark.parametrize(
    "value",
    [
        "2019-11-22",
        "2019-11-22 11:59:28",
        "2019-02-30 10:00:00 +0000",
        "2019-11-22 25:00:00 +0000",
        "2019-11-22 11:59:28 +2400",
        "22/11/2019 11:59:28 -0500",
        "",
    ],
)
def test_parse_date_rejects(value):
    with pytest.raises(MalformedDateError):
        parse_date(value)


def test_format_date():
    assert format_date(datetime(2019, 11, 22, 11, 59, 28, tzinfo=EST)) == "2019-11-22 11:59:28 -0500"
    assert format_date(datetime(2019, 1, 2, 3, 4, 5, 60, tzinfo=timezone.utc)) == "2019-01-02 03:04:05.000060 +0000"
    with pytest.raises(ValueError):
        format_date(datetime(2019, 1, 2))


def test_unbalanced_fence():
    with pytest.raises(UnbalancedFenceError) as excinfo:
        parse_post(make_post("Intro\n```swift\nlet x = 1\n"), source="post.md")
    assert excinfo.value.line == 6
    assert excinfo.value.fence == "```"
    assert excinfo.value.source == "post.md"


def test_fence_closes_with_same_character_only():
    with pytest.raises(UnbalancedFenceError):
        scan_body("```swift\nlet x = 1\n~~~\n")

    scan = scan_body("~~~\nlet x = 1\n~~~~~\n")
    assert scan.code_blocks == (CodeBlock(None, 1, "let x = 1"),)


def test_shorter_inner_fence_stays_inside():
    scan = scan_body("````markdown\n```swift\nlet x = 1\n```\n````\n")
    assert len(scan.code_blocks) == 1
    assert scan.code_blocks[0].language == "markdown"
    assert scan.code_blocks[0].code == "```swift\nlet x = 1\n```"


def test_dangling_reference_is_a_warning():
    result = parse_post(make_post("[foo][bar]\n"))
    assert result.record.title == "Reduce"
    assert len(result.warnings) == 1
    warning = result.warnings[0]
    assert isinstance(warning, DanglingReferenceWarning)
    assert isinstance(warning, UserWarning)
    assert warning.ref == "bar"
    assert warning.line == 5


def test_dangling_reference_is_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="post_record"):
        parse_post(make_post("[foo][bar]\n"), source="post.md")
    assert "post.md:5: link reference [bar] has no definition" in caplog.text


def test_reference_labels_match_case_insensitively():
    result = parse_post(make_post("[foo][Swift  Docs]\n\n[swift docs]: <https://swift.org>\n"))
    assert result.warnings == ()
    assert result.record.references() == {"swift docs": "https://swift.org"}


def test_collapsed_reference():
    assert [w.ref for w in parse_post(make_post("[Swift][]\n")).warnings] == ["Swift"]
    assert parse_post(make_post("[Swift][]\n\n[swift]: https://swift.org\n")).warnings == ()


def test_references_in_code_are_ignored():
    body = "Use `[a][b]` literally.\n```swift\nlet x = [y][z]\n```\n"
    assert parse_post(make_post(body)).warnings == ()


def test_definitions_in_code_do_not_resolve_references():
    body = "[foo][bar]\n```markdown\n[bar]: https://example.org\n```\n"
    result = parse_post(make_post(body))
    assert [w.ref for w in result.warnings] == ["bar"]
    assert result.record.references() == {}


def test_strict_mode_raises_on_dangling_reference():
    with pytest.raises(DanglingReferenceError) as excinfo:
        parse_post(make_post("[foo][bar]\n"), strict=True)
    assert excinfo.value.ref == "bar"
    assert excinfo.value.line == 5


def test_split_front_matter():
    block, body, body_line = split_front_matter("---\ntitle: x\n---\nbody\n")
    assert block == "title: x\n"
    assert body == "body\n"
    assert body_line == 4

    assert split_front_matter("---\n---") == ("", "", 3)


def test_bom_and_crlf():
    text = "\ufeff---\r\ntitle: Reduce\r\ndate: 2019-11-22 11:59:28 -0500\r\n---\r\nBody\r\n"
    r = parse_post(text).record
    assert r.title == "Reduce"
    assert r.body == "Body\r\n"


@pytest.mark.parametrize(
    "text",
    [
        "title: Reduce\n",
        "---\ntitle: Reduce\ndate: 2019-11-22 11:59:28 -0500\n",
        "---\ntitle: [unclosed\n---\n",
        "---\n- title\n- date\n---\n",
    ],
)
def test_front_matter_errors(text):
    with pytest.raises(FrontMatterError):
        parse_post(text)


def test_categories_must_be_names():
    with pytest.raises(FrontMatterError):
        parse_post("---\ntitle: x\ndate: 2019-11-22 11:59:28 -0500\ncategories:\n  a: b\n---\n")


def test_invalid_title_characters():
    with pytest.raises(FrontMatterError):
        parse_post(make_post(title='"bad\\u200Btitle"'))


def test_errors_are_value_errors():
    assert issubclass(PostRecordError, ValueError)
    for cls in (FrontMatterError, MissingFieldError, MalformedDateError, UnbalancedFenceError, DanglingReferenceError):
        assert issubclass(cls, PostRecordError)


def test_unrecognized_keys_pass_through():
    text = "---\ntitle: x\ndate: 2019-11-22 11:59:28 -0500\nauthor:\n  name: Jane\npermalink: /reduce/\n---\n"
    r = parse_post(text).record
    assert r.extra == {"author": {"name": "Jane"}, "permalink": "/reduce/"}


def test_load_front_matter_keeps_strings():
    assert load_front_matter("") == {}
    assert load_front_matter("n: 3\nflag: true\ntags: [a, b]\n") == {"n": "3", "flag": "true", "tags": ["a", "b"]}


def test_dump_and_reparse():
    r = parse_post(SAMPLE).record
    r2 = parse_post(dump_post(r)).record
    assert r2 == r
    assert r2.date.utcoffset() == r.date.utcoffset()


def test_record_is_immutable():
    r = parse_post(SAMPLE).record
    with pytest.raises(AttributeError):
        r.title = "changed"


def test_invalid_record_raises():
    with pytest.raises(ValueError):
        PostRecord(title="", date=datetime(2019, 11, 22, tzinfo=EST))
    with pytest.raises(ValueError):
        PostRecord(title="Reduce", date=datetime(2019, 11, 22))
    with pytest.raises(ValueError):
        PostRecord(title="bad\u0000title", date=datetime(2019, 11, 22, tzinfo=EST))
    with pytest.raises(ValueError):
        PostRecord(title="Reduce", date=datetime(2019, 11, 22, tzinfo=EST), categories=("",))
    with pytest.raises(ValueError):
        PostRecord(title="Reduce", date=datetime(2019, 11, 22, tzinfo=EST), extra={"title": "x"})


@pytest.mark.parametrize(
    "fields",
    [
        {"title": " Reduce "},
        {"layout": " post"},
        {"categories": (" swift",)},
        {"tags": frozenset({"reduce "})},
        {"extra": {"comments": True}},
        {"extra": {"n": None}},
        {"extra": {"author": {"name": 3}}},
        {"date": datetime(2019, 11, 22, tzinfo=timezone(timedelta(seconds=30)))},
    ],
)
def test_record_rejects_values_front_matter_cannot_hold(fields):
    values = {"title": "Reduce", "date": datetime(2019, 11, 22, tzinfo=EST), **fields}
    with pytest.raises(ValueError):
        PostRecord(**values)


def test_nested_extra_survives_dump():
    r = PostRecord(
        title="Reduce",
        date=datetime(2019, 11, 22, tzinfo=EST),
        extra={"author": {"name": "Jane", "links": ["a", "b"]}, "comments": "true"},
    )
    r2 = parse_post(dump_post(r)).record
    assert r2 == r
    assert r2.to_dict()["extra"] == {"author": {"name": "Jane", "links": ["a", "b"]}, "comments": "true"}


def test_extra_is_read_only():
    source = {"comments": "true", "author": {"name": "Jane"}}
    r = PostRecord(title="Reduce", date=datetime(2019, 11, 22, tzinfo=EST), extra=source)
    with pytest.raises(TypeError):
        r.extra["title"] = "oops"
    with pytest.raises(TypeError):
        r.extra["author"]["name"] = "oops"

    source["title"] = "oops"
    assert "title" not in r.extra
    assert "title: Reduce" in dump_post(r)


def test_dict_roundtrip():
    r = parse_post(SAMPLE).record
    r2 = PostRecord.from_dict(r.to_dict())
    assert r2 == r
    assert r2.date.utcoffset() == r.date.utcoffset()


def test_from_dict_schema_mismatch():
    d = parse_post(SAMPLE).record.to_dict()
    d["schema_uri"] = "https://wrong.schema/uri"
    with pytest.raises(ValueError):
        PostRecord.from_dict(d)

    d = parse_post(SAMPLE).record.to_dict()
    del d["schema_uri"]
    with pytest.raises(ValueError):
        PostRecord.from_dict(d)
    assert SCHEMA_URI.endswith("/v1")
