"""
Module: post_batch.py

This script loads every post of a Jekyll-style posts directory through `post_record.parse_post`.

Features:
  - Defines `load_post(path)` to read and parse a single content file.
  - Defines `load_posts(directory)` to parse every `*.md` / `*.markdown` file under a directory.
    A file that fails to parse is recorded as a `LoadFailure` and loading continues.
  - Orders the loaded posts by date, newest first.
  - Derives the URL slug from the `YYYY-MM-DD-slug.md` filename convention.
  - Reports the outcome when run as a script and exits non-zero if any file failed.

Usage:
    import post_batch

    report = post_batch.load_posts("_posts")
    for post in report.posts:
        print(post.record.date, post.slug, post.record.title)
    for failure in report.failures:
        print(failure.error)

Run from the command line:
    $ python post_batch.py _posts --strict
"""
from __future__ import annotations
import argparse
import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from post_record import DanglingReferenceWarning, PostRecord, PostRecordError, parse_post

logger = logging.getLogger(__name__)

# Default directory holding the content files
POSTS_DIR = "_posts"

# File suffixes treated as content units
POST_SUFFIXES = (".md", ".markdown")

# Jekyll post filenames: 2019-11-22-reduce-vs-for-in.md
_FILENAME_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}-(?P<slug>.+)$")


@dataclass(frozen=True, slots=True)
class LoadedPost:
    path: Path
    record: PostRecord
    warnings: tuple[DanglingReferenceWarning, ...] = ()

    @property
    def slug(self) -> str:
        return slug_from_path(self.path)


@dataclass(frozen=True, slots=True)
class LoadFailure:
    path: Path
    error: Exception


@dataclass(slots=True)
class BatchReport:
    """
    Outcome of loading a posts directory.

    Attributes:
        posts     : Successfully parsed posts, newest first.
        failures  : One entry per file that could not be read or parsed.
    """
    posts: list[LoadedPost] = field(default_factory=list)
    failures: list[LoadFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def warnings(self) -> list[DanglingReferenceWarning]:
        return [warning for post in self.posts for warning in post.warnings]


def slug_from_path(path: Path | str) -> str:
    """
    Return the slug part of a `YYYY-MM-DD-slug.ext` filename, or the stem if there is no date prefix.
    """
    stem = Path(path).stem
    match = _FILENAME_PATTERN.match(stem)
    return match["slug"] if match else stem


def load_post(path: Path | str, strict: bool = False) -> LoadedPost:
    """
    Read a UTF-8 content file and parse it.

    Args:
        path (Path | str): Content file to load.
        strict (bool): Passed through to parse_post.

    Raises:
        PostRecordError: If the content does not validate.
        OSError, UnicodeDecodeError: If the file cannot be read.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    result = parse_post(text, source=str(path), strict=strict)
    return LoadedPost(path, result.record, result.warnings)


def find_post_files(directory: Path | str = POSTS_DIR) -> list[Path]:
    root = Path(directory)
    if not root.is_dir():
        raise NotADirectoryError(f"posts directory not found: {root}")
    return sorted(
        path for path in root.rglob("*")
        if path.is_file() and path.suffix.lower() in POST_SUFFIXES
    )


def load_posts(directory: Path | str = POSTS_DIR, strict: bool = False) -> BatchReport:
    """
    Load every content file under `directory`.

    Each file is parsed on its own; a failure is recorded and does not stop the batch.
    """
    report = BatchReport()
    for path in find_post_files(directory):
        try:
            report.posts.append(load_post(path, strict=strict))
        except PostRecordError as exc:
            logger.error("%s", exc)
            report.failures.append(LoadFailure(path, exc))
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("%s: cannot read file: %s", path, exc)
            report.failures.append(LoadFailure(path, exc))

    report.posts.sort(key=lambda post: str(post.path))
    report.posts.sort(key=lambda post: post.record.date, reverse=True)
    logger.debug("loaded %d posts from %s", len(report.posts), directory)
    return report


def main(argv: Sequence[str] | None = None) -> int:
    """
    Command line entry point. Exit codes: 0 success, 1 some posts failed, 2 directory missing.
    """
    parser = argparse.ArgumentParser(description="Validate the front matter and body of blog posts.")
    parser.add_argument("directory", nargs="?", default=POSTS_DIR, help=f"posts directory (default: {POSTS_DIR})")
    parser.add_argument("--strict", action="store_true", help="treat dangling link references as errors")
    parser.add_argument("-v", "--verbose", action="store_true", help="log every parsed post")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        report = load_posts(args.directory, strict=args.strict)
    except NotADirectoryError as exc:
        logger.error("%s", exc)
        return 2

    print(
        f"{len(report.posts)} posts loaded, {len(report.failures)} failed, "
        f"{len(report.warnings)} warnings."
    )
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
