#!/usr/bin/env python3
"""
flatzip - collect chaptered files into one flat, naturally ordered zip

Walks each source directory, picks the files matching the configured glob
patterns, flattens their relative paths into single-segment entry names and
streams them, stored (uncompressed), into one archive.

Features:
- Shell-style glob patterns validated up front
- Natural ordering: ``track2`` sorts before ``track10``
- Directories are archived strictly in argument order
- Per-directory and per-file progress bars (rich or tqdm)
- Fail-fast error handling with wrapped, chained error messages
"""

import argparse
import asyncio
import cProfile
import functools
import logging
import os
import re
import stat
import sys
import time
import traceback
import zipfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    MofNCompleteColumn,
    Progress,
    ProgressColumn,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from tqdm import tqdm


__version__ = "1.0.0"
__author__ = "flatzip Project"
__license__ = "MIT"


DEFAULT_PATTERNS = ("*.mp3",)
COLLISION_POLICIES = ("error", "rename")
PROGRESS_STYLES = ("rich", "tqdm", "none")

O_NOFOLLOW = getattr(os, "O_NOFOLLOW", 0)
_SEPARATORS = os.sep + (os.altsep or "")


@dataclass(frozen=True)
class FileRecord:
    """One file selected for the archive"""

    path: str
    name: str


class FlatZipError(Exception):
    """Base exception for flatzip errors"""

    pass


class ConfigurationError(FlatZipError):
    """Invalid configuration value or command line option"""

    pass


class PatternError(ConfigurationError):
    """Malformed glob pattern"""

    pass


class DiscoveryError(FlatZipError):
    """Directory traversal failed"""

    pass


class NoFilesFoundError(DiscoveryError):
    """A directory walk finished without a single matching file"""

    pass


class DirectoryError(FlatZipError):
    """Processing of one source directory failed"""

    def __init__(self, directory: str, message: str):
        super().__init__(f"dir {directory!r}: {message}")
        self.directory = directory


class SourceFileError(FlatZipError):
    """A source file could not be opened, stat-ed or read"""

    pass


class ArchiveWriteError(FlatZipError):
    """An archive entry could not be created or written"""

    pass


class OutputError(FlatZipError):
    """The output archive could not be created"""

    pass


class NameCollisionError(FlatZipError):
    """Two source files flattened to the same entry name"""

    pass


# ---------------------------------------------------------------------------
# Glob matching
# ---------------------------------------------------------------------------


def _class_char(pattern: str, i: int, escapes: bool) -> Tuple[str, int]:
    if i >= len(pattern):
        raise PatternError(f"syntax error in pattern {pattern!r}: unterminated character class")
    c = pattern[i]
    if c in "-]":
        raise PatternError(f"syntax error in pattern {pattern!r}: unexpected {c!r} in character class")
    if c == "\\" and escapes:
        if i + 1 >= len(pattern):
            raise PatternError(f"syntax error in pattern {pattern!r}: trailing backslash")
        return pattern[i + 1], i + 2
    return c, i + 1


def _translate_class(pattern: str, i: int, escapes: bool) -> Tuple[str, int]:
    """Translate the character class starting right after '[' at index i"""
    negated = False
    if i < len(pattern) and pattern[i] in "^!":
        negated = True
        i += 1

    ranges = []
    while True:
        if i >= len(pattern):
            raise PatternError(f"syntax error in pattern {pattern!r}: unterminated character class")
        if pattern[i] == "]" and ranges:
            i += 1
            break
        lo, i = _class_char(pattern, i, escapes)
        hi = lo
        if i < len(pattern) and pattern[i] == "-":
            hi, i = _class_char(pattern, i + 1, escapes)
        if lo == hi:
            ranges.append(re.escape(lo))
        else:
            ranges.append(f"{re.escape(lo)}-{re.escape(hi)}")

    return f"[{'^' if negated else ''}{''.join(ranges)}]", i


def translate_glob(pattern: str) -> str:
    """Convert a shell glob into a regular expression.

    ``*`` and ``?`` never match the path separator, so ``**`` is just two
    stars; go deeper with one ``*/`` per directory level.
    """
    sep = re.escape(os.sep)
    not_sep = f"[^{sep}]"
    # Backslash is the separator on Windows, so it can't double as escape
    escapes = os.sep != "\\"

    parts = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            parts.append(f"{not_sep}*")
        elif c == "?":
            parts.append(not_sep)
        elif c == "[":
            cls, i = _translate_class(pattern, i + 1, escapes)
            parts.append(cls)
            continue
        elif c == "\\" and escapes:
            if i + 1 >= n:
                raise PatternError(f"syntax error in pattern {pattern!r}: trailing backslash")
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        else:
            parts.append(re.escape(c))
        i += 1

    return "".join(parts)


@functools.lru_cache(maxsize=256)
def compile_glob(pattern: str) -> "re.Pattern":
    """Compile a glob pattern, raising PatternError when it is malformed"""
    regex = translate_glob(pattern)
    try:
        return re.compile(regex, re.DOTALL)
    except re.error as e:
        raise PatternError(f"syntax error in pattern {pattern!r}: {e}") from e


def glob_match(pattern: str, path: str) -> bool:
    return compile_glob(pattern).fullmatch(path) is not None


class PatternSet:
    """Ordered, append-only set of glob patterns; the built-in default comes first"""

    def __init__(self, patterns: Optional[Iterable[str]] = None, defaults: Iterable[str] = DEFAULT_PATTERNS):
        self._patterns: List[str] = []
        for pattern in defaults:
            self.add(pattern)
        for pattern in patterns or []:
            self.add(pattern)

    def add(self, pattern: str) -> None:
        # Matching against "" surfaces syntax errors before any walk starts
        glob_match(pattern, "")
        self._patterns.append(pattern)

    def match(self, path: str) -> Optional[str]:
        """Return the first pattern matching path, or None"""
        for pattern in self._patterns:
            if glob_match(pattern, path):
                return pattern
        return None

    def max_separators(self) -> Optional[int]:
        """Most path separators a matching path can contain, None if unbounded.

        Only literal separators match a separator; a character class might
        too, so any pattern with a class makes the bound unknown.
        """
        bound = 0
        for pattern in self._patterns:
            if "[" in pattern:
                return None
            bound = max(bound, pattern.count(os.sep))
        return bound

    def __iter__(self) -> Iterator[str]:
        return iter(self._patterns)

    def __len__(self) -> int:
        return len(self._patterns)

    def __repr__(self) -> str:
        return f"PatternSet({self._patterns!r})"


# ---------------------------------------------------------------------------
# Path flattening
# ---------------------------------------------------------------------------


def sanitize_dir_prefix(directory: Union[str, Path]) -> str:
    """Entry name prefix for a source directory: its base name plus '_'.

    The current directory and the filesystem root give an empty prefix.
    """
    directory = os.fspath(directory)
    stripped = directory.rstrip(_SEPARATORS)
    if not directory:
        base = os.curdir
    elif not stripped:
        base = os.sep
    else:
        base = os.path.basename(stripped)

    base = os.path.normpath(base)
    if base in (os.curdir, os.sep):
        return ""
    return base + "_"


def flatten_path(rel_path: str) -> str:
    """Collapse a relative path into one segment by replacing separators with '_'"""
    for sep in _SEPARATORS:
        rel_path = rel_path.replace(sep, "_")
    return rel_path


def entry_name(directory: Union[str, Path], rel_path: str) -> str:
    return sanitize_dir_prefix(directory) + flatten_path(rel_path)


class NameRegistry:
    """Tracks entry names used in one archive session.

    With the ``error`` policy a second file claiming a name aborts the run;
    with ``rename`` it gets a ``_2``, ``_3``... suffix before its extension.
    """

    def __init__(self, policy: str = "error", logger: Optional[logging.Logger] = None):
        if policy not in COLLISION_POLICIES:
            raise ConfigurationError(
                f"Invalid collision policy: {policy!r} (expected one of {', '.join(COLLISION_POLICIES)})"
            )
        self.policy = policy
        self.logger = logger or logging.getLogger("flatzip")
        self._owners: Dict[str, str] = {}

    def claim(self, record: FileRecord) -> FileRecord:
        owner = self._owners.get(record.name)
        if owner is None:
            self._owners[record.name] = record.path
            return record

        if self.policy == "error":
            raise NameCollisionError(
                f"entry name {record.name!r} for {record.path!r} is already used by {owner!r}"
            )

        stem, ext = os.path.splitext(record.name)
        counter = 2
        while f"{stem}_{counter}{ext}" in self._owners:
            counter += 1
        renamed = replace(record, name=f"{stem}_{counter}{ext}")
        self.logger.warning(
            f"entry name {record.name!r} already used by {owner!r}, storing {record.path!r} as {renamed.name!r}"
        )
        self._owners[renamed.name] = renamed.path
        return renamed

    def __contains__(self, name: str) -> bool:
        return name in self._owners

    def __len__(self) -> int:
        return len(self._owners)


# ---------------------------------------------------------------------------
# Natural ordering
# ---------------------------------------------------------------------------

# \d on str patterns matches any Unicode decimal digit, which int() accepts
_DIGIT_RUN = re.compile(r"\d+")


def _cmp(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


def natural_compare(a: str, b: str) -> int:
    """Compare two strings so that embedded numbers compare by value.

    Text runs compare as plain strings and digit runs as integers. When two
    digit runs have the same value the shorter one sorts first, so "7" comes
    before "007". A string that runs out of digits sorts after one that still
    has a number at the same position ("track" > "track1").

    Returns -1, 0 or 1.
    """
    if a == b:
        return 0

    while True:
        match_a = _DIGIT_RUN.search(a)
        match_b = _DIGIT_RUN.search(b)

        if match_a is None and match_b is None:
            return _cmp(a, b)
        if match_a is None:
            prefix_b = b[: match_b.start()]
            if a != prefix_b:
                return _cmp(a, prefix_b)
            return 1
        if match_b is None:
            prefix_a = a[: match_a.start()]
            if prefix_a != b:
                return _cmp(prefix_a, b)
            return -1

        prefix_a = a[: match_a.start()]
        prefix_b = b[: match_b.start()]
        if prefix_a != prefix_b:
            return _cmp(prefix_a, prefix_b)

        run_a = match_a.group()
        run_b = match_b.group()
        value_a = int(run_a)
        value_b = int(run_b)
        if value_a != value_b:
            return _cmp(value_a, value_b)
        if len(run_a) != len(run_b):
            return _cmp(len(run_a), len(run_b))

        a = a[match_a.end():]
        b = b[match_b.end():]


def natural_less(a: str, b: str) -> bool:
    return natural_compare(a, b) < 0


def sort_file_records(records: Iterable[FileRecord]) -> List[FileRecord]:
    """Stable natural sort of records by entry name"""
    name_key = functools.cmp_to_key(natural_compare)
    return sorted(records, key=lambda record: name_key(record.name))


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def search_records(
    directory: Union[str, Path],
    patterns: PatternSet,
    follow_symlinks: bool = False,
    max_depth: int = 50,
    logger: Optional[logging.Logger] = None,
) -> List[FileRecord]:
    """Walk directory recursively and return a record for every matching file.

    Raises NoFilesFoundError when nothing matches and DiscoveryError when
    the traversal itself fails.
    """
    directory = os.fspath(directory)
    logger = logger or logging.getLogger("flatzip")
    prefix = sanitize_dir_prefix(directory)
    found: List[FileRecord] = []
    visited_dirs = set()  # Symlinked directories can form loops
    separator_bound = patterns.max_separators()

    def scan_recursive(current: str, rel_dir: str, depth: int) -> None:
        if depth > max_depth:
            # Files here have depth separators in their relative path
            if separator_bound is not None and depth > separator_bound:
                logger.debug(f"Not descending into {current!r}: no pattern reaches depth {depth}")
                return
            raise DiscoveryError(f"maximum depth ({max_depth}) exceeded at {current!r}")

        if follow_symlinks:
            real_path = os.path.realpath(current)
            if real_path in visited_dirs:
                return
            visited_dirs.add(real_path)

        with os.scandir(current) as it:
            entries = sorted(it, key=lambda entry: entry.name)

        for entry in entries:
            rel_path = os.path.join(rel_dir, entry.name) if rel_dir else entry.name

            if follow_symlinks:
                mode = entry.stat().st_mode
                is_dir, is_file = stat.S_ISDIR(mode), stat.S_ISREG(mode)
            elif entry.is_symlink():
                if not os.path.exists(entry.path):
                    raise DiscoveryError(f"walking dir: broken symlink {rel_path!r}")
                if patterns.match(rel_path) is not None:
                    raise DiscoveryError(
                        f"walking dir: {rel_path!r} is a symlink; enable follow_symlinks to archive it"
                    )
                logger.debug(f"Skipping symlink {rel_path!r}")
                continue
            else:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = entry.is_file(follow_symlinks=False)

            if is_dir:
                scan_recursive(entry.path, rel_path, depth + 1)
                continue
            if not is_file:
                logger.debug(f"Skipping {rel_path!r}: not a regular file")
                continue

            if patterns.match(rel_path) is None:
                continue

            name = prefix + flatten_path(rel_path)
            logger.info(f"found file {rel_path!r} -> {name!r}")
            found.append(
                FileRecord(path=os.path.normpath(os.path.join(directory, rel_path)), name=name)
            )

    try:
        scan_recursive(directory, "", 0)
    except OSError as e:
        raise DiscoveryError(f"walking dir: {e}") from e

    if not found:
        raise NoFilesFoundError("no files found")

    return found


# ---------------------------------------------------------------------------
# Progress reporting
# ---------------------------------------------------------------------------


class ProgressReporter:
    """Progress sink for the archive pipeline.

    This base class ignores everything; it is what runs when progress is
    disabled or not attached to a terminal.
    """

    def __enter__(self) -> "ProgressReporter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def start_directory(self, directory: str, total_files: int) -> None:
        pass

    def advance_directory(self, count: int = 1) -> None:
        pass

    def start_file(self, path: str, total_bytes: int) -> None:
        pass

    def advance_file(self, nbytes: int) -> None:
        pass

    def finish_file(self) -> None:
        pass

    def close(self) -> None:
        pass


class _CountOrBytesColumn(ProgressColumn):
    """Files done/total for directory tasks, bytes copied/size for file tasks"""

    def __init__(self):
        super().__init__()
        self._count = MofNCompleteColumn()
        self._bytes = DownloadColumn(binary_units=True)

    def render(self, task):
        if task.fields.get("unit") == "bytes":
            return self._bytes.render(task)
        return self._count.render(task)


class RichProgressReporter(ProgressReporter):
    """Live progress bars rendered by rich.

    rich redraws from its own refresh thread; updates only touch the
    Progress task table.
    """

    def __init__(self, console: Optional[Console] = None, refresh_per_second: float = 10):
        self._progress = Progress(
            SpinnerColumn(finished_text="done"),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            _CountOrBytesColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=console or Console(),
            refresh_per_second=refresh_per_second,
        )
        self._started = False
        self._dir_task = None
        self._file_task = None

    def _ensure_started(self) -> None:
        if not self._started:
            self._progress.start()
            self._started = True

    def start_directory(self, directory: str, total_files: int) -> None:
        self._ensure_started()
        self._dir_task = self._progress.add_task(directory, total=total_files, unit="files")

    def advance_directory(self, count: int = 1) -> None:
        if self._dir_task is not None:
            self._progress.advance(self._dir_task, count)

    def start_file(self, path: str, total_bytes: int) -> None:
        self._ensure_started()
        self._file_task = self._progress.add_task(path, total=total_bytes, unit="bytes")

    def advance_file(self, nbytes: int) -> None:
        if self._file_task is not None:
            self._progress.advance(self._file_task, nbytes)

    def finish_file(self) -> None:
        if self._file_task is not None:
            self._progress.remove_task(self._file_task)
            self._file_task = None

    def close(self) -> None:
        if self._started:
            self._progress.stop()
            self._started = False


class TqdmProgressReporter(ProgressReporter):
    """Two stacked tqdm bars: files in the current directory, bytes of the current file"""

    def __init__(self, file=None):
        self._file = file
        self._dir_bar = None
        self._file_bar = None

    def start_directory(self, directory: str, total_files: int) -> None:
        if self._dir_bar is not None:
            self._dir_bar.close()
        self._dir_bar = tqdm(
            total=total_files, desc=directory, unit="files", position=0, file=self._file
        )

    def advance_directory(self, count: int = 1) -> None:
        if self._dir_bar is not None:
            self._dir_bar.update(count)

    def start_file(self, path: str, total_bytes: int) -> None:
        self._file_bar = tqdm(
            total=total_bytes,
            desc=os.path.basename(path),
            unit="B",
            unit_scale=True,
            unit_divisor=1024,
            position=1,
            leave=False,
            file=self._file,
        )

    def advance_file(self, nbytes: int) -> None:
        if self._file_bar is not None:
            self._file_bar.update(nbytes)

    def finish_file(self) -> None:
        if self._file_bar is not None:
            self._file_bar.close()
            self._file_bar = None

    def close(self) -> None:
        self.finish_file()
        if self._dir_bar is not None:
            self._dir_bar.close()
            self._dir_bar = None


def make_progress_reporter(style: str = "rich", enabled: bool = True, is_tty: Optional[bool] = None) -> ProgressReporter:
    """Pick a progress reporter; non-interactive terminals get none"""
    if style not in PROGRESS_STYLES:
        raise ConfigurationError(
            f"Invalid progress style: {style!r} (expected one of {', '.join(PROGRESS_STYLES)})"
        )
    if is_tty is None:
        is_tty = sys.stdout.isatty()

    if not enabled or not is_tty or style == "none":
        return ProgressReporter()
    if style == "tqdm":
        return TqdmProgressReporter()
    return RichProgressReporter()


# ---------------------------------------------------------------------------
# Archive pipeline
# ---------------------------------------------------------------------------


class FlatZipper:
    """Writes the matching files of several directories into one stored zip"""

    def __init__(self, config: Optional[Dict] = None, progress: Optional[ProgressReporter] = None):
        self.config = config or {}
        self.logger = self._setup_logging()

        patterns = self.config.get("patterns", [])
        if isinstance(patterns, str):
            patterns = [patterns]
        self.patterns = PatternSet(patterns)

        self.buffer_size = self._parse_size(self.config.get("buffer_size", 64 * 1024))
        if self.buffer_size <= 0:
            raise ConfigurationError(f"buffer_size must be positive, got {self.buffer_size}")

        self.max_depth = self.config.get("max_depth", 50)
        if not isinstance(self.max_depth, int) or self.max_depth < 0:
            raise ConfigurationError(f"max_depth must be a non-negative integer, got {self.max_depth!r}")

        self.on_collision = self.config.get("on_collision", "error")
        if self.on_collision not in COLLISION_POLICIES:
            raise ConfigurationError(
                f"Invalid collision policy: {self.on_collision!r} (expected one of {', '.join(COLLISION_POLICIES)})"
            )

        # Feature flags
        self.follow_symlinks = self.config.get("follow_symlinks", False)
        self.keep_partial = self.config.get("keep_partial", False)
        self.force = self.config.get("force", False)
        self.verbose = self.config.get("verbose", False)

        self.progress = progress or ProgressReporter()

        self.stats = {
            "directories_processed": 0,
            "files_processed": 0,
            "bytes_processed": 0,
        }

    def _setup_logging(self) -> logging.Logger:
        """Setup structured logging"""
        level = logging.DEBUG if self.config.get("verbose") else logging.INFO

        logger = logging.getLogger("flatzip")
        logger.setLevel(level)

        # Avoid duplicate handlers
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                "%(asctime)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger

    def _parse_size(self, size: Union[int, str]) -> int:
        """Parse a byte count such as 65536, "64K" or "1.5M" """
        if isinstance(size, bool):
            raise ConfigurationError(f"Invalid size: {size!r}")
        if isinstance(size, int):
            return size
        if not isinstance(size, str):
            raise ConfigurationError(f"Size must be an integer or a string, got {type(size)}")

        size_str = size.upper().strip()
        if size_str.endswith("B"):
            size_str = size_str[:-1]

        match = re.match(r"^(\d*\.?\d+)([KMG]?)$", size_str)
        if not match:
            raise ConfigurationError(f"Invalid size format: {size!r}")

        number, unit = match.groups()
        multipliers = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3}
        return int(float(number) * multipliers[unit])

    def _format_size(self, size: int) -> str:
        """Format size in human-readable format"""
        if size < 0:
            return "0B"

        for unit in ["B", "KB", "MB", "GB", "TB"]:
            if size < 1024.0:
                return f"{size:.1f}{unit}"
            size /= 1024.0
        return f"{size:.1f}PB"

    def _open_output(self, output_path: Path) -> BinaryIO:
        """Create the output file owner-only, never through a symlink.

        An existing file is only replaced with force.
        """
        flags = os.O_CREAT | os.O_WRONLY | O_NOFOLLOW | getattr(os, "O_BINARY", 0)
        flags |= os.O_TRUNC if self.force else os.O_EXCL
        try:
            fd = os.open(output_path, flags, 0o600)
        except OSError as e:
            raise OutputError(f"creating output archive: {e}") from e
        return os.fdopen(fd, "wb")

    def _open_source(self, path: str) -> Tuple[BinaryIO, int]:
        flags = os.O_RDONLY | getattr(os, "O_BINARY", 0)
        if not self.follow_symlinks:
            flags |= O_NOFOLLOW
        try:
            fd = os.open(path, flags)
        except OSError as e:
            raise SourceFileError(f"unable to open file {path!r}: {e}") from e

        source = os.fdopen(fd, "rb")
        try:
            size = os.fstat(source.fileno()).st_size
        except OSError as e:
            source.close()
            raise SourceFileError(f"unable to stat file {path!r}: {e}") from e
        return source, size

    def _remove_partial(self, output_path: Path) -> None:
        try:
            output_path.unlink()
            self.logger.info(f"Removed partial archive {output_path}")
        except OSError as e:
            self.logger.warning(f"Could not remove partial archive {output_path}: {e}")

    async def archive_dirs(
        self, dirs: Iterable[Union[str, Path]], output_path: Union[str, Path]
    ) -> Dict[str, int]:
        """Archive every matching file of dirs, in order, into output_path.

        Any failure aborts the whole run and is raised as a FlatZipError
        subclass; the partially written output is deleted unless
        keep_partial is set. Returns the run statistics.
        """
        dirs = [os.fspath(d) for d in dirs]
        if not dirs:
            raise ConfigurationError("at least one source directory must be given")

        output_path = Path(output_path)
        start_time = time.time()
        self.stats = {
            "directories_processed": 0,
            "files_processed": 0,
            "bytes_processed": 0,
        }
        registry = NameRegistry(self.on_collision, self.logger)

        output = self._open_output(output_path)
        try:
            self._write_archive(output, output_path, dirs, registry)
        except BaseException:
            if not self.keep_partial:
                self._remove_partial(output_path)
            raise

        elapsed = time.time() - start_time
        self.logger.info(
            f"Archived {self.stats['files_processed']} files from {self.stats['directories_processed']} directories"
        )
        self.logger.info(f"Total size: {self._format_size(self.stats['bytes_processed'])}")
        self.logger.info(f"Processing time: {elapsed:.2f}s")
        self.logger.info(f"Output: {output_path}")

        return dict(self.stats)

    def _write_archive(
        self, output: BinaryIO, output_path: Path, dirs: List[str], registry: NameRegistry
    ) -> None:
        try:
            with output, zipfile.ZipFile(output, "w", compression=zipfile.ZIP_STORED) as archive:
                with self.progress:
                    for directory in dirs:
                        self._process_dir(archive, directory, registry)
        except OSError as e:
            raise ArchiveWriteError(f"finalizing archive {str(output_path)!r}: {e}") from e

    def _process_dir(
        self, archive: zipfile.ZipFile, directory: str, registry: NameRegistry
    ) -> None:
        try:
            found = search_records(
                directory,
                self.patterns,
                follow_symlinks=self.follow_symlinks,
                max_depth=self.max_depth,
                logger=self.logger,
            )
        except DiscoveryError as e:
            raise DirectoryError(directory, f"searching files: {e}") from e

        found = sort_file_records(found)
        self.logger.debug(f"Archiving {len(found)} files from {directory}")

        self.progress.start_directory(directory, len(found))
        for record in found:
            try:
                record = registry.claim(record)
                self._add_record(archive, record)
            except FlatZipError as e:
                raise DirectoryError(directory, f"writing file to archive: {e}") from e
            self.progress.advance_directory()

        self.stats["directories_processed"] += 1

    def _add_record(self, archive: zipfile.ZipFile, record: FileRecord) -> None:
        source, size = self._open_source(record.path)
        with source:
            info = zipfile.ZipInfo(record.name)
            info.compress_type = zipfile.ZIP_STORED
            info.comment = os.fsencode(record.path)
            info.external_attr = 0o644 << 16
            # Known up front so zipfile can decide on zip64 before streaming
            info.file_size = size

            try:
                entry = archive.open(info, "w")
            except (OSError, ValueError) as e:
                raise ArchiveWriteError(f"creating zip file record {record.name!r}: {e}") from e

            self.progress.start_file(record.path, size)
            try:
                with entry:
                    copied = self._copy_to_entry(source, entry, record.path)
            except OSError as e:
                raise ArchiveWriteError(f"closing zip file record {record.name!r}: {e}") from e
            finally:
                self.progress.finish_file()

        self.stats["files_processed"] += 1
        self.stats["bytes_processed"] += copied
        self.logger.debug(f"Stored {record.path} as {record.name} ({self._format_size(copied)})")

    def _copy_to_entry(self, source: BinaryIO, entry: BinaryIO, path: str) -> int:
        copied = 0
        while True:
            try:
                chunk = source.read(self.buffer_size)
            except OSError as e:
                raise SourceFileError(f"unable to read file {path!r}: {e}") from e
            if not chunk:
                break

            try:
                entry.write(chunk)
            except OSError as e:
                raise ArchiveWriteError(f"unable to write file {path!r}: {e}") from e

            copied += len(chunk)
            self.progress.advance_file(len(chunk))
        return copied


# ---------------------------------------------------------------------------
# Configuration and command line
# ---------------------------------------------------------------------------


def create_config_file(config_path: Path) -> bool:
    """Create a default configuration file"""
    default_config = """# flatzip configuration
# Uncomment and modify values as needed

# Extra glob patterns, appended after the built-in "*.mp3"
# patterns = ["*.m4a", "*/*.mp3"]

# Read/write chunk size (e.g. 65536, "64K", "1M")
# buffer_size = 65536

# Maximum directory depth to traverse
# max_depth = 50

# What to do when two files flatten to the same entry name: error or rename
# on_collision = "error"

# Progress display: rich, tqdm or none
# progress_style = "rich"

# Feature flags
# follow_symlinks = false
# keep_partial = false
# verbose = false
"""

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            f.write(default_config)
        return True
    except (OSError, PermissionError) as e:
        print(f"Error creating config file: {e}", file=sys.stderr)
        return False


def load_config_file(config_path: Path) -> Dict:
    """Load ``key = value`` configuration, returning {} when the file is missing"""
    if not config_path.exists():
        return {}

    config = {}
    line_num = 0
    try:
        with open(config_path, "r") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                if "=" in line:
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip().strip("\"'")

                    if value.lower() in ("true", "false"):
                        config[key] = value.lower() == "true"
                    elif value.isdigit():
                        config[key] = int(value)
                    elif value.startswith("[") and value.endswith("]"):
                        items = [
                            item.strip().strip("\"'") for item in value[1:-1].split(",")
                        ]
                        config[key] = [item for item in items if item]
                    else:
                        config[key] = value

    except (OSError, UnicodeDecodeError) as e:
        print(f"Warning: Error loading config file on line {line_num}: {e}", file=sys.stderr)

    return config


def print_source() -> None:
    """Print this program's own source code"""
    source_path = Path(__file__)
    print(f"--- {source_path.name} ---\n")
    sys.stdout.write(source_path.read_text(encoding="utf-8"))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flatzip",
        description="Collect files from nested directories into one flat, naturally ordered zip",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Top-level mp3 files of two books
  %(prog)s -o books.zip book1 book2

  # Nested discs: book1/disc1/track02.mp3 is stored as book1_disc1_track02.mp3
  %(prog)s -o book1.zip -g "*/*.mp3" book1

  # Two levels deep, other formats too
  %(prog)s -o all.zip -g "*/*.mp3" -g "*/*/*.mp3" -g "*/*.m4a" book1

  # Rename colliding entries instead of failing
  %(prog)s -o book.zip --on-collision rename -g "*/*.mp3" book1
        """,
    )

    parser.add_argument("dirs", nargs="*", help="Source directories, archived in the given order")
    parser.add_argument("-o", "--output", help="Output zip file")
    parser.add_argument(
        "-g", "--glob", action="append", default=[],
        help=f"File glob to add to the archive; can be used multiple times. "
             f"Default patterns: {', '.join(DEFAULT_PATTERNS)}",
    )

    parser.add_argument("-v", "--verbose", action="store_true", default=None, help="Verbose output")
    parser.add_argument(
        "-f", "--force", action="store_true", help="Overwrite an existing output file"
    )
    parser.add_argument(
        "--keep-partial", action="store_true", default=None,
        help="Keep the partially written archive when a run fails",
    )
    parser.add_argument(
        "--on-collision", choices=COLLISION_POLICIES, default=None,
        help="What to do when two files flatten to the same entry name (default: error)",
    )
    parser.add_argument(
        "-L", "--follow-symlinks", action="store_true", default=None, help="Follow symlinks"
    )
    parser.add_argument("-d", "--max-depth", type=int, default=None, help="Maximum depth")
    parser.add_argument("--buffer-size", default=None, help="Copy chunk size (e.g. 64K)")
    parser.add_argument(
        "--progress", choices=PROGRESS_STYLES, default=None, help="Progress display style"
    )
    parser.add_argument(
        "--no-progress", action="store_true", help="Disable progress bars"
    )

    # Configuration
    parser.add_argument(
        "--config",
        type=Path,
        default=Path.home() / ".config" / "flatzip" / "config",
        help="Configuration file path",
    )
    parser.add_argument(
        "--create-config", action="store_true", help="Create default config"
    )

    # Diagnostics
    parser.add_argument(
        "--cpu-profile", metavar="FILE", default=None,
        help="Profile the run with cProfile and write the stats to FILE",
    )
    parser.add_argument(
        "--print-source", action="store_true", help="Print the program source and exit"
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point; returns the process exit code"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.print_source:
        print_source()
        return 0

    if args.create_config:
        if create_config_file(args.config):
            print(f"Created default configuration file: {args.config}")
            return 0
        print(f"Failed to create configuration file: {args.config}", file=sys.stderr)
        return 1

    if not args.dirs:
        parser.error("at least one source directory must be given")
    if not args.output:
        parser.error("the output file (-o) is required")

    profiler = None
    try:
        config = load_config_file(args.config)

        patterns = config.get("patterns", [])
        if isinstance(patterns, str):
            patterns = [patterns]
        config["patterns"] = list(patterns) + args.glob

        # Command line values win over the config file, but only when given
        overrides = {
            "verbose": args.verbose,
            "keep_partial": args.keep_partial,
            "on_collision": args.on_collision,
            "follow_symlinks": args.follow_symlinks,
            "max_depth": args.max_depth,
            "buffer_size": args.buffer_size,
            "progress_style": args.progress,
        }
        config.update({key: value for key, value in overrides.items() if value is not None})
        config["force"] = args.force

        progress = make_progress_reporter(
            config.get("progress_style", "rich"), enabled=not args.no_progress
        )
        zipper = FlatZipper(config, progress=progress)

        if args.cpu_profile:
            profiler = cProfile.Profile()
            profiler.enable()

        await zipper.archive_dirs(args.dirs, args.output)
        return 0

    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130
    except FlatZipError as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return 1
    finally:
        if profiler is not None:
            profiler.disable()
            profiler.dump_stats(args.cpu_profile)


def cli_main():
    """Synchronous entry point for console scripts"""
    try:
        return asyncio.run(main())
    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(cli_main())
