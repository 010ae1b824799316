"""
Batch import of files from a directory into entry drafts.

Each accepted file becomes one EntryDraft whose keywords are derived from
the filename, the most frequent words of the body and its markdown headings.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from .config import DEFAULT_EXTENSIONS, DEFAULT_MAX_FILE_SIZE
from .errors import ImportFileError, ValidationError
from .types import EntryDraft, now_ms

logger = logging.getLogger(__name__)

KeywordExtractor = Callable[[str, str], list[str]]

MAX_KEYWORDS_PER_FILE = 15
TOP_BODY_WORDS = 10
MAX_HEADINGS = 5

_FILENAME_SPLIT_RE = re.compile(r"[-_\s]+")
# Keep ASCII word characters and CJK ideographs; everything else separates words
_NON_WORD_RE = re.compile(r"[^A-Za-z0-9_\s\u4e00-\u9fa5]")
_HEADING_RE = re.compile(r"^#+\s+(.+)$", re.MULTILINE)


def default_keyword_extractor(content: str, filename: str) -> list[str]:
    """
    Derive up to 15 keywords from a file.

    Sources, in order: filename tokens, the ten most frequent body words,
    and the first five markdown headings. Duplicates are dropped.
    """
    keywords: dict[str, None] = {}

    stem = Path(filename).stem
    for word in _FILENAME_SPLIT_RE.split(stem):
        if len(word) > 2:
            keywords[word.lower()] = None

    words = [
        w for w in _NON_WORD_RE.sub(" ", content.lower()).split()
        if 2 < len(w) < 20
    ]
    # most_common() keeps first-seen order among equal counts
    for word, _count in Counter(words).most_common(TOP_BODY_WORDS):
        keywords[word] = None

    for heading in _HEADING_RE.findall(content)[:MAX_HEADINGS]:
        text = heading.strip()
        if 2 < len(text) < 50:
            keywords[text.lower()] = None

    return list(keywords)[:MAX_KEYWORDS_PER_FILE]


@dataclass
class ImportBatch:
    """Result of scanning a directory: drafts to store and per-file errors."""
    drafts: list[EntryDraft] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class FileImporter:
    """
    Turns files on the local filesystem into entry drafts.

    Files larger than max_file_size are reported as errors, not skipped
    silently. One failing file never aborts the rest of a directory scan.
    """

    def __init__(
        self,
        extensions: Optional[Iterable[str]] = None,
        max_file_size: Optional[int] = None,
        category: Optional[str] = None,
        recursive: bool = True,
        keyword_extractor: Optional[KeywordExtractor] = None,
    ):
        exts = extensions if extensions else DEFAULT_EXTENSIONS
        self.extensions = frozenset(
            (e if e.startswith(".") else f".{e}").lower() for e in exts
        )
        self.max_file_size = DEFAULT_MAX_FILE_SIZE if max_file_size is None else max_file_size
        self.category = category or "imported"
        self.recursive = recursive
        self.keyword_extractor = keyword_extractor or default_keyword_extractor

    def _list_files(self, directory: Path) -> list[Path]:
        """Candidate files under *directory*, sorted by path.

        Skips symlinks and hidden files or directories (names starting with '.').
        """
        walker = directory.rglob("*") if self.recursive else directory.glob("*")
        files = []
        for path in walker:
            rel_parts = path.relative_to(directory).parts
            if any(part.startswith(".") for part in rel_parts):
                continue
            if path.is_symlink() or not path.is_file():
                continue
            if path.suffix.lower() not in self.extensions:
                continue
            files.append(path)
        return sorted(files)

    def import_directory(self, directory) -> ImportBatch:
        """
        Scan a directory and build a draft for every eligible file.

        Raises:
            ImportFileError: If the directory itself does not exist
        """
        directory = Path(directory).expanduser()
        if not directory.is_dir():
            raise ImportFileError(directory, "not a directory")

        batch = ImportBatch()
        for path in self._list_files(directory.resolve()):
            try:
                draft = self.import_file(path)
            except ImportFileError as e:
                batch.errors.append(str(e))
                continue
            if draft is not None:
                batch.drafts.append(draft)

        logger.info(
            "Scanned %s: %d files accepted, %d errors",
            directory, len(batch.drafts), len(batch.errors),
        )
        return batch

    def import_file(self, path) -> Optional[EntryDraft]:
        """
        Build a draft from one file.

        Returns:
            The draft, or None if the extension is not allowed

        Raises:
            ImportFileError: If the file is missing, too large or not UTF-8 text
        """
        path = Path(path).expanduser().resolve()
        ext = path.suffix.lower()
        if ext not in self.extensions:
            return None

        try:
            if not path.is_file():
                raise ImportFileError(path, "not a file")
            size = path.stat().st_size
            if size > self.max_file_size:
                raise ImportFileError(
                    path, f"File too large: {size:,} bytes (max: {self.max_file_size:,})"
                )
            content = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ImportFileError(path, f"not valid UTF-8 text ({e.reason})") from e
        except OSError as e:
            raise ImportFileError(path, e.strerror or str(e)) from e

        keywords = self.keyword_extractor(content, path.name)
        try:
            return self._make_draft(path, content, keywords, size)
        except ValidationError as e:
            raise ImportFileError(path, str(e)) from e

    def _make_draft(self, path: Path, content: str, keywords: list[str], size: int) -> EntryDraft:
        ext = path.suffix.lower()
        return EntryDraft(
            content=content,
            keywords=keywords,
            category=self.category,
            source=str(path),
            metadata={
                "filename": path.name,
                "extension": ext,
                "size": size,
                "imported_at": now_ms(),
            },
        )
