"""
Content classification: category, tags and programming language.

Categories and languages come from ordered pattern rules. Word tags come
from NLTK part-of-speech and named-entity tagging. The classifier never
raises: any internal failure degrades to category ``text`` with no tags.
"""

import logging
import os
import re
import threading
from dataclasses import dataclass
from typing import Optional

import nltk
from nltk import Tree
from nltk.chunk import ne_chunk
from nltk.corpus import stopwords
from nltk.tag import pos_tag
from nltk.tokenize import TreebankWordTokenizer

from .types import Category

logger = logging.getLogger(__name__)

MAX_TAGS = 5


# ---------------------------------------------------------------------------
# Category rules
# ---------------------------------------------------------------------------

URL_PREFIXES = ("http://", "https://", "www.", "ftp://")
FILE_PREFIXES = (
    "file://", "/Users/", "/Volumes/", "/private/", "/home/", "/tmp/", "~/", "C:\\",
)
IMAGE_SUFFIXES = (
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".bmp", ".tiff", ".heic",
)

_CODE_PATTERNS = [re.compile(p, flags) for p, flags in (
    # Keywords
    (r"\bfunc\s+", 0), (r"\bdef\s+", 0), (r"\bclass\s+", 0),
    (r"\bimport\s+", 0), (r"\bvar\s+", 0), (r"\blet\s+", 0),
    (r"\bconst\s+", 0), (r"\bfunction\s+", 0), (r"\bstruct\s+", 0),
    (r"\benum\s+", 0), (r"\binterface\s+", 0), (r"\bfn\s+\w+\s*\(", 0),
    (r"\bif\s*\(", 0), (r"\bfor\s*\(", 0), (r"\bwhile\s*\(", 0),
    # Source file names
    (r"\.(?:swift|py|js|ts|jsx|tsx|java|kt|rs|go|rb|php|cs|cpp|c|h|m|mm|sh|sql)$", 0),
    # Code-like shapes
    (r"^\s*[a-zA-Z_][a-zA-Z0-9_]*\s*\(", re.MULTILINE),
    (r"\s*=>\s*", 0),
    (r"\s*->\s*", 0),
    (r"\{\s*$", re.MULTILINE),
    (r"^\s*\}\s*$", re.MULTILINE),
)]


def _code_pattern_count(text: str) -> int:
    return sum(1 for p in _CODE_PATTERNS if p.search(text))


def _has_significant_indentation(lines: list[str]) -> bool:
    """More than a third of the lines after the first are indented."""
    if len(lines) < 3:
        return False
    indented = sum(
        1 for line in lines[1:]
        if line.startswith(("    ", "\t")) or (line.startswith("  ") and len(line) > 10)
    )
    return indented > len(lines) / 3


def _has_brace_pair(text: str) -> bool:
    return ("{" in text and "}" in text) or ("(" in text and ")" in text)


# ---------------------------------------------------------------------------
# Language detection
# ---------------------------------------------------------------------------

# Ordered: first match wins
LANGUAGE_PATTERNS: list[tuple[re.Pattern, str]] = [(re.compile(p), lang) for p, lang in (
    (r"import SwiftUI|import Foundation|import UIKit|@State|@Published", "Swift"),
    (r"import pandas|from django|def \w+\(|print\(|if __name__", "Python"),
    (r"const \w+ = |let \w+ = |console\.log|require\(|import \w+ from", "JavaScript"),
    (r"interface \w+|type \w+ = |: string|: number|: boolean", "TypeScript"),
    (r"public class|public static void|System\.out|import java\.", "Java"),
    (r"fun \w+\(|val \w+|var \w+|import kotlinx\.", "Kotlin"),
    (r"fn \w+\(|let mut|use \w+;|impl \w+", "Rust"),
    (r"func \w+\(|package \w+|import \(|go \w+\(", "Go"),
    (r"def \w+\(|require '|include |puts ", "Ruby"),
    (r"\$\w+ = |function \w+\(|use \w+;", "PHP"),
    (r"SELECT \* FROM|INSERT INTO|UPDATE \w+ SET|DELETE FROM", "SQL"),
    (r"#!/bin/bash|if \[.*\]; then|echo \$", "Shell"),
    (r"#include <stdio.h>|int main\(|std::|cout <<", "C/C++"),
    (r"<!DOCTYPE html>|<div |<span |class=\"", "HTML"),
    (r"\.\w+\s*\{|#\w+\s*\{|@media", "CSS"),
    (r"^\s*\{.*\"\w+\"\s*:", "JSON"),
    (r"^\w+:\s*$", "YAML"),
)]


def suggest_language(code: str) -> Optional[str]:
    """Detect the programming language of a code snippet, or None."""
    for pattern, language in LANGUAGE_PATTERNS:
        if pattern.search(code):
            return language
    return None


# ---------------------------------------------------------------------------
# Tag extraction
# ---------------------------------------------------------------------------

# NLTK data packages: (path for nltk.data.find, package name for nltk.download)
NLTK_RESOURCES = (
    ("taggers/averaged_perceptron_tagger_eng", "averaged_perceptron_tagger_eng"),
    ("chunkers/maxent_ne_chunker_tab", "maxent_ne_chunker_tab"),
    ("corpora/words", "words"),
    ("corpora/stopwords", "stopwords"),
)

# Penn Treebank tags for common (not proper) nouns
COMMON_NOUN_TAGS = frozenset({"NN", "NNS"})
ENTITY_LABELS = frozenset({"PERSON", "ORGANIZATION", "GPE", "LOCATION", "FACILITY"})

# Only the head of very large clips is tagged
MAX_TAGGED_LENGTH = 10_000


def ensure_nltk_data(download: bool = True) -> bool:
    """
    Check that the tagger, chunker and stop word data are installed.

    Missing packages are fetched with ``nltk.download`` when ``download``
    is set. Returns True when everything is available afterwards.
    """
    ready = True
    for path, package in NLTK_RESOURCES:
        try:
            nltk.data.find(path)
            continue
        except LookupError:
            pass
        if download:
            try:
                nltk.download(package, quiet=True)
                nltk.data.find(path)
                continue
            except Exception as e:
                logger.warning("Failed to download NLTK data %s: %s", package, e)
        ready = False
    return ready


def _download_allowed() -> bool:
    return os.environ.get("CLIPKEEP_NLTK_DOWNLOAD", "1").strip().lower() not in ("0", "false", "no", "off")


class NltkTagger:
    """
    Part-of-speech and named-entity tagging through NLTK.

    The models load on first use. When they are not installed (and cannot
    be downloaded) the tagger reports not ready and classification keeps
    only category and source-app tags.
    """

    def __init__(self, download: Optional[bool] = None):
        self._download = _download_allowed() if download is None else download
        self._ready: Optional[bool] = None
        self._stop_words: frozenset[str] = frozenset()
        self._tokenizer = TreebankWordTokenizer()
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        with self._lock:
            if self._ready is None:
                self._ready = ensure_nltk_data(download=self._download)
                if self._ready:
                    self._stop_words = frozenset(stopwords.words("english"))
                else:
                    logger.warning("NLTK models unavailable; word tags disabled")
            return self._ready

    @property
    def stop_words(self) -> frozenset[str]:
        return self._stop_words

    def tag(self, text: str) -> list[tuple[str, str]]:
        """Tokenize and part-of-speech tag ``text``."""
        return pos_tag(self._tokenizer.tokenize(text[:MAX_TAGGED_LENGTH]))

    def entities(self, tagged: list[tuple[str, str]]) -> list[str]:
        """Person, organization and place names in already tagged tokens."""
        names = []
        for node in ne_chunk(tagged):
            if isinstance(node, Tree) and node.label() in ENTITY_LABELS:
                names.append(" ".join(token for token, _ in node.leaves()))
        return names


def common_nouns(tagged: list[tuple[str, str]], stop_words: frozenset[str] = frozenset()) -> list[str]:
    """Lowercased alphabetic common nouns of 4 to 24 letters."""
    nouns = []
    for word, pos in tagged:
        if pos not in COMMON_NOUN_TAGS or not word.isascii() or not word.isalpha():
            continue
        if 4 <= len(word) <= 24:
            lowered = word.lower()
            if lowered not in stop_words:
                nouns.append(lowered)
    return nouns


def _source_app_tag(source_app: str) -> str:
    return source_app.rsplit(".", 1)[-1].lower()


def extract_tags(
    text: str,
    category: Category,
    source_app: Optional[str] = None,
    tagger: Optional[NltkTagger] = None,
) -> list[str]:
    """Candidate tags for text already known to be in ``category``."""
    tags: set[str] = set()

    tagged = tagger.tag(text) if tagger is not None and tagger.ready else []
    if tagged:
        for name in tagger.entities(tagged):
            if 2 < len(name) < 30:
                tags.add(name)
        tags.update(common_nouns(tagged, tagger.stop_words))

    if category is Category.CODE:
        language = suggest_language(text)
        if language:
            tags.add(language.lower())
    elif category is Category.URL:
        tags.add("link")
    elif category is Category.FILE:
        tags.add("file")

    if source_app:
        tags.add(_source_app_tag(source_app))

    return sorted(tags)[:MAX_TAGS]


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Classification:
    """Result of classifying one snippet."""
    category: Category
    tags: tuple[str, ...] = ()
    language: Optional[str] = None
    confidence: float = 0.5


class Classifier:
    """
    Rule-based content classifier.

    Safe to share between threads. ``tagger`` supplies word tags and
    defaults to an NLTK tagger that loads its models on first use.
    """

    def __init__(self, tagger: Optional[NltkTagger] = None):
        self._tagger = tagger if tagger is not None else NltkTagger()

    @property
    def tagger(self) -> NltkTagger:
        return self._tagger

    def detect_category(self, text: str) -> Category:
        """
        Ordered rule evaluation, first match wins:
        url, file, image, code, then text. Never returns ``other``.
        """
        trimmed = text.strip()

        if trimmed.startswith(URL_PREFIXES):
            return Category.URL
        if trimmed.startswith(FILE_PREFIXES):
            return Category.FILE
        if trimmed.lower().endswith(IMAGE_SUFFIXES):
            return Category.IMAGE

        count = _code_pattern_count(text)
        lines = trimmed.split("\n")
        if (
            count >= 2
            or _has_significant_indentation(lines)
            or (_has_brace_pair(text) and count >= 1)
        ):
            return Category.CODE

        return Category.TEXT

    def suggest_tags(
        self,
        text: str,
        source_app: Optional[str] = None,
        category: Optional[Category] = None,
    ) -> list[str]:
        """At most five tags, sorted lexicographically."""
        try:
            if category is None:
                category = self.detect_category(text)
            return extract_tags(text, category, source_app, self._tagger)
        except Exception as e:
            logger.warning("Tag extraction failed: %s", e)
            return []

    def suggest_language(self, code: str) -> Optional[str]:
        try:
            return suggest_language(code)
        except Exception as e:
            logger.warning("Language detection failed: %s", e)
            return None

    @staticmethod
    def confidence(text: str, category: Category, source_app: Optional[str] = None) -> float:
        score = 0.5
        if len(text) > 100:
            score += 0.1
        if category in (Category.URL, Category.FILE):
            score += 0.3
        elif category in (Category.CODE, Category.IMAGE):
            score += 0.2
        if source_app:
            score += 0.1
        return min(score, 1.0)

    def classify(self, text: str, source_app: Optional[str] = None) -> Classification:
        """Category, tags, language and confidence for a snippet."""
        try:
            category = self.detect_category(text)
            tags = extract_tags(text, category, source_app, self._tagger)
            language = suggest_language(text) if category is Category.CODE else None
            return Classification(
                category=category,
                tags=tuple(tags),
                language=language,
                confidence=self.confidence(text, category, source_app),
            )
        except Exception as e:
            logger.warning("Classification failed, defaulting to text: %s", e)
            return Classification(category=Category.TEXT)
