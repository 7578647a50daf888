"""Tests for content fingerprints and item value types."""

import pytest

from clipkeep.hashing import fingerprint, normalize
from clipkeep.types import (
    ELLIPSIS,
    MAX_TITLE_LENGTH,
    CapturedItem,
    Category,
    Tag,
    content_size,
    derive_title,
    parse_utc_timestamp,
    utc_now,
)


class TestFingerprint:
    """Dedup fingerprints."""

    def test_deterministic(self):
        assert fingerprint("hello world") == fingerprint("hello world")

    def test_sha256_hex_length(self):
        fp = fingerprint("hello")
        assert len(fp) == 64
        assert all(c in "0123456789abcdef" for c in fp)

    def test_surrounding_whitespace_ignored(self):
        """Trimmed-equal texts share a fingerprint."""
        assert fingerprint("  hello\n") == fingerprint("hello")
        assert normalize("\t hello \n") == "hello"

    def test_inner_whitespace_matters(self):
        assert fingerprint("hello  world") != fingerprint("hello world")

    def test_case_matters(self):
        assert fingerprint("Hello") != fingerprint("hello")


class TestDeriveTitle:
    """Titles derived from captured text."""

    def test_plain_text_whole(self):
        assert derive_title("  just a note  ") == "just a note"

    def test_multiline_uses_first_line(self):
        assert derive_title("first line\nsecond line\nthird") == "first line"

    def test_url_used_verbatim(self):
        url = "https://example.com/path?q=1"
        assert derive_title(url) == url

    def test_long_text_truncated_with_ellipsis(self):
        title = derive_title("x" * 300)
        assert title == "x" * MAX_TITLE_LENGTH + ELLIPSIS

    def test_exact_limit_not_truncated(self):
        assert derive_title("y" * MAX_TITLE_LENGTH) == "y" * MAX_TITLE_LENGTH

    def test_whitespace_only_is_empty(self):
        assert derive_title("   \n\t ") == ""


class TestTypes:
    """Value types."""

    def test_content_size_counts_utf8_bytes(self):
        assert content_size("abc") == 3
        assert content_size("é") == 2

    def test_create_computes_fingerprint_and_title(self):
        item = CapturedItem.create("hello world\nmore")
        assert item.fingerprint == fingerprint("hello world\nmore")
        assert item.title == "hello world"
        assert item.category is Category.OTHER
        assert not item.favorite
        assert item.tags == frozenset()

    def test_ids_unique(self):
        assert CapturedItem.create("a").id != CapturedItem.create("a").id

    def test_with_content_updates_fingerprint(self):
        item = CapturedItem.create("old text")
        changed = item.with_content("new text")
        assert changed.id == item.id
        assert changed.fingerprint == fingerprint("new text")

    def test_preview_truncates(self):
        item = CapturedItem.create("z" * 150)
        assert item.preview(100) == "z" * 100 + ELLIPSIS

    def test_category_parse_unknown_is_other(self):
        assert Category.parse("code") is Category.CODE
        assert Category.parse("spreadsheet") is Category.OTHER
        assert Category.parse(None) is Category.OTHER

    def test_category_display_names(self):
        assert Category.URL.display_name == "URL"
        assert Category.CODE.display_name == "Code"

    def test_tag_count(self):
        assert Tag("python", ("a", "b")).count == 2

    def test_utc_now_round_trips(self):
        ts = utc_now()
        assert parse_utc_timestamp(ts).tzinfo is not None
        assert "T" in ts and "+" not in ts

    def test_item_is_frozen(self):
        item = CapturedItem.create("text")
        with pytest.raises(AttributeError):
            item.title = "other"
