"""Tests for rule-based content classification."""

import nltk
import pytest

from clipkeep.classifier import (
    NLTK_RESOURCES,
    Classification,
    Classifier,
    NltkTagger,
    common_nouns,
    ensure_nltk_data,
    extract_tags,
    suggest_language,
)
from clipkeep.types import Category


@pytest.fixture
def classifier():
    return Classifier()


class TestDetectCategory:
    """Ordered category rules."""

    @pytest.mark.parametrize("text", [
        "https://example.com",
        "http://example.com/a/b",
        "www.example.com",
        "ftp://files.example.com/pub",
        "  https://example.com/padded  ",
    ])
    def test_urls(self, classifier, text):
        assert classifier.detect_category(text) is Category.URL

    @pytest.mark.parametrize("text", [
        "/Users/me/Documents/report.txt",
        "/home/me/notes.md",
        "/tmp/scratch",
        "~/projects/clipkeep",
        "file:///etc/hosts",
        "C:\\Windows\\System32",
    ])
    def test_file_paths(self, classifier, text):
        assert classifier.detect_category(text) is Category.FILE

    def test_file_path_to_image_is_file(self, classifier):
        """File rule is checked before the image rule."""
        assert classifier.detect_category("/Users/me/photo.png") is Category.FILE

    @pytest.mark.parametrize("text", ["photo.png", "Screenshot 2024.JPG", "diagram.svg"])
    def test_image_names(self, classifier, text):
        assert classifier.detect_category(text) is Category.IMAGE

    def test_url_to_image_is_url(self, classifier):
        assert classifier.detect_category("https://example.com/cat.png") is Category.URL

    def test_python_function_is_code(self, classifier):
        code = "def greet(name):\n    return f'hello {name}'\n"
        assert classifier.detect_category(code) is Category.CODE

    def test_javascript_is_code(self, classifier):
        code = "const x = 1;\nfunction add(a, b) {\n  return a + b;\n}"
        assert classifier.detect_category(code) is Category.CODE

    def test_indented_block_is_code(self, classifier):
        text = "header\n    first\n    second\n    third"
        assert classifier.detect_category(text) is Category.CODE

    def test_braces_with_one_pattern_is_code(self, classifier):
        assert classifier.detect_category("x => { y }") is Category.CODE

    def test_prose_is_text(self, classifier):
        text = "Meeting notes about database migration"
        assert classifier.detect_category(text) is Category.TEXT

    def test_never_other(self, classifier):
        for text in ["", "   ", "a", "?!", "123"]:
            assert classifier.detect_category(text) is not Category.OTHER


class TestLanguage:
    """Ordered language table, first match wins."""

    @pytest.mark.parametrize("code,language", [
        ("import SwiftUI\nstruct ContentView: View {}", "Swift"),
        ("def main():\n    print('hi')", "Python"),
        ("console.log('hi')", "JavaScript"),
        ("interface Props { name: string }", "TypeScript"),
        ("public class Main { public static void main() {} }", "Java"),
        ("fn main() { let mut x = 1; }", "Rust"),
        ("SELECT * FROM users WHERE id = 1", "SQL"),
        ("#!/bin/bash\necho $HOME", "Shell"),
        ("int main() {\n  std::cout << 1;\n}", "C/C++"),
        ("<!DOCTYPE html>\n<div class=\"x\"></div>", "HTML"),
    ])
    def test_detects(self, code, language):
        assert suggest_language(code) == language

    def test_python_wins_over_ruby(self):
        """Both match `def name(`; Python is earlier in the table."""
        assert suggest_language("def foo(x)\n  x\nend") == "Python"

    def test_unknown(self):
        assert suggest_language("just some words") is None


class StubTagger:
    """Tagger with canned part-of-speech and entity output."""

    def __init__(self, tagged, entities=(), ready=True, stop_words=frozenset()):
        self._tagged = list(tagged)
        self._entities = list(entities)
        self.ready = ready
        self.stop_words = frozenset(stop_words)
        self.tagged_texts = []

    def tag(self, text):
        self.tagged_texts.append(text)
        return list(self._tagged)

    def entities(self, tagged):
        return list(self._entities)


@pytest.fixture
def nltk_tagger():
    """The real NLTK tagger, when its models are installed."""
    tagger = NltkTagger(download=False)
    if not tagger.ready:
        pytest.skip("NLTK tagger models not installed")
    return tagger


class TestTags:
    """Tag extraction."""

    def test_at_most_five_sorted(self, classifier):
        text = "Quarterly planning review covering budget forecast hiring roadmap"
        tags = classifier.suggest_tags(text)
        assert len(tags) <= 5
        assert tags == sorted(tags)

    def test_only_common_nouns_kept(self):
        tagger = StubTagger([
            ("walking", "VBG"), ("quickly", "RB"), ("while", "IN"),
            ("happily", "RB"), ("singing", "VBG"),
        ])
        assert extract_tags("walking quickly while happily singing", Category.TEXT, tagger=tagger) == []

    def test_nouns_lowercased(self):
        tagger = StubTagger([("Budgets", "NNS"), ("review", "NN"), ("Acme", "NNP")])
        tags = extract_tags("Budgets review Acme", Category.TEXT, tagger=tagger)
        assert tags == ["budgets", "review"]

    def test_noun_length_and_alphabet(self):
        tagger = StubTagger([
            ("cat", "NN"), ("a" * 25, "NN"), ("v2api", "NN"), ("café", "NN"), ("plan", "NN"),
        ])
        assert common_nouns(tagger.tag("")) == ["plan"]

    def test_stop_words_removed(self):
        tagger = StubTagger([("thing", "NN"), ("ledger", "NN")], stop_words={"thing"})
        assert extract_tags("thing ledger", Category.TEXT, tagger=tagger) == ["ledger"]

    def test_named_entities_kept(self):
        tagger = StubTagger([("Meeting", "NN")], entities=["Acme Corp", "Al", "X" * 30])
        tags = extract_tags("Meeting with Acme Corp", Category.TEXT, tagger=tagger)
        assert tags == ["Acme Corp", "meeting"]

    def test_tagger_not_ready(self):
        tagger = StubTagger([("budget", "NN")], ready=False)
        assert extract_tags("budget", Category.TEXT, tagger=tagger) == []
        assert tagger.tagged_texts == []

    def test_classifier_uses_tagger(self):
        tagger = StubTagger([("invoice", "NN")])
        result = Classifier(tagger=tagger).classify("invoice", source_app="com.apple.Mail")
        assert result.tags == ("invoice", "mail")

    def test_tagger_failure_degrades(self):
        class BrokenTagger(StubTagger):
            def tag(self, text):
                raise LookupError("Resource averaged_perceptron_tagger_eng not found")

        classifier = Classifier(tagger=BrokenTagger([]))
        assert classifier.suggest_tags("anything at all") == []
        assert classifier.classify("anything at all").category is Category.TEXT

    def test_url_gets_link_tag(self):
        tags = extract_tags("https://a.io", Category.URL)
        assert "link" in tags

    def test_file_gets_file_tag(self):
        assert "file" in extract_tags("/tmp/a", Category.FILE)

    def test_code_gets_language_tag(self):
        tags = extract_tags("SELECT * FROM t", Category.CODE)
        assert "sql" in tags

    def test_source_app_tag(self):
        tags = extract_tags("x", Category.TEXT, source_app="com.apple.Safari")
        assert tags == ["safari"]


class TestNltkTagger:
    """Real part-of-speech tagging (skipped when NLTK models are absent)."""

    def test_verbs_and_adverbs_dropped(self, nltk_tagger):
        tags = extract_tags("She quickly reviewed the budget", Category.TEXT, tagger=nltk_tagger)
        assert "budget" in tags
        assert "quickly" not in tags
        assert "reviewed" not in tags

    @staticmethod
    def _missing(path):
        raise LookupError(path)

    def test_missing_models_not_ready(self, monkeypatch):
        monkeypatch.setattr(nltk.data, "find", self._missing)
        assert not NltkTagger(download=False).ready
        assert not ensure_nltk_data(download=False)

    def test_download_env_switch(self, monkeypatch):
        monkeypatch.setenv("CLIPKEEP_NLTK_DOWNLOAD", "off")
        downloads = []
        monkeypatch.setattr(nltk.data, "find", self._missing)
        monkeypatch.setattr(nltk, "download", lambda package, quiet: downloads.append(package))
        assert not NltkTagger().ready
        assert downloads == []

    def test_download_fetches_missing(self, monkeypatch):
        installed = set()

        def find(path):
            if path not in installed:
                raise LookupError(path)

        def download(package, quiet):
            installed.update(p for p, name in NLTK_RESOURCES if name == package)

        monkeypatch.setattr(nltk.data, "find", find)
        monkeypatch.setattr(nltk, "download", download)
        assert ensure_nltk_data(download=True)
        assert installed == {p for p, _ in NLTK_RESOURCES}


class TestClassify:
    """Full classification."""

    def test_code_snippet(self, classifier):
        result = classifier.classify("def add(a, b):\n    return a + b\n")
        assert isinstance(result, Classification)
        assert result.category is Category.CODE
        assert result.language == "Python"
        assert "python" in result.tags

    def test_text_has_no_language(self, classifier):
        result = classifier.classify("Remember to water the plants tomorrow")
        assert result.category is Category.TEXT
        assert result.language is None

    def test_confidence_bounds(self, classifier):
        result = classifier.classify("https://example.com", source_app="browser")
        assert result.confidence == pytest.approx(0.9)
        assert Classifier.confidence("x" * 200, Category.URL, "app") == 1.0

    def test_failure_degrades_to_text(self, classifier, monkeypatch):
        def boom(text):
            raise RuntimeError("regex engine exploded")
        monkeypatch.setattr(classifier, "detect_category", boom)
        result = classifier.classify("anything")
        assert result.category is Category.TEXT
        assert result.tags == ()
