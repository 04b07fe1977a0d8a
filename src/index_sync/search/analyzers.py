"""Text analyzers for the in-process index engine.

The analyzer names mirror the engine's built-in ones (``standard``,
``simple``, ``whitespace``, ``english``, ``keyword``) so that a mapping
written for the remote engine behaves the same way when evaluated locally.
Analyzers are composed from a tokenizer and a chain of token filters.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
import re
from typing import Any, Protocol


@dataclass
class Token:
    """Represents a token emitted by analyzers."""

    text: str
    position: int

    def copy_with(self, text: str) -> Token:
        return Token(text=text, position=self.position)


class Analyzer(Protocol):
    """Protocol implemented by analyzers."""

    def __call__(self, text: str) -> list[Token]:  # pragma: no cover - interface definition
        ...


class Tokenizer(Protocol):
    def __call__(self, text: str) -> Iterator[Token]:  # pragma: no cover - interface definition
        ...


class TokenFilter(Protocol):
    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:  # pragma: no cover - interface definition
        ...


class RegexTokenizer:
    """Regex-based tokenizer that yields word tokens."""

    def __init__(self, pattern: str = r"\w+", flags: int = re.UNICODE) -> None:
        self.pattern = re.compile(pattern, flags)

    def __call__(self, text: str) -> Iterator[Token]:
        for position, match in enumerate(self.pattern.finditer(text)):
            yield Token(text=match.group(0), position=position)


class LowercaseFilter:
    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            yield token if token.text.islower() else token.copy_with(token.text.lower())


ENGLISH_STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "if", "in", "into", "is", "it",
        "no", "not", "of", "on", "or", "such", "that", "the", "their", "then", "there", "these", "they",
        "this", "to", "was", "will", "with",
    }
)  # fmt: skip


class StopFilter:
    """Removes stopwords from the stream."""

    def __init__(self, stopwords: Iterable[str] = ENGLISH_STOPWORDS) -> None:
        self.stopwords = {word.lower() for word in stopwords}

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            if token.text.lower() not in self.stopwords:
                yield token


_SIMPLE_SUFFIXES: tuple[str, ...] = ("ingly", "edly", "ing", "ed", "ly", "es", "s")


class LightStemFilter:
    """Strips common English inflection suffixes (a light stemmer, not full Porter)."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            yield token.copy_with(self.stem(token.text))

    @staticmethod
    def stem(word: str) -> str:
        lower = word.lower()
        for suffix in _SIMPLE_SUFFIXES:
            if lower.endswith(suffix) and len(lower) - len(suffix) >= 3:
                return lower[: -len(suffix)]
        return lower


class AnalyzerPipeline:
    """Composable analyzer pipeline (tokenizer + filters)."""

    def __init__(self, tokenizer: Tokenizer, filters: Sequence[TokenFilter] | None = None) -> None:
        self.tokenizer = tokenizer
        self.filters = list(filters or [])

    def __call__(self, text: str) -> list[Token]:
        stream: Iterable[Token] = self.tokenizer(text)
        for token_filter in self.filters:
            stream = token_filter(stream)
        tokens = list(stream)
        for idx, token in enumerate(tokens):  # normalize positions post-filtering
            token.position = idx
        return tokens


class KeywordAnalyzer:
    """Analyzer that treats the entire input as a single token."""

    def __call__(self, text: str) -> list[Token]:
        if not text:
            return []
        return [Token(text=text, position=0)]


_ANALYZER_FACTORIES: dict[str, Callable[[], Analyzer]] = {
    "standard": lambda: AnalyzerPipeline(RegexTokenizer(), [LowercaseFilter()]),
    "simple": lambda: AnalyzerPipeline(RegexTokenizer(r"[^\W\d_]+"), [LowercaseFilter()]),
    "whitespace": lambda: AnalyzerPipeline(RegexTokenizer(r"\S+")),
    "english": lambda: AnalyzerPipeline(RegexTokenizer(), [LowercaseFilter(), StopFilter(), LightStemFilter()]),
    "keyword": lambda: KeywordAnalyzer(),
}


def get_analyzer(name: str | None) -> Analyzer:
    """Return analyzer by name, defaulting to the standard analyzer."""

    if name is None:
        return _ANALYZER_FACTORIES["standard"]()
    normalized = name.lower()
    if normalized not in _ANALYZER_FACTORIES:
        msg = f"Unknown analyzer '{name}'. Available: {sorted(_ANALYZER_FACTORIES)}"
        raise ValueError(msg)
    return _ANALYZER_FACTORIES[normalized]()


_TOKENIZERS: dict[str, Callable[[], Tokenizer]] = {
    "standard": lambda: RegexTokenizer(),
    "letter": lambda: RegexTokenizer(r"[^\W\d_]+"),
    "whitespace": lambda: RegexTokenizer(r"\S+"),
}

_FILTERS: dict[str, Callable[[], TokenFilter]] = {
    "lowercase": lambda: LowercaseFilter(),
    "stop": lambda: StopFilter(),
    "stemmer": lambda: LightStemFilter(),
    "porter_stem": lambda: LightStemFilter(),
}


def build_analyzer(definition: Mapping[str, Any]) -> Analyzer:
    """Build an analyzer from an engine ``settings.analysis.analyzer`` entry.

    Built-in types are returned as-is; ``custom`` analyzers combine a known
    tokenizer with known filters.
    """
    kind = str(definition.get("type", "custom")).lower()
    if kind != "custom":
        return get_analyzer(kind)

    tokenizer_name = str(definition.get("tokenizer", "standard"))
    if tokenizer_name == "keyword":
        return KeywordAnalyzer()
    if tokenizer_name not in _TOKENIZERS:
        raise ValueError(f"Unknown tokenizer '{tokenizer_name}'. Available: {sorted(_TOKENIZERS) + ['keyword']}")

    filters: list[TokenFilter] = []
    for filter_name in definition.get("filter", ()):
        if filter_name not in _FILTERS:
            raise ValueError(f"Unknown token filter '{filter_name}'. Available: {sorted(_FILTERS)}")
        filters.append(_FILTERS[filter_name]())
    return AnalyzerPipeline(_TOKENIZERS[tokenizer_name](), filters)
