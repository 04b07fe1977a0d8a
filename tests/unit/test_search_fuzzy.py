"""Unit tests for fuzzy matching and text analyzers."""

import pytest

from index_sync.errors import IndexValidationError
from index_sync.search.analyzers import (
    KeywordAnalyzer,
    LightStemFilter,
    build_analyzer,
    get_analyzer,
)
from index_sync.search.fuzzy import (
    auto_fuzziness,
    edit_distance,
    resolve_fuzziness,
)


def _texts(text: str, analyzer_name: str | None = None) -> list[str]:
    return [token.text for token in get_analyzer(analyzer_name)(text)]


@pytest.mark.unit
class TestEditDistance:
    def test_identical_strings(self):
        assert edit_distance("legal", "legal") == 0

    def test_empty_strings(self):
        assert edit_distance("", "") == 0
        assert edit_distance("abc", "") == 3
        assert edit_distance("", "abc") == 3

    def test_multiple_edits(self):
        assert edit_distance("kitten", "sitting") == 3

    def test_misspelled_commercial(self):
        assert edit_distance("comersial", "commercial") == 2

    def test_transposition_is_one_edit(self):
        assert edit_distance("ab", "ba") == 1
        assert edit_distance("ab", "ba", transpositions=False) == 2

    def test_early_termination(self):
        assert edit_distance("bail", "construction", max_distance=2) == 3


@pytest.mark.unit
class TestFuzziness:
    def test_auto_by_term_length(self):
        assert auto_fuzziness(2) == 0
        assert auto_fuzziness(3) == 1
        assert auto_fuzziness(5) == 1
        assert auto_fuzziness(6) == 2

    def test_resolve_integer_and_string(self):
        assert resolve_fuzziness(None, "bail") == 0
        assert resolve_fuzziness(1, "bail") == 1
        assert resolve_fuzziness("2", "bail") == 2

    def test_resolve_caps_at_two(self):
        assert resolve_fuzziness(5, "commercial") == 2

    def test_resolve_auto(self):
        assert resolve_fuzziness("AUTO", "ab") == 0
        assert resolve_fuzziness("auto", "bail") == 1
        assert resolve_fuzziness("AUTO", "comersial") == 2
        assert resolve_fuzziness("AUTO:2,4", "bail") == 2

    @pytest.mark.parametrize("value", [True, -1, "fuzzy", "AUTO:x", 1.5j])
    def test_resolve_rejects_invalid(self, value):
        with pytest.raises(IndexValidationError):
            resolve_fuzziness(value, "bail")


@pytest.mark.unit
class TestAnalyzers:
    def test_standard_lowercases_words(self):
        assert _texts("Commercial Bond-2024") == ["commercial", "bond", "2024"]

    def test_english_drops_stopwords_and_stems(self):
        assert _texts("The bonds are issued", "english") == ["bond", "issu"]

    def test_whitespace_keeps_case(self):
        assert _texts("Bail Bond", "whitespace") == ["Bail", "Bond"]

    def test_keyword_single_token(self):
        tokens = KeywordAnalyzer()("Bail Bond")

        assert [token.text for token in tokens] == ["Bail Bond"]
        assert KeywordAnalyzer()("") == []

    def test_positions_are_renumbered(self):
        tokens = get_analyzer("english")("the bond and the bail")

        assert [token.position for token in tokens] == [0, 1]

    def test_light_stem_keeps_short_words(self):
        assert LightStemFilter.stem("bed") == "bed"
        assert LightStemFilter.stem("Bonds") == "bond"

    def test_unknown_analyzer(self):
        with pytest.raises(ValueError, match="Unknown analyzer"):
            get_analyzer("klingon")

    def test_build_custom_analyzer(self):
        analyzer = build_analyzer({"type": "custom", "tokenizer": "whitespace", "filter": ["lowercase", "stop"]})

        assert [token.text for token in analyzer("The Bail-Bond")] == ["bail-bond"]

    def test_build_builtin_and_keyword_tokenizer(self):
        assert [t.text for t in build_analyzer({"type": "simple"})("Bond 2024")] == ["bond"]
        assert [t.text for t in build_analyzer({"tokenizer": "keyword"})("Bail Bond")] == ["Bail Bond"]

    @pytest.mark.parametrize(
        "definition",
        [
            {"type": "custom", "tokenizer": "ngram"},
            {"type": "custom", "tokenizer": "standard", "filter": ["asciifolding"]},
        ],
    )
    def test_build_rejects_unknown_parts(self, definition):
        with pytest.raises(ValueError):
            build_analyzer(definition)
