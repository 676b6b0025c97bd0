"""Frontdesk – Utterance text pipeline tests."""

from frontdesk.matching.text import (
    PhraseNormalizer,
    UtteranceView,
    basic_normalize,
    phrase_pattern,
    utterance_hash,
)
from frontdesk.scenarios.schemas import EffectiveNLPConfig


def _normalizer(**kwargs) -> PhraseNormalizer:
    return PhraseNormalizer(EffectiveNLPConfig(key="repairs", **kwargs))


class TestBasicNormalize:
    def test_lowercase_punctuation_whitespace(self) -> None:
        assert basic_normalize("  What ARE your   hours?!  ") == "what are your hours"

    def test_empty(self) -> None:
        assert basic_normalize("") == ""

    def test_hash_ignores_case_and_punctuation(self) -> None:
        assert utterance_hash("What are your hours?") == utterance_hash("what are your hours")
        assert utterance_hash("hours") != utterance_hash("ours")


class TestPhraseNormalizer:
    def test_synonym_longest_alias_first(self) -> None:
        normalizer = _normalizer(
            synonyms=(("air conditioner", ("air con", "ac")), ("airflow", ("air",))),
        )
        phrase = normalizer.normalize("The air con is dead")
        assert phrase.text == "the air conditioner is dead"
        assert phrase.replacements == (("air con", "air conditioner"),)

    def test_replaced_term_is_not_translated_again(self) -> None:
        normalizer = _normalizer(synonyms=(("air conditioner", ("ac",)), ("conditioner", ("air conditioner",))))
        assert normalizer.normalize_text("my ac broke") == "my air conditioner broke"

    def test_alias_with_punctuation(self) -> None:
        normalizer = _normalizer(synonyms=(("air conditioner", ("a c",)),))
        assert normalizer.normalize_text("My A/C quit") == "my air conditioner quit"

    def test_alias_matches_whole_words_only(self) -> None:
        normalizer = _normalizer(synonyms=(("air conditioner", ("ac",)),))
        assert normalizer.normalize_text("the account is late") == "the account is late"

    def test_filler_removal(self) -> None:
        normalizer = _normalizer(filler_words=frozenset({"um", "like"}))
        phrase = normalizer.normalize("Um, it's like not working")
        assert phrase.text == "it s not working"
        assert phrase.removed_fillers == ("um", "like")
        assert "not" in phrase.tokens

    def test_phrase_pattern_is_whole_word(self) -> None:
        pattern = phrase_pattern("cancel")
        assert pattern.search("please cancel it")
        assert not pattern.search("cancellation policy")
        assert phrase_pattern("") is None


class TestUtteranceView:
    def test_normalizes_once_per_config(self) -> None:
        normalizer = _normalizer(filler_words=frozenset({"um"}))
        view = UtteranceView("Um, hello", {"repairs": normalizer})
        first = view.normalized("repairs")
        assert first.text == "hello"
        assert view.normalized("repairs") is first

    def test_unknown_config_uses_plain_normalization(self) -> None:
        view = UtteranceView("Um, hello", {})
        assert view.normalized("missing").text == "um hello"
        assert view.lowered == "um, hello"
        assert view.basic == "um hello"
