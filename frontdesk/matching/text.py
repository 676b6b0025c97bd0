"""Utterance text pipeline.

Three stages, in order:
1. Synonym translation (colloquial alias → technical term), longest alias first.
2. Standard normalization (lowercase, punctuation stripped, whitespace collapsed).
3. Filler-word removal.

Filler lists must never contain negations; that is an authoring contract and
is not enforced here.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Mapping
from dataclasses import dataclass

from frontdesk.scenarios.schemas import EffectiveNLPConfig

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def basic_normalize(text: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    if not text:
        return ""
    lowered = _PUNCTUATION.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def utterance_hash(text: str) -> str:
    """Stable hash of the basic normalization, used for cache keys and logs."""
    return hashlib.sha256(basic_normalize(text).encode("utf-8")).hexdigest()


def phrase_pattern(phrase: str) -> re.Pattern[str] | None:
    """Whole-word pattern for an already-normalized phrase."""
    if not phrase:
        return None
    return re.compile(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)")


@dataclass(frozen=True)
class NormalizedPhrase:
    text: str
    tokens: tuple[str, ...]
    replacements: tuple[tuple[str, str], ...] = ()
    removed_fillers: tuple[str, ...] = ()


class PhraseNormalizer:
    """Applies one EffectiveNLPConfig to utterances and authored phrases.

    The synonym stage is a single regex pass over an alternation ordered
    longest alias first, so "air conditioner" wins over "air" and a
    replaced term is never re-translated.
    """

    def __init__(self, config: EffectiveNLPConfig) -> None:
        self.config = config
        self._fillers = config.filler_words
        self._alias_to_term: dict[str, str] = {}
        for term, aliases in config.synonyms:
            for alias in aliases:
                alias_key = basic_normalize(alias)
                if alias_key and alias_key != term:
                    # First declaration wins when two terms claim one alias
                    self._alias_to_term.setdefault(alias_key, term)
        self._synonym_re: re.Pattern[str] | None = None
        if self._alias_to_term:
            ordered = sorted(self._alias_to_term, key=lambda a: (-len(a), a))
            alternation = "|".join(re.escape(a) for a in ordered)
            self._synonym_re = re.compile(rf"(?<!\w)(?:{alternation})(?!\w)")

    def translate_synonyms(self, text: str) -> tuple[str, tuple[tuple[str, str], ...]]:
        """Replace aliases in basic-normalized text with their technical term."""
        if not text or self._synonym_re is None:
            return text, ()
        replacements: list[tuple[str, str]] = []

        def _swap(match: re.Match[str]) -> str:
            alias = match.group(0)
            term = self._alias_to_term.get(alias, alias)
            replacements.append((alias, term))
            return term

        return self._synonym_re.sub(_swap, text), tuple(replacements)

    def remove_fillers(self, text: str) -> tuple[str, tuple[str, ...]]:
        if not text or not self._fillers:
            return text, ()
        kept: list[str] = []
        removed: list[str] = []
        for token in text.split(" "):
            if token in self._fillers:
                removed.append(token)
            else:
                kept.append(token)
        return " ".join(kept), tuple(removed)

    def normalize(self, text: str) -> NormalizedPhrase:
        # Aliases are stored normalized ("a/c" → "a c"), so translate on the
        # punctuation-free form; terms are re-normalized afterwards.
        translated, replacements = self.translate_synonyms(basic_normalize(text))
        normalized = basic_normalize(translated)
        filtered, removed = self.remove_fillers(normalized)
        tokens = tuple(t for t in filtered.split(" ") if t)
        return NormalizedPhrase(
            text=" ".join(tokens),
            tokens=tokens,
            replacements=replacements,
            removed_fillers=removed,
        )

    def normalize_text(self, text: str) -> str:
        return self.normalize(text).text


def extract_terms(tokens: tuple[str, ...] | list[str]) -> list[str]:
    """Meaningful terms for statistical scoring (single characters dropped)."""
    return [t for t in tokens if len(t) > 1]


class UtteranceView:
    """One utterance, normalized lazily under each category's NLP config.

    A route call builds one view and hands it to every tier, so each
    distinct config normalizes the utterance at most once per turn.
    """

    def __init__(self, utterance: str, normalizers: Mapping[str, PhraseNormalizer]) -> None:
        self.original = utterance or ""
        self.lowered = self.original.lower()
        self.basic = basic_normalize(self.original)
        self._normalizers = normalizers
        self._cache: dict[str, NormalizedPhrase] = {}

    def normalized(self, nlp_key: str) -> NormalizedPhrase:
        phrase = self._cache.get(nlp_key)
        if phrase is None:
            normalizer = self._normalizers.get(nlp_key) or _PLAIN
            phrase = normalizer.normalize(self.original)
            self._cache[nlp_key] = phrase
        return phrase


_PLAIN = PhraseNormalizer(EffectiveNLPConfig(key="uncategorized"))
