# Copyright (c) Syntropy Systems
"""Quality scoring of generated responses.

Every metric is a pure function of its inputs returning a value in [0, 1].
Nothing here keeps state, so scoring is safe to call from many worker
threads at once.

Metric formulas:

- coherence: Jaccard similarity of the token sets of consecutive sentences.
  Half the score comes from the mean similarity (relative to
  ``COHERENCE_TARGET_SIMILARITY``), half from ``1 - normalized variance`` of
  the similarities, so a steady flow beats alternating on/off-topic sentences.
  Single-sentence responses score ``SINGLE_SENTENCE_COHERENCE``.
- completeness: share of distinct non-stopword prompt tokens that appear in
  the response.
- readability: Flesch reading ease clamped to [0, 100] and divided by 100.
- creativity: type-token ratio, plus a bonus of up to
  ``CREATIVITY_MAX_BONUS`` when temperature is above
  ``CREATIVITY_TEMPERATURE_THRESHOLD`` and the sentences are still well formed.
- specificity: share of tokens that are numbers, proper nouns or units.
- length_appropriateness: 1.0 while the word count lies within
  ``LENGTH_BAND`` of the max_tokens budget, decaying linearly to 0 at zero
  words below the band and at twice the upper bound above it.
"""
from __future__ import annotations

import re
from typing import TYPE_CHECKING, Optional

from sweeplab.models import METRIC_NAMES, QualityScore, QualityWeights, TextStatistics

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sweeplab.models import ParamValue

SINGLE_SENTENCE_COHERENCE = 0.8
# Mean consecutive-sentence Jaccard similarity treated as fully coherent
COHERENCE_TARGET_SIMILARITY = 0.3
# Largest possible variance of values in [0, 1]
MAX_VARIANCE = 0.25

CREATIVITY_TEMPERATURE_THRESHOLD = 0.7
CREATIVITY_TEMPERATURE_SPAN = 0.8
CREATIVITY_MAX_BONUS = 0.2
WELL_FORMED_MIN_WORDS = 3
WELL_FORMED_MAX_WORDS = 40

DEFAULT_MAX_TOKENS = 150
LENGTH_BAND = (0.4, 0.9)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|[\r\n]+")
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_WORD = re.compile(r"[A-Za-z0-9]+(?:['’.,][A-Za-z0-9]+)*%?")
_NUMBER = re.compile(r"^\d+(?:[.,]\d+)*%?$|^\d+(?:st|nd|rd|th|s)$")
_VOWEL_GROUPS = re.compile(r"[aeiouy]+")

STOPWORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because
    been before being below between both but by can could did do does doing down
    during each few for from further had has have having he her here hers herself
    him himself his how i if in into is it its itself just me more most my myself
    no nor not now of off on once only or other our ours ourselves out over own
    same she should so some such than that the their theirs them themselves then
    there these they this those through to too under until up very was we were
    what when where which while who whom why will with would you your yours
    yourself yourselves please explain describe tell give write list provide
    """.split()
)

UNITS = frozenset(
    """
    mm cm km ft yd mi mg kg lb lbs oz ml gal ms sec hr hrs
    kb mb gb tb kbps mbps ghz mhz hz kw kwh w v mph kph usd eur gbp percent
    celsius fahrenheit kelvin degrees meters kilometers miles grams kilograms
    liters seconds minutes hours days weeks months years dollars
    """.split()
)


# --- Text helpers ---

def split_sentences(text: str) -> list[str]:
    """Split text into sentences on terminal punctuation and line breaks."""
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if s.strip()]


def split_paragraphs(text: str) -> list[str]:
    """Split text on blank lines."""
    return [p for p in _PARAGRAPH_SPLIT.split(text) if p.strip()]


def raw_tokens(text: str) -> list[str]:
    """Word tokens with their original casing."""
    return _WORD.findall(text)


def tokenize(text: str) -> list[str]:
    """Lowercased word tokens."""
    return [t.lower() for t in raw_tokens(text)]


def count_syllables(word: str) -> int:
    """Estimate syllables by counting vowel groups, ignoring a silent final e."""
    word = word.lower()
    if not word.isalpha():
        return 1
    groups = len(_VOWEL_GROUPS.findall(word))
    if word.endswith("e") and not word.endswith(("le", "ee")) and groups > 1:
        groups -= 1
    return max(1, groups)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


def text_statistics(text: str) -> TextStatistics:
    """Word, sentence and paragraph counts of a response."""
    words = tokenize(text)
    sentences = split_sentences(text)
    return TextStatistics(
        word_count=len(words),
        sentence_count=len(sentences),
        paragraph_count=len(split_paragraphs(text)),
        avg_sentence_length=len(words) / len(sentences) if sentences else 0.0,
        lexical_diversity=len(set(words)) / len(words) if words else 0.0,
    )


# --- Metrics ---

def _jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def coherence(response: str) -> float:
    """Local logical flow, from lexical overlap between consecutive sentences."""
    sentence_tokens = [set(tokenize(s)) for s in split_sentences(response)]
    sentence_tokens = [tokens for tokens in sentence_tokens if tokens]
    if not sentence_tokens:
        return 0.0
    if len(sentence_tokens) == 1:
        return SINGLE_SENTENCE_COHERENCE

    similarities = [
        _jaccard(first, second)
        for first, second in zip(sentence_tokens, sentence_tokens[1:])
    ]
    mean = sum(similarities) / len(similarities)
    variance = sum((s - mean) ** 2 for s in similarities) / len(similarities)
    steadiness = 1.0 - clamp(variance / MAX_VARIANCE)
    overlap = clamp(mean / COHERENCE_TARGET_SIMILARITY)
    return clamp(0.5 * overlap + 0.5 * steadiness)


def salient_tokens(text: str) -> set[str]:
    """Distinct non-stopword tokens of at least two characters."""
    return {t for t in tokenize(text) if t not in STOPWORDS and len(t) > 1}


def completeness(prompt: str, response: str) -> float:
    """Fraction of the prompt's salient tokens echoed by the response.

    A prompt with no salient tokens gives a non-empty response full marks.
    """
    response_tokens = set(tokenize(response))
    if not response_tokens:
        return 0.0
    wanted = salient_tokens(prompt)
    if not wanted:
        return 1.0
    return clamp(len(wanted & response_tokens) / len(wanted))


def flesch_reading_ease(response: str) -> Optional[float]:
    """Raw Flesch reading ease, or None when there are no words."""
    words = raw_tokens(response)
    if not words:
        return None
    sentence_count = max(1, len(split_sentences(response)))
    avg_sentence_length = len(words) / sentence_count
    avg_syllables = sum(count_syllables(w) for w in words) / len(words)
    return 206.835 - 1.015 * avg_sentence_length - 84.6 * avg_syllables


def readability(response: str) -> float:
    """Flesch reading ease rescaled from [0, 100] into [0, 1]."""
    ease = flesch_reading_ease(response)
    if ease is None:
        return 0.0
    return clamp(ease / 100.0)


def well_formed_ratio(response: str) -> float:
    """Share of sentences that start capitalized and have a sane length."""
    sentences = split_sentences(response)
    if not sentences:
        return 0.0
    good = 0
    for sentence in sentences:
        word_count = len(raw_tokens(sentence))
        starts_upper = sentence[0].isupper() or sentence[0].isdigit()
        if starts_upper and WELL_FORMED_MIN_WORDS <= word_count <= WELL_FORMED_MAX_WORDS:
            good += 1
    return good / len(sentences)


def creativity(response: str, temperature: Optional[float] = None) -> float:
    """Type-token ratio, rewarded at high temperature if still well formed."""
    words = tokenize(response)
    if not words:
        return 0.0
    ratio = len(set(words)) / len(words)
    if temperature is None or temperature <= CREATIVITY_TEMPERATURE_THRESHOLD:
        return clamp(ratio)
    heat = clamp((temperature - CREATIVITY_TEMPERATURE_THRESHOLD) / CREATIVITY_TEMPERATURE_SPAN)
    bonus = CREATIVITY_MAX_BONUS * heat * well_formed_ratio(response)
    return clamp(ratio + bonus)


def is_concrete(token: str, *, sentence_start: bool) -> bool:
    """Numbers, units and capitalized words that do not open a sentence."""
    if _NUMBER.match(token):
        return True
    if token.lower() in UNITS:
        return True
    if sentence_start or token == "I":
        return False
    return token[0].isupper()


def specificity(response: str) -> float:
    """Share of concrete tokens among all tokens."""
    total = 0
    concrete = 0
    for sentence in split_sentences(response):
        for position, token in enumerate(raw_tokens(sentence)):
            total += 1
            if is_concrete(token, sentence_start=position == 0):
                concrete += 1
    if total == 0:
        return 0.0
    return clamp(concrete / total)


def length_appropriateness(response: str, max_tokens: Optional[float] = None) -> float:
    """Triangular score peaking inside the target band of the token budget."""
    word_count = len(tokenize(response))
    if word_count == 0:
        return 0.0
    budget = max_tokens if max_tokens and max_tokens > 0 else DEFAULT_MAX_TOKENS
    low, high = budget * LENGTH_BAND[0], budget * LENGTH_BAND[1]
    if low <= word_count <= high:
        return 1.0
    if word_count < low:
        return clamp(word_count / low)
    return clamp(1.0 - (word_count - high) / high)


# --- Overall ---

def weighted_overall(metrics: Mapping[str, float], weights: QualityWeights) -> float:
    """Weighted mean of the six metrics."""
    weight_map = weights.as_dict()
    total_weight = sum(weight_map.values())
    if total_weight <= 0:
        return 0.0
    weighted = sum(metrics[name] * weight_map[name] for name in METRIC_NAMES)
    return clamp(weighted / total_weight)


def _param(params: Optional[Mapping[str, ParamValue]], name: str) -> Optional[float]:
    if params is None:
        return None
    value = params.get(name)
    if value is None:
        return None
    return float(value)


def score(
    prompt: str,
    response: str,
    params: Optional[Mapping[str, ParamValue]] = None,
    weights: Optional[QualityWeights] = None,
) -> QualityScore:
    """Score a response against its prompt and generation parameters.

    An empty or whitespace-only response scores zero everywhere. The same
    inputs always give the same score.
    """
    weights = weights or QualityWeights()
    if not response or not response.strip():
        return QualityScore.zero()

    metrics = {
        "coherence": coherence(response),
        "completeness": completeness(prompt, response),
        "readability": readability(response),
        "creativity": creativity(response, _param(params, "temperature")),
        "specificity": specificity(response),
        "length_appropriateness": length_appropriateness(
            response, _param(params, "max_tokens")
        ),
    }
    return QualityScore(
        **metrics,
        overall=weighted_overall(metrics, weights),
        stats=text_statistics(response),
    )
