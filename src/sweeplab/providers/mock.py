# Copyright (c) Syntropy Systems
"""Offline provider producing parameter-sensitive canned responses."""
from __future__ import annotations

import hashlib
import random
import threading
from collections import OrderedDict
from typing import TYPE_CHECKING, Optional

from sweeplab.errors import ProviderFatalError, ProviderTransientError
from sweeplab.models import TokenUsage
from sweeplab.scoring import salient_tokens

from .base import CancellationToken, Generation, GenerationProvider

if TYPE_CHECKING:
    from sweeplab.models import Combination

_OPENERS = [
    "{Topic} is easiest to understand by starting with the basics.",
    "At its core, {topic} comes down to a few ideas.",
    "There are several ways to think about {topic}.",
    "In 2023, around 40 percent of teams said {topic} mattered to them.",
]
_BODY = [
    "The first point is that {topic} depends on {other}.",
    "In practice, {other} shapes how {topic} behaves over time.",
    "For example, a team in Berlin cut costs by 12 percent after studying {other}.",
    "Most people notice {topic} only when {other} goes wrong.",
    "Researchers at MIT measured {other} across 300 samples.",
    "A useful rule of thumb is to review {other} every 6 weeks.",
    "This is why {topic} and {other} are usually discussed together.",
    "Small changes in {other} can have a large effect on {topic}.",
]
_WILD = [
    "Imagine {topic} as a river that carves {other} into strange new canyons.",
    "Some argue {topic} hums quietly beneath everything, like {other} at midnight.",
    "Picture a lighthouse made of {other}, blinking patiently at {topic}.",
    "Oddly enough, {topic} resembles jazz: {other} improvises the melody.",
]
_CLOSERS = [
    "In short, {topic} rewards careful attention to {other}.",
    "Overall, understanding {other} is the key to {topic}.",
]
_WORDS_PER_TOKEN = 0.75


class MockProvider(GenerationProvider):
    """Deterministic stand-in for a real LLM.

    Higher temperature mixes in more unusual sentences, ``max_tokens`` bounds
    the length. ``transient_rate`` and ``fatal_rate`` inject failures so retry
    handling can be exercised without a network. Repeat calls for the same
    prompt and combination vary; their call counts are kept for the
    ``max_tracked`` most recently used pairs only.
    """

    name: str = "mock"

    def __init__(
        self,
        seed: int = 0,
        latency: tuple[float, float] = (0.0, 0.0),
        transient_rate: float = 0.0,
        fatal_rate: float = 0.0,
        max_tracked: int = 10_000,
    ) -> None:
        self.seed = seed
        self.latency = latency
        self.transient_rate = transient_rate
        self.fatal_rate = fatal_rate
        self._lock = threading.Lock()
        self.max_tracked = max_tracked
        self._calls: OrderedDict[tuple[str, int], int] = OrderedDict()

    def _rng(self, prompt: str, combination: Combination) -> random.Random:
        with self._lock:
            key = (prompt, combination.index)
            call = self._calls.pop(key, 0)
            self._calls[key] = call + 1
            while len(self._calls) > self.max_tracked:
                _ = self._calls.popitem(last=False)
        material = f"{self.seed}:{prompt}:{combination.label()}:{call}".encode()
        return random.Random(int(hashlib.sha256(material).hexdigest()[:16], 16))  # noqa: S311

    def generate(
        self,
        prompt: str,
        combination: Combination,
        cancel: CancellationToken,
        model: Optional[str] = None,
    ) -> Generation:
        """Produce a canned response shaped by the combination's parameters."""
        rng = self._rng(prompt, combination)

        low, high = self.latency
        if high > 0:
            _ = cancel.wait(rng.uniform(low, high))
        cancel.raise_if_cancelled()

        roll = rng.random()
        if roll < self.fatal_rate:
            msg = "Mock provider rejected the request"
            raise ProviderFatalError(msg)
        if roll < self.fatal_rate + self.transient_rate:
            msg = "Mock provider rate limited the request"
            raise ProviderTransientError(msg)

        text = self.compose(prompt, combination, rng)
        prompt_tokens = max(1, len(prompt) // 4)
        completion_tokens = max(1, len(text) // 4)
        return Generation(
            text=text,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            model=model or "mock",
        )

    def compose(self, prompt: str, combination: Combination, rng: random.Random) -> str:
        """Assemble sentences about the prompt's topic words."""
        topics = sorted(salient_tokens(prompt)) or ["the subject"]
        temperature = float(combination.get("temperature", 0.7) or 0.0)
        max_tokens = float(combination.get("max_tokens", 150) or 150)
        word_budget = max(8, int(max_tokens * _WORDS_PER_TOKEN))

        def fill(template: str) -> str:
            topic = rng.choice(topics)
            other = rng.choice(topics)
            return template.format(
                topic=topic, Topic=topic.capitalize(), other=other
            )

        sentences = [fill(rng.choice(_OPENERS))]
        words = len(sentences[0].split())
        while words < word_budget * 0.7:
            pool = _WILD if rng.random() < temperature / 2.5 else _BODY
            sentence = fill(rng.choice(pool))
            sentences.append(sentence)
            words += len(sentence.split())
        sentences.append(fill(rng.choice(_CLOSERS)))

        text_words = " ".join(sentences).split()
        return " ".join(text_words[:word_budget])
