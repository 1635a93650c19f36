"""Context window usage tracking for the circular prompting loop.

Usage comes from the model client when it reports one. Otherwise it is
estimated from the text exchanged in the current thread. The estimate is
approximate: ``chars_per_token`` is a calibration constant, not a law. For
that reason every sample records which source it came from, and keeps the
estimate alongside reported values so the two can be compared.
"""

from __future__ import annotations

import logging
from datetime import datetime

from circular_prompt.loop.models import ContextSample, SampleSource, utcnow

logger = logging.getLogger(__name__)


class ContextMonitor:
    """Decides when a thread has used enough context to restart."""

    def __init__(
        self,
        threshold: float = 0.60,
        chars_per_token: float = 4.0,
        context_window: int = 200_000,
        sample_interval: int = 1,
    ):
        """Initialize the monitor.

        Args:
            threshold: Usage ratio at which a restart is due, in (0, 1].
            chars_per_token: Assumed characters per token for estimates.
            context_window: Model context window in tokens.
            sample_interval: Turns between threshold evaluations.
        """
        if not 0.0 < threshold <= 1.0:
            raise ValueError(f"threshold must be in (0, 1], got {threshold}")
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        if context_window <= 0:
            raise ValueError("context_window must be positive")

        self.threshold = threshold
        self.chars_per_token = chars_per_token
        self.context_window = context_window
        self.sample_interval = max(1, sample_interval)

        self.thread_chars = 0
        self.peak_usage = 0.0
        self.samples: list[ContextSample] = []

    def sample(self, usage: float) -> bool:
        """Return True iff ``usage`` has reached the threshold.

        The interval is closed: usage equal to the threshold counts.
        """
        return usage >= self.threshold

    def begin_thread(self, seed_chars: int = 0) -> None:
        """Reset per-thread counters for a freshly opened thread.

        Args:
            seed_chars: Size of the text injected when the thread opened.
        """
        self.thread_chars = seed_chars
        self.peak_usage = 0.0

    def estimate(self) -> float:
        """Estimated usage ratio from the text volume of this thread."""
        tokens = self.thread_chars / self.chars_per_token
        return tokens / self.context_window

    def observe(
        self,
        text: str,
        reported: float | None = None,
        turn: int = 0,
        when: datetime | None = None,
    ) -> ContextSample:
        """Account for one turn and produce its ContextSample.

        Args:
            text: All text exchanged in the turn (request and response).
            reported: Usage ratio reported by the model client, if any.
            turn: Turn number within the thread.
            when: Sample timestamp; defaults to now.

        Returns:
            The sample, with ``usage`` clamped to [0, 1] and the unclamped
            value kept in ``raw_usage``.
        """
        self.thread_chars += len(text)
        estimated = self.estimate()

        if reported is not None:
            raw = float(reported)
            source = SampleSource.REPORTED
        else:
            raw = estimated
            source = SampleSource.ESTIMATED

        sample = ContextSample(
            timestamp=when or utcnow(),
            usage=min(max(raw, 0.0), 1.0),
            source=source,
            turn=turn,
            raw_usage=raw,
            estimated_usage=estimated,
        )
        self.samples.append(sample)
        self.peak_usage = max(self.peak_usage, sample.usage)

        logger.debug(
            f"Turn {turn}: usage {sample.usage:.3f} ({source.value}), "
            f"estimate {estimated:.3f}"
        )
        return sample

    def is_due(self, turn: int, sample: ContextSample | None = None) -> bool:
        """Whether the threshold should be evaluated on this turn."""
        if sample is not None and self.is_overflow(sample):
            return True
        return turn % self.sample_interval == 0

    def is_overflow(self, sample: ContextSample) -> bool:
        """Usage went past the full window."""
        raw = sample.raw_usage if sample.raw_usage is not None else sample.usage
        return raw > 1.0

    def shorten_interval(self) -> int:
        """Halve the sampling interval after an overflow.

        Returns:
            The new interval (never below 1).
        """
        self.sample_interval = max(1, self.sample_interval // 2)
        logger.info(f"Sampling interval shortened to {self.sample_interval} turn(s)")
        return self.sample_interval

    def drift(self) -> list[float]:
        """Reported minus estimated usage, for samples that carry both."""
        return [
            s.usage - s.estimated_usage
            for s in self.samples
            if s.source is SampleSource.REPORTED and s.estimated_usage is not None
        ]

    def mean_drift(self) -> float | None:
        values = self.drift()
        if not values:
            return None
        return sum(values) / len(values)
