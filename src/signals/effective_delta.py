"""Effective delta estimation from observed price co-movement.

This module provides the EffectiveDeltaEngine, which derives an option's
sensitivity to its underlying from sampled (underlying, option) price
pairs instead of broker-supplied Greeks. The estimate is windowed,
guarded against tiny underlying moves, protected by outlier rejection
and smoothed with an exponentially weighted moving average.
"""

import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

import numpy as np

from utils import LogCategory, get_logger

logger = get_logger(__name__)


class OptionType(str, Enum):
    """Option right."""
    CALL = "call"
    PUT = "put"


# Realistic delta range per option right
DELTA_BOUNDS: Dict[OptionType, Tuple[float, float]] = {
    OptionType.CALL: (0.0, 1.0),
    OptionType.PUT: (-1.0, 0.0),
}


@dataclass(frozen=True)
class DeltaSample:
    """A single (underlying, option) price observation."""
    timestamp_ms: float
    underlying_price: float
    option_price: float
    option_type: OptionType


def _now_ms() -> float:
    return time.time() * 1000


class EffectiveDeltaEngine:
    """Computes an option's effective delta from real price movement.

    The engine keeps the samples of the last ``window_ms`` milliseconds and,
    on every accepted sample, compares the oldest and newest observation:

        raw = (option_new - option_old) / (underlying_new - underlying_old)

    ``raw`` is clamped to [0, 1] for calls and [-1, 0] for puts. A value
    further than ``max_delta_jump`` from the last published delta is
    rejected as an outlier; accepted values are EWMA-smoothed.

    ``get_delta()`` never returns None: before the first estimate (and
    after ``reset()``) it falls back to the last valid delta, which
    starts at ``default_delta`` and survives resets.

    Attributes:
        window_ms: Sample window duration in milliseconds
        min_movement: Minimum underlying move required to compute
        max_delta_jump: Outlier rejection threshold
        ewma_alpha: Smoothing factor applied to new raw values
    """

    def __init__(
        self,
        window_ms: float = 30000,
        min_movement: float = 0.05,
        max_delta_jump: float = 0.4,
        ewma_alpha: float = 0.3,
        history_size: int = 10,
        default_delta: float = 0.5,
        live_threshold_ms: float = 5000,
        clock: Optional[Callable[[], float]] = None
    ):
        """Initialize the engine.

        Args:
            window_ms: Sample window duration in milliseconds
            min_movement: Minimum absolute underlying move to compute a delta
            max_delta_jump: Maximum allowed distance from the last valid delta
            ewma_alpha: EWMA weight of the newest raw delta
            history_size: Number of smoothed values retained
            default_delta: Fallback delta before any estimate exists
            live_threshold_ms: Max age of the newest sample for a live signal
            clock: Returns the current time in epoch milliseconds
        """
        self.window_ms = window_ms
        self.min_movement = min_movement
        self.max_delta_jump = max_delta_jump
        self.ewma_alpha = ewma_alpha
        self.live_threshold_ms = live_threshold_ms
        self.debug_mode = False

        self._clock = clock or _now_ms
        self._samples: Deque[DeltaSample] = deque()
        self._recent_deltas: Deque[float] = deque(maxlen=history_size)

        self.current_delta: Optional[float] = None
        self.last_valid_delta: float = default_delta

    @classmethod
    def from_settings(cls, settings: Any, clock: Optional[Callable[[], float]] = None) -> "EffectiveDeltaEngine":
        """Build an engine from a ``DeltaSettings`` configuration section."""
        return cls(
            window_ms=settings.window_seconds * 1000,
            min_movement=settings.min_movement,
            max_delta_jump=settings.max_delta_jump,
            ewma_alpha=settings.ewma_alpha,
            history_size=settings.history_size,
            default_delta=settings.default_delta,
            live_threshold_ms=settings.live_threshold_seconds * 1000,
            clock=clock,
        )

    def add_sample(
        self,
        underlying_price: float,
        option_price: float,
        option_type: Union[OptionType, str] = OptionType.CALL,
        timestamp_ms: Optional[float] = None
    ) -> bool:
        """Add a new price sample and recompute the delta.

        Args:
            underlying_price: Current underlying price
            option_price: Current option price
            option_type: 'call' or 'put'
            timestamp_ms: Sample time in epoch ms (defaults to now)

        Returns:
            True if the sample entered the window, False if it was discarded
        """
        try:
            if not isinstance(option_type, OptionType):
                option_type = OptionType(str(option_type).strip().lower())
        except ValueError:
            self._log(f"Invalid sample rejected: unknown option type {option_type!r}")
            return False

        underlying = self._to_price(underlying_price)
        option = self._to_price(option_price)
        if underlying is None or option is None:
            self._log(f"Invalid sample rejected: {underlying_price!r} / {option_price!r}")
            return False

        now = self._clock() if timestamp_ms is None else timestamp_ms
        self._samples.append(DeltaSample(
            timestamp_ms=now,
            underlying_price=underlying,
            option_price=option,
            option_type=option_type,
        ))

        self._evict(now)
        self._compute(option_type)
        return True

    def _evict(self, now: float) -> None:
        """Drop samples that fell out of the window."""
        while self._samples and now - self._samples[0].timestamp_ms >= self.window_ms:
            self._samples.popleft()

    def _compute(self, option_type: OptionType) -> Optional[float]:
        """Compute and publish a new smoothed delta, if the window allows it."""
        if len(self._samples) < 2:
            self._log("Insufficient samples for delta calculation")
            return None

        oldest = self._samples[0]
        newest = self._samples[-1]

        underlying_change = newest.underlying_price - oldest.underlying_price
        option_change = newest.option_price - oldest.option_price

        if abs(underlying_change) < self.min_movement:
            self._log(
                f"Insufficient movement: {abs(underlying_change):.3f} < {self.min_movement}"
            )
            return None

        low, high = DELTA_BOUNDS[option_type]
        raw_delta = float(np.clip(option_change / underlying_change, low, high))

        jump = abs(raw_delta - self.last_valid_delta)
        if jump > self.max_delta_jump:
            self._log(f"Outlier rejected: jump of {jump:.3f} exceeds {self.max_delta_jump}")
            return None

        if not self._recent_deltas:
            smoothed = raw_delta
        else:
            previous = self._recent_deltas[-1]
            smoothed = self.ewma_alpha * raw_delta + (1 - self.ewma_alpha) * previous

        self._recent_deltas.append(smoothed)
        self.current_delta = smoothed
        self.last_valid_delta = smoothed

        if self.debug_mode:
            logger.log_signal({
                'delta': smoothed,
                'raw_delta': raw_delta,
                'sample_count': len(self._samples),
            }, msg=(
                f"[EffectiveDelta] Delta updated: {smoothed:.4f} "
                f"(raw: {raw_delta:.4f}, samples: {len(self._samples)})"
            ))
        return smoothed

    def get_delta(self) -> float:
        """Get the current effective delta, falling back to the last valid one."""
        if self.current_delta is not None:
            return self.current_delta
        return self.last_valid_delta

    def is_live(self) -> bool:
        """Check if the delta is actively updating."""
        if len(self._samples) < 2:
            return False
        return self._clock() - self._samples[-1].timestamp_ms < self.live_threshold_ms

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    @property
    def recent_deltas(self) -> List[float]:
        return list(self._recent_deltas)

    def get_samples(self) -> List[DeltaSample]:
        """Get the samples currently inside the window, oldest first."""
        return list(self._samples)

    def get_status(self) -> Dict[str, Any]:
        """Get status for display."""
        return {
            "delta": self.get_delta(),
            "is_live": self.is_live(),
            "sample_count": len(self._samples),
            "source": "effective",
        }

    def reset(self) -> None:
        """Reset the engine, e.g. when switching instruments.

        The last valid delta is kept as the fallback for the next instrument.
        """
        self._samples.clear()
        self._recent_deltas.clear()
        self.current_delta = None
        self._log("Engine reset")

    def enable_debug(self) -> None:
        """Log every decision the engine makes."""
        self.debug_mode = True

    def _log(self, message: str) -> None:
        if self.debug_mode:
            logger.info(f"[EffectiveDelta] {message}", extra={'category': LogCategory.SIGNALS.value})

    @staticmethod
    def _to_price(value: Any) -> Optional[float]:
        """Return value as a float if it is a finite, positive price."""
        if isinstance(value, bool):
            return None
        try:
            price = float(value)
        except (TypeError, ValueError):
            return None
        if not np.isfinite(price) or price <= 0:
            return None
        return price
