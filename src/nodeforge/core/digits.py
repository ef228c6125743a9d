"""
Digit stream: the reproducible seed source for every placement.

Placements are derived from a fixed sequence of decimal digits (the
fractional digits of pi) instead of a random generator, so the same
offset always yields the same coordinates.

Lifecycle: a :class:`DigitStreamSource` is loaded once per process
(file, durable cache, or computed) and then shared read-only across
concurrent callers.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from pathlib import Path

from nodeforge.core.cache import DurableCache
from nodeforge.core.errors import SourceLoadError

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN = 32

# Chudnovsky constants
_C = 640320
_C3_OVER_24 = _C ** 3 // 24
_DIGITS_PER_TERM = 14.181647462725477


def _binary_split(a: int, b: int) -> tuple[int, int, int]:
    """Binary-splitting sums for the Chudnovsky series over terms [a, b)."""
    if b - a == 1:
        if a == 0:
            pab = qab = 1
        else:
            pab = (6 * a - 5) * (2 * a - 1) * (6 * a - 1)
            qab = a * a * a * _C3_OVER_24
        tab = pab * (13591409 + 545140134 * a)
        if a & 1:
            tab = -tab
        return pab, qab, tab
    m = (a + b) // 2
    pam, qam, tam = _binary_split(a, m)
    pmb, qmb, tmb = _binary_split(m, b)
    return pam * pmb, qam * qmb, qmb * tam + pam * tmb


# Below the interpreter's int-to-str digit limit (4300 by default)
_STR_CHUNK = 2_000


def _decimal_text(value: int, width: int) -> str:
    """Zero-padded decimal text of ``value``, split on powers of ten so that
    no single conversion exceeds the int-to-str limit."""
    if width <= _STR_CHUNK:
        return str(value).zfill(width)
    low_width = width // 2
    high, low = divmod(value, 10 ** low_width)
    return _decimal_text(high, width - low_width) + _decimal_text(low, low_width)


def compute_pi_digits(n: int) -> str:
    """Return the first ``n`` fractional digits of pi (after the ``3.``).

    Uses the Chudnovsky series with binary splitting in integer arithmetic.
    """
    if n <= 0:
        return ""
    guard = 10
    terms = int(n / _DIGITS_PER_TERM) + 2
    _, q, t = _binary_split(0, terms)
    one = 10 ** (n + guard)
    sqrt_c = math.isqrt(10005 * one * one)
    pi_scaled = (q * 426880 * sqrt_c) // t
    # pi_scaled is 3 followed by n + guard fractional digits
    return _decimal_text(pi_scaled, n + guard + 1)[1:n + 1]


class DigitStream:
    """An immutable string of decimal digits addressed by integer offset.

    Offsets wrap modulo ``len(digits) - safety_margin`` so a read of up to
    ``safety_margin`` digits never overruns the buffer.
    """

    def __init__(self, digits: str, safety_margin: int = DEFAULT_SAFETY_MARGIN) -> None:
        if not digits or not digits.isdigit():
            raise SourceLoadError("Digit stream must be a non-empty string of decimal digits")
        if len(digits) <= safety_margin:
            raise SourceLoadError(
                f"Digit stream too short: {len(digits)} digits, need more than {safety_margin}"
            )
        self._digits = digits
        self.safety_margin = safety_margin

    def __len__(self) -> int:
        return len(self._digits)

    @property
    def usable_length(self) -> int:
        """Number of distinct starting offsets."""
        return len(self._digits) - self.safety_margin

    def wrap(self, offset: int) -> int:
        """Map any integer offset onto a safe starting position."""
        return abs(offset) % self.usable_length

    def digits_at(self, offset: int, length: int) -> str:
        """Return ``length`` digits starting at the wrapped offset."""
        if length < 0 or length > self.safety_margin:
            raise ValueError(f"length must be in 0..{self.safety_margin}, got {length}")
        pos = self.wrap(offset)
        return self._digits[pos:pos + length]

    def fraction_at(self, offset: int, width: int) -> float:
        """Interpret ``width`` digits at ``offset`` as a fraction in [0, 1)."""
        return int(self.digits_at(offset, width)) / 10 ** width


@dataclass(frozen=True)
class DigitCursor:
    """An explicit position in the digit stream. Advancing returns a new cursor."""

    offset: int = 0

    def advance(self, n: int = 1) -> DigitCursor:
        return DigitCursor(self.offset + n)


class DigitStreamSource:
    """Load-once provider of the shared :class:`DigitStream`.

    Parameters
    ----------
    path : str | Path | None
        Precomputed digit file. A leading ``3.`` and whitespace are ignored.
    computed_digits : int | None
        When no file is given, compute this many digits of pi instead.
    cache : DurableCache | None
        Shared durable store consulted before the file and written after.
    """

    CACHE_PREFIX = "digit_stream:pi"

    def __init__(
        self,
        path: str | Path | None = None,
        computed_digits: int | None = None,
        cache: DurableCache | None = None,
        safety_margin: int = DEFAULT_SAFETY_MARGIN,
    ) -> None:
        if path is None and computed_digits is None:
            raise ValueError("DigitStreamSource needs a path or computed_digits")
        self.path = Path(path) if path is not None else None
        self.computed_digits = computed_digits
        self.cache = cache
        self.safety_margin = safety_margin
        self._stream: DigitStream | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_digits(cls, digits: str, safety_margin: int = DEFAULT_SAFETY_MARGIN) -> DigitStreamSource:
        """Build an already-loaded source around a literal digit string."""
        source = cls(computed_digits=len(digits), safety_margin=safety_margin)
        source._stream = DigitStream(digits, safety_margin)
        return source

    @property
    def cache_key(self) -> str:
        """Keyed by source so a different file or digit count never reuses an entry."""
        source = str(self.path) if self.path is not None else f"computed:{self.computed_digits}"
        return f"{self.CACHE_PREFIX}:{source}"

    @property
    def loaded(self) -> bool:
        return self._stream is not None

    def load(self) -> DigitStream:
        """Load the stream if needed and return it. Raises SourceLoadError."""
        with self._lock:
            if self._stream is not None:
                return self._stream
            digits = self.cache.get(self.cache_key) if self.cache is not None else None
            if digits is None:
                digits = self._read()
                if self.cache is not None:
                    self.cache.put(self.cache_key, digits)
            self._stream = DigitStream(digits, self.safety_margin)
            logger.info("Digit stream loaded: %d digits", len(self._stream))
            return self._stream

    def get(self) -> DigitStream:
        return self._stream if self._stream is not None else self.load()

    def _read(self) -> str:
        if self.path is not None:
            try:
                raw = self.path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise SourceLoadError(f"Cannot read digit file {self.path}: {exc}") from exc
            text = "".join(raw.split())
            if text.startswith("3."):
                text = text[2:]
            return text
        try:
            return compute_pi_digits(int(self.computed_digits))
        except (ValueError, MemoryError) as exc:
            raise SourceLoadError(f"Cannot compute {self.computed_digits} digits of pi: {exc}") from exc
