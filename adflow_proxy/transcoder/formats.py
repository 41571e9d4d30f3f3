import re
from dataclasses import dataclass
from fractions import Fraction
from typing import Optional, Union

_FORMAT_KEY_RE = re.compile(r"^(\d+)fps_(\d+)x(\d+)$")


@dataclass(frozen=True, slots=True)
class VideoFormat:
    """Encoding profile of a video stream. Equality is exact on all three fields."""

    fps: int
    width: int
    height: int

    @property
    def format_key(self) -> str:
        return f"{self.fps}fps_{self.width}x{self.height}"

    def __str__(self) -> str:
        return self.format_key


DEFAULT_FORMAT = VideoFormat(fps=30, width=1280, height=720)


def parse_format_key(key: str) -> Optional[VideoFormat]:
    """Inverse of ``VideoFormat.format_key``. Returns None for malformed keys."""
    match = _FORMAT_KEY_RE.match(key or "")
    if not match:
        return None
    return VideoFormat(fps=int(match.group(1)), width=int(match.group(2)), height=int(match.group(3)))


def round_frame_rate(rate: Union[Fraction, float, int, str, None]) -> Optional[int]:
    """
    Round a frame rate to the nearest integer.

    Accepts rationals such as ``Fraction(30000, 1001)`` or the string ``"30000/1001"``.
    Returns None when the rate is missing or not positive.
    """
    if rate is None:
        return None
    try:
        value = Fraction(rate) if isinstance(rate, str) else Fraction(rate).limit_denominator(1_000_000)
    except (ValueError, ZeroDivisionError):
        return None
    if value <= 0:
        return None
    # Half rounds up, e.g. 59.5 -> 60.
    return int(value + Fraction(1, 2))
