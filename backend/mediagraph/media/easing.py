"""Easing curves and the speed-curve time remap built on them.

Every curve maps normalized output time u in [0, 1] to normalized source
time, with f(0) = 0 and f(1) = 1. Curves are evaluated on numpy
arrays so a whole clip's frame map is computed at once. Back, elastic and
bounce curves are not monotonic; warp_source_times clips and flattens
them so the source never runs backwards.
"""
from typing import Callable, Sequence

import numpy as np

EasingFn = Callable[[np.ndarray], np.ndarray]

DEFAULT_BEZIER_HANDLES = (0.42, 0.0, 0.58, 1.0)


def _ease_in(power: float) -> EasingFn:
    return lambda t: t ** power


def _ease_out(power: float) -> EasingFn:
    return lambda t: 1 - (1 - t) ** power


def _ease_in_out(power: float) -> EasingFn:
    return lambda t: np.where(
        t < 0.5,
        2 ** (power - 1) * t ** power,
        1 - (-2 * t + 2) ** power / 2,
    )


def _sqrt(x: np.ndarray) -> np.ndarray:
    return np.sqrt(np.clip(x, 0.0, None))


_BACK = 1.70158
_BACK_IN_OUT = _BACK * 1.525
_ELASTIC = 2 * np.pi / 3
_ELASTIC_IN_OUT = 2 * np.pi / 4.5


def _ease_in_back(t: np.ndarray) -> np.ndarray:
    return (_BACK + 1) * t ** 3 - _BACK * t ** 2


def _ease_out_back(t: np.ndarray) -> np.ndarray:
    return 1 + (_BACK + 1) * (t - 1) ** 3 + _BACK * (t - 1) ** 2


def _ease_in_out_back(t: np.ndarray) -> np.ndarray:
    return np.where(
        t < 0.5,
        (2 * t) ** 2 * ((_BACK_IN_OUT + 1) * 2 * t - _BACK_IN_OUT) / 2,
        ((2 * t - 2) ** 2 * ((_BACK_IN_OUT + 1) * (2 * t - 2) + _BACK_IN_OUT) + 2) / 2,
    )


def _ease_in_elastic(t: np.ndarray) -> np.ndarray:
    wave = -(2 ** (10 * t - 10)) * np.sin((t * 10 - 10.75) * _ELASTIC)
    return np.where(t <= 0, 0.0, np.where(t >= 1, 1.0, wave))


def _ease_out_elastic(t: np.ndarray) -> np.ndarray:
    wave = 2 ** (-10 * t) * np.sin((t * 10 - 0.75) * _ELASTIC) + 1
    return np.where(t <= 0, 0.0, np.where(t >= 1, 1.0, wave))


def _ease_in_out_elastic(t: np.ndarray) -> np.ndarray:
    swing = np.sin((20 * t - 11.125) * _ELASTIC_IN_OUT)
    wave = np.where(
        t < 0.5,
        -(2 ** (20 * t - 10)) * swing / 2,
        2 ** (-20 * t + 10) * swing / 2 + 1,
    )
    return np.where(t <= 0, 0.0, np.where(t >= 1, 1.0, wave))


def _ease_out_bounce(t: np.ndarray) -> np.ndarray:
    n, d = 7.5625, 2.75
    return np.select(
        [t < 1 / d, t < 2 / d, t < 2.5 / d],
        [
            n * t ** 2,
            n * (t - 1.5 / d) ** 2 + 0.75,
            n * (t - 2.25 / d) ** 2 + 0.9375,
        ],
        n * (t - 2.625 / d) ** 2 + 0.984375,
    )


def _ease_in_bounce(t: np.ndarray) -> np.ndarray:
    return 1 - _ease_out_bounce(1 - t)


def _ease_in_out_bounce(t: np.ndarray) -> np.ndarray:
    return np.where(
        t < 0.5,
        (1 - _ease_out_bounce(1 - 2 * t)) / 2,
        (1 + _ease_out_bounce(2 * t - 1)) / 2,
    )


EASING_PRESETS: dict[str, EasingFn] = {
    "linear": lambda t: t,
    "easeInQuad": _ease_in(2),
    "easeOutQuad": _ease_out(2),
    "easeInOutQuad": _ease_in_out(2),
    "easeInCubic": _ease_in(3),
    "easeOutCubic": _ease_out(3),
    "easeInOutCubic": _ease_in_out(3),
    "easeInQuart": _ease_in(4),
    "easeOutQuart": _ease_out(4),
    "easeInOutQuart": _ease_in_out(4),
    "easeInQuint": _ease_in(5),
    "easeOutQuint": _ease_out(5),
    "easeInOutQuint": _ease_in_out(5),
    "easeInSine": lambda t: 1 - np.cos(t * np.pi / 2),
    "easeOutSine": lambda t: np.sin(t * np.pi / 2),
    "easeInOutSine": lambda t: -(np.cos(np.pi * t) - 1) / 2,
    "easeInExpo": lambda t: np.where(t <= 0, 0.0, 2 ** (10 * t - 10)),
    "easeOutExpo": lambda t: np.where(t >= 1, 1.0, 1 - 2 ** (-10 * t)),
    "easeInOutExpo": lambda t: np.where(
        t <= 0, 0.0,
        np.where(
            t >= 1, 1.0,
            np.where(t < 0.5, 2 ** (20 * t - 10) / 2, (2 - 2 ** (-20 * t + 10)) / 2),
        ),
    ),
    "easeInCirc": lambda t: 1 - _sqrt(1 - t ** 2),
    "easeOutCirc": lambda t: _sqrt(1 - (t - 1) ** 2),
    "easeInOutCirc": lambda t: np.where(
        t < 0.5,
        (1 - _sqrt(1 - (2 * t) ** 2)) / 2,
        (_sqrt(1 - (-2 * t + 2) ** 2) + 1) / 2,
    ),
    "easeInBack": _ease_in_back,
    "easeOutBack": _ease_out_back,
    "easeInOutBack": _ease_in_out_back,
    "easeInElastic": _ease_in_elastic,
    "easeOutElastic": _ease_out_elastic,
    "easeInOutElastic": _ease_in_out_elastic,
    "easeInBounce": _ease_in_bounce,
    "easeOutBounce": _ease_out_bounce,
    "easeInOutBounce": _ease_in_out_bounce,
}

# curves that leave [0, 1] or step backwards before settling
NON_MONOTONIC_PRESETS = frozenset(
    name for name in EASING_PRESETS if name.endswith(("Back", "Elastic", "Bounce"))
)


def cubic_bezier(x1: float, y1: float, x2: float, y2: float) -> EasingFn:
    """CSS-style cubic-bezier(x1, y1, x2, y2) with endpoints (0,0) and (1,1).

    x control values are clamped to [0, 1] so the curve stays a function
    of time. y values are clamped to keep the remap inside the clip.
    """
    x1 = min(max(float(x1), 0.0), 1.0)
    x2 = min(max(float(x2), 0.0), 1.0)
    y1 = float(y1)
    y2 = float(y2)

    def bezier(s: np.ndarray, p1: float, p2: float) -> np.ndarray:
        inv = 1 - s
        return 3 * inv * inv * s * p1 + 3 * inv * s * s * p2 + s ** 3

    def curve(t: np.ndarray) -> np.ndarray:
        t = np.clip(np.asarray(t, dtype=np.float64), 0.0, 1.0)
        lo = np.zeros_like(t)
        hi = np.ones_like(t)
        # x(s) is monotonic in s for x1, x2 in [0, 1]
        for _ in range(48):
            mid = (lo + hi) / 2
            below = bezier(mid, x1, x2) < t
            lo = np.where(below, mid, lo)
            hi = np.where(below, hi, mid)
        s = (lo + hi) / 2
        return np.clip(bezier(s, y1, y2), 0.0, 1.0)

    return curve


def resolve_easing(preset: str | None, bezier_handles: Sequence[float] | None) -> EasingFn:
    """Named preset when given, otherwise the cubic bezier from the handles."""
    if preset:
        try:
            return EASING_PRESETS[preset]
        except KeyError:
            raise ValueError(f"Unknown easing preset: {preset}") from None
    handles = tuple(bezier_handles or DEFAULT_BEZIER_HANDLES)
    if len(handles) != 4:
        raise ValueError("Bezier handles need exactly four values")
    return cubic_bezier(*handles)


def warp_source_times(
    easing: EasingFn,
    source_duration: float,
    output_duration: float,
    fps: float,
) -> np.ndarray:
    """Source timestamp (seconds) to show at each output frame."""
    frame_count = max(1, int(round(output_duration * fps)))
    u = np.linspace(0.0, 1.0, frame_count) if frame_count > 1 else np.zeros(1)
    eased = np.clip(np.asarray(easing(u), dtype=np.float64), 0.0, 1.0)
    # guard against float wobble so the map never steps backwards
    eased = np.maximum.accumulate(eased)
    return eased * source_duration


def frame_index_map(source_times: np.ndarray, source_fps: float, source_frames: int) -> np.ndarray:
    indices = np.round(source_times * source_fps).astype(np.int64)
    return np.clip(indices, 0, max(0, source_frames - 1))
