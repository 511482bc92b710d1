"""Pure mapping functions from raw quota shapes to RateWindow.

Every function here is stateless and total: missing or junk numbers map to
0% rather than raising, and every percentage is clamped to [0, 100].
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from state.models import RateWindow, clamp_percent

Number = Union[int, float]


def _num(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if f != f or f in (float("inf"), float("-inf")):
        return None
    return f


def percent_from_remaining(remaining: Any, fraction: bool) -> float:
    """``remaining`` is a 0-1 fraction when ``fraction`` is true, else a percent."""
    r = _num(remaining)
    if r is None:
        return 0.0
    if fraction:
        r *= 100.0
    return clamp_percent(100.0 - clamp_percent(r))


def percent_from_used_limit(used: Any, limit: Any) -> float:
    u = _num(used) or 0.0
    lim = _num(limit)
    if not lim or lim <= 0:
        return 0.0
    return clamp_percent(u / lim * 100.0)


def percent_direct(percent: Any) -> float:
    p = _num(percent)
    return clamp_percent(p) if p is not None else 0.0


def percent_or_fraction(value: Any) -> float:
    """Percent for a value that may be reported as either a fraction or a percent.

    Values in [0, 1] are read as fractions. Only use this where the source is
    known to mix both forms.
    """
    v = _num(value)
    if v is None:
        return 0.0
    if 0.0 <= v <= 1.0:
        v *= 100.0
    return clamp_percent(v)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse epoch seconds/milliseconds or an ISO-8601 string. Junk gives None."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts > 1e12:
            ts /= 1000.0
        try:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return None


def window(
    used_percent: float,
    resets_at: Any = None,
    description: Optional[str] = None,
    window_minutes: Any = None,
) -> RateWindow:
    minutes = _num(window_minutes)
    return RateWindow(
        used_percent=clamp_percent(used_percent),
        resets_at=parse_timestamp(resets_at),
        reset_description=description,
        window_minutes=int(minutes) if minutes is not None else None,
    )


def window_from_used_limit(used: Any, limit: Any, resets_at: Any = None, description: Optional[str] = None) -> RateWindow:
    return window(percent_from_used_limit(used, limit), resets_at, description)


def window_from_remaining(
    remaining: Any, fraction: bool, resets_at: Any = None, description: Optional[str] = None
) -> RateWindow:
    return window(percent_from_remaining(remaining, fraction), resets_at, description)


def window_from_percent_or_pair(
    percent: Any, used: Any, limit: Any, resets_at: Any = None, description: Optional[str] = None
) -> RateWindow:
    """Prefer a reported percent, fall back to the used/limit pair."""
    if _num(percent):
        return window(percent_direct(percent), resets_at, description)
    return window_from_used_limit(used, limit, resets_at, description)


@dataclass(frozen=True)
class QuotaCandidate:
    """One labelled window as reported by a service, before selection."""

    label: str
    used_percent: float
    resets_at: Any = None
    window_minutes: Any = None

    @property
    def remaining_percent(self) -> float:
        return 100.0 - clamp_percent(self.used_percent)

    def to_window(self) -> RateWindow:
        return window(self.used_percent, self.resets_at, self.label, self.window_minutes)


LabelMatcher = Callable[[str], bool]


def label_matcher(*include: str, exclude: Sequence[str] = ()) -> LabelMatcher:
    """Case-insensitive matcher: every ``include`` term present, no ``exclude`` term."""
    inc = [s.lower() for s in include]
    exc = [s.lower() for s in exclude]

    def match(label: str) -> bool:
        low = label.lower()
        return all(s in low for s in inc) and not any(s in low for s in exc)

    return match


def select_windows(
    candidates: Sequence[QuotaCandidate],
    preferences: Sequence[LabelMatcher] = (),
    limit: int = 3,
) -> Tuple[Optional[RateWindow], Optional[RateWindow], Optional[RateWindow]]:
    """Pick up to three windows for primary/secondary/tertiary.

    Each preference picks the first unpicked candidate it matches, in order.
    When no preference matches anything, candidates are ranked by least
    remaining allowance first.
    """
    picked: List[QuotaCandidate] = []
    for matches in preferences:
        for cand in candidates:
            if cand in picked:
                continue
            if matches(cand.label):
                picked.append(cand)
                break
    if not picked:
        picked = sorted(candidates, key=lambda c: c.remaining_percent)
    windows = [c.to_window() for c in picked[: min(limit, 3)]]
    windows += [None] * (3 - len(windows))
    return windows[0], windows[1], windows[2]
