"""Piecewise linear functions defined by a list of control points."""

from __future__ import annotations

import math
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Iterator, Optional, Sequence, TextIO, Tuple

DEFAULT_EPS = 1e-6


@dataclass
class Interval:
    """A closed interval [start, end]."""

    start: float
    end: float

    def contains(self, value: float) -> bool:
        return self.start <= value <= self.end

    def clip(self, value: float) -> float:
        if value < self.start:
            return self.start
        if value > self.end:
            return self.end
        return value

    def length(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class Point:
    """A 2D point, also usable as a vector."""

    x: float = 0.0
    y: float = 0.0

    def __add__(self, other: "Point") -> "Point":
        return Point(self.x + other.x, self.y + other.y)

    def __sub__(self, other: "Point") -> "Point":
        return Point(self.x - other.x, self.y - other.y)

    def __mul__(self, factor: float) -> "Point":
        return Point(self.x * factor, self.y * factor)

    __rmul__ = __mul__

    def __truediv__(self, factor: float) -> "Point":
        return Point(self.x / factor, self.y / factor)

    def dot(self, other: "Point") -> float:
        return self.x * other.x + self.y * other.y

    def len2(self) -> float:
        return self.x * self.x + self.y * self.y

    def length(self) -> float:
        return math.sqrt(self.len2())


class PerpType(Enum):
    """Kind of closest point found by :meth:`Pwl.invert`."""

    NOT_FOUND = "not_found"
    START = "start"
    END = "end"
    VERTEX = "vertex"
    PERPENDICULAR = "perpendicular"


def _as_point(p) -> Point:
    return p if isinstance(p, Point) else Point(*p)


class Pwl:
    """A piecewise linear function, extrapolated linearly beyond its ends."""

    def __init__(self, points: Iterable = ()):
        self._points = [_as_point(p) for p in points]

    @classmethod
    def from_flat(cls, values: Iterable[float]) -> "Pwl":
        """Build from a flat sequence x0, y0, x1, y1, ... with increasing x."""
        flat = [float(v) for v in values]
        if len(flat) % 2:
            raise ValueError("Pwl needs an even number of values")
        pwl = cls()
        for x, y in zip(flat[::2], flat[1::2]):
            if pwl._points and x <= pwl._points[-1].x:
                raise ValueError("Pwl x values must be strictly increasing")
            pwl._points.append(Point(x, y))
        if len(pwl._points) < 2:
            raise ValueError("Pwl needs at least two points")
        return pwl

    @property
    def points(self) -> Tuple[Point, ...]:
        return tuple(self._points)

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[Point]:
        return iter(self._points)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Pwl):
            return NotImplemented
        return self._points == other._points

    def __repr__(self) -> str:
        return f"Pwl({[(p.x, p.y) for p in self._points]!r})"

    def append(self, x: float, y: float, eps: float = DEFAULT_EPS) -> None:
        """Add a point at the end, unless it does not lie beyond the last one."""
        if not self._points or self._points[-1].x + eps < x:
            self._points.append(Point(x, y))

    def prepend(self, x: float, y: float, eps: float = DEFAULT_EPS) -> None:
        """Add a point at the start, unless it does not lie before the first one."""
        if not self._points or self._points[0].x - eps > x:
            self._points.insert(0, Point(x, y))

    def domain(self) -> Interval:
        return Interval(self._points[0].x, self._points[-1].x)

    def range(self) -> Interval:
        ys = [p.y for p in self._points]
        return Interval(min(ys), max(ys))

    def empty(self) -> bool:
        return not self._points

    def _find_span(self, x: float, span: int) -> int:
        pts = self._points
        last_span = len(pts) - 2
        span = max(0, min(last_span, span))
        while span < last_span and x >= pts[span + 1].x:
            span += 1
        while span and x < pts[span].x:
            span -= 1
        return span

    def eval_with_span(self, x: float, span: int = -1) -> Tuple[float, int]:
        """Evaluate at x from an initial span guess (-1 for none); return (value, span)."""
        pts = self._points
        if len(pts) < 2:
            raise ValueError("Pwl needs at least two points to be evaluated")
        if span is None or span == -1:
            span = len(pts) // 2 - 1
        span = self._find_span(x, span)
        p0, p1 = pts[span], pts[span + 1]
        return p0.y + (x - p0.x) * (p1.y - p0.y) / (p1.x - p0.x), span

    def eval(self, x: float, span: Optional[int] = None) -> float:
        return self.eval_with_span(x, -1 if span is None else span)[0]

    def invert(
        self, xy: Point, span: int = -1, eps: float = DEFAULT_EPS
    ) -> Tuple[PerpType, Optional[Point], int]:
        """Find the closest point to xy, searching from span + 1.

        Returns (kind, closest point or None, span reached), so that the search
        can be resumed by passing the returned span back in.
        """
        if span < -1:
            raise ValueError("span must be at least -1")
        pts = self._points
        prev_off_end = False
        span += 1
        while span < len(pts) - 1:
            span_vec = pts[span + 1] - pts[span]
            t = (xy - pts[span]).dot(span_vec) / span_vec.len2()
            if t < -eps:
                if span == 0:
                    return PerpType.START, pts[span], span
                if prev_off_end:
                    return PerpType.VERTEX, pts[span], span
            elif t > 1 + eps:
                if span == len(pts) - 2:
                    return PerpType.END, pts[span + 1], span
                prev_off_end = True
            else:
                return PerpType.PERPENDICULAR, pts[span] + span_vec * t, span
            span += 1
        return PerpType.NOT_FOUND, None, span

    def compose(self, other: "Pwl", eps: float = DEFAULT_EPS) -> "Pwl":
        """Return the function applying self first and then other."""
        pts, opts = self._points, other._points
        this_x, this_y = pts[0].x, pts[0].y
        this_span = 0
        other_span = other._find_span(this_y, 0)
        result = Pwl([Point(this_x, other.eval(this_y, other_span))])
        while this_span != len(pts) - 1:
            dx = pts[this_span + 1].x - pts[this_span].x
            dy = pts[this_span + 1].y - pts[this_span].y
            if (
                abs(dy) > eps
                and other_span + 1 < len(opts)
                and pts[this_span + 1].y >= opts[other_span + 1].x + eps
            ):
                this_x = pts[this_span].x + (opts[other_span + 1].x - pts[this_span].y) * dx / dy
                other_span += 1
                this_y = opts[other_span].x
            elif (
                abs(dy) > eps
                and other_span > 0
                and pts[this_span + 1].y <= opts[other_span - 1].x - eps
            ):
                this_x = pts[this_span].x + (opts[other_span + 1].x - pts[this_span].y) * dx / dy
                other_span -= 1
                this_y = opts[other_span].x
            else:
                this_span += 1
                this_x, this_y = pts[this_span].x, pts[this_span].y
            result.append(this_x, other.eval(this_y, other_span), eps)
        return result

    def map(self, f: Callable[[float, float], None]) -> None:
        """Call f(x, y) for every control point."""
        for p in self._points:
            f(p.x, p.y)

    @staticmethod
    def map2(pwl0: "Pwl", pwl1: "Pwl", f: Callable[[float, float, float], None]) -> None:
        """Call f(x, y0, y1) wherever either function has a control point."""
        p0, p1 = pwl0._points, pwl1._points
        span0 = span1 = 0
        x = min(p0[0].x, p1[0].x)
        f(x, pwl0.eval(x, span0), pwl1.eval(x, span1))
        while span0 < len(p0) - 1 or span1 < len(p1) - 1:
            if span0 == len(p0) - 1:
                span1 += 1
                x = p1[span1].x
            elif span1 == len(p1) - 1:
                span0 += 1
                x = p0[span0].x
            elif p0[span0 + 1].x > p1[span1 + 1].x:
                span1 += 1
                x = p1[span1].x
            else:
                span0 += 1
                x = p0[span0].x
            f(x, pwl0.eval(x, span0), pwl1.eval(x, span1))

    @staticmethod
    def combine(
        pwl0: "Pwl",
        pwl1: "Pwl",
        f: Callable[[float, float, float], float],
        eps: float = DEFAULT_EPS,
    ) -> "Pwl":
        """Build a new function whose values are f(x, y0, y1) at every knot of either."""
        result = Pwl()
        Pwl.map2(pwl0, pwl1, lambda x, y0, y1: result.append(x, f(x, y0, y1), eps))
        return result

    def match_domain(self, domain: Interval, clip: bool = True, eps: float = DEFAULT_EPS) -> None:
        """Extend the function to cover domain, either flat (clip) or linearly."""
        start_y = self.eval(self._points[0].x if clip else domain.start, 0)
        self.prepend(domain.start, start_y, eps)
        end_y = self.eval(self._points[-1].x if clip else domain.end, len(self._points) - 2)
        self.append(domain.end, end_y, eps)

    def generate_lut(self, kind: Callable[[float], object] = float) -> list:
        """Tabulate the function at 0, 1, ..., int(domain end)."""
        end = int(self.domain().end + 1)
        lut = []
        span = 0
        for x in range(end):
            value, span = self.eval_with_span(x, span)
            lut.append(kind(value))
        return lut

    def scale(self, factor: float) -> "Pwl":
        """Multiply every y value by factor in place."""
        self._points = [Point(p.x, p.y * factor) for p in self._points]
        return self

    __imul__ = scale

    def debug(self, fp: Optional[TextIO] = None) -> None:
        out = sys.stderr if fp is None else fp
        out.write("Pwl {\n")
        for p in self._points:
            out.write("\t(%g, %g)\n" % (p.x, p.y))
        out.write("}\n")