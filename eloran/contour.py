"""
Contour extraction by marching squares.

Each grid cell is classified by which of its four corners lie at or
above the target level. The 16 classes map to zero, one or two crossing
segments; the two saddle classes are resolved with the cell-center
average. Segments are then stitched into polylines by matching their
endpoints.

Corner and edge numbering for cell (i, j)::

    v01 ---- 2 ---- v11
     |               |
     3               1
     |               |
    v00 ---- 0 ---- v10
"""

import math
import threading
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .errors import GridComputeCancelled
from .projection import GridBounds
from .schemas import Contour, TdoaRaster

Point = Tuple[float, float]
Segment = Tuple[Point, Point]

# Corner bits: 1 = v00, 2 = v10, 4 = v11, 8 = v01
EDGE_PAIRS_BY_CASE: Dict[int, List[Tuple[int, int]]] = {
    1: [(0, 3)],
    2: [(0, 1)],
    3: [(1, 3)],
    4: [(1, 2)],
    6: [(0, 2)],
    7: [(2, 3)],
    8: [(2, 3)],
    9: [(0, 2)],
    11: [(1, 2)],
    12: [(1, 3)],
    13: [(0, 1)],
    14: [(0, 3)],
}

# Saddles: pairing when the cell center is at/above the level, and below it
SADDLE_PAIRS: Dict[int, Tuple[List[Tuple[int, int]], List[Tuple[int, int]]]] = {
    5: ([(0, 1), (2, 3)], [(0, 3), (1, 2)]),
    10: ([(0, 3), (1, 2)], [(0, 1), (2, 3)]),
}

STITCH_TOLERANCE_FRACTION = 1e-6


def interpolate(p0: Point, v0: float, p1: Point, v1: float, level: float) -> Point:
    """Linear crossing point between two corners; midpoint when the values are equal."""
    denom = v1 - v0
    if abs(denom) <= 1e-12 * max(abs(v0), abs(v1), 1e-300):
        t = 0.5
    else:
        t = (level - v0) / denom
    return (p0[0] + t * (p1[0] - p0[0]), p0[1] + t * (p1[1] - p0[1]))


def cell_segments(
    grid: np.ndarray, xs: np.ndarray, ys: np.ndarray, i: int, j: int, level: float
) -> List[Segment]:
    """
    Crossing segments of one cell.

    Edge points are always interpolated from the lower-index corner to
    the higher-index one, so neighbouring cells produce bit-identical
    points on their shared edge.
    """
    v00 = grid[j, i]
    v10 = grid[j, i + 1]
    v11 = grid[j + 1, i + 1]
    v01 = grid[j + 1, i]

    case = 0
    if v00 >= level:
        case |= 1
    if v10 >= level:
        case |= 2
    if v11 >= level:
        case |= 4
    if v01 >= level:
        case |= 8
    if case == 0 or case == 15:
        return []

    if case in SADDLE_PAIRS:
        center = (v00 + v10 + v11 + v01) * 0.25
        high, low = SADDLE_PAIRS[case]
        pairs = high if center >= level else low
    else:
        pairs = EDGE_PAIRS_BY_CASE[case]

    x0, x1 = xs[i], xs[i + 1]
    y0, y1 = ys[j], ys[j + 1]
    edges = {
        0: ((x0, y0), v00, (x1, y0), v10),
        1: ((x1, y0), v10, (x1, y1), v11),
        2: ((x0, y1), v01, (x1, y1), v11),
        3: ((x0, y0), v00, (x0, y1), v01),
    }
    points: Dict[int, Point] = {}

    def edge_point(e: int) -> Point:
        if e not in points:
            p0, a, p1, b = edges[e]
            points[e] = interpolate(p0, float(a), p1, float(b), level)
        return points[e]

    return [(edge_point(a), edge_point(b)) for a, b in pairs]


def marching_squares(
    grid: np.ndarray,
    xs: np.ndarray,
    ys: np.ndarray,
    level: float,
    cancel: Optional[threading.Event] = None,
) -> List[Segment]:
    """
    Collect the crossing segments of every cell for one level.

    Args:
        grid: (ny, nx) values; row j lies at ys[j]
        xs: Column coordinates
        ys: Row coordinates
        level: Iso-value
        cancel: Optional event checked between grid rows

    Returns:
        List of ((x, y), (x, y)) segments
    """
    above = grid >= level
    corners = (
        above[:-1, :-1].astype(np.uint8)
        | (above[:-1, 1:].astype(np.uint8) << 1)
        | (above[1:, 1:].astype(np.uint8) << 2)
        | (above[1:, :-1].astype(np.uint8) << 3)
    )
    crossing = (corners != 0) & (corners != 15)

    segments: List[Segment] = []
    for j in range(grid.shape[0] - 1):
        if cancel is not None and cancel.is_set():
            raise GridComputeCancelled("contour extraction cancelled")
        for i in np.flatnonzero(crossing[j]):
            segments.extend(cell_segments(grid, xs, ys, int(i), j, level))
    return segments


def stitch_segments(segments: Sequence[Segment], tolerance: float) -> List[List[Point]]:
    """
    Join segments into polylines by matching endpoints.

    Endpoints within ``tolerance`` of each other are joined. They are
    indexed in square buckets of that size and matched against the
    neighbouring buckets, so points either side of a bucket edge still
    meet. Open chains are walked first, starting from endpoints with no
    other endpoint nearby; any remaining segments form closed loops,
    which end on their start point.
    """
    if not segments:
        return []
    quant = tolerance if tolerance > 0 else 1e-9

    def bucket_for(p: Point) -> Tuple[int, int]:
        return (int(math.floor(p[0] / quant)), int(math.floor(p[1] / quant)))

    buckets: Dict[Tuple[int, int], List[Tuple[int, int]]] = defaultdict(list)
    for index, seg in enumerate(segments):
        for side in (0, 1):
            buckets[bucket_for(seg[side])].append((index, side))

    def near(p: Point) -> List[Tuple[int, int]]:
        bx, by = bucket_for(p)
        found = []
        for gx in (bx - 1, bx, bx + 1):
            for gy in (by - 1, by, by + 1):
                for index, side in buckets.get((gx, gy), ()):
                    q = segments[index][side]
                    if math.hypot(q[0] - p[0], q[1] - p[1]) <= quant:
                        found.append((index, side))
        return found

    used = [False] * len(segments)

    def walk(start_index: int, start_side: int) -> List[Point]:
        seg = segments[start_index]
        poly = [seg[start_side]]
        current, side = start_index, start_side
        while current is not None and not used[current]:
            used[current] = True
            nxt = segments[current][1 - side]
            poly.append(nxt)
            current = None
            for candidate, candidate_side in near(nxt):
                if not used[candidate]:
                    current, side = candidate, candidate_side
                    break
        return poly

    polylines: List[List[Point]] = []
    for index, seg in enumerate(segments):
        for side in (0, 1):
            if used[index] or len(near(seg[side])) != 1:
                continue
            poly = walk(index, side)
            if len(poly) > 1:
                polylines.append(poly)

    for index in range(len(segments)):
        if not used[index]:
            poly = walk(index, 0)
            if len(poly) > 1:
                polylines.append(poly)
    return polylines


def extract_contours(
    raster: TdoaRaster,
    bounds: GridBounds,
    levels_seconds: Iterable[float],
    cancel: Optional[threading.Event] = None,
) -> List[Contour]:
    """
    Trace every requested level of a TDOA raster.

    Args:
        raster: TDOA raster in seconds
        bounds: Grid bounds the raster is defined on
        levels_seconds: Iso-levels in seconds
        cancel: Optional cancellation event

    Returns:
        Contours tagged with the raster's master/slave indices
    """
    xs, ys = bounds.axes(raster.nx, raster.ny)
    dx, dy = bounds.cell_size(raster.nx, raster.ny)
    tolerance = max(dx, dy) * STITCH_TOLERANCE_FRACTION
    grid = raster.as_grid()

    contours: List[Contour] = []
    for level in levels_seconds:
        if cancel is not None and cancel.is_set():
            raise GridComputeCancelled("contour extraction cancelled")
        segments = marching_squares(grid, xs, ys, level, cancel)
        for poly in stitch_segments(segments, tolerance):
            contours.append(
                Contour(
                    master_index=raster.master_index,
                    slave_index=raster.slave_index,
                    level_seconds=float(level),
                    points=[(float(x), float(y)) for x, y in poly],
                )
            )
    return contours
