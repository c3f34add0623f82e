"""Cutting triangle meshes with planes and joining the cut into polygon loops.

The cut classifies vertices by signed distance to the plane (zero counts as the
positive side), so every triangle straddling the plane contributes exactly one
line segment between two of its edges.  Segment end points are identified by
the mesh edge they lie on, which makes stripping into loops a pure graph walk
with no floating point matching.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


def cut_mesh(
    vertices: np.ndarray,
    faces: np.ndarray,
    origin: Sequence[float],
    normal: Sequence[float],
) -> Tuple[np.ndarray, np.ndarray]:
    """Intersect a mesh with a plane.

    Returns (points, segments): intersection points (P, 3) and index pairs
    (S, 2) into ``points``.
    """
    vertices = np.asarray(vertices, dtype=float)
    faces = np.asarray(faces, dtype=np.int64)
    if len(vertices) == 0 or len(faces) == 0:
        return np.zeros((0, 3)), np.zeros((0, 2), dtype=np.int64)

    n = np.asarray(normal, dtype=float)
    dist = (vertices - np.asarray(origin, dtype=float)) @ n
    positive = dist >= 0.0

    side = positive[faces]
    straddle = side.any(axis=1) & ~side.all(axis=1)
    if not straddle.any():
        return np.zeros((0, 3)), np.zeros((0, 2), dtype=np.int64)
    tri = faces[straddle]
    side = side[straddle]

    edge_u = tri[:, [0, 1, 2]]
    edge_v = tri[:, [1, 2, 0]]
    crossing = side[:, [0, 1, 2]] != side[:, [1, 2, 0]]
    # exactly two crossing edges per straddling triangle
    pick = np.argsort(~crossing, axis=1, kind="stable")[:, :2]
    u = np.take_along_axis(edge_u, pick, axis=1)
    v = np.take_along_axis(edge_v, pick, axis=1)
    keys = np.stack([np.minimum(u, v), np.maximum(u, v)], axis=-1).reshape(-1, 2)

    unique_keys, inverse = np.unique(keys, axis=0, return_inverse=True)
    a, b = unique_keys[:, 0], unique_keys[:, 1]
    t = dist[a] / (dist[a] - dist[b])
    points = vertices[a] + t[:, None] * (vertices[b] - vertices[a])
    segments = np.asarray(inverse).reshape(-1, 2)
    segments = segments[segments[:, 0] != segments[:, 1]]
    return points, segments


def strip_segments(points: np.ndarray, segments: np.ndarray) -> List[np.ndarray]:
    """Join line segments into polylines; closed loops are returned without repeating the first point."""
    adjacency: Dict[int, List[int]] = {}
    for p, q in segments:
        adjacency.setdefault(int(p), []).append(int(q))
        adjacency.setdefault(int(q), []).append(int(p))

    used_edges: set = set()
    loops: List[np.ndarray] = []

    def _walk(start: int) -> List[int]:
        path = [start]
        current = start
        while True:
            nxt = None
            for cand in adjacency.get(current, []):
                edge = (min(current, cand), max(current, cand))
                if edge not in used_edges:
                    used_edges.add(edge)
                    nxt = cand
                    break
            if nxt is None or nxt == start:
                return path
            path.append(nxt)
            current = nxt

    # open chains first so they are walked from an end
    starts = [n for n, nb in adjacency.items() if len(nb) == 1] + list(adjacency.keys())
    for start in starts:
        if all((min(start, c), max(start, c)) in used_edges for c in adjacency[start]):
            continue
        path = _walk(start)
        if len(path) >= 3:
            loops.append(points[path])
        else:
            logger.debug("Dropping degenerate contour with %d point(s)", len(path))
    return loops


def slice_mesh(
    vertices: np.ndarray,
    faces: np.ndarray,
    origin: Sequence[float],
    normal: Sequence[float],
) -> List[np.ndarray]:
    points, segments = cut_mesh(vertices, faces, origin, normal)
    if len(segments) == 0:
        return []
    return strip_segments(points, segments)


def polygon_area(points: np.ndarray, normal: Sequence[float] = (0.0, 0.0, 1.0)) -> float:
    """Unsigned area of a planar polygon given as (N, 3) points."""
    pts = np.asarray(points, dtype=float)
    if len(pts) < 3:
        return 0.0
    n = np.asarray(normal, dtype=float)
    n = n / np.linalg.norm(n)
    cross = np.cross(pts, np.roll(pts, -1, axis=0)).sum(axis=0)
    return float(abs(cross @ n) / 2.0)
