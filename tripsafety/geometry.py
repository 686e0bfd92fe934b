import math
from typing import Callable, Optional, Sequence, Tuple

Point = Tuple[float, float]

EARTH_RADIUS_M = 6371000.0

def planar_distance(a: Point, b: Point) -> float:
    """Straight-line distance in the coordinates' own units."""
    return math.hypot(b[0] - a[0], b[1] - a[1])

def haversine_distance(a: Point, b: Point) -> float:
    """Great-circle distance in metres between two (lat, lon) points."""
    lat1_rad = math.radians(a[0])
    lat2_rad = math.radians(b[0])
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(b[1] - a[1])

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))

METRICS = {
    "planar": planar_distance,
    "haversine": haversine_distance,
}

def get_metric(name: str) -> Callable[[Point, Point], float]:
    try:
        return METRICS[name]
    except KeyError:
        raise ValueError(f"Unknown distance metric: {name}") from None

def project_onto_segment(p: Point, a: Point, b: Point) -> Tuple[Point, float]:
    """Project p onto segment ab in coordinate space.

    Returns the closest point on the segment and the clamped parameter t in
    [0, 1]. A zero-length segment projects onto its start.
    """
    dx = b[0] - a[0]
    dy = b[1] - a[1]
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return a, 0.0

    t = ((p[0] - a[0]) * dx + (p[1] - a[1]) * dy) / length_sq
    t = max(0.0, min(1.0, t))
    return (a[0] + t * dx, a[1] + t * dy), t

def point_to_segment_distance(p: Point, a: Point, b: Point, metric: str = "planar") -> float:
    closest, _ = project_onto_segment(p, a, b)
    return get_metric(metric)(p, closest)

def closest_route_point(p: Point, route: Sequence[Point], metric: str = "planar") -> Optional[Tuple[Point, float]]:
    """Closest point on the route polyline and its distance, or None for an empty route."""
    if not route:
        return None

    distance = get_metric(metric)
    if len(route) == 1:
        return tuple(route[0]), distance(p, route[0])

    best = None
    for a, b in zip(route, route[1:]):
        closest, _ = project_onto_segment(p, a, b)
        d = distance(p, closest)
        if best is None or d < best[1]:
            best = (closest, d)
    return best

def distance_from_route(p: Point, route: Sequence[Point], metric: str = "planar") -> Optional[float]:
    """Minimum distance from p to any segment of the route.

    A single-point route measures to that point; an empty route is unknown
    and returns None.
    """
    result = closest_route_point(p, route, metric)
    if result is None:
        return None
    return result[1]
