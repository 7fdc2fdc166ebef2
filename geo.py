from math import radians, sin, cos, asin, sqrt
from typing import List, Sequence

# Spherical earth radius used by MongoDB for 2dsphere distances
EARTH_RADIUS_METERS = 6378100.0


def point(lng: float, lat: float) -> dict:
    """GeoJSON point, longitude first."""
    return {"type": "Point", "coordinates": [lng, lat]}


def is_valid_coordinates(coords) -> bool:
    if not isinstance(coords, (list, tuple)) or len(coords) != 2:
        return False
    lng, lat = coords
    if isinstance(lng, bool) or isinstance(lat, bool):
        return False
    if not isinstance(lng, (int, float)) or not isinstance(lat, (int, float)):
        return False
    return -180 <= lng <= 180 and -90 <= lat <= 90


def coordinates_of(location):
    """Return [lng, lat] for a GeoJSON point or legacy pair, or None if invalid."""
    if isinstance(location, dict):
        if location.get("type") != "Point":
            return None
        location = location.get("coordinates")
    if is_valid_coordinates(location):
        return list(location)
    return None


def haversine(lon1, lat1, lon2, lat2):
    """Calculate the great circle distance in meters between two points on the earth (specified in decimal degrees)"""
    # convert decimal degrees to radians
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])

    # haversine formula
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat/2)**2 + cos(lat1) * cos(lat2) * sin(dlon/2)**2
    c = 2 * asin(sqrt(min(1.0, a)))
    return EARTH_RADIUS_METERS * c


def distance_between(a: Sequence[float], b: Sequence[float]) -> float:
    return haversine(a[0], a[1], b[0], b[1])


def point_in_polygon(coords: Sequence[float], ring: List[Sequence[float]]) -> bool:
    """Ray casting test of a [lng, lat] point against a closed linear ring.

    Points on the boundary count as inside. Edges are treated as planar
    segments in lng/lat space, which matches $geoWithin for the small,
    axis-aligned regions used here.
    """
    x, y = coords
    inside = False
    n = len(ring)
    for i in range(n):
        x1, y1 = ring[i]
        x2, y2 = ring[(i + 1) % n]
        # Boundary
        if min(x1, x2) <= x <= max(x1, x2) and min(y1, y2) <= y <= max(y1, y2):
            if (x2 - x1) * (y - y1) == (y2 - y1) * (x - x1):
                return True
        if (y1 > y) != (y2 > y):
            x_cross = x1 + (y - y1) * (x2 - x1) / (y2 - y1)
            if x < x_cross:
                inside = not inside
    return inside


def point_in_geometry(coords: Sequence[float], geometry: dict) -> bool:
    if geometry.get("type") != "Polygon":
        raise ValueError(f"Unsupported geometry type: {geometry.get('type')}")
    rings = geometry.get("coordinates") or []
    if not rings:
        raise ValueError("Polygon requires at least one ring")
    if not point_in_polygon(coords, rings[0]):
        return False
    # Holes
    return not any(point_in_polygon(coords, hole) for hole in rings[1:])


def polygon(*corners: Sequence[float]) -> dict:
    """GeoJSON polygon from corner points; the ring is closed automatically."""
    ring = [list(c) for c in corners]
    if ring and ring[0] != ring[-1]:
        ring.append(list(ring[0]))
    return {"type": "Polygon", "coordinates": [ring]}


def near_filter(origin: Sequence[float], max_distance: float = None) -> dict:
    """Proximity predicate on ``location``; max_distance is in meters."""
    near = {"$geometry": point(origin[0], origin[1])}
    if max_distance is not None:
        near["$maxDistance"] = max_distance
    return {"location": {"$near": near}}


def within_filter(geometry: dict) -> dict:
    """Containment predicate on ``location``."""
    return {"location": {"$geoWithin": {"$geometry": geometry}}}
