"""
Geographic helpers: great-circle distance and geohash encoding.
"""

import math

EARTH_RADIUS_M = 6_371_000.0

_GEOHASH_ALPHABET = "0123456789bcdefghjkmnpqrstuvwxyz"


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates, in metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def encode_geohash(latitude: float, longitude: float, precision: int = 6) -> str:
    """Encode a coordinate as a base-32 geohash of ``precision`` characters.

    Precision 6 is roughly a 1.2 km x 0.6 km cell.
    """
    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    chars = []
    bit = 0
    ch = 0
    even = True  # longitude first

    while len(chars) < precision:
        rng, value = (lon_range, longitude) if even else (lat_range, latitude)
        mid = (rng[0] + rng[1]) / 2
        if value >= mid:
            ch = (ch << 1) | 1
            rng[0] = mid
        else:
            ch = ch << 1
            rng[1] = mid
        even = not even
        bit += 1
        if bit == 5:
            chars.append(_GEOHASH_ALPHABET[ch])
            bit = 0
            ch = 0
    return "".join(chars)
