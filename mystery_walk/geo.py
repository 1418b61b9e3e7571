"""Great-circle distance and walkable stop ordering."""

from __future__ import annotations

import logging
from math import atan2, cos, radians, sin, sqrt

from mystery_walk.models import LatLng, SpotInput

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0
MAX_INTER_STOP_METERS = 800.0


def distance_m(lat_a: float, lng_a: float, lat_b: float, lng_b: float) -> float:
    """Return distance in metres using the haversine formula."""
    d_lat = radians(lat_b - lat_a)
    d_lng = radians(lng_b - lng_a)
    a = (
        sin(d_lat / 2) ** 2
        + cos(radians(lat_a)) * cos(radians(lat_b)) * sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * atan2(sqrt(a), sqrt(1 - a))


def spot_distance_m(a: SpotInput, b: SpotInput) -> float:
    return distance_m(a.lat, a.lng, b.lat, b.lng)


def filter_by_origin(
    spots: list[SpotInput], origin: LatLng, radius_m: float
) -> list[SpotInput]:
    """Keep spots within radius_m of origin.

    Never empties the list: if nothing is in range the input comes back unchanged.
    """
    within = [s for s in spots if distance_m(origin.lat, origin.lng, s.lat, s.lng) <= radius_m]
    logger.debug("origin filter radius=%.0fm kept=%d/%d", radius_m, len(within), len(spots))
    if not within:
        logger.warning("No stops within %.0fm of origin; using unfiltered candidates", radius_m)
        return list(spots)
    return within


def chain_nearest(
    spots: list[SpotInput], max_step_m: float = MAX_INTER_STOP_METERS
) -> list[SpotInput]:
    """Greedy nearest-neighbour walk starting at the first spot.

    Stops early when the nearest unused spot is farther than max_step_m, so
    every consecutive pair in the result is within the cap.
    """
    if len(spots) <= 1:
        return list(spots)

    chain = [spots[0]]
    remaining = list(spots[1:])
    while remaining:
        last = chain[-1]
        nearest = min(remaining, key=lambda s: spot_distance_m(last, s))
        step = spot_distance_m(last, nearest)
        if step > max_step_m:
            logger.info(
                "Walk chain stopped at %d/%d stops: next stop %.0fm away (cap %.0fm)",
                len(chain), len(spots), step, max_step_m,
            )
            break
        chain.append(nearest)
        remaining.remove(nearest)
    return chain
