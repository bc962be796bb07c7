"""
Geofence math — distance, containment, speed and coordinate validity.

Pure functions, no I/O. Inputs are degrees, distances are meters, speeds
are km/h.
"""

import math
from datetime import datetime
from typing import Any

EARTH_RADIUS_M = 6_371_000


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine great-circle distance in meters, rounded to 2 decimals."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_M * c, 2)


def is_within_geofence(distance: float, radius: float) -> bool:
    """Containment test. The boundary itself counts as inside."""
    return distance <= radius


def calculate_speed(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
    time1: datetime,
    time2: datetime,
) -> float:
    """
    Average speed in km/h between two timestamped fixes.

    Order of the timestamps does not matter. Zero elapsed time yields 0.0.
    """
    elapsed_hours = abs((time2 - time1).total_seconds()) / 3600
    if elapsed_hours == 0:
        return 0.0

    distance_m = calculate_distance(lat1, lon1, lat2, lon2)
    return round((distance_m / 1000) / elapsed_hours, 2)


def _is_real_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def is_valid_coordinates(lat: Any, lon: Any) -> bool:
    return _is_real_number(lat) and _is_real_number(lon) and -90 <= lat <= 90 and -180 <= lon <= 180


def geofence_status(trolley, store, default_radius: int = 500) -> dict[str, Any]:
    """
    Current containment summary for a trolley against its store.

    Returns is_within_geofence/distance as None plus an `error` string when
    either side has no usable coordinates.
    """
    if trolley.current_lat is None or trolley.current_lon is None:
        return {"is_within_geofence": None, "distance": None, "error": "Trolley location not available"}
    if store is None or store.latitude is None or store.longitude is None:
        return {"is_within_geofence": None, "distance": None, "error": "Store location not available"}
    if not is_valid_coordinates(trolley.current_lat, trolley.current_lon):
        return {"is_within_geofence": None, "distance": None, "error": "Invalid trolley coordinates"}
    if not is_valid_coordinates(store.latitude, store.longitude):
        return {"is_within_geofence": None, "distance": None, "error": "Invalid store coordinates"}

    distance = calculate_distance(trolley.current_lat, trolley.current_lon, store.latitude, store.longitude)
    radius = store.geofence_radius or default_radius
    return {
        "is_within_geofence": is_within_geofence(distance, radius),
        "distance": distance,
        "radius": radius,
    }


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)}m"
    return f"{meters / 1000:.2f}km"
