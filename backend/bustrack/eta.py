import math
from typing import Tuple

EARTH_RADIUS_KM = 6371.0
DEFAULT_SPEED_KMH = 30.0


def haversine_km(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    """Great-circle distance in km between two (lat, lng) pairs in degrees."""
    lat1, lon1 = a
    lat2, lon2 = b
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    h = math.sin(dlat/2)**2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon/2)**2
    h = min(h, 1.0)  # rounding near antipodes
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1-h))
    return EARTH_RADIUS_KM * c


def estimate_duration_minutes(distance_km: float, assumed_speed_kmh: float = DEFAULT_SPEED_KMH) -> float:
    """Fractional travel time at a constant speed."""
    if assumed_speed_kmh <= 0:
        raise ValueError("assumed_speed_kmh must be positive")
    return distance_km / assumed_speed_kmh * 60


def estimate_eta_minutes(distance_km: float, assumed_speed_kmh: float = DEFAULT_SPEED_KMH) -> int:
    """Whole-minute ETA; 0 means the bus is arriving now."""
    return round(estimate_duration_minutes(distance_km, assumed_speed_kmh))
