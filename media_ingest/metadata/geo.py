"""
GPS coordinate helpers and the reverse-geocoding lookup.

Coordinates arrive in two shapes:
  - EXIF: degree/minute/second rationals plus an N/S/E/W reference tag.
  - Video containers: a sign-prefixed decimal pair such as "+58.3938+015.5612/"
    (ISO 6709), sometimes with a trailing altitude.
"""
import logging
import re
import threading
from typing import Callable, Optional, Sequence, Tuple

import pycountry
import reverse_geocoder as rg

from ..models import GpsLocation

# (latitude, longitude) -> "City, Country"
Geocoder = Callable[[float, float], Optional[str]]

_ISO6709_RE = re.compile(r'^\s*([+-]\d+(?:\.\d+)?)([+-]\d+(?:\.\d+)?)')


def dms_to_decimal(dms: Sequence, ref: Optional[str]) -> float:
    """
    degrees + minutes/60 + seconds/3600, negated for S or W.
    A missing reference means the value is taken as positive.
    """
    degrees, minutes, seconds = (float(v) for v in dms[:3])
    value = degrees + minutes / 60 + seconds / 3600
    if ref and ref.strip().upper() in ('S', 'W'):
        value = -value
    return value


def parse_iso6709(value: str) -> Optional[Tuple[float, float]]:
    """Parses "+DD.DDDD+DDD.DDDD/" into (lat, lon); None if malformed."""
    match = _ISO6709_RE.match(value)
    if not match:
        return None
    return float(match.group(1)), float(match.group(2))


def make_location(lat: float, lon: float, geocoder: Optional[Geocoder]) -> GpsLocation:
    place = None
    if geocoder is not None:
        try:
            place = geocoder(lat, lon)
        except Exception as e:
            logging.debug(f"Reverse geocoding failed for ({lat}, {lon}): {e}")
    return GpsLocation(latitude=lat, longitude=lon, place=place)


class ReverseGeocoder:
    """
    Offline nearest-city lookup backed by the GeoNames dataset shipped with
    `reverse_geocoder`. The dataset is loaded on first use.
    """

    def __init__(self):
        self._lock = threading.Lock()

    def __call__(self, lat: float, lon: float) -> Optional[str]:
        # The underlying KD-tree is built lazily and is not safe to build twice
        with self._lock:
            results = rg.search((lat, lon), mode=1)
        if not results:
            return None

        result = results[0]
        city = result.get("name", "")
        country_code = result.get("cc", "")
        country = country_code
        if country_code:
            country_obj = pycountry.countries.get(alpha_2=country_code)
            country = country_obj.name if country_obj else country_code

        if city and country:
            return f"{city}, {country}"
        return city or country or None
