from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass

from app.campsite.errors import DependencyError

logger = logging.getLogger(__name__)


class GeocodingError(DependencyError):
    pass


class Geocoder:
    def lookup(self, query: str) -> tuple[float, float] | None:
        """(longitude, latitude) for a free-text address, or None."""
        raise NotImplementedError


class NullGeocoder(Geocoder):
    def lookup(self, query: str) -> tuple[float, float] | None:
        return None


@dataclass(frozen=True)
class NominatimGeocoder(Geocoder):
    """OpenStreetMap Nominatim search. Low-volume, first match only."""

    base_url: str = "https://nominatim.openstreetmap.org/search"
    user_agent: str = "Campsite/1.0 (admin@example.com)"
    timeout_seconds: float = 5

    def lookup(self, query: str) -> tuple[float, float] | None:
        query = (query or "").strip()
        if not query:
            return None
        url = self.base_url + "?" + urllib.parse.urlencode({"format": "json", "limit": 1, "q": query})
        req = urllib.request.Request(url, method="GET")
        # Nominatim's usage policy requires an identifying User-Agent.
        req.add_header("User-Agent", self.user_agent)
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                data = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            raise GeocodingError(f"HTTP {e.code} from geocoder") from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise GeocodingError(f"Geocoder unreachable: {e}") from e
        except ValueError as e:
            raise GeocodingError("Invalid JSON from geocoder") from e

        if not isinstance(data, list) or not data:
            return None
        try:
            lat = float(data[0]["lat"])
            lon = float(data[0]["lon"])
        except (KeyError, TypeError, ValueError):
            return None
        return (lon, lat)


def geocoder_from_config(config: dict) -> Geocoder:
    kind = (config.get("GEOCODER") or "nominatim").strip().lower()
    if kind in ("", "none", "off", "disabled"):
        return NullGeocoder()
    return NominatimGeocoder(
        base_url=config.get("GEOCODER_URL") or NominatimGeocoder.base_url,
        user_agent=config.get("GEOCODER_USER_AGENT") or NominatimGeocoder.user_agent,
        timeout_seconds=float(config.get("GEOCODER_TIMEOUT") or 5),
    )


def geocoder() -> Geocoder:
    from flask import current_app

    gc = current_app.extensions.get("geocoder")
    if gc is None:
        gc = geocoder_from_config(current_app.config)
        current_app.extensions["geocoder"] = gc
    return gc


def safe_lookup(gc: Geocoder | None, query: str | None) -> tuple[float, float] | None:
    """Geocode without ever failing the caller; errors are logged."""
    if gc is None or not query:
        return None
    try:
        return gc.lookup(query)
    except DependencyError as e:
        logger.warning("Geocoding failed for %r: %s", query, e)
        return None
