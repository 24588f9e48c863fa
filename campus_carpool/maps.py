"""Pickup and drop-off suggestions for the ride form."""

from __future__ import annotations

import logging
from typing import List, Optional

import googlemaps
from googlemaps.exceptions import ApiError, TransportError

from .database import DatabaseManager
from .errors import TransportFailure

logger = logging.getLogger(__name__)


class GoogleMapsError(RuntimeError):
    """Domain-specific error raised for Google Maps integration problems."""


class GoogleMapsHandler:
    """Wrap the ``googlemaps`` Places client and fall back to known ride locations."""

    MIN_QUERY_LENGTH = 3
    MAX_SUGGESTIONS = 8

    def __init__(self, api_key: str, db_manager: Optional[DatabaseManager] = None) -> None:
        self.enabled = bool(api_key)
        self.client = None
        self._db_manager = db_manager
        if not self.enabled:
            return
        try:
            self.client = googlemaps.Client(key=api_key)
        except (ApiError, TransportError, ValueError) as exc:
            raise GoogleMapsError(f"Unable to initialise Google Maps client: {exc}") from exc

    def suggest(self, query: str) -> List[str]:
        """Return location suggestions, preferring live Places results."""

        query = query.strip()
        if len(query) < self.MIN_QUERY_LENGTH:
            return []
        if self.enabled and self.client is not None:
            try:
                return self.autocomplete(query)
            except GoogleMapsError as exc:
                logger.warning("Falling back to known locations: %s", exc)
        return self._known_locations(query)

    def autocomplete(self, query: str) -> List[str]:
        if self.client is None:
            raise GoogleMapsError("Google Maps client is not available.")
        try:
            predictions = self.client.places_autocomplete(
                input_text=query,
                types="geocode",
                language="en",
            )
        except (ApiError, TransportError) as exc:
            raise GoogleMapsError(f"Autocomplete request failed: {exc}") from exc
        suggestions = [item.get("description", "") for item in predictions]
        return [text for text in suggestions if text][: self.MAX_SUGGESTIONS]

    def _known_locations(self, query: str) -> List[str]:
        if self._db_manager is None:
            return []
        try:
            locations = self._db_manager.fetch_known_locations()
        except TransportFailure as exc:
            logger.warning("Known locations unavailable: %s", exc)
            return []
        needle = query.lower()
        return [location for location in locations if needle in location.lower()][
            : self.MAX_SUGGESTIONS
        ]
