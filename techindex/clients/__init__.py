"""Client singletons for external API interactions."""
from techindex.clients.places_client import PlacesClient

__all__ = ["PlacesClient"]
