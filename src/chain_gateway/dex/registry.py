"""Venue adapter registry with auto-registration pattern."""

import logging

from chain_gateway.core.config import VenueSettings
from chain_gateway.dex.base import BaseVenueAdapter, VenueContext

logger = logging.getLogger(__name__)


class VenueRegistry:
    """
    Registry of venue adapter classes keyed by venue type.

    Adapter classes register themselves using the ``@VenueRegistry.register``
    decorator; configured venue instances are built from it at startup.

    """

    _venues: dict[str, type[BaseVenueAdapter]] = {}

    @classmethod
    def register(cls, venue_class: type[BaseVenueAdapter]) -> type[BaseVenueAdapter]:
        """
        Decorator to register a venue adapter class.

        Parameters
        ----------
        venue_class : type[BaseVenueAdapter]
            Adapter class to register

        Returns
        -------
        type[BaseVenueAdapter]
            The adapter class (for decorator chaining)

        Examples
        --------
        >>> @VenueRegistry.register
        ... class CurveAdapter(BaseVenueAdapter):
        ...     venue_type = "curve"

        """
        if not getattr(venue_class, "venue_type", ""):
            msg = f"Venue {venue_class.__name__} must define 'venue_type' attribute"
            raise ValueError(msg)

        cls._venues[venue_class.venue_type] = venue_class
        return venue_class

    @classmethod
    def get(cls, venue_type: str) -> type[BaseVenueAdapter] | None:
        return cls._venues.get(venue_type)

    @classmethod
    def list_types(cls) -> list[str]:
        """Get list of all registered venue types."""
        return list(cls._venues.keys())


def build_venues(configs: list[VenueSettings], context: VenueContext) -> list[BaseVenueAdapter]:
    """
    Instantiate configured venues.

    Disabled venues, unknown types and venues missing a required API key are
    skipped with a log line. Chains without a configured adapter are dropped
    from a venue's chain list.

    Parameters
    ----------
    configs : list[VenueSettings]
        Venue configuration entries
    context : VenueContext
        Shared services

    Returns
    -------
    list[BaseVenueAdapter]
        Ready venue adapters

    """
    venues = []
    for config in configs:
        if not config.enabled:
            continue
        venue_class = VenueRegistry.get(config.type)
        if venue_class is None:
            logger.warning("Unknown venue type %s for venue %s", config.type, config.id)
            continue
        if venue_class.requires_api_key and not config.api_key:
            logger.info("Venue %s skipped: API key not configured", config.id)
            continue
        chains = [chain for chain in config.chains if chain in context.adapters]
        if not chains:
            logger.debug("Venue %s skipped: none of its chains are configured", config.id)
            continue
        venues.append(venue_class(config.model_copy(update={"chains": chains}), context))
    return venues
