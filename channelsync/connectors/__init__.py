"""
Marketplace connectors, selected by provider name through ConnectorRegistry.
"""
import logging
from typing import Iterator, Optional, Union

import httpx

from channelsync.connectors.base import ChannelConnector
from channelsync.connectors.etsy import EtsyConnector
from channelsync.connectors.shopify import ShopifyConnector
from channelsync.connectors.tiktok import TikTokConnector
from channelsync.models import ChannelProvider

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Provider name -> connector instance."""

    def __init__(self):
        self._connectors: dict[str, ChannelConnector] = {}

    def register(self, connector: ChannelConnector) -> None:
        self._connectors[connector.provider.value] = connector

    def get(self, provider: Union[str, ChannelProvider, None]) -> Optional[ChannelConnector]:
        if provider is None:
            return None
        key = provider.value if isinstance(provider, ChannelProvider) else str(provider).upper()
        return self._connectors.get(key)

    def __contains__(self, provider) -> bool:
        return self.get(provider) is not None

    def __iter__(self) -> Iterator[ChannelConnector]:
        return iter(self._connectors.values())


def build_registry(
    settings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    page_delay: Optional[float] = None,
) -> ConnectorRegistry:
    """Registry with every provider whose client id is configured."""
    registry = ConnectorRegistry()
    for name, connector_cls in (("etsy", EtsyConnector), ("shopify", ShopifyConnector), ("tiktok", TikTokConnector)):
        config = settings.provider_config(name)
        if config is None or not config.client_id:
            logger.info("%s connector disabled: client id not configured", name)
            continue
        kwargs = {"transport": transport}
        if page_delay is not None:
            kwargs["page_delay"] = page_delay
        registry.register(connector_cls(config, **kwargs))
    return registry


__all__ = ["ConnectorRegistry", "build_registry", "EtsyConnector", "ShopifyConnector", "TikTokConnector"]
