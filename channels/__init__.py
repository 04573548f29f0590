"""Outbound channels: registry, load balancing and vendor gateways."""
from channels.base import (
    ChannelError,
    GatewayError,
    NoChannelAvailableError,
    MessageGateway,
    ChannelRegistry,
)
from channels.balancer import LoadBalancer
from channels.gateway import RESTMessageGateway, MockMessageGateway, create_gateway

__all__ = [
    "ChannelError", "GatewayError", "NoChannelAvailableError",
    "MessageGateway", "ChannelRegistry", "LoadBalancer",
    "RESTMessageGateway", "MockMessageGateway", "create_gateway",
]
