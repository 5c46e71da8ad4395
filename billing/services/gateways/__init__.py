"""
Payment gateway clients.
Maps each PaymentGateway value to the client class that talks to it.
"""
from typing import Optional

from billing.models.subscription import PaymentGateway
from billing.services.gateways.base import GatewayClient
from billing.services.gateways.stripe_gateway import StripeGatewayClient

GATEWAY_CLIENTS = {
    PaymentGateway.STRIPE: StripeGatewayClient,
}


def get_gateway_client(gateway) -> GatewayClient:
    """Instantiate the client for a gateway tag (enum member or its value).

    Raises:
        ValueError: Unknown gateway tag
    """
    try:
        tag = PaymentGateway(gateway)
    except ValueError:
        raise ValueError(f'Unknown payment gateway: {gateway}') from None

    client_class = GATEWAY_CLIENTS.get(tag)
    if client_class is None:
        raise ValueError(f'No client registered for payment gateway: {tag.value}')
    return client_class()


class GatewayClients:
    """Gateway clients keyed by tag, built on first use.

    Records carry the tag of the gateway they live on; operations on them go
    through the matching client. ``default_client`` serves ``default_tag``
    without consulting the registry.
    """

    def __init__(self, default_tag, default_client: Optional[GatewayClient] = None):
        self.default_tag = PaymentGateway(default_tag)
        self._clients = {}
        if default_client is not None:
            self._clients[self.default_tag] = default_client

    @property
    def default(self) -> GatewayClient:
        return self.for_tag(self.default_tag)

    def for_tag(self, gateway) -> GatewayClient:
        tag = PaymentGateway(gateway)
        if tag not in self._clients:
            self._clients[tag] = get_gateway_client(tag)
        return self._clients[tag]


__all__ = [
    'GATEWAY_CLIENTS',
    'GatewayClient',
    'GatewayClients',
    'StripeGatewayClient',
    'get_gateway_client',
]
