"""Outbound message delivery."""

from toolchat.delivery.targets import (
    ConsoleDeliverer,
    Deliverer,
    DeliveryError,
    DeliveryTarget,
    RoutingDeliverer,
)

__all__ = [
    "ConsoleDeliverer",
    "Deliverer",
    "DeliveryError",
    "DeliveryTarget",
    "RoutingDeliverer",
]
