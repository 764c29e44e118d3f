"""Adapter modules for external integrations."""

from .device import DeviceRequestError, WledClient
from .firestore import FirestoreClient, FirestoreQueryError, FirestoreTransportError
from .mqtt import MQTTClient, MQTTConnectionError

__all__ = [
    "DeviceRequestError",
    "FirestoreClient",
    "FirestoreQueryError",
    "FirestoreTransportError",
    "MQTTClient",
    "MQTTConnectionError",
    "WledClient",
]
