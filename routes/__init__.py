"""Routes package initializer."""

from .channel_inventory_routes import register_channel_inventory_routes
from .channel_mapping_routes import register_channel_mapping_routes

__all__ = [
    "register_channel_inventory_routes",
    "register_channel_mapping_routes",
]
