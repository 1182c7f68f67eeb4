"""Configuration package for payout core."""
from .policy import PolicySnapshot, PolicyStore
from .settings import Settings, get_settings

__all__ = ["PolicySnapshot", "PolicyStore", "Settings", "get_settings"]
