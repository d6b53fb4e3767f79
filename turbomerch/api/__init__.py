"""
API package initialization
"""

# Import all routers to make them available
from . import designs, usage, billing, stripe_webhook

__all__ = ["designs", "usage", "billing", "stripe_webhook"]
