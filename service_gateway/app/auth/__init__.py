"""
Identity resolution and access guards for the Gateway service.
"""

from .access import AccessController
from .identity import IdentityResolver

__all__ = [
    "AccessController",
    "IdentityResolver",
]
