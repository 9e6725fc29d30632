"""
Adapters package for the Gateway Service.

Holds the boundary to resource persistence, which the gateway itself does not
own. Ownership guards consult it through a resolver callable.
"""

from .owner_registry import OwnerRegistry

__all__ = [
    "OwnerRegistry",
]
