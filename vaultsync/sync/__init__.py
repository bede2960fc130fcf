"""
Live view synchronisation: local cache and subscription lifecycle.
"""

from .cache import LocalCache, merge_by_id
from .subscriptions import ContainerChannel, SubscriptionManager

__all__ = [
    "ContainerChannel",
    "LocalCache",
    "SubscriptionManager",
    "merge_by_id",
]
