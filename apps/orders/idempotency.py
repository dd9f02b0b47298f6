"""
Idempotency registry for order creation.

One cache entry per (member, client token):

    order:idempotency:<member_id>:<token>  ->  "PENDING" | "<order id>"

`cache.add` is the atomic set-if-absent: exactly one concurrent caller
wins the placeholder. Entries expire after ORDER_IDEMPOTENCY_TTL seconds
whatever the outcome; the expiry only bounds growth.

The PENDING placeholder gets the shorter ORDER_IDEMPOTENCY_PENDING_TTL.
The id is only written once the order commits, so a placeholder left behind
by a rolled-back outer transaction expires on its own and the token becomes
usable again.
"""
import logging
from typing import Optional

from django.conf import settings
from django.core.cache import caches

logger = logging.getLogger(__name__)

PENDING = "PENDING"
KEY_PREFIX = "order:idempotency"
DEFAULT_TTL = 24 * 60 * 60
DEFAULT_PENDING_TTL = 120


class IdempotencyRegistry:

    def __init__(self, cache_alias: Optional[str] = None, ttl: Optional[int] = None,
                 pending_ttl: Optional[int] = None):
        self.cache_alias = cache_alias or getattr(settings, "ORDER_IDEMPOTENCY_CACHE", "default")
        self.ttl = ttl or getattr(settings, "ORDER_IDEMPOTENCY_TTL", DEFAULT_TTL)
        self.pending_ttl = pending_ttl or getattr(settings, "ORDER_IDEMPOTENCY_PENDING_TTL", DEFAULT_PENDING_TTL)

    @property
    def cache(self):
        return caches[self.cache_alias]

    @staticmethod
    def build_key(member_id, token: str) -> str:
        return f"{KEY_PREFIX}:{member_id}:{token}"

    def reserve(self, key: str) -> bool:
        """
        Place the PENDING placeholder. False if any record already exists.
        """
        return bool(self.cache.add(key, PENDING, timeout=self.pending_ttl))

    def lookup(self, key: str) -> Optional[str]:
        value = self.cache.get(key)
        return None if value is None else str(value)

    def resolve(self, key: str, order_id) -> None:
        """
        Replace the placeholder with the created order's id.
        """
        self.cache.set(key, str(order_id), timeout=self.ttl)

    def release(self, key: str) -> None:
        """
        Drop the placeholder so a retry with the same token can proceed.
        """
        self.cache.delete(key)

    @staticmethod
    def is_pending(value: Optional[str]) -> bool:
        return value is None or value == PENDING
