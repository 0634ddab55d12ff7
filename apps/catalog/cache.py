import logging
import time

from django.conf import settings
from django.core.cache import caches

logger = logging.getLogger(__name__)


class ProductCache:
    """
    Read-through cache for catalog reads.

    Entries are stored as (stored_at, value) in a Django cache backend and
    treated as stale once older than `ttl` seconds by `clock()`. The backend
    timeout is set to the same TTL so stale entries are evicted anyway.

    Never authoritative for stock or pricing decisions.
    """

    GENERATION_KEY = "product_cache:generation"

    def __init__(self, backend=None, ttl=None, clock=None):
        self.backend = backend if backend is not None else caches["default"]
        self.ttl = ttl if ttl is not None else settings.PRODUCT_CACHE_TTL
        self.clock = clock or time.time

    def _generation(self):
        return self.backend.get(self.GENERATION_KEY, 0)

    def _key(self, key):
        return f"product_cache:{self._generation()}:{key}"

    def get(self, key):
        entry = self.backend.get(self._key(key))
        if entry is None:
            return None

        stored_at, value = entry
        if self.clock() - stored_at >= self.ttl:
            self.backend.delete(self._key(key))
            return None
        return value

    def put(self, key, value):
        if value is None:
            return
        self.backend.set(self._key(key), (self.clock(), value), timeout=self.ttl)

    def invalidate(self, key):
        self.backend.delete(self._key(key))

    def invalidate_all(self):
        # Bumping the generation orphans every key written under the old one.
        if not self.backend.add(self.GENERATION_KEY, 1, timeout=None):
            try:
                self.backend.incr(self.GENERATION_KEY)
            except ValueError:
                self.backend.set(self.GENERATION_KEY, 1, timeout=None)
        logger.info("Product cache invalidated")
