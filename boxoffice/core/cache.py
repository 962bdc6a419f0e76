"""
Read-through cache for booking summaries and section availability

The cache is a derived, lossy view of the database. Entries are validated
against their Pydantic schema on read, and every Redis failure is logged and
treated as a miss.
"""

import json
import logging
from typing import Any, List, Optional, Type, Union
from datetime import datetime, timezone
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


def booking_key(booking_id: Any) -> str:
    return f"booking:{booking_id}"


def user_bookings_key(user_id: Any) -> str:
    return f"user:{user_id}:bookings"


def section_seats_key(section_id: Any) -> str:
    return f"section:{section_id}:availableSeats"


class CacheManager:
    """
    Cache manager with schema validation; disabled when no client is given
    """

    def __init__(self, redis_client=None):
        self.redis = redis_client
        self.logger = logging.getLogger(__name__)
        # Cache version for invalidation coordination
        self.cache_version = "v1"

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    def _key(self, key: str) -> str:
        return f"{self.cache_version}:{key}"

    async def get_validated(
        self,
        key: str,
        response_model: Type[BaseModel],
        is_list: bool = False
    ) -> Optional[Union[BaseModel, List[BaseModel]]]:
        """
        Get cached data with strict Pydantic validation
        """
        if not self.enabled:
            return None

        cache_key = self._key(key)
        try:
            cached_entry = await self.redis.get(cache_key)
            if not cached_entry:
                return None

            try:
                cache_entry = json.loads(cached_entry)
            except json.JSONDecodeError as e:
                self.logger.warning(f"Invalid JSON in cache key {cache_key}: {e}")
                await self.redis.delete(cache_key)
                return None

            if not isinstance(cache_entry, dict) or "data" not in cache_entry:
                await self.redis.delete(cache_key)
                return None

            cached_data = cache_entry["data"]
            try:
                if is_list:
                    if not isinstance(cached_data, list):
                        raise TypeError(f"expected list, got {type(cached_data).__name__}")
                    return [response_model.model_validate(item) for item in cached_data]
                return response_model.model_validate(cached_data)
            except (ValidationError, TypeError) as e:
                self.logger.warning(f"Validation failed for cache key {cache_key}: {e}")
                await self.redis.delete(cache_key)
                return None

        except Exception as e:
            self.logger.error(f"Error retrieving cache for key {cache_key}: {e}")
            return None

    async def set_validated(
        self,
        key: str,
        data: Union[BaseModel, List[BaseModel]],
        ttl: int = 300
    ) -> bool:
        """
        Store Pydantic data with metadata and TTL
        """
        if not self.enabled:
            return False

        cache_key = self._key(key)
        try:
            if isinstance(data, list):
                serialized_data = [item.model_dump(mode="json") for item in data]
            else:
                serialized_data = data.model_dump(mode="json")

            cache_entry = {
                "data": serialized_data,
                "cached_at": datetime.now(timezone.utc).isoformat(),
                "version": self.cache_version,
                "ttl": ttl
            }
            await self.redis.setex(cache_key, ttl, json.dumps(cache_entry, default=str))
            self.logger.debug(f"Cache set for key {cache_key} with TTL {ttl}")
            return True

        except Exception as e:
            self.logger.error(f"Error setting cache for key {cache_key}: {e}")
            return False

    async def get_int(self, key: str) -> Optional[int]:
        if not self.enabled:
            return None
        cache_key = self._key(key)
        try:
            value = await self.redis.get(cache_key)
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            await self.invalidate(key)
            return None
        except Exception as e:
            self.logger.error(f"Error retrieving cache for key {cache_key}: {e}")
            return None

    async def set_int(self, key: str, value: int, ttl: int) -> bool:
        if not self.enabled:
            return False
        cache_key = self._key(key)
        try:
            await self.redis.setex(cache_key, ttl, str(value))
            return True
        except Exception as e:
            self.logger.error(f"Error setting cache for key {cache_key}: {e}")
            return False

    async def invalidate(self, *keys: str) -> int:
        """
        Delete keys; returns number removed
        """
        if not self.enabled or not keys:
            return 0
        try:
            deleted = await self.redis.delete(*(self._key(k) for k in keys))
            self.logger.debug(f"Invalidated {deleted} cache keys: {', '.join(keys)}")
            return deleted
        except Exception as e:
            self.logger.error(f"Error invalidating cache keys {keys}: {e}")
            return 0

    async def invalidate_booking(self, booking_id: Any, user_id: Any) -> int:
        return await self.invalidate(booking_key(booking_id), user_bookings_key(user_id))

    async def invalidate_sections(self, section_ids) -> int:
        return await self.invalidate(*(section_seats_key(s) for s in section_ids))
