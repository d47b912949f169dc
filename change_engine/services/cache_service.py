"""
Tenant-Aware Settings Cache

Caches the read-only change-creation projections (active categories,
active workflows, default risk matrix) per tenant and kind:

    chg:<tenant_id>:<kind>

Every settings write for a tenant calls ``invalidate_tenant_settings`` so a
reader never sees a projection older than the last committed write.

Uses Redis in production (via REDIS_URL), falls back to a simple in-memory
dict for development/testing.
"""

import json
import logging
import os
import time

logger = logging.getLogger(__name__)

# ── In-memory fallback ───────────────────────────────────────────────────

_memory_store: dict = {}  # key → (value_json, expire_ts)


class _MemoryBackend:
    """Simple dict cache for dev/testing."""

    def get(self, key):
        entry = _memory_store.get(key)
        if entry is None:
            return None
        val, expires = entry
        if expires and time.time() > expires:
            _memory_store.pop(key, None)
            return None
        return val

    def setex(self, key, ttl_seconds, value):
        _memory_store[key] = (value, time.time() + ttl_seconds)

    def delete(self, *keys):
        for k in keys:
            _memory_store.pop(k, None)

    def keys(self, pattern):
        """Simple glob matching for 'prefix*' patterns."""
        if pattern.endswith("*"):
            prefix = pattern[:-1]
            return [k for k in _memory_store if k.startswith(prefix)]
        return [k for k in _memory_store if k == pattern]

    def flushdb(self):
        _memory_store.clear()

    def ping(self):
        return True


# ── Singleton cache backend ──────────────────────────────────────────────

_backend = None


def _get_backend():
    """Lazy-initialise Redis or fall back to in-memory."""
    global _backend
    if _backend is not None:
        return _backend

    redis_url = os.getenv("REDIS_URL")
    if redis_url and not redis_url.startswith("memory://"):
        try:
            import redis as _redis
            _backend = _redis.from_url(redis_url, decode_responses=True)
            _backend.ping()
            logger.info("Cache: using Redis at %s", redis_url.split("@")[-1])
        except Exception as exc:
            logger.warning("Redis unavailable (%s) — falling back to memory cache", exc)
            _backend = _MemoryBackend()
    else:
        _backend = _MemoryBackend()
    return _backend


# ── Default TTLs ─────────────────────────────────────────────────────────

SETTINGS_TTL = int(os.getenv("SETTINGS_CACHE_TTL", "300"))


def _settings_key(tenant_id, kind):
    return f"chg:{tenant_id}:{kind}"


# ── Public API ───────────────────────────────────────────────────────────


def get_cached(key, ttl=SETTINGS_TTL, loader=None):
    """Generic cache-aside.  If *loader* is provided, it's called on miss
    and the result is cached."""
    be = _get_backend()
    raw = be.get(key)
    if raw is not None:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            pass
    if loader is None:
        return None
    value = loader()
    if value is not None:
        be.setex(key, ttl, json.dumps(value))
    return value


def get_tenant_settings(tenant_id, kind, loader, ttl=None):
    """Cache-aside for one (tenant, kind) projection."""
    return get_cached(_settings_key(tenant_id, kind), ttl or SETTINGS_TTL, loader)


def invalidate_tenant_settings(tenant_id):
    """Drop every cached settings projection of *tenant_id*."""
    be = _get_backend()
    keys = be.keys(f"chg:{tenant_id}:*")
    if keys:
        be.delete(*keys)
        logger.debug("Settings cache invalidated", extra={"tenant_id": tenant_id, "keys": len(keys)})


def clear_all():
    """Flush entire cache (use sparingly — mainly for testing)."""
    _get_backend().flushdb()


def health_check():
    """Return cache backend status."""
    try:
        be = _get_backend()
        be.ping()
        backend_type = "redis" if not isinstance(be, _MemoryBackend) else "memory"
        return {"status": "ok", "backend": backend_type}
    except Exception as exc:
        return {"status": "error", "detail": str(exc)}
