"""Upstream response caching over ``SharedState`` with versioned namespaces.

Every cached entry lives under a namespace (``krayin:lead:9``,
``krayin:pipelines``). The physical key embeds the namespace's current
version, so invalidating a namespace is a single counter bump: entries
written under older versions are never read again and age out by TTL.
"""
from __future__ import annotations

import json
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import structlog

from bridge.core.shared_state import SharedState

logger = structlog.get_logger()

REFRESH_LOCK_TTL = 60

_executor: ThreadPoolExecutor | None = None


def _submit_background(fn: Callable[[], None]) -> None:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="cache-refresh")
    _executor.submit(fn)


class ResponseCache:
    def __init__(
        self,
        state: SharedState,
        prefix: str,
        background: Callable[[Callable[[], None]], None] | None = None,
    ) -> None:
        self.state = state
        self.prefix = prefix
        self.background = background or _submit_background

    # ── Keys ─────────────────────────────────────────────────────────────────

    def _version(self, namespace: str) -> str:
        return self.state.get(f"cache_version:{namespace}") or "0"

    def key(self, namespace: str, suffix: str = "") -> str:
        """Physical key: ``{namespace}@v{version}`` plus an optional ``:suffix``."""
        base = f"{namespace}@v{self._version(namespace)}"
        return f"{base}:{suffix}" if suffix else base

    # ── Raw get/put ──────────────────────────────────────────────────────────

    def get(self, namespace: str, suffix: str = "") -> Any | None:
        raw = self.state.get(self.key(namespace, suffix))
        return json.loads(raw) if raw is not None else None

    def put(self, namespace: str, value: Any, ttl: int, suffix: str = "") -> None:
        self.state.set(self.key(namespace, suffix), json.dumps(value, default=str), ttl=ttl)

    def invalidate(self, *namespaces: str) -> None:
        for namespace in namespaces:
            self.state.incr(f"cache_version:{namespace}")
            self._count("invalidations")
        logger.info("cache_invalidated", prefix=self.prefix, namespaces=list(namespaces))

    # ── Read-through ─────────────────────────────────────────────────────────

    def remember(
        self,
        namespace: str,
        ttl: int,
        loader: Callable[[], Any],
        suffix: str = "",
    ) -> Any:
        cached = self.get(namespace, suffix)
        if cached is not None:
            self._count("hits")
            return cached
        self._count("misses")
        value = loader()
        self.put(namespace, value, ttl, suffix)
        return value

    def remember_stale_while_revalidate(
        self,
        namespace: str,
        ttl: int,
        loader: Callable[[], Any],
        suffix: str = "",
    ) -> Any:
        """Serve fresh data, else the shadow copy while one background refresh runs.

        The shadow (``:stale``) copy lives twice as long as the primary entry.
        """
        stale_suffix = f"{suffix}:stale" if suffix else "stale"
        fresh = self.get(namespace, suffix)
        if fresh is not None:
            self._count("hits")
            if self.get(namespace, stale_suffix) is None:
                self._refresh_in_background(namespace, ttl, loader, suffix, stale_suffix)
            return fresh

        stale = self.get(namespace, stale_suffix)
        if stale is not None:
            self._count("hits")
            self._refresh_in_background(namespace, ttl, loader, suffix, stale_suffix)
            return stale

        self._count("misses")
        value = loader()
        self.put(namespace, value, ttl, suffix)
        self.put(namespace, value, ttl * 2, stale_suffix)
        return value

    def _refresh_in_background(
        self,
        namespace: str,
        ttl: int,
        loader: Callable[[], Any],
        suffix: str,
        stale_suffix: str,
    ) -> None:
        lock_key = f"{self.key(namespace, suffix)}:refreshing"
        if not self.state.add(lock_key, "1", ttl=REFRESH_LOCK_TTL):
            return

        def _refresh() -> None:
            try:
                value = loader()
                self.put(namespace, value, ttl, suffix)
                self.put(namespace, value, ttl * 2, stale_suffix)
                logger.info("cache_refresh_completed", prefix=self.prefix, namespace=namespace)
            except Exception as exc:
                # The stale copy keeps serving; the next read retries the refresh
                logger.error(
                    "cache_refresh_failed",
                    prefix=self.prefix,
                    namespace=namespace,
                    error=str(exc),
                )
            finally:
                self.state.delete(lock_key)

        logger.info("cache_refresh_started", prefix=self.prefix, namespace=namespace)
        self.background(_refresh)

    # ── Stats ────────────────────────────────────────────────────────────────

    def _count(self, name: str) -> None:
        self.state.incr(f"{self.prefix}:cache_stats:{name}")

    def stats(self) -> dict[str, Any]:
        hits = int(self.state.get(f"{self.prefix}:cache_stats:hits") or 0)
        misses = int(self.state.get(f"{self.prefix}:cache_stats:misses") or 0)
        invalidations = int(self.state.get(f"{self.prefix}:cache_stats:invalidations") or 0)
        total = hits + misses
        return {
            "hits": hits,
            "misses": misses,
            "invalidations": invalidations,
            "hit_rate_percentage": round(hits / total * 100, 2) if total else 0,
            "total_requests": total,
        }

    def reset_stats(self) -> None:
        self.state.delete(
            f"{self.prefix}:cache_stats:hits",
            f"{self.prefix}:cache_stats:misses",
            f"{self.prefix}:cache_stats:invalidations",
        )
