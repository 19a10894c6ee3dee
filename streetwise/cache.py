"""Streetwise Engine - In-memory lighting feature store"""

import threading
import logging
from typing import Callable, Iterable

from streetwise.models import LightingFeature

logger = logging.getLogger("streetwise.cache")


class LightingFeatureStore:
    """Lighting features keyed by (feature_id, source), indexed by grid cell.

    Upserts overwrite by key, so a refresh supersedes earlier copies of the
    same feature. Safe to read from a worker thread while the event loop writes.
    """

    def __init__(self, cell_key: Callable[[float, float], str]):
        self._cell_key = cell_key
        self._features: dict[tuple[str, str], LightingFeature] = {}
        self._by_cell: dict[str, set[tuple[str, str]]] = {}
        self._lock = threading.Lock()

    def upsert(self, features: Iterable[LightingFeature]) -> int:
        count = 0
        with self._lock:
            for feature in features:
                key = (feature.feature_id, feature.source)
                previous = self._features.get(key)
                if previous is not None:
                    old_cell = self._cell_key(previous.lat, previous.lon)
                    self._by_cell.get(old_cell, set()).discard(key)
                self._features[key] = feature
                self._by_cell.setdefault(self._cell_key(feature.lat, feature.lon), set()).add(key)
                count += 1
        logger.debug(f"Upserted {count} lighting features ({len(self._features)} cached)")
        return count

    def in_cells(self, cell_keys: Iterable[str], min_cached_at: float = 0.0) -> list[LightingFeature]:
        """Features located in any of the given cells, cached at or after min_cached_at."""
        with self._lock:
            out = []
            for cell in cell_keys:
                for key in self._by_cell.get(cell, ()):
                    feature = self._features[key]
                    if feature.cached_at >= min_cached_at:
                        out.append(feature)
            return out

    def cached_since(self, min_cached_at: float = 0.0) -> list[LightingFeature]:
        with self._lock:
            return [f for f in self._features.values() if f.cached_at >= min_cached_at]

    def __len__(self) -> int:
        return len(self._features)

    def clear(self):
        with self._lock:
            self._features.clear()
            self._by_cell.clear()
