"""
Search history boundary. The engine never persists anything itself; the
service hands a small summary of each successful search to a ``SearchStore``.
"""

import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class SearchRecord:
    id: str
    origins: Tuple[Dict[str, Any], ...]
    midpoint: Dict[str, float]
    poi_ids: Tuple[str, ...] = ()
    created_at: float = field(default_factory=time.time)

    @classmethod
    def create(cls, origins, midpoint, poi_ids=()) -> 'SearchRecord':
        return cls(id=uuid.uuid4().hex, origins=tuple(origins), midpoint=dict(midpoint), poi_ids=tuple(poi_ids))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'origins': list(self.origins),
            'midpoint': self.midpoint,
            'poi_ids': list(self.poi_ids),
            'created_at': self.created_at,
        }


class SearchStore(ABC):
    @abstractmethod
    def save_search(self, record: SearchRecord) -> None:
        ...

    @abstractmethod
    def recent_searches(self, limit: int = 10) -> List[SearchRecord]:
        """Most recent first."""


class InMemorySearchStore(SearchStore):
    """Keeps the last ``max_records`` searches for the lifetime of the process."""

    def __init__(self, max_records: int = 100):
        self._records: Deque[SearchRecord] = deque(maxlen=max(1, max_records))
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def save_search(self, record: SearchRecord) -> None:
        with self._lock:
            self._records.append(record)

    def recent_searches(self, limit: Optional[int] = 10) -> List[SearchRecord]:
        with self._lock:
            records = list(self._records)
        records.reverse()
        return records[:limit] if limit is not None else records
