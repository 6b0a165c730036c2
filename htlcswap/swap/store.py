"""
Order persistence.

One record per order keyed by id. Terminal orders move to the archive and
remain readable.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .orders import Order

log = logging.getLogger(__name__)


class OrderStore(ABC):
    """Order persistence interface."""

    @abstractmethod
    def save(self, order: Order) -> None:
        pass

    @abstractmethod
    def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    def list(self, include_archived: bool = True) -> List[Order]:
        pass

    @abstractmethod
    def archive(self, order_id: str) -> None:
        pass

    def list_active(self) -> List[Order]:
        return self.list(include_archived=False)


class MemoryOrderStore(OrderStore):
    """In-process store. Records are copied so callers never share state."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Dict[str, dict] = {}
        self._archived: Dict[str, dict] = {}

    def save(self, order: Order) -> None:
        with self._lock:
            record = order.to_dict()
            if order.id in self._archived:
                self._archived[order.id] = record
            else:
                self._active[order.id] = record

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            record = self._active.get(order_id) or self._archived.get(order_id)
        return Order.from_dict(record) if record else None

    def list(self, include_archived: bool = True) -> List[Order]:
        with self._lock:
            records = list(self._active.values())
            if include_archived:
                records += list(self._archived.values())
        return [Order.from_dict(r) for r in records]

    def archive(self, order_id: str) -> None:
        with self._lock:
            record = self._active.pop(order_id, None)
            if record is not None:
                self._archived[order_id] = record


class JSONOrderStore(MemoryOrderStore):
    """
    JSON-file store: {"active": {...}, "archived": {...}}.

    Every write replaces the file atomically (temp file + rename).
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return
        with open(self.path) as f:
            data = json.load(f)
        self._active = dict(data.get("active", {}))
        self._archived = dict(data.get("archived", {}))
        log.info(f"Loaded {len(self._active)} active / {len(self._archived)} archived orders from {self.path}")

    def _flush(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".orders-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump({"active": self._active, "archived": self._archived}, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def save(self, order: Order) -> None:
        super().save(order)
        with self._lock:
            self._flush()

    def archive(self, order_id: str) -> None:
        super().archive(order_id)
        with self._lock:
            self._flush()
