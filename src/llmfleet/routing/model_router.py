# src/llmfleet/routing/model_router.py
"""
Per-model round-robin instance selection.

Each model gets its own cursor, created lazily at 0 the first time the model
is requested. Selection scans at most N slots from the cursor (wrapping
modulo N), returns the first instance declaring the model, and moves the
cursor just past it. Traffic for one model therefore never skews the
rotation of another.
"""

import logging
import threading
from typing import Dict

from ..exceptions import ModelNotServedError
from ..providers.registry import InstanceRegistry

logger = logging.getLogger(__name__)


class ModelRouter:
    """
    Selects an instance index for a model.

    The cursor read, scan and advance happen under one lock, so concurrent
    callers never observe the same cursor value.
    """

    def __init__(self, registry: InstanceRegistry):
        self.registry = registry
        self._cursors: Dict[str, int] = {}
        self._lock = threading.Lock()

    def select_instance(self, model: str) -> int:
        """
        Returns the index of the next instance serving `model`.

        Raises:
            ModelNotServedError: If no instance declares the model.
        """
        size = self.registry.size
        with self._lock:
            cursor = self._cursors.get(model, 0)
            for offset in range(size):
                index = (cursor + offset) % size
                if self.registry.get(index).has_model(model):
                    self._cursors[model] = (index + 1) % size
                    logger.debug(f"Model '{model}' routed to instance {index} (cursor was {cursor})")
                    return index
        raise ModelNotServedError(model, self.registry.all_models())

    def cursor_for(self, model: str) -> int:
        """Current cursor position for `model` (0 if never requested)."""
        with self._lock:
            return self._cursors.get(model, 0)
