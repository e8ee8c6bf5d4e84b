# src/llmfleet/routing/affinity.py
"""
Resource handle encoding.

A handle names a stateful remote object (thread, vector store, batch) and
the instance that owns it: ``"<instanceIndex>_<nativeId>"``. With a single
instance the prefix is omitted and the handle is the bare native id.
"""

import logging
from typing import Tuple

logger = logging.getLogger(__name__)

SEPARATOR = "_"


class ResourceAffinityCodec:
    """
    Encodes and decodes resource handles for a registry of `instance_count` instances.

    `decode` never raises: a handle without a non-negative integer prefix is
    read as "no affinity" and routed to instance 0 unchanged.
    """

    def __init__(self, instance_count: int):
        self.instance_count = instance_count

    def encode(self, instance_index: int, native_id: str) -> str:
        if self.instance_count <= 1:
            return native_id
        return f"{instance_index}{SEPARATOR}{native_id}"

    def decode(self, handle: str) -> Tuple[int, str]:
        prefix, sep, rest = handle.partition(SEPARATOR)
        if not sep or not (prefix.isascii() and prefix.isdigit()):
            return 0, handle
        index = int(prefix)
        if index >= self.instance_count:
            # Out of range: the registry lookup raises ConfigError later.
            logger.warning(f"Handle '{handle}' names instance {index} but only {self.instance_count} exist")
        return index, rest
