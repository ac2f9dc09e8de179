"""Key/value memory populated by the ``set_memory`` tool."""

from __future__ import annotations

import logging
from typing import Any

from shared.schemas import SetMemoryRequest, SetMemoryResponse

_LOGGER = logging.getLogger(__name__)

SET_MEMORY_DESCRIPTION = "Saves important data about the user into memory."


class MemoryStore:
    """In-process memory for the lifetime of one console session."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    def snapshot(self) -> dict[str, str]:
        return dict(self._values)

    def clear(self) -> None:
        self._values.clear()

    async def set_memory(self, request: SetMemoryRequest) -> dict[str, Any]:
        """Stores one value, overwriting any previous value for the key."""
        self._values[request.key] = request.value
        _LOGGER.debug("Memory value stored.", extra={"key": request.key})
        return SetMemoryResponse().model_dump()
