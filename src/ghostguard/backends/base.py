"""
Generation backend contract.

A backend either returns a ``GenerationOutcome`` or raises a
``BackendFailure``. It must not swallow cancellation: the executor cancels
the in-flight call on timeout or when the session token fires.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..models import GenerationOutcome, GenerationRequest


class GenerationBackend(ABC):
    name: str = "backend"

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationOutcome:
        ...

    async def aclose(self):
        """Release network resources. Default: nothing to release."""
