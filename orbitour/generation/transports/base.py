"""
Abstract base class for generation transports.

A transport submits one transition job to the generation service and turns
its lifecycle into a stream of normalized events, letting the orchestrator
swap between direct and proxied routing without changing its retry logic.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator

from orbitour.generation.events import TransportEvent
from orbitour.generation.request import GenerationRequest


class TransportError(RuntimeError):
    pass


class TransportAdapter(ABC):
    """Abstract base class for transport adapters"""

    name: str = "transport"

    @abstractmethod
    def submit(self, request: GenerationRequest) -> AsyncIterator[TransportEvent]:
        """
        Submit a job and stream its lifecycle.

        Args:
            request: Fully resolved generation request

        Returns:
            Async iterator of Started/Progress events ending with exactly one
            Completed or Failed event

        Raises:
            TransportError: if the job could not be submitted or its event
                stream broke before a terminal event
        """
        pass
