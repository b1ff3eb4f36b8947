"""
Base classifier interface and per-frame verdict.

All content detection backends inherit from ClassifierBackend and are
selected once per process by the registry.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict

from clipguard.pipeline.sampler import SampledFrame


@dataclass
class FrameVerdict:
    """Standardized content signal for one frame."""
    is_explicit: bool = False
    is_violent: bool = False
    confidence: float = 0.0
    details: Dict[str, float] = field(default_factory=dict)


class ClassifierBackend(ABC):
    """
    Abstract base class for content detection backends.

    Subclasses must define:
    - name: identifier reported by the health endpoint
    - classify(): score a single sampled frame
    """

    name: str = "base"
    available: bool = True

    @abstractmethod
    async def classify(self, frame: SampledFrame) -> FrameVerdict:
        """
        Score one frame.

        Raises on any backend failure; the analysis loop turns that into an
        error frame.
        """
        pass

    async def close(self):
        """Release backend resources (HTTP clients etc.)."""
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name} available={self.available}>"
