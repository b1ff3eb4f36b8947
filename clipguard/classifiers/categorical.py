"""
Categorical content backend (Google Cloud Vision SafeSearch).

SafeSearch reports likelihood levels rather than probabilities; a signal
counts when it is LIKELY or above.
"""
import asyncio
from enum import IntEnum
from typing import Any, Optional

from clipguard.classifiers.base import ClassifierBackend, FrameVerdict
from clipguard.core.logging import get_logger
from clipguard.pipeline.sampler import SampledFrame

logger = get_logger("classifiers.categorical")


class Likelihood(IntEnum):
    """SafeSearch likelihood scale, ordered."""
    UNKNOWN = 0
    VERY_UNLIKELY = 1
    UNLIKELY = 2
    POSSIBLE = 3
    LIKELY = 4
    VERY_LIKELY = 5

    @classmethod
    def parse(cls, value: Any) -> "Likelihood":
        """Accept enum members, their integer values, or names."""
        if value is None:
            return cls.UNKNOWN
        if isinstance(value, str):
            return cls.__members__.get(value.upper(), cls.UNKNOWN)
        name = getattr(value, "name", None)
        if name in cls.__members__:
            return cls[name]
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.UNKNOWN


FLAGGED_CONFIDENCE = 0.9
CLEAR_CONFIDENCE = 0.5


def interpret_safe_search(annotation: Any) -> FrameVerdict:
    """Map a SafeSearch annotation onto a FrameVerdict."""
    adult = Likelihood.parse(getattr(annotation, "adult", None))
    racy = Likelihood.parse(getattr(annotation, "racy", None))
    violence = Likelihood.parse(getattr(annotation, "violence", None))

    is_explicit = adult >= Likelihood.LIKELY or racy >= Likelihood.LIKELY
    is_violent = violence >= Likelihood.LIKELY

    return FrameVerdict(
        is_explicit=is_explicit,
        is_violent=is_violent,
        confidence=FLAGGED_CONFIDENCE if (is_explicit or is_violent) else CLEAR_CONFIDENCE,
        details={"adult": float(adult), "racy": float(racy), "violence": float(violence)},
    )


class CategoricalBackend(ClassifierBackend):
    """SafeSearch over the blocking Vision client, run in the default executor."""

    name = "google_vision"

    def __init__(self, client: Any = None, keyfile: Optional[str] = None):
        self._client = client
        self._keyfile = keyfile

    def _get_client(self):
        if self._client is None:
            from google.cloud import vision

            if self._keyfile:
                self._client = vision.ImageAnnotatorClient.from_service_account_file(self._keyfile)
            else:
                self._client = vision.ImageAnnotatorClient()
        return self._client

    def _detect(self, content: bytes):
        from google.cloud import vision

        client = self._get_client()
        response = client.safe_search_detection(image=vision.Image(content=content))
        if response.error.message:
            raise RuntimeError(f"Vision API error: {response.error.message}")
        return response.safe_search_annotation

    async def classify(self, frame: SampledFrame) -> FrameVerdict:
        content = frame.read_bytes()
        loop = asyncio.get_event_loop()
        annotation = await loop.run_in_executor(None, self._detect, content)
        if annotation is None:
            raise RuntimeError("Vision API returned no SafeSearch annotation")
        return interpret_safe_search(annotation)
