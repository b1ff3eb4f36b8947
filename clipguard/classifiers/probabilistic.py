"""
Probabilistic content backend (Sightengine check API).

Scores per frame:
- nudity: max(nudity.raw, nudity.partial)
- offensive: offensive.prob
- weapon: weapon
"""
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from clipguard.classifiers.base import ClassifierBackend, FrameVerdict
from clipguard.core.config import settings
from clipguard.core.logging import get_logger
from clipguard.pipeline.sampler import SampledFrame

logger = get_logger("classifiers.probabilistic")

SIGNAL_THRESHOLD = 0.5


class ProbabilisticBackend(ClassifierBackend):
    """
    HTTP client for a probability-scoring moderation API.

    Usage:
        backend = ProbabilisticBackend("user", "secret")
        verdict = await backend.classify(frame)
    """

    name = "sightengine"

    def __init__(
        self,
        api_user: str,
        api_secret: str,
        url: str = None,
        models: str = None,
        timeout: float = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_user = api_user
        self.api_secret = api_secret
        self.url = url or settings.sightengine_url
        self.models = models or settings.sightengine_models
        self.timeout = timeout or settings.sightengine_timeout_sec
        self._client = client
        logger.info(f"ProbabilisticBackend initialized with url={self.url}")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def classify(self, frame: SampledFrame) -> FrameVerdict:
        client = await self._get_client()

        data = {
            "models": self.models,
            "api_user": self.api_user,
            "api_secret": self.api_secret,
        }
        files = {"media": (Path(frame.path).name, frame.read_bytes(), "image/png")}

        response = await client.post(self.url, data=data, files=files)
        response.raise_for_status()

        payload = response.json()
        if payload.get("status") == "failure":
            error = payload.get("error") or {}
            raise RuntimeError(f"Sightengine rejected frame: {error.get('message', 'unknown error')}")

        return self.interpret(payload)

    @staticmethod
    def interpret(payload: Dict[str, Any]) -> FrameVerdict:
        """Map a check.json response body onto a FrameVerdict."""
        nudity_block = payload.get("nudity") or {}
        nudity = max(float(nudity_block.get("raw") or 0), float(nudity_block.get("partial") or 0))
        offensive = float((payload.get("offensive") or {}).get("prob") or 0)
        weapon = float(payload.get("weapon") or 0)

        if max(nudity, offensive, weapon) > 0.3:
            logger.debug(f"Frame analysis: nudity={nudity:.2f}, offensive={offensive:.2f}, weapon={weapon:.2f}")

        return FrameVerdict(
            is_explicit=nudity > SIGNAL_THRESHOLD or offensive > SIGNAL_THRESHOLD,
            is_violent=weapon > SIGNAL_THRESHOLD,
            confidence=max(nudity, offensive, weapon),
            details={"nudity": nudity, "offensive": offensive, "weapon": weapon},
        )
