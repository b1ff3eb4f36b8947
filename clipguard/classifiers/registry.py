"""
Classifier backend selection.

Backends are ranked capability providers. The first provider whose
capability check passes wins; selection happens once at startup and the
result is injected into the orchestrator.
"""
import importlib.util
from enum import Enum
from typing import Callable, List, Optional, Tuple

from clipguard.classifiers.base import ClassifierBackend, FrameVerdict
from clipguard.core.config import Settings, settings as default_settings
from clipguard.core.logging import get_logger
from clipguard.pipeline.sampler import SampledFrame

logger = get_logger("classifiers.registry")


class BackendKind(str, Enum):
    """Supported content detection providers."""
    PROBABILISTIC = "sightengine"
    CATEGORICAL = "google_vision"
    UNAVAILABLE = "unavailable"  # Fallback with no detection


class UnavailableBackend(ClassifierBackend):
    """Placeholder selected when nothing can score frames. Never called by the pipeline."""

    name = BackendKind.UNAVAILABLE.value
    available = False

    async def classify(self, frame: SampledFrame) -> FrameVerdict:
        raise RuntimeError("No content detection backend configured")


def vision_importable() -> bool:
    try:
        return importlib.util.find_spec("google.cloud.vision") is not None
    except (ImportError, ValueError):
        return False


def _probabilistic(config: Settings) -> Optional[ClassifierBackend]:
    if not config.sightengine_configured:
        return None
    from clipguard.classifiers.probabilistic import ProbabilisticBackend

    return ProbabilisticBackend(
        api_user=config.sightengine_api_user,
        api_secret=config.sightengine_api_secret,
        url=config.sightengine_url,
        models=config.sightengine_models,
        timeout=config.sightengine_timeout_sec,
    )


def _categorical(config: Settings) -> Optional[ClassifierBackend]:
    if not vision_importable():
        return None
    from clipguard.classifiers.categorical import CategoricalBackend

    return CategoricalBackend(keyfile=config.google_cloud_keyfile)


# Ranked: first match wins
PROVIDERS: List[Tuple[BackendKind, Callable[[Settings], Optional[ClassifierBackend]]]] = [
    (BackendKind.PROBABILISTIC, _probabilistic),
    (BackendKind.CATEGORICAL, _categorical),
]


def select_backend(config: Optional[Settings] = None) -> ClassifierBackend:
    """
    Pick the highest-ranked backend that can run in this process.

    Returns:
        A ClassifierBackend; UnavailableBackend when no provider qualifies.
    """
    config = config or default_settings
    for kind, factory in PROVIDERS:
        try:
            backend = factory(config)
        except Exception as e:
            logger.warning(f"Failed to initialize {kind.value} backend: {e}")
            continue
        if backend is not None:
            logger.info(f"Selected content detection backend: {kind.value}")
            return backend

    logger.warning("No content detection backend available - all videos will be flagged for manual review")
    return UnavailableBackend()
