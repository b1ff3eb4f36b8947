"""
Test content detection backends and backend selection.
"""
from types import SimpleNamespace

import httpx
import pytest

from clipguard.classifiers import registry
from clipguard.classifiers.categorical import CategoricalBackend, Likelihood, interpret_safe_search
from clipguard.classifiers.probabilistic import ProbabilisticBackend
from clipguard.classifiers.registry import UnavailableBackend, select_backend
from clipguard.core.config import Settings
from clipguard.pipeline.sampler import SampledFrame


@pytest.fixture
def frame(tmp_path, write_png):
    path = write_png(tmp_path / "frame_0001.png")
    return SampledFrame(frame_number=1, timestamp=0.0, path=path)


def test_probabilistic_interpretation():
    verdict = ProbabilisticBackend.interpret({
        "status": "success",
        "nudity": {"raw": 0.2, "partial": 0.7, "safe": 0.1},
        "offensive": {"prob": 0.1},
        "weapon": 0.05,
    })
    assert verdict.is_explicit
    assert not verdict.is_violent
    assert verdict.confidence == 0.7
    assert verdict.details == {"nudity": 0.7, "offensive": 0.1, "weapon": 0.05}


def test_probabilistic_offensive_and_weapon_signals():
    verdict = ProbabilisticBackend.interpret({"offensive": {"prob": 0.6}, "weapon": 0.8})
    assert verdict.is_explicit
    assert verdict.is_violent
    assert verdict.confidence == 0.8


def test_probabilistic_threshold_is_exclusive():
    verdict = ProbabilisticBackend.interpret({"nudity": {"raw": 0.5}, "weapon": 0.5})
    assert not verdict.is_explicit
    assert not verdict.is_violent


@pytest.mark.asyncio
async def test_probabilistic_classify_posts_frame(frame):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.read()
        return httpx.Response(200, json={"status": "success", "nudity": {"raw": 0.9}, "weapon": 0.1})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    backend = ProbabilisticBackend("user", "secret", url="https://moderation.test/check.json", client=client)
    try:
        verdict = await backend.classify(frame)
    finally:
        await backend.close()

    assert verdict.is_explicit
    assert seen["url"] == "https://moderation.test/check.json"
    assert b"api_user" in seen["body"]
    assert b"frame_0001.png" in seen["body"]


@pytest.mark.asyncio
async def test_probabilistic_classify_raises_on_api_failure(frame):
    def handler(request):
        return httpx.Response(200, json={"status": "failure", "error": {"message": "bad credentials"}})

    backend = ProbabilisticBackend("user", "secret", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(RuntimeError, match="bad credentials"):
        await backend.classify(frame)
    await backend.close()


@pytest.mark.asyncio
async def test_probabilistic_classify_raises_on_http_error(frame):
    backend = ProbabilisticBackend(
        "user", "secret",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503))),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await backend.classify(frame)
    await backend.close()


@pytest.mark.parametrize("value,expected", [
    ("LIKELY", Likelihood.LIKELY),
    ("very_likely", Likelihood.VERY_LIKELY),
    (3, Likelihood.POSSIBLE),
    (SimpleNamespace(name="UNLIKELY"), Likelihood.UNLIKELY),
    (None, Likelihood.UNKNOWN),
    ("garbage", Likelihood.UNKNOWN),
])
def test_likelihood_parse(value, expected):
    assert Likelihood.parse(value) == expected


def test_categorical_likely_or_above_counts():
    verdict = interpret_safe_search(SimpleNamespace(adult="POSSIBLE", racy="LIKELY", violence="VERY_LIKELY"))
    assert verdict.is_explicit
    assert verdict.is_violent
    assert verdict.confidence == 0.9


def test_categorical_possible_is_not_a_signal():
    verdict = interpret_safe_search(SimpleNamespace(adult="POSSIBLE", racy="UNLIKELY", violence="POSSIBLE"))
    assert not verdict.is_explicit
    assert not verdict.is_violent
    assert verdict.confidence == 0.5


@pytest.mark.asyncio
async def test_categorical_classify_runs_detection(frame):
    backend = CategoricalBackend(client=object())
    backend._detect = lambda content: SimpleNamespace(adult="VERY_LIKELY", racy="UNKNOWN", violence="UNLIKELY")
    verdict = await backend.classify(frame)
    assert verdict.is_explicit
    assert not verdict.is_violent


def test_select_prefers_probabilistic():
    config = Settings(sightengine_api_user="u", sightengine_api_secret="s")
    backend = select_backend(config)
    assert isinstance(backend, ProbabilisticBackend)
    assert backend.available


def test_select_categorical_when_vision_importable(monkeypatch):
    monkeypatch.setattr(registry, "vision_importable", lambda: True)
    backend = select_backend(Settings(sightengine_api_user="", sightengine_api_secret=""))
    assert isinstance(backend, CategoricalBackend)


def test_select_unavailable_when_nothing_configured(monkeypatch):
    monkeypatch.setattr(registry, "vision_importable", lambda: False)
    backend = select_backend(Settings(sightengine_api_user="", sightengine_api_secret=""))
    assert isinstance(backend, UnavailableBackend)
    assert backend.available is False
