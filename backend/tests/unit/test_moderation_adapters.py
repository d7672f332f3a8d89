import json

import httpx
import pytest
import pytest_asyncio

from pixguard.errors import ProviderRejected, ProviderUnavailable
from pixguard.moderation.domain.provider import ClassifierModerationProvider, NsfwScore, Verdict
from pixguard.moderation.domain.screening import ScreeningConfig
from pixguard.moderation.domain.side_effects import NotificationSubject
from pixguard.moderation.infra.blacklist_repo import RedisBlacklist
from pixguard.moderation.infra.http_provider import HttpModerationProvider
from pixguard.moderation.infra.notifications import WebhookNotifier
from pixguard.moderation.infra.storage import LocalArtifactStorage

CONFIG = ScreeningConfig(enabled=True, flag_threshold=0.8, provider_timeout_seconds=5)


class FixedClassifier:
    def __init__(self, nsfw: float, gore: float = 0.0) -> None:
        self.result = NsfwScore(nsfw=nsfw, gore=gore)
        self.mimes: list[str | None] = []

    async def score(self, payload, *, mime=None):
        self.mimes.append(mime)
        return self.result


@pytest_asyncio.fixture
async def storage(tmp_path):
    store = LocalArtifactStorage(tmp_path)
    await store.save("ref.png", b"image-bytes")
    return store


def _provider(storage, handler) -> HttpModerationProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpModerationProvider(http=client, storage=storage, endpoint="https://mod.example/v1/check", api_key="k")


@pytest.mark.asyncio
async def test_http_provider_flags_by_threshold(storage):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"score": 0.91})

    outcome = await _provider(storage, handler).moderate("img-1", "ref.png", CONFIG)

    assert outcome.success
    assert outcome.is_flagged
    assert outcome.score == pytest.approx(0.91)
    assert outcome.provider == "http"
    assert seen["auth"] == "Bearer k"


@pytest.mark.asyncio
async def test_http_provider_respects_explicit_flag(storage):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"score": 0.95, "is_flagged": False, "provider": "acme"})

    outcome = await _provider(storage, handler).moderate("img-1", "ref.png", CONFIG)

    assert not outcome.is_flagged
    assert outcome.provider == "acme"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_http_provider_server_errors_are_unavailable(storage, status_code):
    provider = _provider(storage, lambda request: httpx.Response(status_code))
    with pytest.raises(ProviderUnavailable):
        await provider.moderate("img-1", "ref.png", CONFIG)


@pytest.mark.asyncio
async def test_http_provider_client_errors_are_rejected(storage):
    provider = _provider(storage, lambda request: httpx.Response(415, json={"error": "unsupported"}))
    with pytest.raises(ProviderRejected):
        await provider.moderate("img-1", "ref.png", CONFIG)


@pytest.mark.asyncio
async def test_http_provider_connection_error_is_unavailable(storage):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderUnavailable):
        await _provider(storage, handler).moderate("img-1", "ref.png", CONFIG)


@pytest.mark.asyncio
async def test_http_provider_missing_artifact_fails_without_backoff(storage):
    provider = _provider(storage, lambda request: httpx.Response(200, json={"score": 0.1}))
    outcome = await provider.moderate("img-1", "missing.png", CONFIG)
    assert not outcome.success
    assert not outcome.unavailable


@pytest.mark.asyncio
async def test_classifier_provider_uses_highest_score(storage):
    classifier = FixedClassifier(nsfw=0.2, gore=0.85)
    provider = ClassifierModerationProvider(storage=storage, classifier=classifier)

    outcome = await provider.moderate("img-1", "ref.png", CONFIG)

    assert outcome.is_flagged
    assert outcome.score == pytest.approx(0.85)
    assert classifier.mimes == ["image/png"]


@pytest.mark.asyncio
async def test_storage_refuses_path_traversal(tmp_path):
    storage = LocalArtifactStorage(tmp_path)
    with pytest.raises(ValueError):
        await storage.save("../escape.png", b"x")


@pytest.mark.asyncio
async def test_webhook_notifier_posts_public_url():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier(http=client, url="https://hooks.example/mod", site_url="https://img.example")
    subject = NotificationSubject(id="img-1", ref="abc", filename="abc.webp")

    await notifier.notify(subject, Verdict(is_flagged=True, score=0.9, provider="acme"))

    assert captured["image"]["url"] == "https://img.example/i/abc.webp"
    assert captured["verdict"] == {"is_flagged": True, "score": 0.9, "provider": "acme"}


@pytest.mark.asyncio
async def test_webhook_notifier_raises_on_failure():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    notifier = WebhookNotifier(http=client, url="https://hooks.example/mod")
    with pytest.raises(httpx.HTTPStatusError):
        await notifier.notify(NotificationSubject(id="i", ref="r", filename="r.png"), Verdict(False, 0.0, "p"))


@pytest.mark.asyncio
async def test_redis_blacklist_round_trip(fake_redis):
    blacklist = RedisBlacklist(redis=fake_redis)
    assert not await blacklist.contains("198.51.100.4")
    await blacklist.add("198.51.100.4", "flagged image")
    await blacklist.add("198.51.100.4", "second reason ignored")
    assert await blacklist.contains("198.51.100.4")
    entry = await fake_redis.hget("blacklist:upload", "198.51.100.4")
    assert entry.endswith("flagged image")
    await blacklist.remove("198.51.100.4")
    assert not await blacklist.contains("198.51.100.4")
