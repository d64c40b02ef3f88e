import types

from src.tutorcore.infrastructure import events


def _use_redis(monkeypatch, *, url=None, redis_module=None):
    monkeypatch.delenv("REDIS_URL", raising=False)
    if url is not None:
        monkeypatch.setenv("REDIS_URL", url)
    if redis_module is None:
        redis_module = types.SimpleNamespace(Redis=types.SimpleNamespace(from_url=lambda *args, **kwargs: None))
    monkeypatch.setattr(events, "redis", redis_module)
    monkeypatch.setattr(events, "_publisher", None)
    return events


def test_publish_event_no_url_returns_quietly(monkeypatch):
    module = _use_redis(monkeypatch)
    assert module._get_publisher() is None
    module.publish_event("chat.completed", {"conversation_id": "c1"})


class FakeRedisClient:
    attempt = 0
    published = []
    publish_should_fail = False

    def ping(self):
        if FakeRedisClient.attempt == 0:
            FakeRedisClient.attempt += 1
            raise Exception("connect failed")

    def publish(self, channel, payload):
        FakeRedisClient.published.append((channel, payload))
        if FakeRedisClient.publish_should_fail:
            FakeRedisClient.publish_should_fail = False
            raise Exception("publish failed")


def test_redis_publisher_recovers_after_connection_failure(monkeypatch):
    FakeRedisClient.attempt = 0
    FakeRedisClient.published = []
    FakeRedisClient.publish_should_fail = False

    def from_url(url, socket_timeout=0.5):
        return FakeRedisClient()

    redis_module = types.SimpleNamespace(Redis=types.SimpleNamespace(from_url=staticmethod(from_url)))

    module = _use_redis(monkeypatch, url="redis://localhost", redis_module=redis_module)
    publisher = module._get_publisher()
    assert publisher is not None

    module.publish_event("curriculum.created", {"curriculum_id": "abc"})
    assert FakeRedisClient.attempt == 1  # first ping failed once
    channel, payload = FakeRedisClient.published[-1]
    assert channel == "tutor.events.curriculum.created"
    assert payload == '{"curriculum_id": "abc"}'

    FakeRedisClient.publish_should_fail = True
    module.publish_event("chat.completed", {"conversation_id": "c1"})  # publish error is swallowed
    assert module._get_publisher() is publisher
