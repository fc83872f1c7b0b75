from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from celocred import rate_limit
from celocred.rate_limit import check_rate_limit, client_ip, rate_key

from conftest import run


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def zremrangebyscore(self, key, lo, hi):
        self.ops.append(lambda: self.redis.remove_range(key, lo, hi))

    def zcard(self, key):
        self.ops.append(lambda: len(self.redis.zsets.get(key, {})))

    def zadd(self, key, mapping):
        self.ops.append(lambda: self.redis.zsets.setdefault(key, {}).update(mapping))

    def expire(self, key, seconds):
        self.ops.append(lambda: True)

    async def execute(self):
        return [op() for op in self.ops]


class FakeRedis:
    def __init__(self):
        self.zsets = {}

    def pipeline(self):
        return FakePipeline(self)

    def remove_range(self, key, lo, hi):
        members = self.zsets.get(key, {})
        for member, score in list(members.items()):
            if lo <= score <= hi:
                del members[member]

    async def zrange(self, key, start, end, withscores=False):
        items = sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1])
        return items[start:end + 1]


class BrokenRedis:
    def pipeline(self):
        raise ConnectionError("redis down")


class UnreachableRedis:
    async def ping(self):
        raise ConnectionError("connection refused")


def request(ip="203.0.113.7", forwarded=None):
    headers = {"x-forwarded-for": forwarded} if forwarded else {}
    return SimpleNamespace(headers=headers, client=SimpleNamespace(host=ip))


def test_client_ip_prefers_forwarded_header():
    assert client_ip(request(forwarded="198.51.100.1, 10.0.0.1")) == "198.51.100.1"
    assert client_ip(request()) == "203.0.113.7"


def test_rate_key_hides_the_ip():
    key = rate_key("203.0.113.7", "submit")
    assert key.startswith("celocred:rl:submit:")
    assert "203.0.113.7" not in key


def test_limit_enforced_after_max_requests():
    redis = FakeRedis()
    for _ in range(3):
        run(check_rate_limit(request(), "submit", max_requests=3, window_seconds=60, client=redis))
    with pytest.raises(HTTPException) as exc:
        run(check_rate_limit(request(), "submit", max_requests=3, window_seconds=60, client=redis))
    assert exc.value.status_code == 429
    assert "Retry-After" in exc.value.headers


def test_limit_is_per_ip():
    redis = FakeRedis()
    run(check_rate_limit(request(ip="1.1.1.1"), "submit", max_requests=1, window_seconds=60, client=redis))
    run(check_rate_limit(request(ip="2.2.2.2"), "submit", max_requests=1, window_seconds=60, client=redis))


def test_fails_open_when_redis_errors():
    run(check_rate_limit(request(), "submit", max_requests=0, window_seconds=60, client=BrokenRedis()))


def test_unreachable_redis_is_not_retried_on_every_request(monkeypatch):
    connects = []

    def from_url(url, **kwargs):
        connects.append(url)
        return UnreachableRedis()

    monkeypatch.setattr(rate_limit, "_redis", None)
    monkeypatch.setattr(rate_limit, "_down_until", 0.0)
    monkeypatch.setattr(rate_limit.aioredis, "from_url", from_url)

    for _ in range(5):
        run(check_rate_limit(request(), "submit", max_requests=0, window_seconds=60))

    assert len(connects) == 1
    assert rate_limit._down_until > 0


def test_redis_is_retried_once_the_pause_is_over(monkeypatch):
    connects = []

    def from_url(url, **kwargs):
        connects.append(url)
        return UnreachableRedis()

    monkeypatch.setattr(rate_limit, "_redis", None)
    monkeypatch.setattr(rate_limit.aioredis, "from_url", from_url)

    monkeypatch.setattr(rate_limit, "_down_until", 0.0)
    run(check_rate_limit(request(), "submit", max_requests=0, window_seconds=60))
    monkeypatch.setattr(rate_limit, "_down_until", 0.0)
    run(check_rate_limit(request(), "submit", max_requests=0, window_seconds=60))

    assert len(connects) == 2
