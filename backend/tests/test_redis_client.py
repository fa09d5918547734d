from datetime import date

import redis

from redis_client import RedisClient


class FakeRedis:
    def __init__(self, fail=False):
        self.data = {}
        self.ttl = {}
        self.fail = fail

    def ping(self):
        if self.fail:
            raise redis.ConnectionError("down")
        return True

    def exists(self, key):
        return int(key in self.data)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = int(value)
        self.ttl[key] = ex
        return True

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttl[key] = ttl

    def incr(self, key):
        self.data[key] = int(self.data.get(key, 0)) + 1
        return self.data[key]

    def expire(self, key, window):
        self.ttl[key] = window


def test_sequence_key():
    assert RedisClient.sequence_key("rest-1", date(2024, 5, 1)) == "order_seq:rest-1:240501"


def test_sequence_is_seeded_once():
    fake = FakeRedis()
    client = RedisClient(client=fake)
    day = date(2024, 5, 1)
    seeds = []

    def seed():
        seeds.append(1)
        return 4

    assert client.next_order_sequence("rest-1", day, seed) == 5
    assert client.next_order_sequence("rest-1", day, seed) == 6
    assert len(seeds) == 1
    assert fake.ttl["order_seq:rest-1:240501"] > 24 * 3600


def test_unavailable_redis_returns_none():
    client = RedisClient(client=FakeRedis(fail=True))
    assert client.next_order_sequence("rest-1", date(2024, 5, 1), lambda: 0) is None
    assert client.revoke_token("abc", 60) is False
    assert client.is_token_revoked("abc") is False
    assert client.check_rate_limit("k", 1, 60) == (True, 1)


def test_revoked_tokens():
    client = RedisClient(client=FakeRedis())
    assert client.is_token_revoked("abc") is False
    assert client.revoke_token("abc", 60) is True
    assert client.is_token_revoked("abc") is True
    assert client.is_token_revoked(None) is False


def test_expired_token_is_not_stored():
    client = RedisClient(client=FakeRedis())
    assert client.revoke_token("abc", 0) is False


def test_rate_limit_window():
    fake = FakeRedis()
    client = RedisClient(client=fake)
    assert client.check_rate_limit("login:1.2.3.4", max_requests=2, window=60) == (True, 1)
    assert client.check_rate_limit("login:1.2.3.4", max_requests=2, window=60) == (True, 0)
    assert client.check_rate_limit("login:1.2.3.4", max_requests=2, window=60) == (False, 0)
    assert fake.ttl["login:1.2.3.4"] == 60
