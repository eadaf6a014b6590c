"""Tests for audit logging, fixed-window rate limiting and auth metrics."""

import threading
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tenantauth.service.audit import LOGIN_FAILED_ACTION, AuditLogger
from tenantauth.service.rate_limit import AuthRateLimiter, FixedWindowLimiter, RatePolicy
from tenantauth.storage.models import AuditLogEntry, utcnow
from tenantauth.storage.redis_cache import RedisCache


class FakeAsyncRedis:
    """Runs the window script against dicts; ``elapse`` drops keys whose TTL ran out."""

    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.failures = 0

    def register_script(self, script):
        assert "INCR" in script and "EXPIRE" in script

        async def _run(keys, args):
            if self.failures:
                self.failures -= 1
                raise RedisConnectionError("redis down")
            key, window = keys[0], int(args[0])
            self.values[key] = self.values.get(key, 0) + 1
            if key not in self.ttls:
                self.ttls[key] = window
            return [self.values[key], self.ttls[key]]

        return _run

    def elapse(self):
        for key in list(self.ttls):
            del self.ttls[key]
            self.values.pop(key, None)


class BrokenCache:
    async def incr_window(self, key, window_seconds):
        raise RedisConnectionError("redis down")


def _fake_cache():
    cache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://fake"
    cache.client = FakeAsyncRedis()
    cache._incr_window = cache.client.register_script(RedisCache._INCR_WINDOW_SCRIPT)
    return cache


class TestAuditLogger:
    def test_write_failure_is_swallowed(self, memory_store, monkeypatch):
        def _fail(entry):
            raise RuntimeError("insert failed")

        monkeypatch.setattr(memory_store, "insert_audit_log", _fail)
        AuditLogger(memory_store).log("user.login", user_id="u1")

    def test_query_filters(self, memory_store):
        audit = AuditLogger(memory_store)
        audit.log("user.login", tenant_id="t1", user_id="u1")
        audit.log("user.logout", tenant_id="t1", user_id="u1")
        audit.log("user.login", tenant_id="t1", user_id="u2")
        audit.log("user.login", tenant_id="t2", user_id="u3")

        assert len(audit.query_by_tenant("t1")) == 3
        assert [e.user_id for e in audit.query_by_tenant("t1", action="user.login")] == ["u2", "u1"]
        assert [e.action for e in audit.query_by_user("u1")] == ["user.logout", "user.login"]
        assert len(audit.query_by_tenant("t1", limit=1, offset=1)) == 1

    def test_failed_login_attempts_window(self, memory_store):
        audit = AuditLogger(memory_store)
        for _ in range(3):
            audit.log(LOGIN_FAILED_ACTION, ip_address="192.0.2.1", status="failure")
        audit.log(LOGIN_FAILED_ACTION, ip_address="192.0.2.2", status="failure")
        memory_store.insert_audit_log(
            AuditLogEntry(
                action=LOGIN_FAILED_ACTION,
                ip_address="192.0.2.1",
                created_at=utcnow() - timedelta(minutes=30),
            )
        )

        assert audit.failed_login_attempts("192.0.2.1") == 3
        assert audit.failed_login_attempts("192.0.2.1", minutes=60) == 4
        assert audit.failed_login_attempts("192.0.2.9") == 0


class TestFixedWindowLimiter:
    async def test_local_counters(self):
        limiter = FixedWindowLimiter(None)
        policy = RatePolicy("login", 2, 60)

        first = await limiter.hit(policy, "ip-1")
        second = await limiter.hit(policy, "ip-1")
        third = await limiter.hit(policy, "ip-1")
        other = await limiter.hit(policy, "ip-2")

        assert (first.allowed, first.remaining) == (True, 1)
        assert (second.allowed, second.remaining) == (True, 0)
        assert third.allowed is False
        assert 0 < third.reset_seconds <= 60
        assert other.allowed is True

    async def test_redis_counters(self):
        cache = _fake_cache()
        limiter = FixedWindowLimiter(cache)
        policy = RatePolicy("register", 1, 3600)

        assert (await limiter.hit(policy, "ip")).allowed is True
        decision = await limiter.hit(policy, "ip")

        assert decision.allowed is False
        assert decision.reset_seconds == 3600
        assert cache.client.values == {"rate:register:ip": 2}

    async def test_redis_error_fails_open(self):
        limiter = FixedWindowLimiter(BrokenCache())
        decision = await limiter.hit(RatePolicy("login", 5, 60), "ip")
        assert decision.allowed is True
        assert decision.remaining == 5

    async def test_failed_call_does_not_pin_counter(self):
        cache = _fake_cache()
        limiter = FixedWindowLimiter(cache)
        policy = RatePolicy("login", 2, 900)
        cache.client.failures = 1

        allowed = [(await limiter.hit(policy, "ip")).allowed for _ in range(4)]
        assert allowed == [True, True, True, False]
        assert cache.client.ttls == {"rate:login:ip": 900}

        cache.client.elapse()
        assert (await limiter.hit(policy, "ip")).allowed is True

    async def test_local_counters_swept_after_window(self, monkeypatch):
        clock = [1000.0]
        monkeypatch.setattr("tenantauth.service.rate_limit.time.monotonic", lambda: clock[0])
        limiter = FixedWindowLimiter(None)
        policy = RatePolicy("login", 5, 30)

        for ip in ("ip-1", "ip-2", "ip-3"):
            await limiter.hit(policy, ip)
        assert len(limiter._local) == 3

        clock[0] += 120
        await limiter.hit(policy, "ip-4")
        assert list(limiter._local) == ["rate:login:ip-4"]

    async def test_auth_policies_are_independent(self):
        limits = AuthRateLimiter(
            FixedWindowLimiter(None),
            login=RatePolicy("login", 1, 60),
            password_reset=RatePolicy("password-reset", 1, 60),
        )
        assert (await limits.check_login("ip")).allowed is True
        assert (await limits.check_login("ip")).allowed is False
        assert (await limits.check_password_reset("ip")).allowed is True
        assert (await limits.check_registration("ip")).allowed is True
        assert (await limits.check_email_verification("user-1")).limit == 5


class TestRedisCache:
    async def test_window_ttl_set_once(self):
        cache = _fake_cache()

        assert await cache.incr_window("rate:login:ip", 900) == (1, 900)
        assert await cache.incr_window("rate:login:ip", 900) == (2, 900)
        assert cache.client.ttls == {"rate:login:ip": 900}

    async def test_key_without_ttl_gets_one(self):
        cache = _fake_cache()
        cache.client.values["rate:login:ip"] = 7

        count, ttl = await cache.incr_window("rate:login:ip", 900)

        assert (count, ttl) == (8, 900)
        assert cache.client.ttls == {"rate:login:ip": 900}

    def test_script_sets_missing_ttl(self):
        script = RedisCache._INCR_WINDOW_SCRIPT
        assert "redis.call('INCR', KEYS[1])" in script
        assert "if ttl < 0 then" in script


class TestAuthMetrics:
    def test_render_includes_every_series(self, metrics):
        metrics.record_registration("email")
        metrics.record_login("email", False)
        metrics.record_failed_login("invalid_password")
        metrics.observe_login_duration(0.25)

        text = "\n".join(metrics.render())

        assert 'auth_registrations_total{method="email"} 1' in text
        assert 'auth_logins_total{method="email",status="failure"} 1' in text
        assert 'auth_failed_logins_total{reason="invalid_password"} 1' in text
        assert "auth_password_resets_total 0" in text
        assert "# TYPE auth_sessions_created_total counter" in text
        assert "auth_login_duration_seconds_count 1" in text

    def test_login_duration_totals_only_grow(self, metrics):
        for _ in range(1500):
            metrics.observe_login_duration(0.5)
        first = metrics.render()
        metrics.observe_login_duration(0.25)
        second = metrics.render()

        assert "auth_login_duration_seconds_count 1500" in first
        assert "auth_login_duration_seconds_sum 750.000000" in first
        assert "auth_login_duration_seconds_count 1501" in second
        assert "auth_login_duration_seconds_sum 750.250000" in second

    def test_zero_revocations_not_recorded(self, metrics):
        metrics.record_sessions_revoked("logout_all", 0)
        assert metrics.value("auth_sessions_revoked_total", reason="logout_all") == 0

    def test_concurrent_increments(self, metrics):
        def _work():
            for _ in range(500):
                metrics.record_session_created()

        threads = [threading.Thread(target=_work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert metrics.value("auth_sessions_created_total") == pytest.approx(4000)
