"""Tests for the AdmissionController facade."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest
from prometheus_client import CollectorRegistry
from redis.exceptions import ConnectionError as RedisConnectionError

from distributed_rate_limiter import (
    AdmissionController,
    AdmissionMetrics,
    Allowed,
    BackendConnectionError,
    Denied,
    KeyBuilder,
    LockContentionError,
    LockManagerUnavailableError,
    Redlock,
    Reservation,
    ServiceUnavailableError,
    Settings,
    TooManyRequestsError,
    Unavailable,
    UnavailableReason,
    http_status,
    run_admission_check,
)

USER_ID = "user-1"


def _redlock(redis):
    return Redlock([redis], retry_count=0, retry_delay_ms=1, retry_jitter_ms=0)


def _released_lock():
    lock = Mock()
    lock.expired = False
    lock.release = AsyncMock(return_value=None)
    return lock


@pytest.fixture
def controller(redis, clock, metrics):
    return AdmissionController(redis, _redlock(redis), clock=clock, metrics=metrics)


class TestCheckTokenBucket:
    @pytest.mark.asyncio
    async def test_allowed_then_denied(self, controller, bucket_config):
        for _ in range(100):
            result = await controller.check_token_bucket(USER_ID, bucket_config)
            assert isinstance(result, Allowed)

        result = await controller.check_token_bucket(USER_ID, bucket_config)

        assert isinstance(result, Denied)
        assert result.detail.tokens_left == 0
        assert http_status(result) == 429

    @pytest.mark.asyncio
    async def test_state_written_under_prefixed_key(self, redis, clock, bucket_config):
        controller = AdmissionController(
            redis, _redlock(redis), key_builder=KeyBuilder("rl:v9"), clock=clock
        )

        await controller.check_token_bucket(USER_ID, bucket_config)

        assert await redis.exists("rl:v9:bucket:service:test:user-1") == 1
        # Lock released after the critical section
        assert await redis.exists("rl:v9:bucket:service:test:user-1:lock") == 0

    @pytest.mark.asyncio
    async def test_users_are_independent(self, controller, bucket_config):
        for _ in range(100):
            await controller.check_token_bucket("a", bucket_config)

        assert isinstance(await controller.check_token_bucket("a", bucket_config), Denied)
        assert isinstance(await controller.check_token_bucket("b", bucket_config), Allowed)

    @pytest.mark.asyncio
    async def test_refill_uses_injected_clock(self, controller, clock, bucket_config):
        for _ in range(100):
            await controller.check_token_bucket(USER_ID, bucket_config)
        assert isinstance(await controller.check_token_bucket(USER_ID, bucket_config), Denied)

        clock.advance(1000)

        assert isinstance(await controller.check_token_bucket(USER_ID, bucket_config), Allowed)


class TestUnavailable:
    """Infrastructure failures become Unavailable, never Denied."""

    @pytest.mark.asyncio
    async def test_lock_contention_skips_critical_section(self, bucket_config):
        """A contended lock yields Unavailable and leaves state untouched."""
        redis = MagicMock()
        lock_manager = Mock()
        lock_manager.acquire = AsyncMock(side_effect=LockContentionError("held"))
        controller = AdmissionController(redis, lock_manager)

        result = await controller.check_token_bucket(USER_ID, bucket_config)

        assert isinstance(result, Unavailable)
        assert result.reason is UnavailableReason.LOCK_CONTENTION
        assert isinstance(result.error, LockContentionError)
        assert http_status(result) == 503
        assert redis.method_calls == []

    @pytest.mark.asyncio
    async def test_contention_against_real_lock(self, redis, clock, bucket_config):
        controller = AdmissionController(redis, _redlock(redis), clock=clock)
        lock_key = KeyBuilder().bucket_lock_key("service", "test", USER_ID)
        await redis.set(lock_key, "another-instance", px=5000)

        result = await controller.check_token_bucket(USER_ID, bucket_config)

        assert isinstance(result, Unavailable)
        assert result.reason is UnavailableReason.LOCK_CONTENTION
        state_key = KeyBuilder().bucket_state_key("service", "test", USER_ID)
        assert await redis.exists(state_key) == 0

    @pytest.mark.asyncio
    async def test_lock_manager_unavailable(self, usage_config):
        lock_manager = Mock()
        lock_manager.acquire = AsyncMock(side_effect=LockManagerUnavailableError("down"))
        controller = AdmissionController(MagicMock(), lock_manager)

        result = await controller.reserve_token_usage(USER_ID, usage_config)

        assert isinstance(result, Unavailable)
        assert result.reason is UnavailableReason.LOCK_MANAGER_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_store_error(self, bucket_config, caplog):
        redis = MagicMock()
        redis.hgetall = AsyncMock(side_effect=RedisConnectionError("down"))
        lock = _released_lock()
        lock_manager = Mock()
        lock_manager.acquire = AsyncMock(return_value=lock)
        controller = AdmissionController(redis, lock_manager)

        with caplog.at_level(logging.DEBUG):
            result = await controller.check_token_bucket(USER_ID, bucket_config)

        assert isinstance(result, Unavailable)
        assert result.reason is UnavailableReason.STORE_ERROR
        lock.release.assert_awaited_once()
        # Logged once, by the controller
        errors = [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert len(errors) == 1
        assert errors[0].name == "distributed_rate_limiter.admission"

    @pytest.mark.asyncio
    async def test_unexpected_error_logged_with_traceback(self, bucket_config, caplog):
        redis = MagicMock()
        redis.hgetall = AsyncMock(side_effect=RuntimeError("surprise"))
        lock_manager = Mock()
        lock_manager.acquire = AsyncMock(return_value=_released_lock())
        controller = AdmissionController(redis, lock_manager)

        with caplog.at_level(logging.ERROR):
            result = await controller.check_token_bucket(USER_ID, bucket_config)

        assert isinstance(result, Unavailable)
        assert result.reason is UnavailableReason.UNKNOWN
        assert any(
            r.exc_info and "Unexpected error during rate limit check" in r.getMessage()
            for r in caplog.records
        )
        assert len([r for r in caplog.records if r.levelno >= logging.ERROR]) == 1

    @pytest.mark.asyncio
    async def test_unavailable_raise_for_status(self, bucket_config):
        lock_manager = Mock()
        lock_manager.acquire = AsyncMock(side_effect=LockContentionError("held"))
        controller = AdmissionController(MagicMock(), lock_manager)

        with pytest.raises(ServiceUnavailableError):
            await run_admission_check(
                lambda: controller.check_token_bucket(USER_ID, bucket_config)
            )


class TestTokenUsage:
    @pytest.mark.asyncio
    async def test_reserve_and_reconcile(self, controller, redis, usage_config):
        result = await controller.reserve_token_usage(USER_ID, usage_config)
        assert isinstance(result, Allowed)
        reservation = result.detail.reservation

        await controller.reconcile_token_usage(USER_ID, 60, reservation, usage_config)

        key = KeyBuilder().usage_state_key("service", "test", USER_ID)
        assert await redis.hget(key, "tokensUsed") == "60"

    @pytest.mark.asyncio
    async def test_alias(self, controller, usage_config):
        result = await controller.check_and_reserve_token_usage(USER_ID, usage_config)
        assert isinstance(result, Allowed)

    @pytest.mark.asyncio
    async def test_denied_raises_too_many_requests(self, controller, usage_config):
        for _ in range(10):
            await controller.reserve_token_usage(USER_ID, usage_config)

        with pytest.raises(TooManyRequestsError):
            await run_admission_check(
                lambda: controller.reserve_token_usage(USER_ID, usage_config)
            )

    @pytest.mark.asyncio
    async def test_run_admission_check_returns_detail(self, controller, usage_config):
        decision = await run_admission_check(
            lambda: controller.reserve_token_usage(USER_ID, usage_config)
        )
        assert decision.tokens_reserved == 100

    @pytest.mark.asyncio
    async def test_reconcile_swallows_infrastructure_errors(self, usage_config, caplog):
        lock_manager = Mock()
        lock_manager.acquire = AsyncMock(side_effect=LockContentionError("held"))
        controller = AdmissionController(MagicMock(), lock_manager)
        reservation = Reservation(tokens_reserved=100, window_start_timestamp=0)

        with caplog.at_level(logging.ERROR):
            await controller.reconcile_token_usage(USER_ID, 60, reservation, usage_config)

        assert "Failed to update token usage for user user-1" in caplog.text

    @pytest.mark.asyncio
    async def test_reconcile_rejects_negative_actual(self, controller, usage_config):
        reservation = Reservation(tokens_reserved=100, window_start_timestamp=0)
        with pytest.raises(ValueError):
            await controller.reconcile_token_usage(USER_ID, -1, reservation, usage_config)


class TestSharedTriple:
    """Rate and cost limits on one (service, limiter, user) triple."""

    @pytest.mark.asyncio
    async def test_bucket_and_usage_state_use_separate_keys(
        self, controller, redis, bucket_config, usage_config
    ):
        assert bucket_config.limiter_name == usage_config.limiter_name
        keys = KeyBuilder()
        bucket_key = keys.bucket_state_key("service", "test", USER_ID)
        usage_key = keys.usage_state_key("service", "test", USER_ID)
        assert bucket_key != usage_key

        await controller.reserve_token_usage(USER_ID, usage_config)
        await controller.check_token_bucket(USER_ID, bucket_config)

        assert set(await redis.hgetall(bucket_key)) == {"tokens", "last"}
        assert set(await redis.hgetall(usage_key)) == {"tokensUsed", "windowStartTimestamp"}

    @pytest.mark.asyncio
    async def test_bucket_check_keeps_usage_ttl_to_window_end(
        self, controller, redis, clock, bucket_config, usage_config
    ):
        window_ms = usage_config.window_size_seconds * 1000
        window_end_ttl = (window_ms - clock.now_ms % window_ms) // 1000
        for _ in range(9):
            await controller.reserve_token_usage(USER_ID, usage_config)

        await controller.check_token_bucket(USER_ID, bucket_config)

        usage_key = KeyBuilder().usage_state_key("service", "test", USER_ID)
        bucket_key = KeyBuilder().bucket_state_key("service", "test", USER_ID)
        assert await redis.ttl(usage_key) >= window_end_ttl - 1
        assert await redis.ttl(bucket_key) <= bucket_config.bucket_ttl_seconds

    @pytest.mark.asyncio
    async def test_exhausting_one_limit_leaves_the_other(
        self, controller, bucket_config, usage_config
    ):
        for _ in range(10):
            await controller.reserve_token_usage(USER_ID, usage_config)
        assert isinstance(
            await controller.reserve_token_usage(USER_ID, usage_config), Denied
        )

        result = await controller.check_token_bucket(USER_ID, bucket_config)

        assert isinstance(result, Allowed)
        assert result.detail.tokens_left == bucket_config.bucket_size - 1


class TestScheduleReconcile:
    @pytest.mark.asyncio
    async def test_pending_count_tracks_scheduled_tasks(self, controller, usage_config):
        result = await controller.reserve_token_usage(USER_ID, usage_config)
        reservation = result.detail.reservation

        first = controller.schedule_reconcile(USER_ID, 10, reservation, usage_config)
        second = controller.schedule_reconcile(USER_ID, 10, reservation, usage_config)
        assert controller.pending_reconciliations == 2

        await asyncio.gather(first, second)

        assert controller.pending_reconciliations == 0

    @pytest.mark.asyncio
    async def test_runs_in_background(self, controller, redis, usage_config):
        result = await controller.reserve_token_usage(USER_ID, usage_config)

        task = controller.schedule_reconcile(
            USER_ID, 0, result.detail.reservation, usage_config
        )
        assert isinstance(task, asyncio.Task)
        await task

        key = KeyBuilder().usage_state_key("service", "test", USER_ID)
        assert await redis.hget(key, "tokensUsed") == "0"
        assert controller.pending_reconciliations == 0

    @pytest.mark.asyncio
    async def test_aclose_waits_for_pending(self, controller, redis, usage_config):
        result = await controller.reserve_token_usage(USER_ID, usage_config)
        controller.schedule_reconcile(USER_ID, 30, result.detail.reservation, usage_config)

        await controller.aclose()

        key = KeyBuilder().usage_state_key("service", "test", USER_ID)
        assert await redis.hget(key, "tokensUsed") == "30"

    @pytest.mark.asyncio
    async def test_rejected_after_close(self, controller, usage_config):
        await controller.aclose()
        reservation = Reservation(tokens_reserved=1, window_start_timestamp=0)

        with pytest.raises(RuntimeError):
            controller.schedule_reconcile(USER_ID, 1, reservation, usage_config)


class TestMetrics:
    @pytest.mark.asyncio
    async def test_records_decisions(self, redis, clock, bucket_config):
        registry = CollectorRegistry()
        controller = AdmissionController(
            redis, _redlock(redis), clock=clock, metrics=AdmissionMetrics(registry)
        )

        for _ in range(101):
            await controller.check_token_bucket(USER_ID, bucket_config)

        labels = {"service": "service", "limiter": "test", "algorithm": "token_bucket"}
        assert (
            registry.get_sample_value(
                "distributed_rl_admission_decisions_total", {**labels, "decision": "allowed"}
            )
            == 100.0
        )
        assert (
            registry.get_sample_value(
                "distributed_rl_admission_decisions_total", {**labels, "decision": "denied"}
            )
            == 1.0
        )

    @pytest.mark.asyncio
    async def test_records_reconciliations(self, redis, clock, usage_config):
        registry = CollectorRegistry()
        controller = AdmissionController(
            redis, _redlock(redis), clock=clock, metrics=AdmissionMetrics(registry)
        )
        result = await controller.reserve_token_usage(USER_ID, usage_config)

        await controller.reconcile_token_usage(
            USER_ID, 40, result.detail.reservation, usage_config
        )

        assert (
            registry.get_sample_value(
                "distributed_rl_reconciliations_total",
                {"service": "service", "limiter": "test", "result": "released"},
            )
            == 1.0
        )


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_from_settings_owns_and_closes_clients(self, redis_nodes):
        state, lock_b = redis_nodes(2)
        settings = Settings(
            redis_url="redis://state:6379",
            lock_redis_urls=["redis://state:6379", "redis://lock-b:6379"],
        )
        clients = {"redis://state:6379": state, "redis://lock-b:6379": lock_b}

        with (
            patch(
                "distributed_rate_limiter.admission.create_redis_client",
                side_effect=lambda url, timeout_ms: clients[url],
            ),
            patch(
                "distributed_rate_limiter.admission.close_redis_client",
                new_callable=AsyncMock,
            ) as close_client,
        ):
            async with await AdmissionController.from_settings(settings) as controller:
                assert controller._redis is state
            close_client.assert_any_await(state)
            close_client.assert_any_await(lock_b)
            assert close_client.await_count == 2

    @pytest.mark.asyncio
    async def test_from_settings_closes_clients_on_connect_failure(self):
        settings = Settings(redis_url="redis://state:6379")
        client = Mock()

        with (
            patch(
                "distributed_rate_limiter.admission.create_redis_client",
                return_value=client,
            ),
            patch(
                "distributed_rate_limiter.admission.connect_redis_client",
                new_callable=AsyncMock,
                side_effect=BackendConnectionError("not ready"),
            ),
            patch(
                "distributed_rate_limiter.admission.close_redis_client",
                new_callable=AsyncMock,
            ) as close_client,
        ):
            with pytest.raises(BackendConnectionError):
                await AdmissionController.from_settings(settings)

        close_client.assert_awaited_once_with(client)

    @pytest.mark.asyncio
    async def test_aclose_is_idempotent(self, controller):
        await controller.aclose()
        await controller.aclose()
