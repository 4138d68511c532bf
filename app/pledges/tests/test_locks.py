"""
Tests for concurrency utilities.

Tests the DistributedLock class (Redis mutual exclusion for sweeps) and
check_version (optimistic row guard for pledges).
"""

import pytest
from django.db import transaction

from core.exceptions import NotFoundError
from pledges.exceptions import LockAcquisitionError, StaleRecordError
from pledges.locks import DistributedLock, check_version
from pledges.models import Pledge
from pledges.tests.factories import PledgeFactory


class TestDistributedLock:
    """Tests for DistributedLock class."""

    def test_acquire_success(self, mock_redis):
        lock = DistributedLock("test:key", ttl=30)

        assert lock.acquire() is True
        assert lock.is_held is True
        call_args = mock_redis.set.call_args
        assert call_args[0][0] == "lock:test:key"
        assert call_args[1]["nx"] is True
        assert call_args[1]["ex"] == 30

    def test_acquire_raises_when_held(self, mock_redis):
        mock_redis.set.return_value = False

        lock = DistributedLock("test:key", ttl=30)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert "already held" in str(exc_info.value)
        assert exc_info.value.details["key"] == "lock:test:key"
        assert lock.is_held is False

    def test_acquire_does_not_retry(self, mock_redis):
        mock_redis.set.return_value = False

        lock = DistributedLock("test:key")

        with pytest.raises(LockAcquisitionError):
            lock.acquire()

        assert mock_redis.set.call_count == 1

    def test_release(self, mock_redis):
        lock = DistributedLock("test:key")
        lock.acquire()

        assert lock.release() is True
        assert lock.is_held is False
        mock_redis.eval.assert_called_once()

    def test_release_without_acquire_returns_false(self, mock_redis):
        lock = DistributedLock("test:key")

        assert lock.release() is False
        mock_redis.eval.assert_not_called()

    def test_extend_resets_ttl_while_held(self, mock_redis):
        lock = DistributedLock("test:key", ttl=60)
        lock.acquire()

        assert lock.extend() is True
        args = mock_redis.eval.call_args[0]
        assert args[0] == DistributedLock.EXTEND_SCRIPT
        assert args[2] == "lock:test:key"
        assert args[4] == 60

    def test_extend_without_lock_returns_false(self, mock_redis):
        lock = DistributedLock("test:key")

        assert lock.extend() is False

    def test_context_manager_releases_on_error(self, mock_redis):
        with pytest.raises(RuntimeError):
            with DistributedLock("test:key") as lock:
                assert lock.is_held
                raise RuntimeError("boom")

        assert lock.is_held is False
        mock_redis.eval.assert_called_once()


class TestCheckVersion:
    """Tests for the optimistic version guard."""

    def test_returns_row_at_expected_version(self, db):
        pledge = PledgeFactory()

        with transaction.atomic():
            locked = check_version(Pledge, pledge.pk, expected_version=1)

        assert locked.pk == pledge.pk

    def test_stale_version_raises(self, db):
        pledge = PledgeFactory()
        pledge.payer_name = "Changed by webhook"
        pledge.save()

        with pytest.raises(StaleRecordError) as exc_info:
            check_version(Pledge, pledge.pk, expected_version=1)

        assert exc_info.value.details["current_version"] == 2

    def test_missing_row_raises_not_found(self, db):
        pledge = PledgeFactory.build()

        with pytest.raises(NotFoundError):
            check_version(Pledge, pledge.pk, expected_version=1)
