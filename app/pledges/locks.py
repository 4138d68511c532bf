"""
Concurrency control for reconciliation sweeps.

Two mechanisms are used together:

1. **DistributedLock**: Redis mutual exclusion across web and Celery
   processes. Guards the sweep so a cron trigger and a manual trigger never
   reconcile the same batch at the same time. The TTL frees the lock if a
   worker dies mid-sweep.

2. **check_version**: optimistic, single-row update guard for a pledge.
   The webhook handler and the sweep both write pledge rows; the version
   column detects that the row changed since it was read.

Usage:
    from pledges.locks import DistributedLock, check_version

    with DistributedLock("pledges:reconciliation:run", ttl=900):
        run_sweep()

    with transaction.atomic():
        pledge = check_version(Pledge, pledge_id, expected_version=3)
        pledge.processor_customer_id = "cus_123"
        pledge.save()  # version becomes 4
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, TypeVar

from django.db import models, transaction

from django_redis import get_redis_connection

from core.exceptions import NotFoundError
from pledges.exceptions import LockAcquisitionError, StaleRecordError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis lock with TTL and token ownership.

    Acquisition never waits: a second sweep is refused, not queued.

    Args:
        key: Lock identifier (stored as "lock:<key>")
        ttl: Seconds before the lock expires on its own

    Raises:
        LockAcquisitionError: On acquire() when the lock is held elsewhere
    """

    # Delete only if we still own the key
    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    # Reset the TTL only if we still own the key
    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    def __init__(self, key: str, ttl: int = 30) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        """
        Acquire the lock or raise.

        Returns:
            True once the lock is held

        Raises:
            LockAcquisitionError: Lock held by another owner
        """
        self._token = str(uuid.uuid4())
        acquired = self._get_redis().set(self.key, self._token, nx=True, ex=self.ttl)
        if not acquired:
            self._token = None
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        return True

    def release(self) -> bool:
        """Release the lock if we hold it. Safe to call more than once."""
        if self._token is None:
            return False

        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, ttl: int | None = None) -> bool:
        """
        Reset the lock TTL if we hold it.

        Long sweeps call this between pledges so the lock does not expire
        while the batch is still being processed.
        """
        if self._token is None:
            return False

        result = self._get_redis().eval(
            self.EXTEND_SCRIPT, 1, self.key, self._token, ttl or self.ttl
        )
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(
    model_class: type[T],
    pk: Any,
    expected_version: int,
) -> T:
    """
    Lock a row for update, but only if its version is still the expected one.

    Args:
        model_class: Model with a 'version' field incremented on save
        pk: Primary key of the row
        expected_version: Version the caller read

    Returns:
        The row, locked with select_for_update until the transaction ends

    Raises:
        StaleRecordError: Row changed since it was read
        NotFoundError: Row does not exist

    Note:
        Call inside transaction.atomic(); the row lock is held until the
        outer transaction commits.
    """
    model_name = model_class.__name__
    with transaction.atomic():
        instance = (
            model_class.objects.select_for_update()
            .filter(pk=pk, version=expected_version)
            .first()
        )
        if instance is not None:
            return instance

        current_version = (
            model_class.objects.filter(pk=pk).values_list("version", flat=True).first()
        )
        if current_version is None:
            raise NotFoundError(
                f"{model_name} {pk} not found",
                error_code=f"{model_name.upper()}_NOT_FOUND",
                details={"pk": str(pk)},
            )

        raise StaleRecordError(
            f"{model_name} {pk} has been modified "
            f"(expected version {expected_version}, current {current_version})",
            details={
                "pk": str(pk),
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )


__all__ = [
    "DistributedLock",
    "check_version",
]
