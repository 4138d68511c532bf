"""
Tests for ServiceResult, BaseService and the base exception.
"""

from __future__ import annotations

import logging

import pytest

from core.exceptions import BaseApplicationError, ConflictError
from core.services import BaseService, ServiceResult


class SampleService(BaseService):
    pass


class TestServiceResult:
    def test_success_is_truthy(self):
        result = ServiceResult.success({"total": 3})

        assert result
        assert result.data == {"total": 3}
        assert result.to_response() == {"success": True, "data": {"total": 3}}

    def test_failure_response_includes_error_code(self):
        result = ServiceResult.failure(
            "Another reconciliation sweep is in progress",
            error_code="RECONCILIATION_IN_PROGRESS",
        )

        assert not result
        assert result.to_response() == {
            "success": False,
            "error": "Another reconciliation sweep is in progress",
            "error_code": "RECONCILIATION_IN_PROGRESS",
        }


class TestBaseService:
    def test_logger_is_named_after_service(self):
        logger = SampleService.get_logger()

        assert isinstance(logger, logging.Logger)
        assert logger.name.endswith(".SampleService")

    @pytest.mark.django_db
    def test_atomic_rolls_back_on_error(self):
        from django.contrib.auth import get_user_model

        User = get_user_model()

        with pytest.raises(RuntimeError):
            with SampleService.atomic():
                User.objects.create(username="rolled-back")
                raise RuntimeError("boom")

        assert not User.objects.filter(username="rolled-back").exists()


class TestBaseApplicationError:
    def test_default_error_code(self):
        error = ConflictError("Pledge changed")

        assert error.error_code == "CONFLICT"
        assert str(error) == "[CONFLICT] Pledge changed"

    def test_to_dict_includes_details_when_present(self):
        error = BaseApplicationError(
            "Sweep failed",
            error_code="RECONCILIATION_ERROR",
            details={"run_id": "abc"},
        )

        assert error.to_dict() == {
            "error": "Sweep failed",
            "error_code": "RECONCILIATION_ERROR",
            "details": {"run_id": "abc"},
        }
        assert "details" not in BaseApplicationError("x").to_dict()
