"""Tests for the Result container."""

import pytest

from trailbook_storage.exceptions import ResultNotReadyError, ValidationError
from trailbook_storage.result import LOADING, Error, Loading, Success, safe_call


class TestResult:
    def test_success(self):
        result = Success(3)
        assert result.is_success
        assert not result.is_error and not result.is_loading
        assert result.get_or_none() == 3
        assert result.get_or_throw() == 3
        assert result.exception_or_none() is None
        assert result.map(lambda v: v * 2) == Success(6)

    def test_error_message_defaults_to_cause(self):
        cause = ValueError("bad value")
        result = Error(cause)
        assert result.is_error
        assert result.message == "bad value"
        assert result.exception_or_none() is cause
        assert result.get_or_none() is None
        with pytest.raises(ValueError):
            result.get_or_throw()

    def test_error_message_without_text(self):
        assert Error(KeyError()).message == "KeyError"

    def test_error_map_keeps_error(self):
        result = Error(ValueError("x"), "custom")
        mapped = result.map(lambda v: v + 1)
        assert mapped == result
        assert mapped.message == "custom"

    def test_loading(self):
        assert LOADING == Loading()
        assert LOADING.is_loading
        assert LOADING.get_or_none() is None
        assert LOADING.map(str) is LOADING
        with pytest.raises(ResultNotReadyError):
            LOADING.get_or_throw()

    def test_callbacks_fire_for_matching_variant_only(self):
        seen = []
        Success(1).on_success(seen.append).on_error(seen.append).on_loading(lambda: seen.append("l"))
        cause = ValueError("e")
        Error(cause).on_success(seen.append).on_error(seen.append)
        LOADING.on_success(seen.append).on_loading(lambda: seen.append("l"))
        assert seen == [1, cause, "l"]


class TestSafeCall:
    @pytest.mark.asyncio
    async def test_wraps_value(self):
        async def double(value):
            return value * 2

        assert await safe_call(double, 4) == Success(8)

    @pytest.mark.asyncio
    async def test_wraps_exception(self):
        async def fail():
            raise ValidationError("name", "must not be blank")

        result = await safe_call(fail)
        assert isinstance(result, Error)
        assert isinstance(result.cause, ValidationError)
        assert "name" in result.message
