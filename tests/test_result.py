import pytest

from inbox_triage.services.result import Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("value")
        assert result.ok is True
        assert result.value == "value"
        assert result.error is None
        assert result.error_code is None


class TestResultFailure:
    def test_failure_keeps_message_and_code(self):
        result = Result.failure("bad confidence", "invalid_confidence")
        assert result.ok is False
        assert result.value is None
        assert result.error == "bad confidence"
        assert result.error_code == "invalid_confidence"

    def test_failure_default_code(self):
        assert Result.failure("oops").error_code == "unknown"


class TestResultUnwrap:
    def test_unwrap_or(self):
        assert Result.success(3).unwrap_or(0) == 3
        assert Result.failure("nope").unwrap_or(0) == 0

    def test_unwrap_or_raise_returns_value(self):
        assert Result.success("ok").unwrap_or_raise(ValueError) == "ok"

    def test_unwrap_or_raise_formats_code_and_error(self):
        with pytest.raises(ValueError, match="^invalid_json: not valid JSON$"):
            Result.failure("not valid JSON", "invalid_json").unwrap_or_raise(ValueError)

    def test_result_is_immutable(self):
        result = Result.success(1)
        with pytest.raises(AttributeError):
            result.ok = False
