"""Tests for error classification and serialization."""

from apporchestra.errors import (
    ApporchestraError,
    BadArgument,
    Cancelled,
    CompoundError,
    NoMachineAvailable,
    PermanentError,
    PhaseTimeout,
    ProviderError,
    ScriptFailed,
    TransientError,
    TransientProviderError,
    error_to_dict,
)


class TestErrorHierarchy:
    """Retry classification follows the class hierarchy."""

    def test_permanent_errors(self):
        for error in (BadArgument("x"), ScriptFailed("s", 1), PhaseTimeout("launch", 5)):
            assert isinstance(error, PermanentError)
            assert not isinstance(error, TransientError)

    def test_provider_errors(self):
        assert isinstance(NoMachineAvailable("none left"), ProviderError)
        assert isinstance(TransientProviderError("try later"), TransientError)

    def test_cancelled_is_neither(self):
        error = Cancelled()
        assert isinstance(error, ApporchestraError)
        assert not isinstance(error, (PermanentError, TransientError))


class TestErrorToDict:
    """Tests for JSON-safe error rendering."""

    def test_basic(self):
        assert error_to_dict(BadArgument("bad port")) == {
            "type": "BadArgument",
            "message": "bad port",
        }

    def test_script_failed(self):
        result = error_to_dict(ScriptFailed("install", 7, stderr="apt-get: not found\n"))

        assert result["type"] == "ScriptFailed"
        assert result["exitCode"] == 7
        assert result["script"] == "install"
        assert "apt-get: not found" in result["message"]

    def test_timeout(self):
        result = error_to_dict(PhaseTimeout("readiness", 120))

        assert result["type"] == "Timeout"
        assert "120s" in result["message"]

    def test_foreign_exception_with_phase(self):
        result = error_to_dict(ValueError("boom"), phase="launch")

        assert result == {"type": "ValueError", "message": "boom", "phase": "launch"}

    def test_compound(self):
        error = CompoundError("Stop failed", [ScriptFailed("stop", 1), BadArgument("x")])
        result = error.to_dict()

        assert result["type"] == "CompoundError"
        assert "2 failure(s)" in result["message"]
        assert [e["type"] for e in result["errors"]] == ["ScriptFailed", "BadArgument"]
