"""Tests for statespine.core.errors module."""

import pytest

from statespine.core.errors import (
    ConfigError,
    ErrorCategory,
    ErrorContext,
    ProvideError,
    ReentrantConstructionError,
    StateSpineError,
    UncacheableInstanceError,
    UnknownInstanceError,
    WatcherCallbackError,
)


class TestErrorCategory:
    """Test ErrorCategory enum."""

    def test_all_categories_defined(self):
        """Verify all standard categories are available."""
        assert {category.value for category in ErrorCategory} == {
            "OBSERVE",
            "DISPATCH",
            "PROVIDE",
            "CONFIG",
            "INTERNAL",
        }

    def test_category_is_str(self):
        assert ErrorCategory.PROVIDE == "PROVIDE"


class TestErrorContext:
    """Test ErrorContext dataclass."""

    def test_create_empty_context(self):
        """Create context with no fields set."""
        ctx = ErrorContext()
        assert ctx.constructor is None
        assert ctx.path is None
        assert ctx.metadata == {}
        assert ctx.to_dict() == {}

    def test_to_dict_skips_unset_fields(self):
        ctx = ErrorContext(constructor="Model", path=("child", "value"), metadata={"extra": 1})
        assert ctx.to_dict() == {
            "constructor": "Model",
            "path": ("child", "value"),
            "extra": 1,
        }


class TestStateSpineError:
    """Test the base error."""

    def test_default_category(self):
        assert StateSpineError("x").category == ErrorCategory.INTERNAL

    def test_explicit_category(self):
        error = StateSpineError("x", category=ErrorCategory.OBSERVE)
        assert error.category == ErrorCategory.OBSERVE

    def test_cause_is_chained(self):
        cause = RuntimeError("inner")
        error = StateSpineError("outer", cause=cause)
        assert error.cause is cause
        assert error.__cause__ is cause

    def test_with_context(self):
        """Known fields are set, unknown ones land in metadata."""
        error = StateSpineError("x").with_context(constructor="Model", attempt=2)
        assert error.context.constructor == "Model"
        assert error.context.metadata == {"attempt": 2}

    def test_to_dict(self):
        error = ProvideError(
            "failed",
            context=ErrorContext(key_length=2),
            cause=ValueError("bad"),
        )
        assert error.to_dict() == {
            "error_type": "ProvideError",
            "message": "failed",
            "category": "PROVIDE",
            "context": {"key_length": 2},
            "cause": "ValueError: bad",
        }

    def test_repr(self):
        assert repr(ConfigError("bad level")) == "ConfigError('bad level', category=CONFIG)"


class TestHierarchy:
    """Test subclass relationships and categories."""

    @pytest.mark.parametrize(
        "error_type, category",
        [
            (ReentrantConstructionError, ErrorCategory.PROVIDE),
            (UncacheableInstanceError, ErrorCategory.PROVIDE),
            (UnknownInstanceError, ErrorCategory.PROVIDE),
            (WatcherCallbackError, ErrorCategory.DISPATCH),
            (ConfigError, ErrorCategory.CONFIG),
        ],
    )
    def test_categories(self, error_type, category):
        error = error_type("x")
        assert error.category == category
        assert isinstance(error, StateSpineError)

    def test_builtin_compatibility(self):
        assert issubclass(UncacheableInstanceError, TypeError)
        assert issubclass(UnknownInstanceError, LookupError)
        with pytest.raises(LookupError):
            raise UnknownInstanceError("missing")
