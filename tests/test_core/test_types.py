"""Tests for types.py module."""

from unittest.mock import patch

import pytest

from treepatch.core.types import FailureKind, TargetOS, current_os


class TestCurrentOS:
    """Test current_os mapping."""

    @pytest.mark.parametrize(
        ("platform", "expected"),
        [
            ("linux", TargetOS.LINUX),
            ("win32", TargetOS.WINDOWS),
            ("cygwin", TargetOS.WINDOWS),
            ("darwin", TargetOS.MACOS),
            ("freebsd14", TargetOS.FREEBSD),
            ("sunos5", TargetOS.OTHER),
        ],
    )
    def test_mapping(self, platform, expected):
        with patch("treepatch.core.types.sys.platform", platform):
            assert current_os() == expected


class TestEnums:
    """Test enum string values."""

    def test_target_os_from_config_string(self):
        assert TargetOS("linux") is TargetOS.LINUX
        assert str(TargetOS.MACOS) == "macos"

    def test_failure_kind_values(self):
        assert FailureKind.CANCELLED == "cancelled"
        assert len({kind.value for kind in FailureKind}) == len(FailureKind)
