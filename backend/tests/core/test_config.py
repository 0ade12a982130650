"""
Tests for settings validation.
"""

import pytest
from pydantic import ValidationError

from reportcard.core.config import Settings


class TestLockWindow:

    def test_default_window_outlasts_one_step(self):
        settings = Settings(_env_file=None)

        assert settings.SIS_LOCK_STALE_SECONDS > settings.SIS_RUN_DEADLINE_SECONDS

    @pytest.mark.parametrize("stale_seconds", [600, 1800])
    def test_window_not_longer_than_deadline_is_rejected(self, stale_seconds):
        with pytest.raises(ValidationError, match="SIS_RUN_DEADLINE_SECONDS"):
            Settings(_env_file=None, SIS_RUN_DEADLINE_SECONDS=1800.0, SIS_LOCK_STALE_SECONDS=stale_seconds)

    def test_longer_window_is_accepted(self):
        settings = Settings(_env_file=None, SIS_RUN_DEADLINE_SECONDS=600.0, SIS_LOCK_STALE_SECONDS=900)

        assert settings.SIS_LOCK_STALE_SECONDS == 900


def test_log_level_is_normalized():
    assert Settings(_env_file=None, LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"
