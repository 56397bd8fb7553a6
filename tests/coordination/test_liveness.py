import os
from unittest.mock import MagicMock, patch

import psutil

from tether.coordination.liveness import PsutilProcessProbe


class TestPsutilProcessProbe:
    def setup_method(self):
        self.probe = PsutilProcessProbe()

    def test_current_process_is_running(self):
        assert self.probe.is_running(os.getpid())

    def test_non_positive_pids_are_not_running(self):
        assert not self.probe.is_running(0)
        assert not self.probe.is_running(-1)

    def test_missing_process(self):
        # Arrange
        with patch("psutil.pid_exists", return_value=False):
            # Act & Assert
            assert not self.probe.is_running(99999)

    def test_zombie_is_not_running(self):
        # Arrange
        process = MagicMock()
        process.status.return_value = psutil.STATUS_ZOMBIE
        with (
            patch("psutil.pid_exists", return_value=True),
            patch("psutil.Process", return_value=process),
        ):
            # Act & Assert
            assert not self.probe.is_running(1234)

    def test_access_denied_counts_as_running(self):
        # Arrange
        with (
            patch("psutil.pid_exists", return_value=True),
            patch("psutil.Process", side_effect=psutil.AccessDenied(1234)),
        ):
            # Act & Assert
            assert self.probe.is_running(1234)

    def test_vanished_process(self):
        # Arrange
        with (
            patch("psutil.pid_exists", return_value=True),
            patch("psutil.Process", side_effect=psutil.NoSuchProcess(1234)),
        ):
            # Act & Assert
            assert not self.probe.is_running(1234)
