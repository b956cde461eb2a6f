#!/usr/bin/env python3
"""
Tests for the Docker daemon supervisor.
"""

import os
import shutil
import subprocess
import tempfile
import time
import unittest
from unittest.mock import MagicMock, patch

import psutil

from dind_bootstrap.config.bootstrap_config import LogDestination
from dind_bootstrap.runtime.docker_daemon import (
    DaemonError, DaemonProcess, DaemonState, DaemonTimeoutError, DockerDaemonManager,
)


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestDockerDaemonManager(unittest.TestCase):
    """Test cases for DockerDaemonManager."""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.pid_file = os.path.join(self.test_dir, "docker.pid")
        self.clock = FakeClock()
        self.exit_hooks = []
        self.manager = DockerDaemonManager(
            pid_file=self.pid_file,
            log_file=os.path.join(self.test_dir, "log", "docker.log"),
            clock=self.clock,
            sleep=self.clock.sleep,
            register_exit_hook=self.exit_hooks.append,
        )

    def tearDown(self):
        self.manager._close_log()
        shutil.rmtree(self.test_dir)

    def _health_after(self, attempts):
        """Health check that fails until the given attempt number."""
        calls = []

        def check():
            calls.append(self.clock.now)
            return len(calls) >= attempts

        return calls, check

    def test_build_args(self):
        """Test the base arguments and their order."""
        args = self.manager.build_args("10.0.0.5/16", "10.0.1.0/24", "overlay")
        self.assertEqual(args, [
            "--bip=10.0.0.5/16",
            "--fixed-cidr=10.0.1.0/24",
            "--storage-driver=overlay",
        ])

    def test_build_args_with_tcp_port_and_extra_args(self):
        """Test the TCP listener keeps the local socket and extras come last."""
        args = self.manager.build_args(
            "10.0.0.5/16", "10.0.1.0/24", "aufs",
            tcp_port=2375, extra_args=["--debug", "--mtu=1400"],
        )
        self.assertEqual(args[3:], [
            "-H", "tcp://0.0.0.0:2375",
            "-H", "unix:///var/run/docker.sock",
            "--debug", "--mtu=1400",
        ])

    def test_remove_stale_pid_file(self):
        with open(self.pid_file, 'w') as f:
            f.write("4242\n")

        with patch("psutil.pid_exists", return_value=False):
            self.assertTrue(self.manager.remove_stale_pid_file())
        self.assertFalse(os.path.exists(self.pid_file))

    def test_remove_pid_file_of_live_process(self):
        """Test a pid file naming a live process is removed with a warning."""
        with open(self.pid_file, 'w') as f:
            f.write("4242\n")

        with patch("psutil.pid_exists", return_value=True):
            with self.assertLogs("dind_bootstrap.runtime.docker_daemon", level="WARNING"):
                self.assertTrue(self.manager.remove_stale_pid_file())
        self.assertFalse(os.path.exists(self.pid_file))

    def test_no_pid_file(self):
        self.assertFalse(self.manager.remove_stale_pid_file())

    def test_ready_after_some_checks(self):
        """Test readiness is reported on the first successful check."""
        calls, check = self._health_after(4)
        with patch.object(self.manager, "check_health", side_effect=check):
            elapsed = self.manager.wait_until_ready()

        self.assertEqual(len(calls), 4)
        self.assertEqual(elapsed, 3.0)

    def test_ready_on_first_check_does_not_sleep(self):
        with patch.object(self.manager, "check_health", return_value=True):
            self.assertEqual(self.manager.wait_until_ready(), 0.0)
        self.assertEqual(self.clock.sleeps, [])

    def test_timeout_not_before_deadline(self):
        """Test a daemon that never answers times out no earlier than 59 seconds."""
        calls, check = self._health_after(10 ** 6)
        with patch.object(self.manager, "check_health", side_effect=check):
            with self.assertRaises(DaemonTimeoutError):
                self.manager.wait_until_ready()

        self.assertGreaterEqual(self.clock.now, 59.0)
        self.assertLessEqual(self.clock.now, 60.0)
        self.assertEqual(len(calls), 61)
        self.assertTrue(all(s <= 1.0 for s in self.clock.sleeps))

    def test_zero_timeout_checks_once(self):
        """Test a zero timeout still makes one health check and then gives up."""
        self.manager.timeout = 0
        calls, check = self._health_after(10 ** 6)
        with patch.object(self.manager, "check_health", side_effect=check):
            with self.assertRaises(DaemonTimeoutError):
                self.manager.wait_until_ready()

        self.assertEqual(len(calls), 1)
        self.assertEqual(self.clock.sleeps, [])

    def test_daemon_exit_is_reported_once(self):
        """Test an exited daemon is warned about once while polling continues."""
        self.manager.timeout = 5
        self.manager.daemon_process = MagicMock(returncode=1)
        self.manager.daemon_process.poll.return_value = 1
        self.manager.daemon = DaemonProcess(args=[])

        with patch.object(self.manager, "check_health", return_value=False):
            with self.assertRaises(DaemonTimeoutError):
                self.manager.wait_until_ready()

        self.assertEqual(self.manager.daemon.warnings, ["Docker daemon exited with code 1"])
        self.assertEqual(self.manager.daemon.state, DaemonState.TIMED_OUT)
        self.assertGreaterEqual(self.clock.now, 5.0)

    @patch("subprocess.Popen")
    def test_launch_registers_exit_hook_when_ready(self, mock_popen):
        """Test the stop hook is registered only after the daemon is ready."""
        mock_popen.return_value.pid = 321
        mock_popen.return_value.poll.return_value = None
        calls, check = self._health_after(3)

        with patch.object(self.manager, "check_health", side_effect=check):
            daemon = self.manager.launch("10.0.0.5/16", "10.0.1.0/24", "overlay")

        self.assertEqual(daemon.pid, 321)
        self.assertEqual(daemon.state, DaemonState.READY)
        self.assertEqual(daemon.ready_after, 2.0)
        self.assertEqual(self.exit_hooks, [self.manager.stop_daemon])

        cmd = mock_popen.call_args[0][0]
        self.assertEqual(cmd[0], "dockerd")
        self.assertIn("--storage-driver=overlay", cmd)

    @patch("subprocess.Popen")
    def test_launch_timeout_leaves_daemon_running(self, mock_popen):
        """Test a timed out daemon is neither stopped nor hooked for exit."""
        mock_popen.return_value.poll.return_value = None

        with patch.object(self.manager, "check_health", return_value=False):
            with self.assertRaises(DaemonTimeoutError):
                self.manager.launch("10.0.0.5/16", "10.0.1.0/24", "overlay")

        self.assertEqual(self.exit_hooks, [])
        mock_popen.return_value.terminate.assert_not_called()
        self.assertEqual(self.manager.daemon.state, DaemonState.TIMED_OUT)

    @patch("subprocess.Popen")
    def test_start_streams_output(self, mock_popen):
        """Test daemon output is inherited when logging to the stream."""
        self.manager.start(["--bip=10.0.0.5/16"])

        kwargs = mock_popen.call_args[1]
        self.assertIsNone(kwargs["stdout"])
        self.assertIsNone(kwargs["stderr"])
        self.assertEqual(kwargs["stdin"], subprocess.DEVNULL)
        self.assertTrue(kwargs["close_fds"])
        self.assertTrue(kwargs["start_new_session"])

    @patch("subprocess.Popen")
    def test_start_writes_to_log_file(self, mock_popen):
        """Test daemon output goes to the log file when configured."""
        self.manager.log_destination = LogDestination.FILE
        daemon = self.manager.start([])

        kwargs = mock_popen.call_args[1]
        self.assertEqual(kwargs["stdout"].name, self.manager.log_file)
        self.assertEqual(kwargs["stderr"], subprocess.STDOUT)
        self.assertEqual(daemon.log_destination, LogDestination.FILE)
        self.assertTrue(os.path.exists(self.manager.log_file))

    @patch("subprocess.Popen", side_effect=FileNotFoundError("dockerd"))
    def test_start_missing_binary(self, mock_popen):
        self.manager.log_destination = LogDestination.FILE
        with self.assertRaises(DaemonError):
            self.manager.start([])
        self.assertIsNone(self.manager._log_handle)

    @patch("subprocess.Popen")
    def test_unwritable_log_file(self, mock_popen):
        """Test a log file that cannot be opened fails the start cleanly."""
        blocker = os.path.join(self.test_dir, "blocker")
        with open(blocker, 'w') as f:
            f.write("")
        self.manager.log_destination = LogDestination.FILE
        self.manager.log_file = os.path.join(blocker, "docker.log")

        with self.assertRaises(DaemonError) as ctx:
            self.manager.start([])

        self.assertIn(self.manager.log_file, str(ctx.exception))
        mock_popen.assert_not_called()

    @patch("subprocess.run")
    def test_check_health(self, mock_run):
        mock_run.return_value.returncode = 0
        self.assertTrue(self.manager.check_health())
        self.assertEqual(mock_run.call_args[0][0], ["docker", "info"])

        mock_run.return_value.returncode = 1
        self.assertFalse(self.manager.check_health())

        mock_run.side_effect = subprocess.TimeoutExpired(["docker", "info"], 10)
        self.assertFalse(self.manager.check_health())

        mock_run.side_effect = FileNotFoundError("docker")
        self.assertFalse(self.manager.check_health())

    def test_stop_daemon(self):
        """Test the daemon is terminated and its children reaped."""
        popen = MagicMock(pid=321)
        popen.poll.return_value = None
        self.manager.daemon_process = popen
        self.manager.daemon = DaemonProcess(args=[], state=DaemonState.READY)

        child = MagicMock()
        child.is_running.return_value = True
        process = MagicMock()
        process.children.return_value = [child]

        with patch("psutil.Process", return_value=process), \
                patch("psutil.wait_procs", return_value=([process], [])):
            self.assertTrue(self.manager.stop_daemon())

        process.terminate.assert_called_once()
        process.kill.assert_not_called()
        child.kill.assert_called_once()
        popen.wait.assert_called_once()
        self.assertIsNone(self.manager.daemon_process)
        self.assertEqual(self.manager.daemon.state, DaemonState.STOPPED)

    def test_stop_daemon_forces_kill(self):
        popen = MagicMock(pid=321)
        popen.poll.return_value = None
        self.manager.daemon_process = popen

        process = MagicMock()
        process.children.return_value = []

        with patch("psutil.Process", return_value=process), \
                patch("psutil.wait_procs", return_value=([], [process])):
            self.assertTrue(self.manager.stop_daemon())

        process.kill.assert_called_once()

    def test_stop_daemon_already_gone(self):
        popen = MagicMock(pid=321)
        popen.poll.return_value = None
        self.manager.daemon_process = popen

        with patch("psutil.Process", side_effect=psutil.NoSuchProcess(321)):
            self.assertTrue(self.manager.stop_daemon())
        self.assertIsNone(self.manager.daemon_process)

    def test_stop_without_daemon(self):
        self.assertTrue(self.manager.stop_daemon())

    def test_status_of_running_daemon(self):
        """Test status reports pid, uptime, state and health."""
        popen = MagicMock(pid=321)
        popen.poll.return_value = None
        self.manager.daemon_process = popen
        self.manager.daemon = DaemonProcess(args=[], state=DaemonState.READY)

        process = MagicMock()
        process.create_time.return_value = time.time() - 100

        with patch("psutil.Process", return_value=process), \
                patch.object(self.manager, "check_health", return_value=True):
            status = self.manager.get_daemon_status()

        self.assertTrue(status["running"])
        self.assertEqual(status["pid"], 321)
        self.assertGreaterEqual(status["uptime"], 100)
        self.assertEqual(status["state"], "ready")
        self.assertEqual(status["health"], "healthy")

    def test_status_without_daemon(self):
        with patch.object(self.manager, "check_health", return_value=False):
            status = self.manager.get_daemon_status()

        self.assertFalse(status["running"])
        self.assertIsNone(status["pid"])
        self.assertIsNone(status["uptime"])
        self.assertIsNone(status["state"])
        self.assertEqual(status["health"], "unhealthy")


if __name__ == '__main__':
    unittest.main()
