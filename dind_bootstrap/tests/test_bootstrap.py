#!/usr/bin/env python3
"""
Tests for the bootstrap entry point.
"""

import io
import json
import os
import shutil
import signal
import subprocess
import sys
import unittest
from unittest.mock import MagicMock, patch

from dind_bootstrap.scripts import bootstrap


@patch("dind_bootstrap.scripts.bootstrap.setup_logging")
@patch("dind_bootstrap.scripts.bootstrap.signal.signal")
class TestBootstrapMain(unittest.TestCase):
    """Test cases for the bootstrap command."""

    def setUp(self):
        patcher = patch.dict(os.environ, {}, clear=True)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _orchestrator(self, success):
        orchestrator = MagicMock()
        result = orchestrator.return_value.run.return_value
        result.success = success
        result.failed_stage.stage = "storage"
        result.failed_stage.error_message = "No supported filesystem found"
        return orchestrator

    def test_show_config(self, mock_signal, mock_logging):
        os.environ["LOOP_SIZE"] = "8"
        with patch("sys.stdout", new_callable=io.StringIO) as stdout:
            self.assertEqual(bootstrap.main(["--show-config"]), 0)

        shown = json.loads(stdout.getvalue())
        self.assertEqual(shown["loop_size_gb"], 8)
        mock_signal.assert_not_called()

    def test_invalid_config(self, mock_signal, mock_logging):
        os.environ["LOOP_SIZE"] = "big"
        self.assertEqual(bootstrap.main([]), 1)

    def test_failed_bootstrap_does_not_hand_off(self, mock_signal, mock_logging):
        with patch.object(bootstrap, "BootstrapOrchestrator", self._orchestrator(False)), \
                patch.object(bootstrap, "hand_off") as mock_hand_off:
            self.assertEqual(bootstrap.main(["sleep", "1"]), 1)
        mock_hand_off.assert_not_called()

    def test_successful_bootstrap_hands_off(self, mock_signal, mock_logging):
        """Test the command runs after the daemon is ready and its code is returned."""
        with patch.object(bootstrap, "BootstrapOrchestrator", self._orchestrator(True)), \
                patch.object(bootstrap, "hand_off", return_value=3) as mock_hand_off:
            self.assertEqual(bootstrap.main(["--", "make", "test"]), 3)

        mock_hand_off.assert_called_once_with(["make", "test"])
        mock_signal.assert_called_once_with(bootstrap.signal.SIGTERM, bootstrap._exit_on_sigterm)


class TestHandOff(unittest.TestCase):
    """Test cases for running the caller's command."""

    @patch("subprocess.call", return_value=0)
    def test_runs_command(self, mock_call):
        self.assertEqual(bootstrap.hand_off(["echo", "hi"]), 0)
        mock_call.assert_called_once_with(["echo", "hi"])

    @patch("subprocess.call", return_value=0)
    def test_defaults_to_shell(self, mock_call):
        with patch.dict(os.environ, {"SHELL": "/bin/zsh"}):
            bootstrap.hand_off([])
        mock_call.assert_called_once_with(["/bin/zsh"])

        mock_call.reset_mock()
        with patch.dict(os.environ, {}, clear=True):
            bootstrap.hand_off([])
        mock_call.assert_called_once_with(["/bin/bash"])

    @patch("subprocess.call", side_effect=FileNotFoundError("nope"))
    def test_missing_command(self, mock_call):
        self.assertEqual(bootstrap.hand_off(["nope"]), 127)

    def test_sigterm_exits(self):
        with self.assertRaises(SystemExit) as ctx:
            bootstrap._exit_on_sigterm(15, None)
        self.assertEqual(ctx.exception.code, 143)

    def test_terminal_signals_caught_while_command_runs(self):
        """Test SIGINT and SIGQUIT are caught during the command and restored after."""
        before = (signal.getsignal(signal.SIGINT), signal.getsignal(signal.SIGQUIT))
        during = []

        def call(command):
            during.append((signal.getsignal(signal.SIGINT), signal.getsignal(signal.SIGQUIT)))
            return 0

        with patch("subprocess.call", side_effect=call):
            bootstrap.hand_off(["true"])

        self.assertEqual(during, [(bootstrap._ignore_signal, bootstrap._ignore_signal)])
        self.assertEqual((signal.getsignal(signal.SIGINT), signal.getsignal(signal.SIGQUIT)), before)

    def test_handlers_restored_when_command_is_missing(self):
        before = signal.getsignal(signal.SIGINT)
        with patch("subprocess.call", side_effect=FileNotFoundError("nope")):
            bootstrap.hand_off(["nope"])
        self.assertIs(signal.getsignal(signal.SIGINT), before)


@unittest.skipUnless(shutil.which("sh"), "needs a POSIX shell")
class TestHandOffInterrupt(unittest.TestCase):
    """Run hand_off in its own session and interrupt its process group."""

    def _hand_off_in_session(self, script):
        package_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(filter(None, [package_root, env.get("PYTHONPATH")]))
        code = (
            "from dind_bootstrap.scripts.bootstrap import hand_off\n"
            f"print('exit', hand_off(['sh', '-c', {script!r}]))\n"
        )
        return subprocess.run(
            [sys.executable, "-c", code],
            capture_output=True, text=True, env=env, timeout=30,
            start_new_session=True,
        )

    def test_interrupt_reaches_command_only(self):
        """Test SIGINT to the process group leaves the bootstrap waiting on its command."""
        result = self._hand_off_in_session(
            "trap '' INT; kill -INT 0; sleep 0.3; echo command-survived; exit 7"
        )

        self.assertEqual(result.returncode, 0, result.stderr)
        self.assertIn("command-survived", result.stdout)
        self.assertIn("exit 7", result.stdout)
        self.assertNotIn("KeyboardInterrupt", result.stderr)

    def test_command_keeps_default_interrupt_handling(self):
        """Test the command itself still dies from SIGINT."""
        result = self._hand_off_in_session("kill -INT $$; sleep 0.3; echo not-reached")

        self.assertEqual(result.returncode, 0, result.stderr)
        self.assertNotIn("not-reached", result.stdout)
        self.assertIn(f"exit {-signal.SIGINT}", result.stdout)


if __name__ == '__main__':
    unittest.main()
