"""Tests for the command-line entry point."""

import contextlib
import io
import json
import os
import tempfile
import unittest
from unittest import mock

import main
from debugbunny.lifecycle import DebugBunny


class TestMain(unittest.TestCase):
    """Verify the run and decode sub-commands."""

    def test_run_then_decode(self):
        """'run' appends records to the output file and 'decode' prints them."""
        config = {
            "targets": [
                {"id": "echo", "interval": "100ms", "timeout": "50ms",
                 "action": {"kind": "command", "path": "echo", "args": ["hello"]}},
            ],
        }
        with tempfile.TemporaryDirectory() as tmp:
            config_path = os.path.join(tmp, "debugbunny.json")
            output = os.path.join(tmp, "scrapes.log")
            with open(config_path, "w", encoding="utf-8") as f:
                json.dump(config, f)

            with mock.patch.object(DebugBunny, "install_signal_handlers"):
                code = main.main(["run", "--config", config_path, "--output", output, "--duration", "0.35"])
            self.assertEqual(code, 0)

            stdout = io.StringIO()
            with contextlib.redirect_stdout(stdout):
                self.assertEqual(main.main(["decode", output, "--target", "echo"]), 0)

        printed = [json.loads(line) for line in stdout.getvalue().splitlines()]
        self.assertGreaterEqual(len(printed), 3)
        self.assertTrue(all(r["body"] == "hello\n" for r in printed))
        self.assertTrue(all(r["stdout"] == "hello\n" and r["stderr"] == "" for r in printed))
        self.assertEqual(printed[0]["target"]["action"], {"kind": "command", "path": "echo", "args": ["hello"]})

    def test_missing_config_is_reported(self):
        """A missing config file exits with status 2."""
        self.assertEqual(main.main(["run", "--config", "/nonexistent/debugbunny.json", "--duration", "0"]), 2)


if __name__ == "__main__":
    unittest.main()
