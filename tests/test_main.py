import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest import mock

import requests
from rich.console import Console

from tnmanage import main as cli
from tnmanage.core.truenas_api import APIError, Dataset, DatasetProperty, NFSShare


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        return json.loads(self.text)


class CommandTestCase(unittest.TestCase):
    """Runs commands against a mocked client class."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.config_path = Path(self._tmp.name) / ".tnmanage"
        self.out = io.StringIO()

        self.client = mock.MagicMock()
        self.client.__enter__.return_value = self.client
        patcher = mock.patch.object(cli, "TrueNASClient")
        self.client_cls = patcher.start()
        self.addCleanup(patcher.stop)
        self.client_cls.from_params.return_value = self.client
        self.client_cls.from_environment.return_value = self.client

    def tearDown(self):
        self._tmp.cleanup()

    def run_command(self, argv, stdin="", environ=None):
        args = cli.parse_arguments(argv)
        ctx = cli.CommandContext(
            console=Console(file=self.out, width=200),
            config_path=self.config_path,
            environ=environ if environ is not None else {"TRUENAS_URL": "https://env", "TRUENAS_API_KEY": "env-key"},
            stdin=io.StringIO(stdin),
        )
        return args.func(args, ctx)

    @property
    def output(self):
        return self.out.getvalue()


class AddCommandTests(CommandTestCase):
    def test_add_creates_dataset(self):
        self.client.create_dataset.return_value = "tank/data"

        self.assertEqual(self.run_command(["add", "tank", "data", "10"]), 0)

        self.client.create_dataset.assert_called_once_with("tank", "data", 10)
        self.client.create_nfs_share.assert_not_called()
        self.assertIn("Successfully created dataset 'tank/data'", self.output)

    def test_add_with_nfs_hosts(self):
        self.client.create_dataset.return_value = "tank/data"
        self.client.create_nfs_share.return_value = 4

        self.run_command(["add", "tank", "data", "5", "--nfs", "10.0.0.1,10.0.0.2", "--nfs", "host3"])

        share = self.client.create_nfs_share.call_args.args[0]
        self.assertIsInstance(share, NFSShare)
        self.assertEqual(share.path, "/mnt/tank/data")
        self.assertEqual(share.comment, "data")
        self.assertEqual(share.hosts, ["10.0.0.1", "10.0.0.2", "host3"])
        self.assertEqual((share.maproot_user, share.maproot_group), ("root", "wheel"))
        self.assertFalse(share.ro)
        self.assertIn("Successfully created NFS share (ID: 4)", self.output)

    def test_invalid_size_fails_before_client(self):
        with self.assertRaises(cli.CommandError) as cm:
            self.run_command(["add", "tank", "data", "ten"])

        self.assertIn("invalid max size", str(cm.exception))
        self.client_cls.from_params.assert_not_called()
        self.client_cls.from_environment.assert_not_called()

    def test_size_must_be_plain_integer(self):
        for size in ("1_000", " 5 ", "5.0", "", "٣"):
            with self.assertRaises(cli.CommandError, msg=repr(size)):
                self.run_command(["add", "tank", "data", size])
        self.client.create_dataset.assert_not_called()

    def test_signed_size_accepted(self):
        self.client.create_dataset.return_value = "tank/data"
        self.run_command(["add", "tank", "data", "+3"])
        self.client.create_dataset.assert_called_once_with("tank", "data", 3)

    def test_api_failure_is_wrapped(self):
        self.client.create_dataset.side_effect = APIError(409, "already exists")
        with self.assertRaises(cli.CommandError) as cm:
            self.run_command(["add", "tank", "data", "1"])
        self.assertIn("failed to create dataset", str(cm.exception))
        self.assertIn("409", str(cm.exception))


class ClientSelectionTests(CommandTestCase):
    def test_flags_take_precedence(self):
        self.client.list_datasets.return_value = []
        self.run_command(["list", "tank", "--server", "https://flag", "--token", "flag-key"])

        self.client_cls.from_params.assert_called_once_with("https://flag", "flag-key")
        self.client_cls.from_environment.assert_not_called()

    def test_partial_flags_use_environment(self):
        self.client.list_datasets.return_value = []
        environ = {"TRUENAS_URL": "https://env", "TRUENAS_API_KEY": "k"}
        self.run_command(["list", "tank", "--server", "https://flag"], environ=environ)

        self.client_cls.from_params.assert_not_called()
        self.client_cls.from_environment.assert_called_once_with(environ)


class ListCommandTests(CommandTestCase):
    def test_table(self):
        self.client.list_datasets.return_value = [
            Dataset(
                id="tank/media",
                type="FILESYSTEM",
                used=DatasetProperty(parsed=1536),
                available=DatasetProperty(parsed=1073741824),
                mountpoint="/mnt/tank/media",
                compression=DatasetProperty(value="LZ4"),
            ),
            Dataset(id="tank/vol", type="VOLUME"),
        ]

        self.assertEqual(self.run_command(["list", "tank"]), 0)

        out = self.output
        for header in ("NAME", "TYPE", "USED", "AVAILABLE", "MOUNTPOINT", "COMPRESSION"):
            self.assertIn(header, out)
        self.assertIn("tank/media", out)
        self.assertIn("1.5 KiB", out)
        self.assertIn("1.0 GiB", out)
        self.assertIn("/mnt/tank/media", out)
        self.assertIn("LZ4", out)
        vol_line = next(line for line in out.splitlines() if "tank/vol" in line)
        self.assertEqual(vol_line.split()[1:], ["VOLUME", "-", "-", "-", "-"])

    def test_empty_pool(self):
        self.client.list_datasets.return_value = []
        self.run_command(["list", "tank"])
        self.assertIn("No datasets found in pool 'tank'", self.output)


class DestructiveCommandTests(CommandTestCase):
    def test_remove_confirmed(self):
        for answer in ("y\n", "Y\n", "yes\n", "YES\n"):
            self.client.reset_mock()
            self.run_command(["remove", "tank/data"], stdin=answer)
            self.client.delete_dataset.assert_called_once_with("tank/data")
        self.assertIn("Successfully removed dataset 'tank/data'", self.output)

    def test_remove_declined(self):
        for answer in ("\n", "n\n", "nope\n"):
            self.assertEqual(self.run_command(["remove", "tank/data"], stdin=answer), 0)
        self.client.delete_dataset.assert_not_called()
        self.client_cls.from_environment.assert_not_called()
        self.assertIn("Operation cancelled", self.output)

    def test_remove_force_skips_prompt(self):
        self.run_command(["remove", "tank/data", "--force"], stdin="no\n")
        self.client.delete_dataset.assert_called_once_with("tank/data")
        self.assertNotIn("Are you sure", self.output)

    def test_confirmation_read_failure(self):
        with self.assertRaises(cli.CommandError) as cm:
            self.run_command(["remove", "tank/data"], stdin="")
        self.assertIn("failed to read confirmation", str(cm.exception))
        self.client.delete_dataset.assert_not_called()

    def test_clear_confirmed(self):
        self.run_command(["clear", "tank/data"], stdin="yes\n")
        self.client.clear_dataset.assert_called_once_with("tank/data")
        self.assertIn("DELETE ALL DATA", self.output)
        self.assertIn("Successfully cleared dataset 'tank/data'", self.output)

    def test_clear_declined(self):
        self.run_command(["clear", "tank/data"], stdin="n\n")
        self.client.clear_dataset.assert_not_called()
        self.assertIn("Operation cancelled", self.output)

    def test_clear_force(self):
        self.run_command(["clear", "-f", "tank/data"])
        self.client.clear_dataset.assert_called_once_with("tank/data")


class ConfigCommandTests(CommandTestCase):
    def test_config_server_and_token(self):
        self.run_command(["config", "server", "https://nas.local"])
        self.run_command(["config", "token", "abc"])

        content = self.config_path.read_text()
        self.assertIn("TRUENAS_URL='https://nas.local'", content)
        self.assertIn("TRUENAS_API_KEY='abc'", content)
        self.assertIn("Server URL set to: https://nas.local", self.output)
        self.assertIn("API token saved successfully", self.output)
        self.assertIn(f"Configuration saved to {self.config_path}", self.output)


class MainTests(unittest.TestCase):
    """End-to-end runs of main() with only the HTTP layer faked."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.config_path = Path(self._tmp.name) / ".tnmanage"
        env_patcher = mock.patch.dict(os.environ, {"TRUENAS_URL": "https://env", "TRUENAS_API_KEY": "env-key"})
        env_patcher.start()
        self.addCleanup(env_patcher.stop)

    def tearDown(self):
        self._tmp.cleanup()

    def run_main(self, argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = cli.main(["--config", str(self.config_path)] + argv)
        return code, out.getvalue(), err.getvalue()

    def test_api_error_printed_with_prefix(self):
        with mock.patch.object(requests.Session, "request",
                               return_value=FakeResponse(500, text="internal failure")):
            code, out, err = self.run_main(["list", "tank"])

        self.assertNotEqual(code, 0)
        self.assertTrue(err.startswith("Error: "))
        self.assertIn("500", err)
        self.assertIn("internal failure", err)

    def test_flags_override_environment(self):
        with mock.patch.object(requests.Session, "request", return_value=FakeResponse(payload=[])) as request:
            code, out, _ = self.run_main(["list", "tank", "--server", "https://flag", "--token", "t"])

        self.assertEqual(code, 0)
        self.assertEqual(request.call_args.args[1], "https://flag/api/v2.0/pool/dataset")
        self.assertIn("No datasets found", out)

    def test_config_file_fills_missing_environment(self):
        self.config_path.write_text("TRUENAS_URL=https://from-file\nTRUENAS_API_KEY=file-key\n")
        with mock.patch.dict(os.environ, {"TRUENAS_URL": ""}):
            with mock.patch.object(requests.Session, "request", return_value=FakeResponse(payload=[])) as request:
                code, _, _ = self.run_main(["list", "tank"])

        self.assertEqual(code, 0)
        self.assertEqual(request.call_args.args[1], "https://from-file/api/v2.0/pool/dataset")

    def test_missing_configuration(self):
        with mock.patch.dict(os.environ, {"TRUENAS_URL": "", "TRUENAS_API_KEY": ""}):
            code, _, err = self.run_main(["list", "tank"])

        self.assertEqual(code, 1)
        self.assertIn("Error: failed to create TrueNAS client: TRUENAS_URL environment variable not set", err)

    def test_undecodable_config_file_can_be_repaired(self):
        self.config_path.write_bytes(b"TRUENAS_URL=https://nas\xff\n")

        code, out, err = self.run_main(["config", "server", "https://fixed"])

        self.assertEqual(code, 0)
        self.assertIn("Server URL set to: https://fixed", out)
        self.assertIn("TRUENAS_URL='https://fixed'", self.config_path.read_text())

    def test_success_exits_zero(self):
        with mock.patch.object(requests.Session, "request",
                               return_value=FakeResponse(payload={"id": "tank/new"})):
            code, out, err = self.run_main(["add", "tank", "new", "0"])

        self.assertEqual(code, 0)
        self.assertIn("Successfully created dataset 'tank/new'", out)
        self.assertEqual(err, "")


if __name__ == "__main__":
    unittest.main()
