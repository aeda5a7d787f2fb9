"""
Tests for the command-line entry point.
"""

import json
from unittest.mock import patch

import pytest

from caseflow.main import (
    parse_arguments, run_command, main,
    EXIT_OK, EXIT_FAILED, EXIT_AUTH_FAILED
)

from conftest import seed


class TestArguments:
    """Test argument parsing."""

    def test_one_operation_required(self):
        with pytest.raises(SystemExit):
            parse_arguments([])

    def test_operations_are_exclusive(self):
        with pytest.raises(SystemExit):
            parse_arguments(["--sync", "--status"])

    def test_list_options(self):
        args = parse_arguments(["--list", "--page", "2", "--case-status", "Assigned", "--json"])
        assert args.list is True
        assert args.page == 2
        assert args.case_status == "Assigned"
        assert args.json is True


class TestRunCommand:
    """Test command execution against a local service."""

    @pytest.mark.asyncio
    async def test_login(self, client, capsys):
        args = parse_arguments(["--login", "agent01", "--password", "s3cret", "--json"])

        assert await run_command(args, client) == EXIT_OK
        output = json.loads(capsys.readouterr().out)
        assert output["success"] is True
        assert output["user"]["username"] == "agent01"

    @pytest.mark.asyncio
    async def test_login_failure(self, client, capsys):
        args = parse_arguments(["--login", "agent01", "--password", "wrong"])

        assert await run_command(args, client) == EXIT_AUTH_FAILED
        assert "Login failed" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_login_without_password(self, client, monkeypatch, capsys):
        monkeypatch.delenv("CASEFLOW_PASSWORD", raising=False)
        args = parse_arguments(["--login", "agent01"])

        assert await run_command(args, client) == EXIT_AUTH_FAILED
        assert "no password" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_list_json(self, logged_in_client, backend, capsys):
        backend.add_case("CASE-1")
        args = parse_arguments(["--list", "--json"])

        assert await run_command(args, logged_in_client) == EXIT_OK
        output = json.loads(capsys.readouterr().out)
        assert output["source"] == "remote"
        assert [case["id"] for case in output["cases"]] == ["CASE-1"]
        assert output["pagination"]["total"] == 1

    @pytest.mark.asyncio
    async def test_sync_failure_exit_code(self, logged_in_client, capsys):
        logged_in_client.connectivity.set_connected(False)
        args = parse_arguments(["--sync"])

        assert await run_command(args, logged_in_client) == EXIT_FAILED
        assert "No network connection" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_submit(self, logged_in_client, capsys):
        seed(logged_in_client, {"id": "CASE-1", "status": "Completed"})
        args = parse_arguments(["--submit", "CASE-1"])

        assert await run_command(args, logged_in_client) == EXIT_OK
        assert "Submitted" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_status(self, logged_in_client, capsys):
        args = parse_arguments(["--status", "--json"])

        assert await run_command(args, logged_in_client) == EXIT_OK
        status = json.loads(capsys.readouterr().out)
        assert status["authenticated"] is True
        assert status["user"]["id"] == "user-1"
        assert status["pending_sync"] == 0
        assert status["token"]["user_role"] == "field_agent"


class TestMain:
    """Test the synchronous entry point."""

    def test_status_from_local_state(self, tmp_path, capsys):
        config_path = tmp_path / "client.conf"
        config_path.write_text(
            "[server]\n"
            "url = http://127.0.0.1:9/api\n"
            "[storage]\n"
            f"data_dir = {tmp_path / 'data'}\n"
            "encrypt = false\n"
        )

        with patch("caseflow.main.configure_logging"):
            exit_code = main(["--status", "--json", "--offline", "--config", str(config_path)])

        assert exit_code == EXIT_OK
        status = json.loads(capsys.readouterr().out)
        assert status["authenticated"] is False
        assert status["offline_mode"] is True
        assert status["server_url"] == "http://127.0.0.1:9/api"
        assert status["cached_cases"] == 0

    def test_invalid_configuration(self, tmp_path, capsys):
        config_path = tmp_path / "client.conf"
        config_path.write_text("[server]\ntimeout = soon\n[storage]\nencrypt = false\n")

        with patch("caseflow.main.configure_logging"):
            exit_code = main(["--status", "--config", str(config_path)])

        assert exit_code == EXIT_FAILED
        assert "Invalid value for server.timeout" in capsys.readouterr().err
