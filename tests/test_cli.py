"""
Tests for the admin CLI against a file-backed SQLite database.
"""

import pytest
from typer.testing import CliRunner

from ltikit.cli import app
from ltikit.settings import clear_settings_cache

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("LTI_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'lti.db'}")
    monkeypatch.setenv("LTI_DOMAIN_NAME", "https://tool.example.edu")
    monkeypatch.setenv("LTI_RSA_KEY_SIZE", "2048")
    clear_settings_cache()
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0, result.output
    yield
    clear_settings_cache()


class TestConsumerCommands:

    def test_create_and_list(self):
        result = runner.invoke(app, ["consumer", "create", "Moodle", "--key", "k1", "--secret", "s1"])

        assert result.exit_code == 0, result.output
        assert "Key: k1" in result.output
        assert "Secret: s1" in result.output

        result = runner.invoke(app, ["consumer", "list"])
        assert result.exit_code == 0
        assert "Moodle" in result.output

        result = runner.invoke(app, ["consumer", "secret", "k1"])
        assert result.output.strip() == "s1"

    def test_empty_list(self):
        result = runner.invoke(app, ["consumer", "list"])
        assert "No consumers found." in result.output

    def test_duplicate_key_exits_cleanly(self):
        runner.invoke(app, ["consumer", "create", "Moodle", "--key", "k1"])

        result = runner.invoke(app, ["consumer", "create", "Other", "--key", "k1"])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_unknown_secret(self):
        result = runner.invoke(app, ["consumer", "secret", "nobody"])
        assert result.exit_code == 1


class TestProviderCommands:

    def test_create_update_delete(self):
        result = runner.invoke(
            app,
            [
                "provider",
                "create",
                "Quiz",
                "--launch-url",
                "https://quiz.example.edu/launch",
                "--domain",
                "quiz.example.edu",
                "--key",
                "p1",
            ],
        )
        assert result.exit_code == 0, result.output
        assert "Created provider: 1" in result.output

        result = runner.invoke(app, ["provider", "update", "1", "--name", "Quiz 2"])
        assert "Updated provider: 1 (Quiz 2)" in result.output

        result = runner.invoke(app, ["provider", "delete", "1"])
        assert result.exit_code == 0
        assert "No providers found." in runner.invoke(app, ["provider", "list"]).output

    def test_missing_provider(self):
        result = runner.invoke(app, ["provider", "delete", "42"])
        assert result.exit_code == 1


class TestUtilityCommands:

    def test_config_xml(self):
        result = runner.invoke(app, ["config-xml"])
        assert result.exit_code == 0
        assert "cartridge_basiclti_link" in result.output
        assert "https://tool.example.edu/lti/provider/launch" in result.output

    def test_sweep(self):
        result = runner.invoke(app, ["sweep"])
        assert result.exit_code == 0
        assert "Deleted 0 nonces and 0 logins." in result.output
