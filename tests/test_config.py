"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from tax_form_importer.config import (
    Config,
    ConfigValidationError,
    QueueConfig,
    create_default_config,
    load_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in (
        "TAX_IMPORTER_STATE_DB",
        "TAX_IMPORTER_LOCK_TIMEOUT",
        "FORM_SUBMIT_URL",
        "FORM_TOKEN",
        "FORM_PAYOR_ID",
    ):
        monkeypatch.delenv(var, raising=False)


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config.queue.max_retry_attempts == 3
        assert config.queue.lock_timeout_seconds == 30.0
        assert config.form.submit_url is None
        assert config.csv.layout_tag == "1099-B"
        assert config.state_db_path == Path("data/state.db")

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "queue:\n"
            "  max_retry_attempts: 5\n"
            "  lock_timeout_seconds: 10\n"
            "form:\n"
            "  submit_url: https://forms.example.test/submit\n"
            "  payor_id: 12-3456789\n"
            "csv:\n"
            "  layout_tag: '8949'\n"
            "  column_synonyms:\n"
            "    sale_date: [TRADE DATE]\n"
            "state_db_path: /var/lib/importer/state.db\n"
        )

        config = load_config(path)

        assert config.queue.max_retry_attempts == 5
        assert config.queue.lock_timeout_seconds == 10.0
        assert config.form.submit_url == "https://forms.example.test/submit"
        assert config.form.payor_id == "12-3456789"
        assert config.csv.layout_tag == "8949"
        assert config.csv.column_synonyms == {"sale_date": ["TRADE DATE"]}
        assert config.state_db_path == Path("/var/lib/importer/state.db")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path).queue.max_retry_attempts == 3

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("form:\n  submit_url: https://a.example.test\n  token: file-token\n")
        monkeypatch.setenv("FORM_SUBMIT_URL", "https://b.example.test")
        monkeypatch.setenv("FORM_TOKEN", "env-token")
        monkeypatch.setenv("TAX_IMPORTER_STATE_DB", str(tmp_path / "env.db"))
        monkeypatch.setenv("TAX_IMPORTER_LOCK_TIMEOUT", "5")

        config = load_config(path)

        assert config.form.submit_url == "https://b.example.test"
        assert config.form.token == "env-token"
        assert config.state_db_path == tmp_path / "env.db"
        assert config.queue.lock_timeout_seconds == 5.0

    def test_invalid_lock_timeout_env_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TAX_IMPORTER_LOCK_TIMEOUT", "soon")

        assert load_config(tmp_path / "absent.yaml").queue.lock_timeout_seconds == 30.0


class TestValidation:
    def test_defaults_valid(self):
        assert Config().validate() == []

    def test_submit_url_required_for_submission(self):
        config = Config()

        assert config.validate(require_form=True) == [
            "form.submit_url is required to submit transactions"
        ]

    def test_require_valid_lists_all_errors(self):
        config = Config(queue=QueueConfig(max_retry_attempts=0, lock_timeout_seconds=0))

        with pytest.raises(ConfigValidationError) as exc_info:
            config.require_valid()

        assert "max_retry_attempts" in str(exc_info.value)
        assert "lock_timeout_seconds" in str(exc_info.value)


class TestDefaultConfig:
    def test_default_file_loads(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"

        create_default_config(path)
        config = load_config(path)

        assert config.validate() == []
        assert config.queue.max_retry_attempts == 3
        assert config.csv.column_synonyms == {}
