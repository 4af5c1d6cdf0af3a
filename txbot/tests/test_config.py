"""Tests for settings."""

import logging

from txbot.config import Settings


class TestSettings:
    """Test derived paths and redacted output."""

    def test_paths_follow_dev_mode(self, tmp_path):
        dev = Settings(_env_file=None, data_dir=tmp_path, dev_mode=True)
        prod = Settings(_env_file=None, data_dir=tmp_path, dev_mode=False)

        assert dev.db_path == tmp_path / "txbot_dev.db"
        assert prod.db_path == tmp_path / "txbot_prod.db"
        assert dev.uploads_path == tmp_path / "uploads"

    def test_ensure_directories(self, tmp_path):
        config = Settings(_env_file=None, data_dir=tmp_path / "data")

        config.ensure_directories()

        assert config.uploads_path.is_dir()

    def test_api_key_never_logged(self, caplog):
        config = Settings(_env_file=None, openai_api_key="sk-secret-value-1234")

        with caplog.at_level(logging.INFO, logger="txbot.config"):
            config.log_config()

        assert config.summary()["OpenAI API key"] == "set"
        assert "sk-secret" not in caplog.text
