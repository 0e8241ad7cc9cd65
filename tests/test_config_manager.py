"""
Tests for the YAML-backed ConfigManager
"""

import pytest

from config_manager import ConfigManager, ConfigurationError, get_config


@pytest.fixture(autouse=True)
def fresh_singleton():
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


class TestDefaults:
    """Behaviour without a config file."""

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ConfigManager(str(tmp_path / "absent.yaml"))

        assert config.api.actor_header == "X-Actor-ID"
        assert config.api.default_page_size == 50
        assert config.cap_table.percentage_places == 2
        assert config.documents.generated_prefix == "generated"
        assert config.database.port == 5432


class TestLoading:
    """Parsing and validation of config.yaml."""

    def test_sections_parsed(self, tmp_path):
        path = _write(tmp_path, """
database:
  host: db.internal
  name: records
api:
  port: 9000
  actor_header: X-User
  max_page_size: 100
logging:
  level: DEBUG
cap_table:
  percentage_places: 4
documents:
  minute_book_prefix: books
""")
        config = ConfigManager(path)

        assert config.database.host == "db.internal"
        assert config.database.name == "records"
        assert config.database.user == "minutebook"
        assert config.api.port == 9000
        assert config.api.actor_header == "X-User"
        assert config.api.max_page_size == 100
        assert config.logging.level == "DEBUG"
        assert config.cap_table.percentage_places == 4
        assert config.documents.minute_book_prefix == "books"
        assert config.documents.bundle_extension == "zip"

    def test_to_dict_omits_password(self, tmp_path):
        config = ConfigManager(_write(tmp_path, "database:\n  password: hunter2\n"))
        exported = config.to_dict()

        assert "password" not in exported["database"]
        assert exported["cap_table"]["percentage_places"] == 2

    @pytest.mark.parametrize("text", [
        "logging:\n  level: LOUD\n",
        "cap_table:\n  percentage_places: 12\n",
        "api:\n  port: 70000\n",
        "api:\n  default_page_size: 600\n",
        "api:\n  actor_header: ''\n",
        "- just\n- a list\n",
        "api: [unclosed\n",
    ])
    def test_invalid_config_rejected(self, tmp_path, text):
        with pytest.raises(ConfigurationError):
            ConfigManager(_write(tmp_path, text))


class TestSingleton:
    """get_config returns one shared instance."""

    def test_get_config_caches(self, tmp_path):
        first = get_config(str(tmp_path / "absent.yaml"))
        second = get_config()
        assert first is second
