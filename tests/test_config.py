"""Tests for store configuration."""

import pytest

from clipkeep.config import (
    CONFIG_FILENAME,
    ClipConfig,
    ProviderConfig,
    apply_env_overrides,
    get_store_path,
    load_config,
    load_or_create_config,
    save_config,
)


class TestConfigFile:
    """TOML persistence."""

    def test_created_on_first_use(self, tmp_path):
        config = load_or_create_config(tmp_path / "store")
        assert (tmp_path / "store" / CONFIG_FILENAME).exists()
        assert config.polling_interval == 0.5
        assert config.max_items == 10000
        assert config.semantic_search
        assert config.auto_categorize
        assert not config.allow_duplicates

    def test_round_trip(self, tmp_path):
        config = ClipConfig(
            path=tmp_path,
            polling_interval=1.5,
            allow_duplicates=True,
            max_items=0,
            rate_limit=10,
            embedding=ProviderConfig("hash", {"dimension": 128}),
        )
        save_config(config)
        loaded = load_config(tmp_path)
        assert loaded.polling_interval == 1.5
        assert loaded.allow_duplicates
        assert loaded.unlimited
        assert loaded.rate_limit == 10
        assert loaded.embedding == ProviderConfig("hash", {"dimension": 128})

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_newer_version_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('[store]\nversion = 99\n')
        with pytest.raises(ValueError, match="newer"):
            load_config(tmp_path)

    def test_out_of_range_value_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('[capture]\npolling_interval = 9.0\n')
        with pytest.raises(ValueError, match="polling_interval"):
            load_config(tmp_path)


class TestValidation:
    @pytest.mark.parametrize("field,value", [
        ("polling_interval", 0.05),
        ("polling_interval", 6.0),
        ("max_items", -1),
        ("rate_limit", 0),
        ("rate_window", 0.0),
        ("save_attempts", 0),
        ("index_batch_size", 0),
    ])
    def test_rejects(self, tmp_path, field, value):
        config = ClipConfig(path=tmp_path)
        setattr(config, field, value)
        with pytest.raises(ValueError):
            config.validate()

    def test_paths(self, tmp_path):
        config = ClipConfig(path=tmp_path)
        assert config.db_path == tmp_path / "clips.db"
        assert config.config_path == tmp_path / CONFIG_FILENAME


class TestEnvironment:
    """CLIPKEEP_* overrides."""

    def test_overrides_applied(self, tmp_path):
        config = apply_env_overrides(ClipConfig(path=tmp_path), {
            "CLIPKEEP_POLLING_INTERVAL": "2.0",
            "CLIPKEEP_MAX_ITEMS": "50",
            "CLIPKEEP_ALLOW_DUPLICATES": "yes",
            "CLIPKEEP_SEMANTIC_SEARCH": "off",
            "CLIPKEEP_EMBEDDING": "ollama",
        })
        assert config.polling_interval == 2.0
        assert config.max_items == 50
        assert config.allow_duplicates
        assert not config.semantic_search
        assert config.embedding.name == "ollama"

    def test_empty_values_ignored(self, tmp_path):
        config = apply_env_overrides(ClipConfig(path=tmp_path), {"CLIPKEEP_MAX_ITEMS": ""})
        assert config.max_items == 10000

    def test_bad_values_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="CLIPKEEP_ALLOW_DUPLICATES"):
            apply_env_overrides(ClipConfig(path=tmp_path), {"CLIPKEEP_ALLOW_DUPLICATES": "maybe"})
        with pytest.raises(ValueError):
            apply_env_overrides(ClipConfig(path=tmp_path), {"CLIPKEEP_POLLING_INTERVAL": "60"})

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        save_config(ClipConfig(path=tmp_path, max_items=100))
        monkeypatch.setenv("CLIPKEEP_MAX_ITEMS", "7")
        assert load_or_create_config(tmp_path).max_items == 7

    def test_store_path_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CLIPKEEP_STORE_PATH", str(tmp_path / "custom"))
        assert get_store_path() == (tmp_path / "custom").resolve()
