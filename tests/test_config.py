"""
Tests for the Mirra.toml configuration layer.
"""

import pytest

from mirra.config import ConfigManager, MirraConfig, ModuleSection
from mirra.errors import ConfigError
from mirra.registry import DEFAULT_PORT, ModuleRole


@pytest.fixture
def manager(tmp_path):
    return ConfigManager(tmp_path)


class TestModuleSection:
    def test_served_section(self):
        section = ModuleSection(path="/srv/docs")
        assert not section.is_synced

    def test_synced_section(self):
        section = ModuleSection(host="10.0.0.2", port=7000)
        assert section.is_synced
        assert section.path is None

    def test_ip_is_an_alias_of_host(self):
        section = ModuleSection.model_validate({"ip": "10.0.0.2"})
        assert section.host == "10.0.0.2"
        assert section.port == DEFAULT_PORT

    def test_needs_path_or_host(self):
        with pytest.raises(ValueError):
            ModuleSection()

    def test_reshare_requires_host(self):
        with pytest.raises(ValueError):
            ModuleSection(path="/srv/docs", reshare=True)

    def test_unknown_keys_are_rejected(self):
        with pytest.raises(ValueError):
            ModuleSection.model_validate({"path": "/srv", "colour": "blue"})


class TestConfigManager:
    """Tests for loading and saving the config file."""

    def test_defaults_without_file(self, manager):
        config = manager.load()
        assert not manager.exists()
        assert config.node.port == DEFAULT_PORT
        assert config.sync.outbox_size == 64
        assert config.modules == {}

    def test_paths(self, manager, tmp_path):
        assert manager.data_dir == tmp_path.resolve() / ".mirra"
        assert manager.get_config_path().name == "Mirra.toml"
        assert manager.get_state_path().parent == manager.data_dir

    def test_save_and_load(self, manager):
        config = MirraConfig()
        config.node.name = "laptop"
        config.modules["docs"] = ModuleSection(path="docs")
        config.modules["photos"] = ModuleSection(host="nas.local", public_key="abc")
        manager.save(config)

        loaded = manager.load()
        assert manager.exists()
        assert loaded.node.name == "laptop"
        assert loaded.modules["docs"].path == "docs"
        assert loaded.modules["photos"].host == "nas.local"
        assert loaded.modules["photos"].public_key == "abc"

    def test_saved_file_omits_unset_values(self, manager):
        config = MirraConfig()
        config.modules["docs"] = ModuleSection(path="docs")
        manager.save(config)

        text = manager.get_config_path().read_text()
        assert "[modules.docs]" in text
        assert "public_key" not in text

    def test_hand_written_file(self, manager):
        manager.data_dir.mkdir(parents=True)
        manager.get_config_path().write_text(
            "[node]\n"
            'name = "desk"\n'
            "port = 7100\n"
            "\n"
            "[sync]\n"
            "debounce = 0.5\n"
            "\n"
            "[modules.music]\n"
            'ip = "192.168.1.20"\n'
            "port = 7200\n"
        )
        config = manager.load()
        assert config.node.name == "desk"
        assert config.node.port == 7100
        assert config.sync.debounce == 0.5
        assert config.modules["music"].host == "192.168.1.20"

    def test_invalid_toml(self, manager):
        manager.data_dir.mkdir(parents=True)
        manager.get_config_path().write_text("[node\nname = ")
        with pytest.raises(ConfigError):
            manager.load()

    def test_invalid_values(self, manager):
        manager.data_dir.mkdir(parents=True)
        manager.get_config_path().write_text("[node]\nport = 0\n")
        with pytest.raises(ConfigError):
            manager.load()

    def test_environment_overrides_file(self, manager, monkeypatch):
        manager.save(MirraConfig())
        monkeypatch.setenv("MIRRA_NODE__PORT", "7300")
        assert manager.load().node.port == 7300


class TestModules:
    def test_to_modules(self, manager, tmp_path):
        config = MirraConfig()
        config.modules["docs"] = ModuleSection(path="shared/docs")
        config.modules["photos"] = ModuleSection(host="nas", port=7000, reshare=True)

        docs, photos = manager.to_modules(config)

        assert docs.role == ModuleRole.SERVED
        assert docs.path == tmp_path.resolve() / "shared" / "docs"
        assert photos.role == ModuleRole.SYNCED
        assert photos.path == tmp_path.resolve() / "photos"
        assert photos.peer.endpoint_id == "nas:7000"
        assert photos.is_served

    def test_add_and_remove_module(self, manager):
        manager.add_module("docs", ModuleSection(path="docs"))
        assert "docs" in manager.load().modules

        manager.remove_module("docs")
        assert manager.load().modules == {}

    def test_remove_unknown_module(self, manager):
        with pytest.raises(ConfigError):
            manager.remove_module("nope")

    def test_add_invalid_module_is_not_saved(self, manager):
        with pytest.raises(ConfigError):
            manager.add_module("a/b", ModuleSection(path="docs"))
        assert not manager.exists()
