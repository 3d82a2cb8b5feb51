"""Test configuration precedence: Env > file > Defaults."""

from __future__ import annotations

from pathlib import Path

import pytest

from tome_tagger.config import Config
from tome_tagger.errors import ConfigError

YAML_CONFIG = """
max_workers: 6
backup_tags: false
rename_template: "{author}/{title}"

cache:
  directory: /custom/cache
  ttl_seconds: 7200

providers:
  priority: [google_books, audible]
  min_match_score: 75
  audible:
    marketplace: co.uk
  generative:
    enabled: true

genres:
  max_genres: 3
  approved: [Cozy Mystery]
  aliases:
    whodunit: Mystery

audiobookshelf:
  base_url: http://abs.local
  library_id: lib1

logging:
  level: DEBUG
  hash_paths: true
"""

ENV_KEYS = (
    "TOME_TAGGER_MAX_WORKERS",
    "TOME_TAGGER_GENRE_ENFORCEMENT",
    "TOME_TAGGER_CACHE_TTL_SECONDS",
    "TOME_TAGGER_AUDIBLE_ENABLED",
    "GOOGLE_BOOKS_API_KEY",
    "OPENAI_API_KEY",
    "ABS_API_TOKEN",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def yaml_path(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(YAML_CONFIG)
    return path


def test_yaml_loading(yaml_path: Path):
    config = Config.load(yaml_path)

    assert config.max_workers == 6
    assert config.backup_tags is False
    assert config.rename_template == "{author}/{title}"
    assert config.cache.directory == Path("/custom/cache")
    assert config.cache.ttl_seconds == 7200
    assert config.providers.priority == ["google_books", "audible"]
    assert config.providers.min_match_score == 75
    assert config.providers.audible.marketplace == "co.uk"
    assert config.providers.generative.enabled is True
    assert config.genres.max_genres == 3
    assert config.genres.aliases == {"whodunit": "Mystery"}
    assert config.audiobookshelf.configured is False
    assert config.logging.level == "DEBUG"
    assert config.logging.hash_paths is True


def test_env_overrides_file(yaml_path: Path, monkeypatch):
    monkeypatch.setenv("TOME_TAGGER_MAX_WORKERS", "2")
    monkeypatch.setenv("TOME_TAGGER_GENRE_ENFORCEMENT", "no")
    monkeypatch.setenv("TOME_TAGGER_AUDIBLE_ENABLED", "false")
    monkeypatch.setenv("GOOGLE_BOOKS_API_KEY", "g-key")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("ABS_API_TOKEN", "abs-token")

    config = Config.load(yaml_path)

    assert config.max_workers == 2
    assert config.genre_enforcement is False
    assert config.providers.audible.enabled is False
    # File values in the same section survive
    assert config.providers.audible.marketplace == "co.uk"
    assert config.providers.google_books.api_key == "g-key"
    assert config.providers.generative.api_key == "sk-test"
    assert config.audiobookshelf.api_token == "abs-token"
    assert config.audiobookshelf.configured is True


def test_empty_file_gives_defaults(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("")

    assert Config.load(path) == Config()


def test_non_mapping_top_level_rejected(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigError, match="mapping"):
        Config.load(path)


def test_unparseable_toml_rejected(tmp_path: Path):
    path = tmp_path / "config.toml"
    path.write_text("max_workers = = 3")

    with pytest.raises(ConfigError, match="Could not parse"):
        Config.load(path)


def test_invalid_env_value_rejected(monkeypatch):
    monkeypatch.setenv("TOME_TAGGER_CACHE_TTL_SECONDS", "-5")

    with pytest.raises(ConfigError):
        Config.load()


def test_saved_yaml_loads_back(yaml_path: Path, tmp_path: Path):
    config = Config.load(yaml_path)
    saved = config.save(tmp_path / "nested" / "saved.yaml")

    assert saved.exists()
    assert not saved.with_suffix(".yaml.tmp").exists()
    assert Config.load(saved) == config
