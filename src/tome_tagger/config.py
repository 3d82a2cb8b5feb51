from __future__ import annotations

import os
import tomllib
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from tome_tagger.errors import ConfigError

DEFAULT_CONFIG_PATH = Path("~/.config/tome-tagger/config.yaml")


def _truthy(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


class CacheConfig(BaseModel):
    """Metadata cache configuration."""

    directory: Path = Field(default=Path(".cache/tome-tagger"))
    ttl_seconds: int = Field(default=604800, ge=0)  # 7 days
    enabled: bool = Field(default=True)


class GoogleBooksConfig(BaseModel):
    """Google Books volumes API."""

    enabled: bool = Field(default=True)
    api_key: str | None = Field(default=None)
    base_url: str = Field(default="https://www.googleapis.com/books/v1")
    rate_limit: float = Field(default=1.0, ge=0)  # req/sec
    timeout_s: float = Field(default=15.0, ge=1.0)


class AudibleConfig(BaseModel):
    """Audible catalog API (no credentials needed for catalog search)."""

    enabled: bool = Field(default=True)
    marketplace: str = Field(default="com")  # com, co.uk, de, ...
    rate_limit: float = Field(default=2.0, ge=0)  # req/sec
    timeout_s: float = Field(default=15.0, ge=1.0)


class GenerativeConfig(BaseModel):
    """OpenAI-compatible chat completions endpoint used as a metadata source."""

    enabled: bool = Field(default=False)
    api_key: str | None = Field(default=None)
    base_url: str = Field(default="https://api.openai.com/v1")
    model_id: str = Field(default="gpt-4o-mini")
    rate_limit: float = Field(default=0.5, ge=0)  # req/sec
    timeout_s: float = Field(default=60.0, ge=1.0)
    max_tokens: int = Field(default=1500, ge=1)


class ProvidersConfig(BaseModel):
    """Metadata providers and the order in which they win field conflicts."""

    # First provider to supply a non-empty value for a field wins it
    priority: list[str] = Field(default_factory=lambda: ["audible", "google_books", "generative"])
    min_match_score: float = Field(default=60.0, ge=0, le=100)
    google_books: GoogleBooksConfig = Field(default_factory=GoogleBooksConfig)
    audible: AudibleConfig = Field(default_factory=AudibleConfig)
    generative: GenerativeConfig = Field(default_factory=GenerativeConfig)


class GenresConfig(BaseModel):
    """Genre union cap and vocabulary overrides."""

    # None means no cap
    max_genres: int | None = Field(default=None, ge=1)
    # Extra approved genres and alias → genre folds on top of the built-in vocabulary
    approved: list[str] = Field(default_factory=list)
    aliases: dict[str, str] = Field(default_factory=dict)


class AudiobookshelfConfig(BaseModel):
    """Remote library server used by the sync stage."""

    base_url: str = Field(default="")
    api_token: str = Field(default="")
    library_id: str = Field(default="")
    timeout_s: float = Field(default=30.0, ge=1.0)
    page_size: int = Field(default=200, ge=1)

    @property
    def configured(self) -> bool:
        return bool(self.base_url.strip() and self.api_token.strip() and self.library_id.strip())


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="WARNING")  # DEBUG, INFO, WARNING, ERROR
    format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    hash_paths: bool = Field(default=False)


class Config(BaseModel):
    """
    Main configuration for tome-tagger.

    Loads from a TOML or YAML file with optional environment variable overrides,
    and saves back to YAML.
    """

    max_workers: int = Field(default=10, ge=1)
    scan_parallelism_factor: int = Field(default=2, ge=1)
    backup_tags: bool = Field(default=True)
    backup_dir: Path | None = Field(default=None)
    skip_unchanged: bool = Field(default=False)
    genre_enforcement: bool = Field(default=True)
    library_root: Path | None = Field(default=None)
    rename_template: str = Field(default="{author} - [{series} #{sequence} - ]{title}[ ({year})]")

    cache: CacheConfig = Field(default_factory=CacheConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    genres: GenresConfig = Field(default_factory=GenresConfig)
    audiobookshelf: AudiobookshelfConfig = Field(default_factory=AudiobookshelfConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: Path | None = None) -> Config:
        """
        Load configuration from file with environment variable overrides.

        Environment variables take precedence and follow the pattern:
        TOME_TAGGER_<SECTION>_<KEY> (e.g., TOME_TAGGER_CACHE_TTL_SECONDS)

        All values are gathered into a single dictionary first, then validated
        by Pydantic to ensure consistent type checking and coercion.
        """
        config_dict: dict[str, object] = {}

        if config_path:
            config_path = config_path.expanduser()
        if config_path and config_path.exists():
            config_dict = cls._read_file(config_path)

        config_dict = cls._merge_env_overrides(config_dict)
        try:
            return cls.model_validate(config_dict)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @staticmethod
    def _read_file(config_path: Path) -> dict[str, object]:
        text = config_path.read_text(encoding="utf-8")
        try:
            if config_path.suffix.lower() == ".toml":
                return tomllib.loads(text)
            data = yaml.safe_load(text)
        except (tomllib.TOMLDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not parse {config_path}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Top level of {config_path} must be a mapping")
        return data

    def save(self, config_path: Path | None = None) -> Path:
        """Persist configuration as YAML. Returns the written path."""
        path = (config_path or DEFAULT_CONFIG_PATH).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        tmp_path.replace(path)
        return path

    @classmethod
    def _merge_env_overrides(cls, config_dict: dict[str, object]) -> dict[str, object]:
        """
        Merge environment variable overrides into config dictionary.

        Returns a new dictionary with env vars applied, ready for Pydantic validation.
        """
        env_prefix = "TOME_TAGGER_"

        def section(parent: dict[str, object], name: str) -> dict[str, object]:
            value = parent.setdefault(name, {})
            if not isinstance(value, dict):
                value = {}
                parent[name] = value
            return value

        if max_workers := os.getenv(f"{env_prefix}MAX_WORKERS"):
            config_dict["max_workers"] = max_workers
        if backup := os.getenv(f"{env_prefix}BACKUP_TAGS"):
            config_dict["backup_tags"] = _truthy(backup)
        if backup_dir := os.getenv(f"{env_prefix}BACKUP_DIR"):
            config_dict["backup_dir"] = backup_dir
        if skip := os.getenv(f"{env_prefix}SKIP_UNCHANGED"):
            config_dict["skip_unchanged"] = _truthy(skip)
        if enforcement := os.getenv(f"{env_prefix}GENRE_ENFORCEMENT"):
            config_dict["genre_enforcement"] = _truthy(enforcement)
        if library_root := os.getenv(f"{env_prefix}LIBRARY_ROOT"):
            config_dict["library_root"] = library_root
        if template := os.getenv(f"{env_prefix}RENAME_TEMPLATE"):
            config_dict["rename_template"] = template

        cache = section(config_dict, "cache")
        if cache_dir := os.getenv(f"{env_prefix}CACHE_DIRECTORY"):
            cache["directory"] = cache_dir
        if cache_ttl := os.getenv(f"{env_prefix}CACHE_TTL_SECONDS"):
            cache["ttl_seconds"] = cache_ttl
        if cache_enabled := os.getenv(f"{env_prefix}CACHE_ENABLED"):
            cache["enabled"] = _truthy(cache_enabled)

        providers = section(config_dict, "providers")
        if priority := os.getenv(f"{env_prefix}PROVIDERS_PRIORITY"):
            providers["priority"] = [p.strip() for p in priority.split(",") if p.strip()]

        google = section(providers, "google_books")
        if google_key := os.getenv("GOOGLE_BOOKS_API_KEY"):
            google["api_key"] = google_key
        if google_enabled := os.getenv(f"{env_prefix}GOOGLE_BOOKS_ENABLED"):
            google["enabled"] = _truthy(google_enabled)

        audible = section(providers, "audible")
        if audible_enabled := os.getenv(f"{env_prefix}AUDIBLE_ENABLED"):
            audible["enabled"] = _truthy(audible_enabled)
        if marketplace := os.getenv(f"{env_prefix}AUDIBLE_MARKETPLACE"):
            audible["marketplace"] = marketplace

        generative = section(providers, "generative")
        if openai_key := os.getenv("OPENAI_API_KEY"):
            generative["api_key"] = openai_key
        if gen_enabled := os.getenv(f"{env_prefix}GENERATIVE_ENABLED"):
            generative["enabled"] = _truthy(gen_enabled)
        if gen_model := os.getenv(f"{env_prefix}GENERATIVE_MODEL_ID"):
            generative["model_id"] = gen_model
        if gen_url := os.getenv(f"{env_prefix}GENERATIVE_BASE_URL"):
            generative["base_url"] = gen_url

        genres = section(config_dict, "genres")
        if max_genres := os.getenv(f"{env_prefix}GENRES_MAX_GENRES"):
            genres["max_genres"] = max_genres

        abs_config = section(config_dict, "audiobookshelf")
        if abs_url := os.getenv(f"{env_prefix}ABS_BASE_URL"):
            abs_config["base_url"] = abs_url
        if abs_token := os.getenv("ABS_API_TOKEN"):
            abs_config["api_token"] = abs_token
        if abs_library := os.getenv(f"{env_prefix}ABS_LIBRARY_ID"):
            abs_config["library_id"] = abs_library

        logging_config = section(config_dict, "logging")
        if log_level := os.getenv(f"{env_prefix}LOGGING_LEVEL"):
            logging_config["level"] = log_level
        if log_format := os.getenv(f"{env_prefix}LOGGING_FORMAT"):
            logging_config["format"] = log_format
        if log_hash_paths := os.getenv(f"{env_prefix}LOGGING_HASH_PATHS"):
            logging_config["hash_paths"] = _truthy(log_hash_paths)

        return config_dict


## Tests


def test_config_defaults():
    config = Config()
    assert config.max_workers == 10
    assert config.backup_tags is True
    assert config.skip_unchanged is False
    assert config.genre_enforcement is True
    assert config.genres.max_genres is None
    assert config.cache.ttl_seconds == 604800
    assert config.providers.priority == ["audible", "google_books", "generative"]
    assert config.audiobookshelf.configured is False


def test_config_from_dict():
    config = Config.model_validate(
        {
            "max_workers": 4,
            "library_root": "/srv/audiobooks",
            "cache": {"ttl_seconds": 3600, "directory": "/tmp/cache"},
        }
    )
    assert config.max_workers == 4
    assert config.library_root == Path("/srv/audiobooks")
    assert config.cache.ttl_seconds == 3600
    assert config.cache.directory == Path("/tmp/cache")


def test_config_env_overrides(monkeypatch):
    monkeypatch.setenv("TOME_TAGGER_MAX_WORKERS", "3")
    monkeypatch.setenv("TOME_TAGGER_CACHE_TTL_SECONDS", "7200")
    monkeypatch.setenv("TOME_TAGGER_PROVIDERS_PRIORITY", "google_books, audible")
    monkeypatch.setenv("ABS_API_TOKEN", "secret-token")

    config = Config.load()
    assert config.max_workers == 3
    assert config.cache.ttl_seconds == 7200
    assert config.providers.priority == ["google_books", "audible"]
    assert config.audiobookshelf.api_token == "secret-token"


def test_config_load_nonexistent_file():
    config = Config.load(Path("/nonexistent/config.toml"))
    assert config.max_workers == 10


def test_config_load_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('backup_tags = false\n[genres]\nmax_genres = 3\n')
    config = Config.load(path)
    assert config.backup_tags is False
    assert config.genres.max_genres == 3


def test_config_save_round_trip(tmp_path):
    config = Config(max_workers=6, library_root=Path("/library"))
    path = config.save(tmp_path / "config.yaml")
    loaded = Config.load(path)
    assert loaded.max_workers == 6
    assert loaded.library_root == Path("/library")
    assert loaded == config


def test_config_invalid_value_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("max_workers: 0\n")
    try:
        Config.load(path)
        raise AssertionError("Should have raised ConfigError")
    except ConfigError:
        pass
