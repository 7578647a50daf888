"""
Configuration management for clipkeep stores.

The configuration is stored as a TOML file in the store directory.
Environment variables override file values, so a running watcher can
be tuned without editing the file.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w


CONFIG_FILENAME = "clipkeep.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIR = ".clipkeep"

MIN_POLLING_INTERVAL = 0.1
MAX_POLLING_INTERVAL = 5.0

# Sentinel for max_items: keep everything
UNLIMITED = 0

ENV_PREFIX = "CLIPKEEP_"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class ClipConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Capture
    polling_interval: float = 0.5
    allow_duplicates: bool = False
    max_items: int = 10000
    rate_limit: int = 100
    rate_window: float = 60.0
    save_attempts: int = 3

    # Intelligence
    semantic_search: bool = True
    auto_categorize: bool = True
    index_batch_size: int = 10

    embedding: ProviderConfig = field(default_factory=lambda: ProviderConfig("hash"))

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        """Path to the SQLite item database."""
        return self.path / "clips.db"

    @property
    def unlimited(self) -> bool:
        return self.max_items == UNLIMITED

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()

    def validate(self) -> None:
        """
        Check value bounds.

        Raises:
            ValueError: If any value is out of range
        """
        if not MIN_POLLING_INTERVAL <= self.polling_interval <= MAX_POLLING_INTERVAL:
            raise ValueError(
                f"polling_interval must be in [{MIN_POLLING_INTERVAL}, {MAX_POLLING_INTERVAL}] "
                f"seconds, got {self.polling_interval}"
            )
        if self.max_items < 0:
            raise ValueError(f"max_items must be >= 0 (0 = unlimited), got {self.max_items}")
        if self.rate_limit < 1:
            raise ValueError(f"rate_limit must be >= 1, got {self.rate_limit}")
        if self.rate_window <= 0:
            raise ValueError(f"rate_window must be > 0, got {self.rate_window}")
        if self.save_attempts < 1:
            raise ValueError(f"save_attempts must be >= 1, got {self.save_attempts}")
        if self.index_batch_size < 1:
            raise ValueError(f"index_batch_size must be >= 1, got {self.index_batch_size}")
        if not self.embedding.name:
            raise ValueError("embedding provider name is required")


def get_store_path() -> Path:
    """
    Resolve the store directory.

    Priority:
    1. CLIPKEEP_STORE_PATH environment variable
    2. ~/.clipkeep
    """
    env_path = os.environ.get("CLIPKEEP_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / DEFAULT_STORE_DIR


def detect_default_embedding() -> ProviderConfig:
    """
    Pick the default embedding provider for this environment.

    Prefers sentence-transformers when it is installed (local, semantic);
    otherwise the dependency-free hash provider.
    """
    try:
        import sentence_transformers  # noqa
        return ProviderConfig("sentence-transformers")
    except ImportError:
        return ProviderConfig("hash")


def create_default_config(store_path: Path) -> ClipConfig:
    """Create a new config with auto-detected defaults."""
    return ClipConfig(path=store_path, embedding=detect_default_embedding())


def _parse_bool(value: str) -> bool:
    v = value.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Not a boolean: {value!r}")


# Environment variable -> (attribute, parser)
_ENV_OVERRIDES = {
    "POLLING_INTERVAL": ("polling_interval", float),
    "MAX_ITEMS": ("max_items", int),
    "ALLOW_DUPLICATES": ("allow_duplicates", _parse_bool),
    "SEMANTIC_SEARCH": ("semantic_search", _parse_bool),
    "AUTO_CATEGORIZE": ("auto_categorize", _parse_bool),
    "RATE_LIMIT": ("rate_limit", int),
    "RATE_WINDOW": ("rate_window", float),
}


def apply_env_overrides(config: ClipConfig, environ: dict[str, str] | None = None) -> ClipConfig:
    """
    Apply CLIPKEEP_* environment overrides in place and re-validate.

    Raises:
        ValueError: If an override cannot be parsed or is out of range
    """
    env = os.environ if environ is None else environ
    for suffix, (attr, parse) in _ENV_OVERRIDES.items():
        raw = env.get(ENV_PREFIX + suffix)
        if raw is None or raw == "":
            continue
        try:
            setattr(config, attr, parse(raw))
        except ValueError as e:
            raise ValueError(f"Invalid {ENV_PREFIX}{suffix}={raw!r}: {e}") from e
    embedding = env.get(ENV_PREFIX + "EMBEDDING")
    if embedding:
        config.embedding = ProviderConfig(embedding)
    config.validate()
    return config


def load_config(store_path: Path) -> ClipConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    capture = data.get("capture", {})
    search = data.get("search", {})
    embedding = data.get("embedding", {"name": "hash"})

    config = ClipConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        polling_interval=float(capture.get("polling_interval", 0.5)),
        allow_duplicates=bool(capture.get("allow_duplicates", False)),
        max_items=int(capture.get("max_items", 10000)),
        rate_limit=int(capture.get("rate_limit", 100)),
        rate_window=float(capture.get("rate_window", 60.0)),
        save_attempts=int(capture.get("save_attempts", 3)),
        semantic_search=bool(search.get("enabled", True)),
        auto_categorize=bool(search.get("auto_categorize", True)),
        index_batch_size=int(search.get("batch_size", 10)),
        embedding=ProviderConfig(
            name=embedding.get("name", ""),
            params={k: v for k, v in embedding.items() if k != "name"},
        ),
    )
    config.validate()
    return config


def save_config(config: ClipConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.validate()
    config.path.mkdir(parents=True, exist_ok=True)

    embedding = {"name": config.embedding.name}
    embedding.update(config.embedding.params)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "capture": {
            "polling_interval": config.polling_interval,
            "allow_duplicates": config.allow_duplicates,
            "max_items": config.max_items,
            "rate_limit": config.rate_limit,
            "rate_window": config.rate_window,
            "save_attempts": config.save_attempts,
        },
        "search": {
            "enabled": config.semantic_search,
            "auto_categorize": config.auto_categorize,
            "batch_size": config.index_batch_size,
        },
        "embedding": embedding,
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> ClipConfig:
    """
    Load existing config or create a new one with defaults,
    then apply environment overrides.

    This is the main entry point for config management.
    """
    if (store_path / CONFIG_FILENAME).exists():
        config = load_config(store_path)
    else:
        config = create_default_config(store_path)
        save_config(config)
    return apply_env_overrides(config)
