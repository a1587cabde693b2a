"""
Configuration management for factbase stores.

The configuration is stored as a TOML file in the store directory.
It selects the model provider and holds the tuning knobs of the
consistency engine, the category tree and the worker pool.
"""

import os
import tomllib
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "factbase.toml"
CONFIG_VERSION = 1
DATABASE_FILENAME = "factbase.db"
STORE_PATH_ENV = "FACTBASE_STORE_PATH"

DUPLICATE_STRATEGIES = ("math", "judgment")


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConsistencyConfig:
    duplicate_strategy: str = "math"
    duplicate_threshold: float = 0.9
    similarity_threshold: float = 0.3
    max_results: int = 10
    judgment_top_k: int = 5


@dataclass
class TreeConfig:
    max_leaf_size: int = 20
    max_node_children: int = 10
    query_threshold: float = 0.3
    max_selected: int = 0  # nodes followed per level, 0 = no cap


@dataclass
class WorkerConfig:
    poll_interval: float = 2.0
    max_attempts: int = 3
    shutdown_grace: float = 5.0


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    vault: str = "vault"

    model: ProviderConfig = field(default_factory=lambda: ProviderConfig("ollama"))
    consistency: ConsistencyConfig = field(default_factory=ConsistencyConfig)
    tree: TreeConfig = field(default_factory=TreeConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        return self.path / DATABASE_FILENAME

    @property
    def vault_path(self) -> Path:
        """Vault directory; relative paths are resolved against the store."""
        vault = Path(self.vault).expanduser()
        return vault if vault.is_absolute() else self.path / vault

    @property
    def embedding_model(self) -> str:
        """Identifier stored with embeddings (empty: use the provider's name)."""
        return str(self.model.params.get("embedding_model", ""))

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def resolve_store_path(path: Optional[Path | str] = None) -> Path:
    """Store directory from argument, FACTBASE_STORE_PATH, or ~/.factbase."""
    if path:
        return Path(path).expanduser()
    env = os.environ.get(STORE_PATH_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / ".factbase"


def detect_default_model() -> ProviderConfig:
    """
    Pick the default model provider for the current environment.

    OpenAI when an API key is present, otherwise a local Ollama.
    """
    has_openai_key = bool(
        os.environ.get("FACTBASE_OPENAI_API_KEY")
        or os.environ.get("OPENAI_API_KEY")
    )
    if has_openai_key:
        return ProviderConfig("openai", {
            "chat_model": "gpt-4.1-mini",
            "embedding_model": "text-embedding-3-small",
        })
    return ProviderConfig("ollama", {
        "chat_model": "llama3.2",
        "embedding_model": "nomic-embed-text",
    })


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with auto-detected defaults."""
    return StoreConfig(path=store_path, model=detect_default_model())


def _parse_section(cls, section: dict):
    """Build a settings dataclass from a TOML table, coercing to the field types."""
    kwargs = {}
    for f in fields(cls):
        if f.name not in section:
            continue
        value = section[f.name]
        default = f.default
        try:
            if isinstance(default, bool) or isinstance(default, str):
                kwargs[f.name] = type(default)(value)
            elif isinstance(default, int):
                kwargs[f.name] = int(value)
            elif isinstance(default, float):
                kwargs[f.name] = float(value)
            else:
                kwargs[f.name] = value
        except (TypeError, ValueError):
            raise ValueError(f"Invalid value for {f.name}: {value!r}") from None
    return cls(**kwargs)


def validate_config(config: StoreConfig) -> None:
    """
    Raises:
        ValueError: if any setting is out of range
    """
    c, t, w = config.consistency, config.tree, config.workers
    if c.duplicate_strategy not in DUPLICATE_STRATEGIES:
        raise ValueError(
            f"Unknown duplicate_strategy '{c.duplicate_strategy}'. "
            f"Choose one of: {', '.join(DUPLICATE_STRATEGIES)}"
        )
    for name, value in (
        ("duplicate_threshold", c.duplicate_threshold),
        ("similarity_threshold", c.similarity_threshold),
        ("query_threshold", t.query_threshold),
    ):
        if not -1.0 <= value <= 1.0:
            raise ValueError(f"{name} must be between -1 and 1, got {value}")
    for name, value in (
        ("max_results", c.max_results),
        ("judgment_top_k", c.judgment_top_k),
        ("max_attempts", w.max_attempts),
    ):
        if value < 1:
            raise ValueError(f"{name} must be at least 1, got {value}")
    if t.max_selected < 0:
        raise ValueError(f"max_selected must be 0 (no cap) or more, got {t.max_selected}")
    if t.max_leaf_size < 2:
        raise ValueError(f"max_leaf_size must be at least 2, got {t.max_leaf_size}")
    if t.max_node_children < 2:
        raise ValueError(f"max_node_children must be at least 2, got {t.max_node_children}")
    if w.poll_interval <= 0 or w.shutdown_grace < 0:
        raise ValueError("poll_interval must be positive and shutdown_grace non-negative")
    if not config.model.name:
        raise ValueError("[model] name is required")


def load_config(store_path: Path) -> StoreConfig:
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

    model_section = data.get("model", {"name": "ollama"})
    config = StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        vault=store.get("vault", "vault"),
        model=ProviderConfig(
            name=model_section.get("name", ""),
            params={k: v for k, v in model_section.items() if k != "name"},
        ),
        consistency=_parse_section(ConsistencyConfig, data.get("consistency", {})),
        tree=_parse_section(TreeConfig, data.get("tree", {})),
        workers=_parse_section(WorkerConfig, data.get("workers", {})),
    )
    validate_config(config)
    return config


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    model = {"name": config.model.name}
    model.update(config.model.params)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "vault": config.vault,
        },
        "model": model,
        "consistency": asdict(config.consistency),
        "tree": asdict(config.tree),
        "workers": asdict(config.workers),
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = create_default_config(store_path)
    save_config(config)
    return config
