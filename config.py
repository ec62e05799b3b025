"""
Configuration Management for the workbench.

WHAT THIS FILE DOES:
-------------------
Loads and validates configuration from YAML files with sensible defaults.
Provides a clean interface for the execution runtime, the project importer
and the workspace store.

CONFIG FILE LOCATION:
--------------------
Default: ~/.workbench/config.yaml

CONFIG FORMAT:
-------------
```yaml
runtime:
  boot_timeout: 30
  command_timeout: 120
  stop_grace: 2
  max_output_chars: 120000
  workdir: null            # null = fresh temp dir per engine

importer:
  host: "github.com"
  api_base: "https://api.github.com"
  workers: 8
  max_file_bytes: 1000000
  max_files: 2000
  max_total_bytes: 20000000

persistence:
  directory: "~/.workbench/store"
  fallback_directory: "~/.workbench/fallback"
  history_limit: 10
```
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


# Extensions never fetched during import: images, media, archives, fonts,
# compiled objects and other non-text payloads.
DEFAULT_BINARY_EXTENSIONS = [
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".tiff", ".psd",
    ".mp3", ".mp4", ".wav", ".ogg", ".flac", ".avi", ".mov", ".webm", ".mkv",
    ".zip", ".tar", ".gz", ".tgz", ".bz2", ".xz", ".7z", ".rar", ".jar", ".war",
    ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".exe", ".dll", ".so", ".dylib", ".bin", ".o", ".a", ".class", ".pyc", ".pyo",
    ".wasm", ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".sqlite", ".db", ".dat", ".pack", ".idx",
]


# =============================================================================
# CONFIGURATION DATA CLASSES
# =============================================================================

@dataclass
class RuntimeConfig:
    """Settings for the execution controller and its engine."""
    boot_timeout: float = 30.0
    command_timeout: float = 120.0
    stop_grace: float = 2.0
    max_output_chars: int = 120_000
    workdir: Optional[str] = None

    @property
    def workdir_path(self) -> Optional[Path]:
        """Get the sandbox path, expanding ~ if present."""
        return Path(self.workdir).expanduser() if self.workdir else None


@dataclass
class ImportConfig:
    """Settings for remote project import."""
    host: str = "github.com"
    api_base: str = "https://api.github.com"
    workers: int = 8
    max_file_bytes: int = 1_000_000
    max_files: int = 2_000
    max_total_bytes: int = 20_000_000
    max_listing_entries: int = 100_000
    request_timeout: float = 30.0
    import_timeout: float = 300.0
    binary_extensions: list[str] = field(
        default_factory=lambda: list(DEFAULT_BINARY_EXTENSIONS)
    )


@dataclass
class PersistenceConfig:
    """Settings for the workspace store."""
    directory: str = "~/.workbench/store"
    fallback_directory: str = "~/.workbench/fallback"
    history_limit: int = 10

    @property
    def directory_path(self) -> Path:
        return Path(self.directory).expanduser()

    @property
    def fallback_path(self) -> Path:
        return Path(self.fallback_directory).expanduser()


@dataclass
class Config:
    """
    Complete configuration for the workbench.

    It can be loaded from a YAML file or created with defaults.
    """
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    importer: ImportConfig = field(default_factory=ImportConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)


# =============================================================================
# DEFAULT CONFIGURATION
# =============================================================================

def get_default_config() -> Config:
    """Get the default configuration."""
    return Config()


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================

def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    return section


def _parse_config(data: dict) -> Config:
    """Parse a complete configuration from dict."""
    config = get_default_config()

    runtime = _section(data, "runtime")
    if runtime:
        defaults = config.runtime
        config.runtime = RuntimeConfig(
            boot_timeout=float(runtime.get("boot_timeout", defaults.boot_timeout)),
            command_timeout=float(runtime.get("command_timeout", defaults.command_timeout)),
            stop_grace=float(runtime.get("stop_grace", defaults.stop_grace)),
            max_output_chars=int(runtime.get("max_output_chars", defaults.max_output_chars)),
            workdir=runtime.get("workdir", defaults.workdir),
        )

    # Accept both "importer" and "import"
    importer = _section(data, "importer") or _section(data, "import")
    if importer:
        defaults = config.importer
        config.importer = ImportConfig(
            host=importer.get("host", defaults.host),
            api_base=importer.get("api_base", defaults.api_base).rstrip("/"),
            workers=max(1, int(importer.get("workers", defaults.workers))),
            max_file_bytes=int(importer.get("max_file_bytes", defaults.max_file_bytes)),
            max_files=int(importer.get("max_files", defaults.max_files)),
            max_total_bytes=int(importer.get("max_total_bytes", defaults.max_total_bytes)),
            max_listing_entries=int(importer.get("max_listing_entries", defaults.max_listing_entries)),
            request_timeout=float(importer.get("request_timeout", defaults.request_timeout)),
            import_timeout=float(importer.get("import_timeout", defaults.import_timeout)),
            binary_extensions=[
                ext.lower() if ext.startswith(".") else f".{ext.lower()}"
                for ext in importer.get("binary_extensions", defaults.binary_extensions)
            ],
        )

    persistence = _section(data, "persistence")
    if persistence:
        defaults = config.persistence
        config.persistence = PersistenceConfig(
            directory=persistence.get("directory", defaults.directory),
            fallback_directory=persistence.get("fallback_directory", defaults.fallback_directory),
            history_limit=max(1, int(persistence.get("history_limit", defaults.history_limit))),
        )

    return config


DEFAULT_CONFIG_PATHS = [
    Path.home() / ".workbench" / "config.yaml",
    Path("./workbench.yaml"),
    Path("./workbench.yml"),
]


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to config file. If None, tries default locations:
              1. ~/.workbench/config.yaml
              2. ./workbench.yaml (or .yml)
              3. Falls back to defaults

    Returns:
        Loaded configuration (or defaults if file not found)
    """
    if path:
        path = Path(path).expanduser()
        if path.exists():
            return load_config_from_file(path)
        raise FileNotFoundError(f"Config file not found: {path}")

    default_path = get_config_path()
    if default_path:
        return load_config_from_file(default_path)

    return get_default_config()


def load_config_from_file(path: Path) -> Config:
    """
    Load configuration from a specific file.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is invalid
    """
    path = Path(path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    return _parse_config(data)


def save_config(config: Config, path: Path) -> None:
    """Save configuration to a YAML file."""
    data = {
        "runtime": {
            "boot_timeout": config.runtime.boot_timeout,
            "command_timeout": config.runtime.command_timeout,
            "stop_grace": config.runtime.stop_grace,
            "max_output_chars": config.runtime.max_output_chars,
            "workdir": config.runtime.workdir,
        },
        "importer": {
            "host": config.importer.host,
            "api_base": config.importer.api_base,
            "workers": config.importer.workers,
            "max_file_bytes": config.importer.max_file_bytes,
            "max_files": config.importer.max_files,
            "max_total_bytes": config.importer.max_total_bytes,
            "max_listing_entries": config.importer.max_listing_entries,
            "request_timeout": config.importer.request_timeout,
            "import_timeout": config.importer.import_timeout,
        },
        "persistence": {
            "directory": config.persistence.directory,
            "fallback_directory": config.persistence.fallback_directory,
            "history_limit": config.persistence.history_limit,
        },
    }

    if config.importer.binary_extensions != DEFAULT_BINARY_EXTENSIONS:
        data["importer"]["binary_extensions"] = config.importer.binary_extensions

    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def get_config_path() -> Optional[Path]:
    """
    Get the path to the active config file, if any exists.

    Returns:
        Path to config file or None if using defaults
    """
    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            return path

    return None
