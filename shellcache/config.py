"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Routes that make the app minimally usable offline.
DEFAULT_SHELL_PAGES = ("/", "/dashboard", "/sign-in", "/discover", "/pricing", "/blog")

# API traffic must always be live.
DEFAULT_BYPASS_PREFIXES = ("/api/",)

# Special version value: derive the version from the build identifier file.
AUTO_VERSION = "auto"


@dataclass(frozen=True)
class OriginConfig:
    """The application origin the controller fronts."""

    url: str
    timeout: float | None = None  # None lets the network layer decide

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigError("Origin URL cannot be empty")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"Origin URL must start with http:// or https://, got '{self.url}'")
        if not urlparse(self.url).hostname:
            raise ConfigError(f"Origin URL has no hostname: '{self.url}'")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(f"Origin timeout must be positive (got {self.timeout})")

    @property
    def base(self) -> str:
        """Origin as scheme://host[:port] without a trailing slash."""
        parsed = urlparse(self.url)
        return f"{parsed.scheme}://{parsed.netloc}"


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for the versioned Cache Store.

    The store name is ``{prefix}-{version}``. Bumping ``version`` (or using
    ``auto`` with a new build identifier) invalidates every cached entry on
    the next activation.
    """

    prefix: str = "creatrid"
    version: str = "v1"
    build_id_file: str | None = None
    shell_pages: tuple[str, ...] = DEFAULT_SHELL_PAGES
    bypass_prefixes: tuple[str, ...] = DEFAULT_BYPASS_PREFIXES
    write_workers: int = 2

    def __post_init__(self) -> None:
        if not self.prefix:
            raise ConfigError("Cache prefix cannot be empty")
        if not self.version:
            raise ConfigError("Cache version cannot be empty")
        if self.version == AUTO_VERSION and not self.build_id_file:
            raise ConfigError("Cache build_id_file is required when version is 'auto'")
        if not self.shell_pages:
            raise ConfigError("At least one shell page must be configured")
        for page in self.shell_pages:
            if not page.startswith("/"):
                raise ConfigError(f"Shell page must be an absolute path, got '{page}'")
        for prefix in self.bypass_prefixes:
            if not prefix.startswith("/"):
                raise ConfigError(f"Bypass prefix must start with '/', got '{prefix}'")
        if "/" not in self.shell_pages:
            raise ConfigError("Shell pages must include the root page '/' (offline fallback)")
        if self.write_workers < 1:
            raise ConfigError(f"Cache write_workers must be at least 1 (got {self.write_workers})")


def _get_default_db_path() -> str:
    """Get the default database path using XDG-compliant directory.

    Returns ~/.local/share/shellcache/cache.db which is the standard
    location for user-specific data files on Linux/macOS.
    """
    home = Path.home()
    return str(home / ".local" / "share" / "shellcache" / "cache.db")


# Default database path (XDG-compliant user data directory)
DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for the SQLite cache storage."""

    path: str = DEFAULT_DB_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Database path cannot be empty")


@dataclass(frozen=True)
class ProxyConfig:
    """Configuration for the HTTP front."""

    enabled: bool = True
    host: str = ""
    port: int = 8080

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Proxy port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    origin: OriginConfig
    cache: CacheConfig = field(default_factory=CacheConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)


def _parse_bool(value: object, name: str) -> bool:
    """Parse a YAML or environment boolean ("true"/"false" strings included)."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "on"):
        return True
    if text in ("false", "0", "no", "off"):
        return False
    raise ConfigError(f"'{name}' must be a boolean, got '{value}'")


def _parse_path_list(value: object, section: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Parse a YAML list of paths into a tuple."""
    if value is None:
        return default
    if not isinstance(value, list):
        raise ConfigError(f"'{section}' must be a list")
    return tuple(str(item) for item in value)


def _parse_origin_config(data: dict | None) -> OriginConfig:
    """Parse origin configuration section."""
    if data is None:
        raise ConfigError("Configuration must contain an 'origin' section")
    if not isinstance(data, dict):
        raise ConfigError("'origin' section must be a dictionary")

    url = data.get("url")
    if url is None:
        raise ConfigError("'origin' section is missing 'url' field")

    timeout = data.get("timeout")

    return OriginConfig(
        url=str(url),
        timeout=float(timeout) if timeout is not None else None,
    )


def _parse_cache_config(data: dict | None) -> CacheConfig:
    """Parse cache configuration section."""
    if data is None:
        return CacheConfig()
    if not isinstance(data, dict):
        raise ConfigError("'cache' section must be a dictionary")

    build_id_file = data.get("build_id_file")

    return CacheConfig(
        prefix=str(data.get("prefix", "creatrid")),
        version=str(data.get("version", "v1")),
        build_id_file=str(build_id_file) if build_id_file is not None else None,
        shell_pages=_parse_path_list(data.get("shell_pages"), "cache.shell_pages", DEFAULT_SHELL_PAGES),
        bypass_prefixes=_parse_path_list(
            data.get("bypass_prefixes"), "cache.bypass_prefixes", DEFAULT_BYPASS_PREFIXES
        ),
        write_workers=int(data.get("write_workers", 2)),
    )


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()
    if not isinstance(data, dict):
        raise ConfigError("'database' section must be a dictionary")

    return DatabaseConfig(path=os.path.expanduser(str(data.get("path", DEFAULT_DB_PATH))))


def _parse_proxy_config(data: dict | None) -> ProxyConfig:
    """Parse proxy configuration section."""
    if data is None:
        return ProxyConfig()
    if not isinstance(data, dict):
        raise ConfigError("'proxy' section must be a dictionary")

    return ProxyConfig(
        enabled=_parse_bool(data.get("enabled", True), "proxy.enabled"),
        host=str(data.get("host", "")),
        port=int(data.get("port", 8080)),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - SHELLCACHE_ORIGIN_URL: Override origin.url
    - SHELLCACHE_CACHE_VERSION: Override cache.version (deploy-time injection)
    - SHELLCACHE_DB_PATH: Override database.path
    - SHELLCACHE_PROXY_PORT: Override proxy.port
    - SHELLCACHE_PROXY_ENABLED: Override proxy.enabled (true/false)
    """
    for section in ("origin", "cache", "database", "proxy"):
        if config_data.get(section) is None:
            config_data[section] = {}

    origin_url = os.environ.get("SHELLCACHE_ORIGIN_URL")
    if origin_url is not None:
        config_data["origin"]["url"] = origin_url

    cache_version = os.environ.get("SHELLCACHE_CACHE_VERSION")
    if cache_version is not None:
        config_data["cache"]["version"] = cache_version

    db_path = os.environ.get("SHELLCACHE_DB_PATH")
    if db_path is not None:
        config_data["database"]["path"] = db_path

    proxy_port = os.environ.get("SHELLCACHE_PROXY_PORT")
    if proxy_port is not None:
        try:
            config_data["proxy"]["port"] = int(proxy_port)
        except ValueError:
            raise ConfigError(f"SHELLCACHE_PROXY_PORT must be an integer, got '{proxy_port}'")

    proxy_enabled = os.environ.get("SHELLCACHE_PROXY_ENABLED")
    if proxy_enabled is not None:
        config_data["proxy"]["enabled"] = _parse_bool(proxy_enabled, "SHELLCACHE_PROXY_ENABLED")

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    data = _apply_env_overrides(data)

    try:
        return Config(
            origin=_parse_origin_config(data.get("origin") or None),
            cache=_parse_cache_config(data.get("cache")),
            database=_parse_database_config(data.get("database")),
            proxy=_parse_proxy_config(data.get("proxy")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
