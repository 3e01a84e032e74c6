"""Cache Store naming.

The active store name is derived from an immutable deploy version so that
each deployment gets its own store and older ones become stale.
"""

import hashlib
from pathlib import Path

from .config import AUTO_VERSION, CacheConfig, ConfigError


def compute_build_version(build_id_file: str) -> str:
    """Compute a version tag from the content hash of a build identifier file.

    A new build writes a new identifier, which yields a new version and
    invalidates every previously cached entry on activation.
    """
    path = Path(build_id_file)
    try:
        content = path.read_bytes()
    except OSError as e:
        raise ConfigError(f"Cannot read build identifier file {build_id_file}: {e}")

    if not content.strip():
        raise ConfigError(f"Build identifier file {build_id_file} is empty")

    content_hash = hashlib.sha256(content.strip()).hexdigest()[:8]
    return f"b{content_hash}"


def build_cache_name(prefix: str, version: str) -> str:
    """Return the store name for a version, e.g. ``creatrid-v1``."""
    return f"{prefix}-{version}"


def resolve_cache_name(config: CacheConfig) -> str:
    """Resolve the active store name for a cache configuration."""
    version = config.version
    if version == AUTO_VERSION:
        # build_id_file presence is validated by CacheConfig
        version = compute_build_version(config.build_id_file or "")
    return build_cache_name(config.prefix, version)
