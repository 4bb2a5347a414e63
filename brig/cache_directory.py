"""Cache root resolution."""

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

APP_NAME = "brig"

CACHE_PREFIXES = (
    "$XDG_DATA_HOME",
    "$XDG_CACHE_HOME",
    "~/.local/share",
    "~/.cache",
)


def _expand(prefix: str) -> str:
    expanded = os.path.expanduser(os.path.expandvars(prefix))
    # expandvars leaves unset variables untouched
    return "" if "$" in expanded else expanded


def get_cache_directory(configured: Optional[str] = None, app_name: str = APP_NAME) -> Path:
    """
    Return the cache root, creating it if needed.

    Resolution order:
    1. configured (cache_dir from config.yaml)
    2. <prefix>/<app_name> for the first existing prefix in CACHE_PREFIXES
    3. ~/.local/share/<app_name>, created with its parents

    Args:
        configured: Explicit cache directory
        app_name: Subdirectory name under the chosen prefix

    Returns:
        Absolute path of the cache root
    """
    if configured:
        cache_dir = Path(configured).expanduser().resolve()
        cache_dir.mkdir(parents=True, exist_ok=True)
        return cache_dir

    for prefix in CACHE_PREFIXES:
        base = _expand(prefix)
        if not base:
            continue
        if not Path(base).is_dir():
            logger.debug(f"Cache prefix does not exist: {base}")
            continue
        cache_dir = (Path(base) / app_name).resolve()
        cache_dir.mkdir(exist_ok=True)
        logger.debug(f"Using cache directory: {cache_dir}")
        return cache_dir

    cache_dir = (Path.home() / ".local" / "share" / app_name).resolve()
    cache_dir.mkdir(parents=True, exist_ok=True)
    logger.debug(f"Using fallback cache directory: {cache_dir}")
    return cache_dir
