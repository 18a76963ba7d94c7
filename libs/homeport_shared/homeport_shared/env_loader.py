import logging
import os
from functools import lru_cache

logger = logging.getLogger("homeport.env")


def _candidates() -> list[str]:
    return [
        os.getenv("HOMEPORT_ENV_FILE", ""),
        "/etc/homeport/homeport.env",
        os.path.join("ops", "secrets", "homeport.secrets.env"),
    ]


@lru_cache(maxsize=1)
def ensure_loaded() -> str | None:
    """Load the central env file once, if one exists.

    Priority:
    1) HOMEPORT_ENV_FILE path
    2) /etc/homeport/homeport.env
    3) ops/secrets/homeport.secrets.env (relative to CWD)
    Variables already present in the environment are never overridden.
    Returns the path that was loaded, or None.
    """
    for path in _candidates():
        if path and os.path.isfile(path):
            load_env_file(path)
            return path
    return None


def load_env_file(path: str) -> int:
    loaded = 0
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            if line.startswith("export "):
                line = line[len("export "):]
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            if key and key not in os.environ:
                os.environ[key] = value
                loaded += 1
    logger.debug("Loaded %s variables from %s", loaded, path)
    return loaded
