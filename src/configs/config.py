# src/configs/config.py
from functools import lru_cache
from pathlib import Path

import yaml


class Config:
    """
    File-based configuration for the ingestion core.
    """

    # This points to src/configs/
    CONFIG_DIR = Path(__file__).parent.resolve()
    # This points to the project root
    PROJECT_ROOT = CONFIG_DIR.parent.parent

    SOURCES_CONFIG_PATH = CONFIG_DIR / "sources.yaml"

    @classmethod
    @lru_cache
    def load_sources_config(cls, path: Path | None = None) -> list[dict]:
        """
        Load the statically declared sources.

        Args:
            path: YAML file to read (defaults to src/configs/sources.yaml)

        Returns:
            List of source definitions (dicts accepted by SourceManager.create_source)
        """
        path = Path(path) if path else cls.SOURCES_CONFIG_PATH
        if not path.exists():
            raise FileNotFoundError(f"Missing config at {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        sources = data.get("sources", []) if isinstance(data, dict) else data
        if not isinstance(sources, list):
            raise ValueError(f"'sources' must be a list in {path}")
        return sources
