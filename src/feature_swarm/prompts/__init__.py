"""Prompt template loader with caching."""

from pathlib import Path

_DIR = Path(__file__).parent
_cache: dict[str, str] = {}


def load(name: str) -> str:
    """Load a prompt template by relative path (e.g. 'agent.md')."""
    if name not in _cache:
        _cache[name] = (_DIR / name).read_text(encoding="utf-8").strip()
    return _cache[name]


def render(name: str, **fields: object) -> str:
    """Load a template and fill its ``{placeholders}``."""
    return load(name).format(**fields)
