"""Disk cache for Gemini responses during development.

Enabled only when LLM_CACHE_DIR is set. Keys are hashes of the call inputs
(model name, deterministic prompt text, PDF digest), so any input change is
a miss. Read and write failures are logged and treated as misses; the cache
never breaks a pipeline run.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import structlog

from assemblychat.config import settings

logger = structlog.get_logger()


def _cache_path(namespace: str, key_parts: list[str]) -> Path | None:
    """Return the cache file for these inputs, or None when caching is off."""
    if not settings.llm_cache_dir:
        return None
    digest = hashlib.sha256("|".join(key_parts).encode()).hexdigest()[:24]
    cache_dir = Path(settings.llm_cache_dir) / namespace
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir / f"{digest}.json"


def digest_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def get_cached_text(namespace: str, key_parts: list[str]) -> str | None:
    path = _cache_path(namespace, key_parts)
    if path is None or not path.exists():
        return None
    try:
        value = json.loads(path.read_text())["value"]
    except (OSError, ValueError, KeyError, TypeError):
        logger.warning("llm_cache_corrupt", namespace=namespace, path=str(path))
        return None
    if not isinstance(value, str):
        return None
    logger.info("llm_cache_hit", namespace=namespace, size=len(value))
    return value


def set_cached_text(namespace: str, key_parts: list[str], value: str) -> None:
    path = _cache_path(namespace, key_parts)
    if path is None:
        return
    try:
        path.write_text(json.dumps({"value": value}))
    except OSError:
        logger.warning("llm_cache_write_failed", namespace=namespace, path=str(path))
        return
    logger.info("llm_cache_saved", namespace=namespace, size=len(value))
