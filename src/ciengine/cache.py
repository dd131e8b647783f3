# cache.py
from __future__ import annotations

import hashlib
import json
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .ui.console import get_console

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Fetched action definitions are cached on disk so an external action is
# fetched once per (owner/repo/path@version):
#
#   cache_key = sha256({"v": 1, "fetch_key": "owner/repo/path@version"})
#
# Layout:
#   root/
#     <owner>__<repo>/
#       <key>.json      {"key", "fetch_key", "stored_at_unix", "definition"}
#
# Only immutable pins make sense to cache; the resolver decides what it asks for.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".ciengine/cache"
CACHE_FORMAT_VERSION = 1


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def cache_key(fetch_key: str) -> str:
    return _sha256_str(_json_dumps_stable({"v": CACHE_FORMAT_VERSION, "fetch_key": fetch_key}))


def _slug(fetch_key: str) -> str:
    # "owner/repo/sub@v1" -> "owner__repo"
    head = fetch_key.split("@", 1)[0].split("/")
    return re.sub(r"[^A-Za-z0-9_.-]", "_", "__".join(head[:2])) or "_"


class ActionCache:
    """File-based store for fetched action definitions."""

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _action_dir(self, fetch_key: str) -> Path:
        d = self.root / _slug(fetch_key)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def entry_path(self, fetch_key: str) -> Path:
        return self._action_dir(fetch_key) / f"{cache_key(fetch_key)}.json"

    def lookup(self, fetch_key: str) -> CacheHit:
        key = cache_key(fetch_key)
        path = self.entry_path(fetch_key)
        if not path.exists():
            return CacheHit(hit=False, key=key, reason="cache miss", manifest={})

        try:
            manifest = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            return CacheHit(hit=False, key=key, reason=f"cache entry unreadable: {e}", manifest={})

        if manifest.get("fetch_key") != fetch_key or "definition" not in manifest:
            return CacheHit(hit=False, key=key, reason="cache entry does not match", manifest={})

        return CacheHit(hit=True, key=key, reason="cache hit", manifest=manifest)

    def store(self, fetch_key: str, definition: Mapping[str, Any]) -> str:
        """Write the entry through a tmp file + rename; returns the cache key."""
        key = cache_key(fetch_key)
        path = self.entry_path(fetch_key)
        manifest = {
            "key": key,
            "fetch_key": fetch_key,
            "stored_at_unix": int(time.time()),
            "definition": dict(definition),
        }
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp.replace(path)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return key

    def prune(self, fetch_key: str, keep: int = 3) -> int:
        """
        Keep only the newest N cached versions of an action (by file mtime).
        Returns how many entries were removed.
        """
        d = self._action_dir(fetch_key)
        entries = sorted(d.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        removed = 0
        for p in entries[keep:]:
            p.unlink(missing_ok=True)
            removed += 1
        return removed


class CachingFetcher:
    """Wraps an action fetcher so each definition is fetched once."""

    def __init__(self, fetcher, cache: ActionCache, keep: int = 3):
        self.fetcher = fetcher
        self.cache = cache
        self.keep = keep

    def fetch(self, ref) -> Optional[Mapping[str, Any]]:
        console = get_console()
        hit = self.cache.lookup(ref.fetch_key)
        if hit.hit:
            console.print_debug(f"action cache: {ref.fetch_key} ({hit.reason}, {hit.key[:12]}...)")
            return hit.manifest["definition"]

        definition = self.fetcher.fetch(ref)
        if definition is not None:
            key = self.cache.store(ref.fetch_key, definition)
            self.cache.prune(ref.fetch_key, keep=self.keep)
            console.print_debug(f"action cache: {ref.fetch_key} saved ({key[:12]}...)")
        return definition
