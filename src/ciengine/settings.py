from __future__ import annotations
import os

CACHE_DIR = os.environ.get("CIENGINE_CACHE_DIR", ".ciengine/cache")
ACTIONS_DIR = os.environ.get("CIENGINE_ACTIONS_DIR", ".ciengine/actions")
MAX_WORKERS = int(os.environ["CIENGINE_MAX_WORKERS"]) if os.environ.get("CIENGINE_MAX_WORKERS") else None
MAX_ACTION_DEPTH = int(os.environ.get("CIENGINE_MAX_ACTION_DEPTH", "16"))
SHELL = os.environ.get("CIENGINE_SHELL", "bash")
CACHE_KEEP = int(os.environ.get("CIENGINE_CACHE_KEEP", "3"))
