from __future__ import annotations

import os
from typing import Mapping, Optional

from dotenv import load_dotenv

# Load .env once on import; real instances get their values from tags/env.
load_dotenv()


def _env_str(name: str, default: str = "") -> str:
    """Read a string env var, stripping whitespace."""
    return (os.getenv(name, default) or "").strip()


def _env_bool(name: str, default: bool = False) -> bool:
    """Read a boolean env var with common truthy values."""
    raw = _env_str(name, str(default)).lower()
    return raw in {"y", "yes", "t", "true", "on", "1"}


def _env_int(name: str, default: int = 0, *, test_default: Optional[int] = None) -> int:
    """
    Read an int env var.

    If TESTING=true, `TEST_<NAME>` overrides the regular value so test runs can
    shrink poll intervals and retry budgets without touching production names.
    """
    if _env_bool("TESTING", False):
        v = _env_str(f"TEST_{name}", "")
        if v:
            return int(v)
        if test_default is not None:
            return int(test_default)
    v = _env_str(name, str(default))
    return int(v)


def _env_float(name: str, default: float = 0.0, *, test_default: Optional[float] = None) -> float:
    """Float counterpart of `_env_int`, with the same TESTING override."""
    if _env_bool("TESTING", False):
        v = _env_str(f"TEST_{name}", "")
        if v:
            return float(v)
        if test_default is not None:
            return float(test_default)
    v = _env_str(name, str(default))
    return float(v)


def _tag_or_env(tags: Optional[Mapping[str, str]], tag: str, env: str, default: str = "") -> str:
    """Instance tags win over env vars; both are stripped."""
    if tags:
        v = (tags.get(tag) or "").strip()
        if v:
            return v
    return _env_str(env, default)
