from __future__ import annotations

import bittensor as bt

from avalanched.errors import FatalConfigurationError

LOG_LEVELS = ("trace", "debug", "info", "warning")


def configure_logging(level: str = "info") -> None:
    """Switch `bt.logging` to one of `LOG_LEVELS`."""
    lvl = (level or "info").strip().lower()
    if lvl not in LOG_LEVELS:
        raise FatalConfigurationError(f"AVALANCHED_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)} (got {level!r})")
    if lvl == "trace":
        bt.logging.set_trace(True)
    elif lvl == "debug":
        bt.logging.set_debug(True)
    elif lvl == "warning":
        bt.logging.set_warning(True)
    else:
        bt.logging.set_info(True)


def fatal_line(*, node_id: str | None, stage: str | None, category: str, cause: str) -> str:
    # Single-line format scraped by fleet tooling.
    cause = " ".join(str(cause).split())
    return f"FATAL node_id={node_id or '-'} stage={stage or '-'} category={category} cause={cause}"
