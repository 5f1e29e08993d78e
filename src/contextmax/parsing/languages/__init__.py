"""Language family discovery for contextmax.

Built-in families (brace, python, end-keyword) are registered at import time.
External families can be added via entry points::

    # In your package's pyproject.toml:
    [project.entry-points."contextmax.languages"]
    elixir = "contextmax_elixir:register"

The entry point must be a callable that takes no arguments and calls
``register_family()`` when invoked.
"""

from __future__ import annotations

import importlib.metadata

from loguru import logger

_discovered = False


def discover_plugins() -> None:
    """Import built-in families and load external entry-point plugins.

    Safe to call multiple times; subsequent calls are no-ops.
    """
    global _discovered  # noqa: PLW0603
    if _discovered:
        return
    _discovered = True

    # Built-in families
    import contextmax.parsing.languages.brace  # noqa: PLC0415
    import contextmax.parsing.languages.end_keyword  # noqa: PLC0415
    import contextmax.parsing.languages.python  # noqa: PLC0415, F401

    # External plugins via entry points
    for ep in importlib.metadata.entry_points(group="contextmax.languages"):
        try:
            register_func = ep.load()
            register_func()
        except Exception:
            logger.opt(exception=True).warning("Failed to load language plugin {!r}", ep.name)
