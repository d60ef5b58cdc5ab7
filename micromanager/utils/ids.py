"""Identifier generation."""

from cuid2 import cuid_wrapper

cuid = cuid_wrapper()


def new_id(prefix: str | None = None) -> str:
    """Generate a collision-resistant identifier, optionally prefixed (e.g. ``run_``)."""
    value = cuid()
    return f"{prefix}_{value}" if prefix else value
