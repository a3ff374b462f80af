"""Layered merging of config dicts.

Each source (system file, user file, project file, environment) is a layer.
Later layers win. Nested sections merge key by key, lists and scalars are
replaced whole, and ``None`` leaves the lower layer's value in place so a
partial file only needs the keys it changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ConfigLayer:
    name: str
    data: dict[str, Any] = field(default_factory=dict)


def deep_merge(
    base: dict[str, Any],
    override: dict[str, Any],
    overridden: list[str] | None = None,
    prefix: str = "",
) -> dict[str, Any]:
    """Return a new dict with ``override`` merged over ``base``.

    Neither input is modified. When ``overridden`` is given, the dotted
    names of keys whose existing value was replaced are appended to it.
    """
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        dotted = f"{prefix}{key}"
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value, overridden, f"{dotted}.")
            continue
        if overridden is not None and key in merged and current != value:
            overridden.append(dotted)
        merged[key] = value
    return merged


def merge_layers(layers: list[ConfigLayer]) -> tuple[dict[str, Any], dict[str, str]]:
    """Merge layers in order.

    Returns the merged dict and, for every key a later layer replaced, the
    name of the layer that set the final value (``{"agent.port": "env"}``).
    """
    merged: dict[str, Any] = {}
    winners: dict[str, str] = {}
    for layer in layers:
        if not layer.data:
            continue
        replaced: list[str] = []
        merged = deep_merge(merged, layer.data, replaced)
        winners.update(dict.fromkeys(replaced, layer.name))
    return merged, winners


def merge_configs(*configs: dict[str, Any]) -> dict[str, Any]:
    """Merge plain dicts in order (later overrides earlier)."""
    merged, _ = merge_layers([ConfigLayer(str(i), config) for i, config in enumerate(configs)])
    return merged
