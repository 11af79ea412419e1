"""Dynamic symbol loading from dotted paths used by YAML flow configs."""

from __future__ import annotations

import importlib
from typing import Any, Mapping, Optional

from .errors import (
    ConfigurationError,
    ErrorContext,
    config_wrong_type,
    import_invalid_format,
    import_module_not_found,
    import_symbol_not_found,
)


def load_symbol(dotted: str) -> Any:
    """
    Load a symbol from 'package.module:symbol_name'.

    Args:
        dotted: A string in the format 'module.path:symbol_name'

    Returns:
        The loaded symbol (function, class, instance, ...)

    Raises:
        ConfigurationError: If the format is invalid, the module can't be
                            imported, or the symbol doesn't exist in it.
    """
    if ":" not in dotted:
        raise import_invalid_format(dotted)

    module_path, symbol_name = dotted.split(":", 1)
    module_path = module_path.strip()
    symbol_name = symbol_name.strip()

    if not module_path or not symbol_name:
        raise import_invalid_format(dotted)

    try:
        module = importlib.import_module(module_path)
    except Exception:
        raise import_module_not_found(module_path, dotted) from None

    try:
        return getattr(module, symbol_name)
    except AttributeError:
        raise import_symbol_not_found(module_path, symbol_name, dotted) from None


def resolve_callable(value: Any, field: str, path: Optional[str] = None) -> Any:
    """Return ``value`` as a callable: dotted strings are imported, None passes through."""
    if value is None:
        return None
    if isinstance(value, str):
        value = load_symbol(value)
    if not callable(value):
        raise config_wrong_type(field, "callable or 'module:symbol'", type(value).__name__, path)
    return value


def load_instance(spec: Any, field: str, path: Optional[str] = None) -> Any:
    """Build a plugin or middleware from its config entry.

    Accepted forms:
      - ``"module:symbol"`` naming an instance, a class or a factory function
      - ``{"factory": "module:symbol", "options": {...}}``

    Classes and factories are called with ``options`` as keyword arguments.
    Anything that already carries a ``name`` attribute is used as-is.
    """
    options: Mapping[str, Any] = {}
    if isinstance(spec, Mapping):
        target = spec.get("factory")
        if not isinstance(target, str):
            ctx = ErrorContext().add("field", field).add("entry", dict(spec))
            if path:
                ctx.add("config_path", path)
            raise ConfigurationError(
                f"Entry in '{field}' is missing 'factory'",
                why="Mapping entries must name what to build.",
                fix="Use {factory: 'module:symbol', options: {...}} or a plain 'module:symbol' string.",
                context=ctx,
            )
        options = spec.get("options") or {}
        if not isinstance(options, Mapping):
            raise config_wrong_type(f"{field}.options", "mapping", type(options).__name__, path)
        spec = target

    if not isinstance(spec, str):
        raise config_wrong_type(field, "'module:symbol' string or mapping", type(spec).__name__, path)

    obj = load_symbol(spec)
    if isinstance(obj, type):
        return obj(**options)
    if getattr(obj, "name", None) and not options:
        return obj
    if callable(obj):
        return obj(**options)
    return obj
