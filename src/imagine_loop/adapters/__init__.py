"""Automation adapter boundary.

The orchestrator never touches the target surface directly; it talks to an
object implementing :class:`~imagine_loop.adapters.common.AutomationAdapter`.
``stub_adapter`` ships a scripted in-process surface for tests and dry runs.
"""
from .common import AssetBlob, AutomationAdapter, PolicyScan

__all__ = ["AssetBlob", "AutomationAdapter", "PolicyScan", "ScriptedSurfaceAdapter", "load_adapter"]


def __getattr__(name: str):
    if name == "ScriptedSurfaceAdapter":
        from .stub_adapter import ScriptedSurfaceAdapter

        return ScriptedSurfaceAdapter
    raise AttributeError(name)


def load_adapter(spec: str):
    """Build an adapter from ``"stub"`` or a ``"package.module:factory"`` path."""

    import importlib

    if spec == "stub":
        from .stub_adapter import build_stub_adapter

        return build_stub_adapter()
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"adapter spec must look like 'module:factory', got {spec!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory() if callable(factory) else factory
