"""Environment helpers shared across runtime modules."""

from __future__ import annotations

from typing import Mapping, MutableMapping, Optional
import os

TRUTHY = {"1", "true", "yes", "on"}
FALSY = {"0", "false", "no", "off"}
ENV_PREFIX = "IMAGINE_LOOP_"


def _normalize(value: str | None) -> str:
    return (value or "").strip().lower()


def env_flag(value: str | None, *, default: bool = False) -> bool:
    token = _normalize(value)
    if not token:
        return default
    if token in TRUTHY:
        return True
    if token in FALSY:
        return False
    return default


def env_int(value: str | None, *, default: Optional[int] = None) -> Optional[int]:
    token = (value or "").strip()
    if not token:
        return default
    try:
        return int(token)
    except ValueError as exc:
        raise ValueError(f"Invalid integer value: {value!r}") from exc


def prefixed_values(
    env: Mapping[str, str] | MutableMapping[str, str] | None = None,
    *,
    prefix: str = ENV_PREFIX,
) -> dict[str, str]:
    """Return ``{suffix.lower(): value}`` for every variable starting with ``prefix``."""

    data = os.environ if env is None else env
    return {key[len(prefix):].lower(): value for key, value in data.items() if key.startswith(prefix)}


__all__ = [
    "ENV_PREFIX",
    "TRUTHY",
    "FALSY",
    "env_flag",
    "env_int",
    "prefixed_values",
]
