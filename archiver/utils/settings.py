"""Value coercion and loading helpers behind `archiver.settings`."""

from __future__ import annotations

import importlib
import os
import re
import tomllib
from collections.abc import Iterable, Mapping
from pathlib import Path

import orjson
from yarl import URL

_INT_RE = re.compile(r"[+-]?\d+")
_FLOAT_RE = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


def _missing(name: str, kind: str, allow_none: bool) -> None:
    if not allow_none:
        raise TypeError(f"{name} is required ({kind}), got None")


def ensure_int(value: object, name: str, *, allow_none: bool = False) -> int | None:
    """Return `value` as an int. Whole floats and digit strings are accepted; bools are not."""
    if value is None:
        return _missing(name, "int", allow_none)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and _INT_RE.fullmatch(value.strip()):
        return int(value)
    raise TypeError(f"{name} expects an integer, got {value!r}")


def ensure_float(value: object, name: str, *, allow_none: bool = False) -> float | None:
    if value is None:
        return _missing(name, "float", allow_none)
    if isinstance(value, bool):
        raise TypeError(f"{name} expects a number, got {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _FLOAT_RE.fullmatch(value.strip()):
        return float(value)
    raise TypeError(f"{name} expects a number, got {value!r}")


def ensure_str(value: object, name: str, *, allow_none: bool = False) -> str | None:
    if value is None:
        return _missing(name, "str", allow_none)
    if isinstance(value, str):
        return value
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    raise TypeError(f"{name} expects a string, got {value!r}")


def parse_literal(s: str | None) -> bool | int | float | str | None:
    """Interpret a raw string as a bool, int or float where it clearly is one.

    `"true"`/`"false"` (any case) become bools, `"8"` an int, `"2.5"`/`"1e3"`
    a float; anything else comes back stripped. None passes through.
    """
    if s is None:
        return None
    text = s.strip()
    lowered = text.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if _INT_RE.fullmatch(text):
        return int(text)
    if _FLOAT_RE.fullmatch(text):
        return float(text)
    return text


def parse_env_value(raw: str) -> object:
    """Parse an environment value: JSON for `{...}` / `[...]`, literals otherwise."""
    s = raw.strip()
    if s.startswith(("{", "[")):
        try:
            return orjson.loads(s)
        except orjson.JSONDecodeError:
            return parse_literal(raw)
    return parse_literal(raw)


def mask_url(url: str | None) -> str | None:
    """Hide the password and query string of `url` for display."""
    if not url:
        return url
    try:
        u = URL(url)
    except (TypeError, ValueError):
        return "*****"
    if u.password:
        u = u.with_password("*****")
    if u.query_string:
        u = u.with_query({k: "*****" for k in u.query})
    return str(u)


def load_config_file(path: str) -> dict[str, object]:
    """Load config file. Supports TOML (recommended) and JSON fallback. Returns a dict."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() == ".toml":
        data = tomllib.loads(text) or {}
    else:
        data = orjson.loads(text or "{}") or {}
    if not isinstance(data, dict):
        raise TypeError("Config file must yield a dict")
    return data


def load_env(
    prefix: str = "ARCHIVER_",
    aliases: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Collect settings from the environment.

    - `ARCHIVER_*` variables are returned uppercased with the prefix stripped.
    - `aliases` maps legacy variable names (e.g. `ShareLocation`) to canonical keys;
      a prefixed variable wins over its alias when both are set.
    - Values stay raw strings; `Settings.with_overrides` converts them per field.
    """
    env = os.environ if environ is None else environ
    out: dict[str, str] = {}

    for legacy, key in (aliases or {}).items():
        raw = env.get(legacy)
        if raw is None or not raw.strip():
            continue
        out[key.upper()] = raw

    for k, v in env.items():
        if not k.startswith(prefix):
            continue
        key = k[len(prefix) :].strip()
        if not key:
            continue
        out[key.upper()] = v
    return out


def map_keys_to_canonical(
    overrides: Mapping[str, object] | None, valid_keys: Iterable[str]
) -> dict[str, object]:
    """Map override keys case-insensitively to canonical UPPERCASE keys present in valid_keys.
    Unknown keys are preserved as uppercased strings.
    """
    if not overrides:
        return {}
    canon_map = {k.lower(): k for k in map(str, valid_keys)}
    mapped: dict[str, object] = {}
    for k, v in overrides.items():
        if not isinstance(k, str):
            continue
        mapped[canon_map.get(k.lower(), k.upper())] = v
    return mapped


def resolve_dotted_path(token: object, *, token_name: str = "token") -> object:
    """Resolve a dotted-path string `module.Class` to the attribute, or return token unchanged.

    - Non-string tokens are returned unchanged (supports programmatic objects).
    - `module:attr` is accepted as well as `module.attr`.
    - Strings without a module part raise ValueError, import failures raise ImportError.
    """
    if not isinstance(token, str):
        return token
    tok = token.strip()
    if ":" in tok:
        module_name, attr = tok.split(":", 1)
    elif "." in tok:
        module_name, attr = tok.rsplit(".", 1)
    else:
        raise ValueError(f"Invalid dotted path for {token_name} (no module part): {tok!r}")
    try:
        mod = importlib.import_module(module_name)
    except Exception as exc:
        raise ImportError(f"Could not import module {module_name!r}") from exc
    try:
        return getattr(mod, attr)
    except AttributeError as exc:
        raise ImportError(f"Module {module_name!r} has no attribute {attr!r}") from exc
