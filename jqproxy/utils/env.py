"""``.env`` support for local runs.

Deployed functions get JQ_REFRESH_TOKEN / PROXY_BEARER from the platform
environment; a developer machine usually keeps them in a ``.env`` file next to
the project instead.
"""

from __future__ import annotations

import os
from pathlib import Path

_QUOTES = ("'", '"')


def parse_env_line(line: str) -> tuple[str, str] | None:
    """Split one ``.env`` line into ``(key, value)``.

    Blank lines, comments and lines without a key return None. An ``export``
    prefix is dropped. A value wrapped in matching quotes is taken verbatim;
    an unquoted value ends at a `` #`` comment.

    Examples:
        >>> parse_env_line("export JQ_REFRESH_TOKEN='abc # def'")
        ('JQ_REFRESH_TOKEN', 'abc # def')
        >>> parse_env_line("PROXY_BEARER=secret  # local only")
        ('PROXY_BEARER', 'secret')
    """
    line = line.strip()
    if line.startswith("export "):
        line = line[len("export ") :].lstrip()
    if not line or line.startswith("#") or "=" not in line:
        return None

    key, value = line.split("=", 1)
    key = key.strip()
    if not key:
        return None

    value = value.strip()
    if len(value) >= 2 and value[0] in _QUOTES and value[-1] == value[0]:
        return key, value[1:-1]
    if " #" in value:
        value = value.split(" #", 1)[0].rstrip()
    return key, value


def read_env_file(path: str | Path = ".env") -> dict[str, str]:
    """KEY=VALUE pairs of ``path``, or an empty dict when it is not a file."""
    env_path = Path(path)
    if not env_path.is_file():
        return {}
    pairs: dict[str, str] = {}
    for line in env_path.read_text(encoding="utf-8").splitlines():
        parsed = parse_env_line(line)
        if parsed is not None:
            pairs[parsed[0]] = parsed[1]
    return pairs


def load_env_file_if_present(path: str | Path = ".env", override: bool = False) -> dict[str, str]:
    """Copy ``.env`` pairs into ``os.environ`` and return them.

    Values already in the environment win unless ``override`` is set.
    """
    loaded = read_env_file(path)
    for key, value in loaded.items():
        if override or key not in os.environ:
            os.environ[key] = value
    return loaded
