from __future__ import annotations

import os
from pathlib import Path


def load_env(path: Path | None = None) -> None:
    """
    Populate os.environ from dotenv files.

    Reads ``.env`` first and then ``.env.local`` next to it. ``.env.local`` may
    override ``.env``; variables exported in the shell always win over both.
    """
    shell_keys = set(os.environ.keys())

    env_path = path or _project_env_path()
    if env_path.exists():
        _apply_env_file(env_path, protected=shell_keys, allow_override=False)

    if path is None:
        local_path = env_path.with_name(".env.local")
        if local_path.exists():
            _apply_env_file(local_path, protected=shell_keys, allow_override=True)


def _apply_env_file(env_path: Path, *, protected: set[str], allow_override: bool) -> None:
    for key, value in _parse_env_lines(env_path.read_text(encoding="utf-8").splitlines()):
        if key in protected:
            continue
        if not allow_override and key in os.environ:
            continue
        os.environ[key] = value


def _parse_env_lines(lines: list[str]) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, value = line.split("=", 1)
        key = key.strip()
        if key:
            pairs.append((key, _unquote(value.strip())))
    return pairs


def _project_env_path() -> Path:
    return Path(__file__).resolve().parents[2] / ".env"


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


__all__ = ["load_env"]
