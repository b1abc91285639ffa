"""
Local state files.

Everything Cashier keeps on disk (the audit log and its HMAC key) lives in
owner-only directories and files. JSONL appends are fsynced before returning.
"""

from __future__ import annotations

import json
import os
import secrets
from pathlib import Path
from typing import Any, Iterator, Optional


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def load_secret(path: Path, env_var: Optional[str] = None) -> bytes:
    """Return a shared secret from ``env_var`` or from the key file at ``path``.

    The key file is created with a random 32-byte hex key on first use.
    When the environment variable is set the file is never touched.
    """
    if env_var:
        env_value = os.getenv(env_var)
        if env_value:
            return env_value.encode()
    ensure_private_dir(path.parent)
    if path.exists() and path.stat().st_size > 0:
        return path.read_bytes().strip()
    key = secrets.token_hex(32).encode()
    path.write_bytes(key)
    ensure_private_file(path)
    return key


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    line = json.dumps(record, separators=(",", ":"))
    with open(path, "a") as f:
        f.write(line + "\n")
        f.flush()
        os.fsync(f.fileno())


def iter_jsonl(path: Path) -> Iterator[tuple[int, dict[str, Any]]]:
    """Yield ``(line_number, record)`` for each non-blank line.

    Raises ``ValueError`` naming the line when it is not a JSON object.
    """
    if not path.exists():
        return
    with open(path, "r") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"line {line_no} is not valid JSON: {e.msg}") from e
            if not isinstance(record, dict):
                raise ValueError(f"line {line_no} is not a JSON object")
            yield line_no, record
