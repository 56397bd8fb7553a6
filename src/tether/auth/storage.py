"""Per-server persistence of OAuth and coordination state.

Every record lives in a single configuration directory and is named
``{fingerprint}_{name}``, where the fingerprint is a digest of the remote
server URL:

- ``client_info.json``: dynamic client registration result
- ``tokens.json``: access and refresh tokens
- ``code_verifier.txt``: PKCE verifier of the pending authorization
- ``lock.json``: cross-process login lock

JSON files are written with 2-space indentation so operators can inspect
or delete them by hand.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

CLIENT_INFO_FILE = "client_info.json"
TOKENS_FILE = "tokens.json"
CODE_VERIFIER_FILE = "code_verifier.txt"
LOCK_FILE = "lock.json"


def server_fingerprint(server_url: str) -> str:
    """Stable 128-bit namespace key for a remote server URL."""
    return hashlib.md5(server_url.encode("utf-8"), usedforsecurity=False).hexdigest()


class CredentialStore(Protocol):
    """Key-value storage for blobs scoped by server fingerprint.

    Missing records are a normal outcome and read back as ``None``.
    """

    def path_for(self, fingerprint: str, name: str) -> Path: ...

    def read_json(self, fingerprint: str, name: str) -> Any | None: ...

    def write_json(self, fingerprint: str, name: str, value: Any) -> None: ...

    def read_text(self, fingerprint: str, name: str) -> str | None: ...

    def write_text(self, fingerprint: str, name: str, text: str) -> None: ...

    def delete(self, fingerprint: str, name: str) -> None: ...


class FileCredentialStore:
    """Plain files under a configuration directory.

    The directory is created on first write. Writes go through a temporary
    file and an atomic rename so concurrent readers in other processes never
    observe a half-written record.
    """

    def __init__(self, config_dir: Path | str):
        self.config_dir = Path(config_dir)

    def path_for(self, fingerprint: str, name: str) -> Path:
        return self.config_dir / f"{fingerprint}_{name}"

    def read_json(self, fingerprint: str, name: str) -> Any | None:
        text = self.read_text(fingerprint, name)
        if text is None:
            return None

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(
                f"Ignoring unreadable {self.path_for(fingerprint, name)}: {e}"
            )
            return None

    def write_json(self, fingerprint: str, name: str, value: Any) -> None:
        self.write_text(fingerprint, name, json.dumps(value, indent=2))

    def read_text(self, fingerprint: str, name: str) -> str | None:
        path = self.path_for(fingerprint, name)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write_text(self, fingerprint: str, name: str, text: str) -> None:
        self._ensure_config_dir()
        path = self.path_for(fingerprint, name)
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")

        try:
            tmp_path.write_text(text, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Error writing {path}: {e}")
            tmp_path.unlink(missing_ok=True)
            raise

        logger.debug(f"Wrote {path}")

    def delete(self, fingerprint: str, name: str) -> None:
        path = self.path_for(fingerprint, name)
        try:
            path.unlink()
            logger.debug(f"Deleted {path}")
        except FileNotFoundError:
            pass

    def _ensure_config_dir(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
