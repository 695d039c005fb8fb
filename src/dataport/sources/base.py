"""Source adapter capability and the outbound capabilities adapters consume."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from dataport.errors import SourceFormatError
from dataport.utils.hash import sha256_bytes

RawRow = list[Any]


@dataclass
class FetchResult:
    """Headers and positional rows produced by one adapter fetch."""

    headers: list[Any]
    rows: list[RawRow]
    warnings: list[str] = field(default_factory=list)


class SourceAdapter(Protocol):
    """Anything that can produce headers and rows from a source.

    Implementations raise :class:`~dataport.errors.SourceUnavailableError`
    when the source cannot be reached and
    :class:`~dataport.errors.SourceFormatError` when its content cannot be
    parsed.
    """

    def fetch_rows(self) -> FetchResult: ...


# ---------------------------------------------------------------------------
# File-storage capability
# ---------------------------------------------------------------------------


class UploadStore(Protocol):
    def save(self, data: bytes, filename: str) -> str: ...

    def read(self, handle: str) -> bytes: ...

    def delete(self, handle: str) -> None: ...


_SAFE_HANDLE_RE = re.compile(r"^[a-f0-9]{64}(\.[a-z0-9]{1,8})?$")


class FileUploadStore:
    """Content-addressed upload storage under ``<workspace>/uploads``.

    Handles are ``<sha256><ext>``, so saving the same bytes twice yields the
    same handle and re-reading a handle always returns the same content.
    """

    def __init__(self, workspace: Path) -> None:
        self.uploads_dir = workspace / "uploads"
        self.uploads_dir.mkdir(parents=True, exist_ok=True)

    def save(self, data: bytes, filename: str) -> str:
        """Store *data* and return its handle.

        Args:
            data: Raw upload bytes.
            filename: Original filename; only its extension is kept.

        Returns:
            The upload handle.
        """
        ext = Path(filename).suffix.lower()
        if not re.match(r"^\.[a-z0-9]{1,8}$", ext):
            ext = ""
        handle = sha256_bytes(data) + ext
        path = self.uploads_dir / handle
        if not path.exists():
            tmp_path = path.with_name(handle + ".tmp")
            tmp_path.write_bytes(data)
            os.replace(str(tmp_path), str(path))
        return handle

    def read(self, handle: str) -> bytes:
        """Return the bytes stored under *handle*.

        Raises:
            SourceFormatError: If the handle is malformed or unknown.
        """
        if not _SAFE_HANDLE_RE.match(handle):
            raise SourceFormatError(f"Invalid upload handle {handle!r}")
        path = self.uploads_dir / handle
        if not path.exists():
            raise SourceFormatError(f"Upload {handle!r} not found")
        return path.read_bytes()

    def delete(self, handle: str) -> None:
        if not _SAFE_HANDLE_RE.match(handle):
            return
        path = self.uploads_dir / handle
        if path.exists():
            path.unlink()


# ---------------------------------------------------------------------------
# Delegated-credential capability
# ---------------------------------------------------------------------------


class CredentialProvider(Protocol):
    def get_credential(self, org_id: str, document_id: str) -> str | None: ...


class InMemoryCredentialProvider:
    """Credentials registered after an external authorization handshake.

    Tokens are stored per organization; a document-specific token overrides
    the organization-wide one.
    """

    def __init__(self) -> None:
        self._tokens: dict[tuple[str, str | None], str] = {}

    def set_credential(self, org_id: str, token: str, document_id: str | None = None) -> None:
        self._tokens[(org_id, document_id)] = token

    def revoke(self, org_id: str, document_id: str | None = None) -> None:
        self._tokens.pop((org_id, document_id), None)

    def get_credential(self, org_id: str, document_id: str) -> str | None:
        return self._tokens.get((org_id, document_id)) or self._tokens.get((org_id, None))


class EnvCredentialProvider:
    """Read a single access token from an environment variable."""

    def __init__(self, env_var: str = "DATAPORT_SHEETS_TOKEN") -> None:
        self.env_var = env_var

    def get_credential(self, org_id: str, document_id: str) -> str | None:
        return os.environ.get(self.env_var) or None
