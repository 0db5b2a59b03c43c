"""Filesystem object storage published under a public HTTPS base URL."""

from __future__ import annotations

from pathlib import Path, PurePosixPath


class LocalImageStorage:
    """Writes bytes below `root` and returns `<public_base_url>/<path>`."""

    def __init__(self, *, root: Path, public_base_url: str) -> None:
        base = public_base_url.strip().rstrip("/")
        if not base.startswith("https://"):
            raise ValueError("public_base_url must be an https URL.")
        self._root = root
        self._public_base_url = base

    def upload(self, *, path: str, data: bytes, content_type: str) -> str:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"Refusing unsafe storage path: {path}")
        target = self._root.joinpath(*relative.parts)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return f"{self._public_base_url}/{relative.as_posix()}"
