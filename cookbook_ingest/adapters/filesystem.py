from __future__ import annotations

import asyncio
import json
from pathlib import Path


class FileBlobStore:
    """Blob store writing artifacts under a local directory."""

    def __init__(self, root: str = ".cache/ingest/artifacts"):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"Artifact path escapes store root: {path}")
        return target

    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        target = self._resolve(path)
        await asyncio.to_thread(self._write, target, data, content_type)
        return target.as_uri()

    async def get(self, path: str) -> bytes | None:
        target = self._resolve(path)
        if not target.exists():
            return None
        return await asyncio.to_thread(target.read_bytes)

    @staticmethod
    def _write(target: Path, data: bytes, content_type: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        meta_path = target.with_name(target.name + ".meta")
        meta_path.write_text(
            json.dumps({"content_type": content_type, "size": len(data)}),
            encoding="utf-8",
        )
