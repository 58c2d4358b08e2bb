from __future__ import annotations

import hashlib
import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Final
from urllib.parse import urlparse
from uuid import uuid4

import aiofiles
import httpx

from .exceptions import ArtifactStorageError
from .schemas import StoredArtifact


class ArtifactStorageService:
    """Re-hosts provider artifacts under an organized directory structure.

    Structure: artifacts/YYYY/MM/DD/{item_id}-{index}-{artifact_id}{ext}
    """

    _CHUNK_SIZE: Final[int] = 1024 * 1024  # 1 MB

    def __init__(
        self,
        base_dir: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        """
        Initialize artifact storage service.

        Args:
            base_dir: Base directory for artifact storage. If None, uses ARTIFACT_STORAGE_DIR from config.
            client: Optional shared HTTP client used for downloads
            timeout: Download timeout in seconds. If None, uses ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS.
        """
        if base_dir is None or timeout is None:
            from .config import Config

            base_dir = base_dir or Config.ARTIFACT_STORAGE_DIR
            timeout = timeout or Config.ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS

        self.base_dir: Path = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._client: httpx.AsyncClient | None = client
        self._timeout: float = timeout

    async def store(self, item_id: int, source_url: str, index: int = 0) -> StoredArtifact:
        """Download ``source_url`` and save it durably.

        Args:
            item_id: Queue item the artifact belongs to
            source_url: Provider-hosted artifact URL
            index: Position of the artifact in the provider's result list

        Returns:
            Metadata of the stored artifact

        Raises:
            ArtifactStorageError: On HTTP errors, non-2xx responses or write failures
        """
        artifact_id = uuid4().hex
        client = self._client or httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        target_path: Path | None = None
        try:
            async with client.stream("GET", source_url) as response:
                if response.status_code >= 400:
                    raise ArtifactStorageError(
                        f"Download of {source_url} failed with HTTP {response.status_code}"
                    )

                ext = self._extension(source_url, response.headers.get("content-type"))
                target_path = self.get_storage_path(f"{item_id}-{index}-{artifact_id}{ext}")

                file_size = 0
                hasher = hashlib.sha256()
                async with aiofiles.open(target_path, "wb") as f:
                    async for chunk in response.aiter_bytes(self._CHUNK_SIZE):
                        _ = await f.write(chunk)
                        file_size += len(chunk)
                        hasher.update(chunk)
        except httpx.HTTPError as e:
            self._discard(target_path)
            raise ArtifactStorageError(f"Download of {source_url} failed: {e}") from e
        except OSError as e:
            self._discard(target_path)
            raise ArtifactStorageError(f"Writing artifact for {source_url} failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if file_size == 0:
            self._discard(target_path)
            raise ArtifactStorageError(f"Artifact at {source_url} is empty")

        return StoredArtifact(
            artifact_id=artifact_id,
            reference=str(target_path.relative_to(self.base_dir)),
            source_url=source_url,
            size=file_size,
            hash=hasher.hexdigest(),
        )

    def get_storage_path(self, filename: str) -> Path:
        """
        Generate organized file path based on the current date.

        Args:
            filename: Final file name

        Returns:
            Path object for the file storage location
        """
        now = datetime.now(timezone.utc)
        dir_path = self.base_dir / "artifacts" / now.strftime("%Y") / now.strftime("%m") / now.strftime("%d")
        dir_path.mkdir(parents=True, exist_ok=True)
        return dir_path / filename

    def get_absolute_path(self, reference: str) -> Path:
        """
        Get absolute path from a stored artifact reference.

        Args:
            reference: Relative path returned by store()

        Returns:
            Absolute Path object
        """
        return self.base_dir / reference

    def delete(self, reference: str) -> bool:
        """
        Delete a stored artifact.

        Args:
            reference: Relative path returned by store()

        Returns:
            True if the file was deleted, False otherwise
        """
        if not reference:
            return False

        file_path = self.base_dir / reference
        if not file_path.exists():
            return False

        file_path.unlink()
        self._cleanup_empty_dirs(file_path.parent)
        return True

    def _discard(self, path: Path | None) -> None:
        if path is not None and path.exists():
            path.unlink()

    def _cleanup_empty_dirs(self, dir_path: Path) -> None:
        """
        Remove empty parent directories up to base_dir.

        Args:
            dir_path: Directory to start cleanup from
        """
        while dir_path != self.base_dir and dir_path.exists():
            if any(dir_path.iterdir()):
                break
            dir_path.rmdir()
            dir_path = dir_path.parent

    @staticmethod
    def _extension(source_url: str, content_type: str | None) -> str:
        suffix = Path(urlparse(source_url).path).suffix
        if suffix:
            return suffix.lower()
        if content_type:
            guessed = mimetypes.guess_extension(content_type.split(";")[0].strip())
            if guessed:
                return guessed
        return ".png"
