import posixpath
import re
import uuid
from pathlib import Path
from datetime import datetime, timezone
from typing import List, Optional

from cvpipeline.config import get_settings
from cvpipeline.errors import (
    CVPipelineError,
    FileTooLarge,
    FileUploadFailed,
    InvalidFilePath,
    InvalidFileType,
    NotFound,
)
from cvpipeline.schemas.submission import CVMetadata, StoredFileMetadata
from cvpipeline.utils import file_signatures
from cvpipeline.utils.logger import log_file_operation

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_LEADING_PARENT = re.compile(r"^(\.\.(/|$))+")
MAX_BASENAME_LENGTH = 50


class FileHandler:
    """Validate, store and retrieve CV files under a single storage root.

    Files land in `{year}/{month}/{uuid}-{basename}{ext}`; callers only ever see
    paths relative to the root.
    """

    def __init__(
        self,
        base_dir: Optional[str] = None,
        max_file_size: Optional[int] = None,
        allowed_types: Optional[List[str]] = None,
    ):
        settings = get_settings()
        self.base_dir = Path(base_dir or settings.upload_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.max_file_size = max_file_size if max_file_size is not None else settings.max_file_size
        self.allowed_types = list(allowed_types or settings.allowed_types)

    def store(self, content: bytes, metadata: CVMetadata, now: Optional[datetime] = None) -> str:
        """
        Validate and write an uploaded CV.

        Args:
            content: Raw file bytes
            metadata: Original filename, declared MIME type and declared size

        Returns:
            Path of the stored file relative to the storage root
        """
        filename = metadata.original_filename
        file_path: Optional[Path] = None
        try:
            # Size check happens before anything touches the disk
            self._validate_size(content, metadata)
            self.validate_file_type(content, metadata.mime_type)

            filename = self.generate_unique_filename(metadata.original_filename, metadata.mime_type)
            storage_dir = self.get_storage_dir(now)
            storage_dir.mkdir(parents=True, exist_ok=True)

            file_path = storage_dir / filename
            # "x" mode: stored artifacts are write-once
            with file_path.open("xb") as buffer:
                buffer.write(content)

            relative_path = file_path.relative_to(self.base_dir).as_posix()
            log_file_operation("store", filename, success=True, size=len(content))
            return relative_path

        except CVPipelineError as e:
            log_file_operation("store", filename, success=False, error=e.message)
            raise
        except OSError as e:
            # Clean up partial file on error
            if file_path is not None and file_path.exists():
                file_path.unlink()
            log_file_operation("store", filename, success=False, error=str(e))
            raise FileUploadFailed(f"Failed to store CV file: {e}") from e

    def retrieve(self, relative_path: str) -> bytes:
        """Read a stored file. Raises NotFound when it does not exist."""
        full_path = self._resolve(relative_path)
        if not full_path.is_file():
            raise NotFound(f"File not found: {relative_path}")
        try:
            return full_path.read_bytes()
        except OSError as e:
            raise FileUploadFailed(f"Failed to retrieve CV file: {e}") from e

    def delete(self, relative_path: str) -> None:
        """Remove a stored file. Raises NotFound when it does not exist."""
        try:
            full_path = self._resolve(relative_path)
            if not full_path.is_file():
                raise NotFound(f"File not found: {relative_path}")
            full_path.unlink()
        except CVPipelineError as e:
            log_file_operation("delete", relative_path, success=False, error=e.message)
            raise
        except OSError as e:
            log_file_operation("delete", relative_path, success=False, error=str(e))
            raise FileUploadFailed(f"Failed to delete CV file: {e}") from e

        log_file_operation("delete", relative_path, success=True)

    def metadata(self, relative_path: str) -> StoredFileMetadata:
        """Stat a stored file; the MIME type comes from its extension."""
        full_path = self._resolve(relative_path)
        if not full_path.is_file():
            raise NotFound(f"File not found: {relative_path}")

        stats = full_path.stat()
        created = getattr(stats, "st_birthtime", stats.st_mtime)
        return StoredFileMetadata(
            filename=full_path.name,
            path=relative_path,
            size=stats.st_size,
            mime_type=file_signatures.mime_type_for_extension(full_path.suffix),
            created_at=datetime.fromtimestamp(created, tz=timezone.utc),
        )

    def usage(self) -> dict:
        """Total files and bytes currently under the storage root."""
        total_files = 0
        total_size = 0
        for file_path in self.base_dir.rglob("*"):
            if file_path.is_file():
                total_files += 1
                total_size += file_path.stat().st_size
        return {"total_files": total_files, "total_size": total_size}

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_size(self, content: bytes, metadata: CVMetadata) -> None:
        size = max(len(content), metadata.size or 0)
        if size > self.max_file_size:
            raise FileTooLarge(
                f"File size {size} bytes exceeds maximum allowed size of {self.max_file_size} bytes",
                details={"size": size, "max_size": self.max_file_size},
            )

    def validate_file_type(self, content: bytes, mime_type: str) -> None:
        """Check the declared type against the allow-list, then the content signature."""
        if mime_type not in self.allowed_types:
            raise InvalidFileType(
                f"File type {mime_type} is not allowed. Allowed types: {', '.join(self.allowed_types)}",
                details={"reason": "mime_not_allowed", "mime_type": mime_type},
            )

        if not file_signatures.matches_signature(content, mime_type):
            raise InvalidFileType(
                "File content does not match the declared file type",
                details={"reason": "signature_mismatch", "mime_type": mime_type},
            )

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def generate_unique_filename(self, original_filename: str, mime_type: str) -> str:
        """`{uuid}-{sanitized basename}{ext}`; the extension must fit the declared type."""
        original = Path(original_filename.replace("\\", "/")).name
        ext = Path(original).suffix.lower()
        allowed_exts = file_signatures.EXTENSIONS.get(mime_type, ())
        if ext not in allowed_exts:
            ext = allowed_exts[0] if allowed_exts else ""

        stem = original[: -len(Path(original).suffix)] if Path(original).suffix else original
        base_name = _UNSAFE_CHARS.sub("_", stem)[:MAX_BASENAME_LENGTH] or "cv"
        return f"{uuid.uuid4()}-{base_name}{ext}"

    def get_storage_dir(self, now: Optional[datetime] = None) -> Path:
        now = now or datetime.now(timezone.utc)
        return self.base_dir / f"{now.year:04d}" / f"{now.month:02d}"

    def _resolve(self, relative_path: str) -> Path:
        """Map a caller-supplied relative path to an absolute path inside the root."""
        if not relative_path or "\x00" in relative_path:
            raise InvalidFilePath("Invalid file path")

        normalized = posixpath.normpath(relative_path.replace("\\", "/"))
        normalized = _LEADING_PARENT.sub("", normalized).lstrip("/")
        if normalized in ("", "."):
            raise InvalidFilePath(f"Invalid file path: {relative_path}")

        full_path = (self.base_dir / normalized).resolve()
        if full_path != self.base_dir and self.base_dir not in full_path.parents:
            raise InvalidFilePath(f"Path escapes storage root: {relative_path}")
        return full_path
