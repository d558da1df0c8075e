"""
Local file storage for downloaded attachments.

All paths handed to this module are relative to the configured root. Each
approval instance gets its own folder so that every artifact of a submission
(receipts, voucher manifest) lives together.
"""
import json
import logging
import mimetypes
import os
import re
from typing import Any, Dict, Optional

from reimburse.services.errors import PathValidationError, StorageError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")


def sanitize_name(name: str) -> str:
    """Filesystem-safe form of ``name``: path separators and parent references are
    removed, then everything except ASCII letters, digits, ``-`` and ``_``."""
    name = str(name or "")
    name = name.replace("..", "").replace("/", "").replace("\\", "")
    return _UNSAFE_CHARS.sub("", name)


def guess_mime_type(file_name: str) -> str:
    mime_type, _ = mimetypes.guess_type(file_name)
    return mime_type or "application/octet-stream"


class LocalFileStorage:
    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    @property
    def root(self) -> str:
        return os.path.abspath(self.base_dir)

    def full_path(self, relative_path: str) -> str:
        return os.path.join(self.root, relative_path)

    def validate_path(self, relative_path: str) -> None:
        """Reject absolute paths, ``..`` segments, null bytes and anything that
        resolves outside the storage root."""
        if not relative_path:
            raise PathValidationError(relative_path, "empty path")
        if os.path.isabs(relative_path):
            raise PathValidationError(relative_path, "absolute paths not allowed")
        if ".." in relative_path:
            raise PathValidationError(relative_path, "directory traversal not allowed")
        if "\x00" in relative_path:
            raise PathValidationError(relative_path, "null bytes not allowed in filename")

        resolved = os.path.realpath(self.full_path(relative_path))
        root = os.path.realpath(self.root)
        if not resolved.startswith(root + os.sep):
            raise PathValidationError(relative_path, "path escapes base directory")

    def instance_folder_name(self, external_id: str) -> str:
        folder = sanitize_name(external_id)
        if not folder:
            raise PathValidationError(str(external_id), "instance id has no safe characters")
        return folder

    def create_instance_folder(self, external_id: str) -> str:
        """Create (if missing) and return the absolute folder for an instance."""
        folder = self.instance_folder_name(external_id)
        path = self.full_path(folder)
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as exc:
            raise StorageError(folder, str(exc)) from exc
        return path

    def generate_file_name(
        self,
        external_id: str,
        attachment_id: int,
        item_id: Optional[int],
        original_name: str,
    ) -> str:
        """Relative path ``<instance>/<attachment id>_<item id>_<name>``.

        The attachment id prefix keeps names unique inside the instance folder.
        """
        base_name = os.path.basename(str(original_name or "").replace("\\", "/"))
        stem, ext = os.path.splitext(base_name)
        safe_stem = sanitize_name(stem) or "attachment"
        safe_ext = sanitize_name(ext.lstrip(".")).lower()
        file_name = f"{attachment_id}_{item_id or 0}_{safe_stem}"
        if safe_ext:
            file_name = f"{file_name}.{safe_ext}"
        return os.path.join(self.instance_folder_name(external_id), file_name)

    def save(self, relative_path: str, content: bytes) -> str:
        """Write ``content`` and return the absolute path."""
        self.validate_path(relative_path)
        path = self.full_path(relative_path)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as handle:
                handle.write(content)
        except OSError as exc:
            logger.error("Failed to write file %s: %s", path, exc)
            raise StorageError(relative_path, str(exc)) from exc

        logger.debug("File saved: %s (%s bytes)", path, len(content))
        return path

    def write_json(self, relative_path: str, payload: Dict[str, Any]) -> str:
        content = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        return self.save(relative_path, content.encode("utf-8"))

