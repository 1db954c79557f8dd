"""
Image Store Module for Chat Message Block Parser
File-backed image resolver for <image-uuid>...</image-uuid> references.

Images live in one directory, named by their identifier:
    3f2b6c1e-8a1d-4c55-9b7e-2f0d6a4e9c10.png
    0b9a2d44-1c3e-4f6a-8d2b-7e5c9a1f3b20.jpeg

An ImageStore instance is callable and can be handed to MessageParser as the
image resolver.
"""

import base64
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from message_parser import ImageResolutionError


logger = logging.getLogger(__name__)


# Extension → MIME type, in lookup order
MIME_TYPES: Dict[str, str] = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".tiff": "image/tiff",
}


@dataclass
class StoredImage:
    """Image bytes loaded from the store"""

    identifier: uuid.UUID
    path: Path
    mime_type: str
    data: bytes

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"


class ImageStore:
    """Resolves image identifiers to files under a root directory"""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def find_path(self, identifier: uuid.UUID) -> Optional[Path]:
        """Return the first existing <identifier><ext> file, if any"""
        for suffix in MIME_TYPES:
            candidate = self.root / f"{identifier}{suffix}"
            if candidate.is_file():
                return candidate
        return None

    def resolve(self, identifier: uuid.UUID) -> Optional[StoredImage]:
        """
        Load the image stored for an identifier.

        Returns:
            StoredImage, or None if no file exists or the file is empty

        Raises:
            ImageResolutionError: If the file exists but cannot be read
        """
        path = self.find_path(identifier)
        if path is None:
            logger.debug("No image file for %s in %s", identifier, self.root)
            return None

        try:
            data = path.read_bytes()
        except OSError as e:
            raise ImageResolutionError(f"cannot read {path}: {e}") from e

        if not data:
            logger.warning("Image file %s is empty, skipping", path)
            return None

        return StoredImage(
            identifier=identifier,
            path=path,
            mime_type=MIME_TYPES[path.suffix.lower()],
            data=data,
        )

    def __call__(self, identifier: uuid.UUID) -> Optional[StoredImage]:
        return self.resolve(identifier)
