import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class CoverUpload:
    """An uploaded cover image: the client's file name and the raw bytes."""
    filename: str
    data: bytes


class CoverStorage:
    """Flat directory of cover images addressed by generated file name."""

    def __init__(self, images_dir: str) -> None:
        self.images_dir = images_dir
        os.makedirs(self.images_dir, exist_ok=True)

    @staticmethod
    def generate_name(original_filename: Optional[str]) -> str:
        extension = os.path.splitext(original_filename or "")[1]
        return f"{datetime.now():%Y%m%d_%H%M%S}_{uuid.uuid4().hex}{extension}"

    def path_for(self, file_name: str) -> str:
        # Stored names are flat; never let a name escape the images directory
        return os.path.join(self.images_dir, os.path.basename(file_name))

    def exists(self, file_name: str) -> bool:
        return os.path.isfile(self.path_for(file_name))

    def save(self, upload: CoverUpload) -> str:
        """Write the upload under a fresh name and return that name."""
        file_name = self.generate_name(upload.filename)
        with open(self.path_for(file_name), "wb") as f:
            f.write(upload.data)
        logger.info(f"Stored cover image {file_name} ({len(upload.data)} bytes)")
        return file_name

    def delete(self, file_name: Optional[str]) -> bool:
        """Best-effort removal. Returns True if a file was removed."""
        if not file_name:
            return False
        try:
            os.remove(self.path_for(file_name))
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not delete cover image {file_name}: {e}")
            return False
        logger.info(f"Deleted cover image {file_name}")
        return True
