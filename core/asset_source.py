# core/asset_source.py

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from PIL import Image, UnidentifiedImageError

from core.exceptions import AssetNotFoundError, MetadataReadError, SourceUnavailableError
from utils.file_utils import get_image_files

logger = logging.getLogger(__name__)

EXIF_IFD_POINTER = 0x8769
EXIF_DATETIME_ORIGINAL = 36867
EXIF_DATETIME = 306
EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"


class AssetSource:
    """
    Contract for the photo library a scan reads from

    list_photo_assets returns dicts with keys id, filename, locator,
    creation_time (ms since epoch), width and height. It raises
    SourceUnavailableError when the library cannot be reached.
    get_byte_size raises AssetNotFoundError / MetadataReadError.
    """

    def list_photo_assets(self, limit: int) -> List[Dict]:
        raise NotImplementedError

    def get_byte_size(self, locator: str) -> int:
        raise NotImplementedError


class FilesystemAssetSource(AssetSource):
    """
    Photo library backed by a directory of image files
    """

    def __init__(self, directory: str, recursive: bool = True):
        self.directory = Path(directory)
        self.recursive = recursive

    def list_photo_assets(self, limit: int) -> List[Dict]:
        if not self.directory.is_dir():
            raise SourceUnavailableError(f"Not a directory: {self.directory}")

        try:
            image_paths = get_image_files(str(self.directory), self.recursive)
        except OSError as e:
            raise SourceUnavailableError(f"Cannot list {self.directory}: {e}") from e

        assets = []
        for image_path in image_paths[:limit]:
            path = Path(image_path)
            width, height, taken_at = self._read_image_info(path)

            if taken_at is None:
                try:
                    taken_at = path.stat().st_mtime
                except OSError as e:
                    logger.warning("Cannot stat %s: %s", path, e)
                    continue

            assets.append({
                'id': path.relative_to(self.directory).as_posix(),
                'filename': path.name,
                'locator': str(path),
                'creation_time': int(taken_at * 1000),
                'width': width,
                'height': height,
            })

        logger.info("Listed %d photo assets under %s", len(assets), self.directory)
        return assets

    def get_byte_size(self, locator: str) -> int:
        try:
            return Path(locator).stat().st_size
        except FileNotFoundError:
            raise AssetNotFoundError(f"Asset not found: {locator}") from None
        except OSError as e:
            raise MetadataReadError(f"Cannot read size of {locator}: {e}") from e

    def _read_image_info(self, path: Path):
        """Width, height and EXIF capture time (seconds) or None"""
        try:
            with Image.open(path) as img:
                width, height = img.size
                exif = img.getexif()
        except (OSError, UnidentifiedImageError) as e:
            logger.warning("Cannot read image header of %s: %s", path, e)
            return 0, 0, None

        raw_date = exif.get_ifd(EXIF_IFD_POINTER).get(EXIF_DATETIME_ORIGINAL) or exif.get(EXIF_DATETIME)
        return width, height, self._parse_exif_date(raw_date)

    @staticmethod
    def _parse_exif_date(raw_date) -> Optional[float]:
        if not raw_date:
            return None
        try:
            return datetime.strptime(str(raw_date).strip(), EXIF_DATE_FORMAT).timestamp()
        except ValueError:
            return None
