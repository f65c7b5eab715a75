"""Zip archive helpers for extension packages"""

import logging
import shutil
import zipfile
from pathlib import Path
from typing import Optional

from extensionos.core.extensions.exceptions import ArchiveError

logger = logging.getLogger(__name__)


class ArchiveExtractor:
    """Extracts and packs zip archives"""

    def _safe_target(self, target_root: Path, member: str) -> Optional[Path]:
        """Destination for member, or None if it would escape target_root"""
        if '..' in Path(member).parts or Path(member).is_absolute():
            return None

        target_path = (target_root / member).resolve()
        try:
            target_path.relative_to(target_root)
        except ValueError:
            return None
        return target_path

    def extract(self, archive: Path, destination: Path) -> bool:
        """
        Extract archive into destination with path traversal protection

        Returns:
            False if the archive is unreadable or contains unsafe paths
        """
        archive, destination = Path(archive), Path(destination)
        logger.info(f"Extracting {archive.name} to {destination}")

        try:
            destination.mkdir(parents=True, exist_ok=True)
            target_root = destination.resolve()

            with zipfile.ZipFile(archive, 'r') as zf:
                members = zf.namelist()
                for member in members:
                    if self._safe_target(target_root, member) is None:
                        logger.error(f"Unsafe path in {archive.name}: {member}")
                        return False

                for member in members:
                    target_path = self._safe_target(target_root, member)
                    if member.endswith('/'):
                        target_path.mkdir(parents=True, exist_ok=True)
                        continue

                    target_path.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(member) as source, open(target_path, 'wb') as target:
                        shutil.copyfileobj(source, target)

        except (OSError, zipfile.BadZipFile) as e:
            logger.error(f"Failed to extract {archive}: {e}")
            return False

        logger.info(f"Extraction complete: {destination}")
        return True

    def pack(self, source: Path, destination: Path) -> Path:
        """
        Pack the contents of source into a zip file

        Returns:
            Path to the created archive

        Raises:
            ArchiveError: If source is missing or the archive cannot be written
        """
        source, destination = Path(source), Path(destination)
        if not source.is_dir():
            raise ArchiveError(f"Unable to pack {source}: directory not found")

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(destination, 'w', zipfile.ZIP_DEFLATED) as zf:
                for path in sorted(source.rglob('*')):
                    zf.write(path, path.relative_to(source).as_posix())
        except OSError as e:
            raise ArchiveError(f"Unable to pack {source}: {e}") from e

        return destination


def extract_archive(
    archive: Path,
    destination: Path,
    extractor: Optional[ArchiveExtractor] = None
) -> None:
    """
    Extract archive and delete it

    Raises:
        ArchiveError: If extraction fails
    """
    extractor = extractor or ArchiveExtractor()
    if not extractor.extract(archive, destination):
        raise ArchiveError(f"Unable to extract archive {archive}")
    Path(archive).unlink(missing_ok=True)


def pack_archive(source: Path, destination: Path, extractor: Optional[ArchiveExtractor] = None) -> Path:
    return (extractor or ArchiveExtractor()).pack(source, destination)
