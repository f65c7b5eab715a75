"""Keeps a zip of an extension's files before they are replaced by an update"""

import logging
from pathlib import Path
from typing import Optional

from extensionos.core.extensions.archive import ArchiveExtractor, pack_archive
from extensionos.core.extensions.models import Extension, ExtensionKind

logger = logging.getLogger(__name__)

KIND_DIRECTORIES = {
    ExtensionKind.PLUGIN: "plugins",
    ExtensionKind.THEME: "themes",
    ExtensionKind.MODULE: "modules",
}


class Preserver:
    """Stores extension snapshots under <archive>/<kind>s/<identifier>/<version>.zip"""

    def __init__(self, archive_root: Path, extractor: Optional[ArchiveExtractor] = None):
        self.archive_root = Path(archive_root)
        self.extractor = extractor or ArchiveExtractor()

    def archive_path(self, extension: Extension, version: str) -> Path:
        return (
            self.archive_root
            / KIND_DIRECTORIES[extension.kind]
            / extension.identifier
            / f"{version}.zip"
        )

    def store(self, extension: Extension, version: str) -> Path:
        """
        Archive the current files of extension

        Raises:
            ArchiveError: If the files cannot be packed
        """
        destination = self.archive_path(extension, version)
        pack_archive(extension.path, destination, self.extractor)
        logger.info(f"Preserved {extension.identifier} {version} at {destination}")
        return destination
