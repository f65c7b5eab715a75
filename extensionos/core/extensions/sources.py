"""
Extension Sources

Where the files of an extension come from before it is installed: a local
directory, a marketplace download, or a package manager requirement.
"""

import logging
import shutil
import time
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterator, Optional

from extensionos.core.extensions.archive import ArchiveExtractor
from extensionos.core.extensions.exceptions import ApplicationError
from extensionos.core.extensions.models import ExtensionKind
from extensionos.core.extensions.registry import (
    DESCRIPTOR_FILES,
    DescriptorError,
    ExtensionRegistry,
    read_descriptor,
)

if TYPE_CHECKING:
    from extensionos.core.extensions.catalog import MarketplaceClient
    from extensionos.core.extensions.coordinator import ExtensionCoordinator

logger = logging.getLogger(__name__)


class SourceType(str, Enum):
    """Origin of extension files"""
    LOCAL = "local"
    MARKET = "market"
    COMPOSER = "composer"


class SourceStatus(str, Enum):
    """Install state of a source relative to a coordinator"""
    UNINSTALLED = "uninstalled"
    UNPACKED = "unpacked"
    INSTALLED = "installed"


class ExtensionSource:
    """
    An extension that may not be on disk yet

    A composer source needs a package name. Any other source needs a code
    or a path; without a code it is read from the descriptor in path.
    """

    def __init__(
        self,
        source: SourceType,
        kind: ExtensionKind,
        code: Optional[str] = None,
        composer_package: Optional[str] = None,
        path: Optional[Path] = None
    ):
        self.source = SourceType(source)
        self.kind = ExtensionKind(kind)
        self.code = code
        self.composer_package = composer_package
        self.path = Path(path) if path else None

        if self.source == SourceType.COMPOSER and not self.composer_package:
            raise ApplicationError("A composer source requires a package name")

        if self.source != SourceType.COMPOSER and not self.code:
            if self.path is None:
                raise ApplicationError("A source requires either a code or a path")
            self.code = self.guess_code(self.path)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.source.value}, {self.kind.value}, {self.code!r})"

    def guess_code(self, path: Path) -> Optional[str]:
        """Identifier declared by the descriptor in path, if any"""
        descriptor = path / DESCRIPTOR_FILES[self.kind]
        if not descriptor.is_file():
            return None
        try:
            return read_descriptor(self.kind, descriptor).identifier
        except (DescriptorError, ValueError) as e:
            logger.warning(f"Unable to read {descriptor}: {e}")
            return None

    def get_code(self) -> Optional[str]:
        if not self.code and self.path is not None:
            self.code = self.guess_code(self.path)
        return self.code

    def get_path(self, root: Path) -> Path:
        """Directory the extension is expected in below the kind root"""
        from extensionos.core.extensions.coordinator import extension_directory

        code = self.get_code()
        if not code:
            raise ApplicationError(f"Unable to determine the code of {self!r}")
        return extension_directory(self.kind, root, code)

    def status(self, coordinator: "ExtensionCoordinator") -> SourceStatus:
        code = self.get_code()
        if not code:
            return SourceStatus.UNINSTALLED
        if coordinator.is_installed(code):
            return SourceStatus.INSTALLED
        if (self.get_path(coordinator.root) / DESCRIPTOR_FILES[self.kind]).is_file():
            return SourceStatus.UNPACKED
        return SourceStatus.UNINSTALLED

    # ------------------------------------------------------------------
    # File creation
    # ------------------------------------------------------------------

    def create_files(
        self,
        coordinator: "ExtensionCoordinator",
        catalog: Optional["MarketplaceClient"] = None
    ) -> Path:
        """
        Put the extension files in place below the coordinator root

        Returns:
            The extension directory

        Raises:
            ApplicationError: If the files cannot be created
        """
        creators: Dict[SourceType, Callable[["ExtensionCoordinator", Optional["MarketplaceClient"]], Path]] = {
            SourceType.COMPOSER: self._require_package,
            SourceType.MARKET: self._download,
            SourceType.LOCAL: self._move_local,
        }
        directory = creators[self.source](coordinator, catalog)
        logger.info(f"Created files of {self.kind.value} {self.get_code()} in {directory}")
        return directory

    def _require_package(self, coordinator: "ExtensionCoordinator", catalog=None) -> Path:
        path = coordinator.packages.require(self.composer_package)
        if path is None:
            raise ApplicationError(f"Unable to require package {self.composer_package}")

        self.source = SourceType.LOCAL
        self.path = Path(path)
        if not self.code:
            self.code = self.guess_code(self.path)
        return self._move_local(coordinator, catalog)

    def _download(self, coordinator: "ExtensionCoordinator", catalog: Optional["MarketplaceClient"] = None) -> Path:
        if self.kind == ExtensionKind.MODULE:
            raise ApplicationError("Modules cannot be installed from the marketplace")

        if catalog is None:
            from extensionos.core.extensions.catalog import MarketplaceClient
            catalog = MarketplaceClient(coordinator.config, parameters=coordinator.parameters)

        code = self.get_code()
        details = catalog.request_details(self.kind, code)
        file_hash = details.get("hash") if isinstance(details, dict) else None
        if not file_hash:
            raise ApplicationError(f"The marketplace returned no archive hash for {code}")

        catalog.download(self.kind, code, file_hash, installation=True)
        catalog.extract(self.kind, code, file_hash, coordinator.root)
        return self.get_path(coordinator.root)

    def _move_local(self, coordinator: "ExtensionCoordinator", catalog=None) -> Path:
        expected = self.get_path(coordinator.root)
        if self.path is None or not self.path.is_dir():
            raise ApplicationError(f"Source directory of {self.get_code()} not found: {self.path}")

        if self.path.resolve() == expected.resolve():
            return expected
        if expected.exists():
            raise ApplicationError(f"{expected} already exists")

        expected.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(self.path), str(expected))
        self.path = expected
        return expected

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def install(self, coordinator: "ExtensionCoordinator"):
        return coordinator.install(self)

    def uninstall(self, coordinator: "ExtensionCoordinator") -> bool:
        return coordinator.uninstall(self.get_code())


class LocalSource(ExtensionSource):
    """Extension files already on the local filesystem"""

    def __init__(self, kind: ExtensionKind, path: Path, code: Optional[str] = None):
        super().__init__(SourceType.LOCAL, kind, code=code, path=path)

    @classmethod
    def from_zip(
        cls,
        archive: Path,
        temp_dir: Path,
        extractor: Optional[ArchiveExtractor] = None
    ) -> Iterator["LocalSource"]:
        """
        Extract an uploaded archive and yield a source per plugin and theme in it

        Raises:
            ApplicationError: If the archive cannot be extracted
        """
        destination = Path(temp_dir) / str(time.time_ns())
        extractor = extractor or ArchiveExtractor()
        if not extractor.extract(Path(archive), destination):
            raise ApplicationError(f"Unable to extract {archive}")

        for kind in (ExtensionKind.PLUGIN, ExtensionKind.THEME):
            registry = ExtensionRegistry(kind, destination)
            for code, directory in registry.find_extensions_in_path(destination).items():
                logger.debug(f"Found {kind.value} {code} in {archive}")
                yield cls(kind, directory, code=code)


class MarketSource(ExtensionSource):
    """Extension downloaded from the marketplace"""

    def __init__(self, kind: ExtensionKind, code: str):
        super().__init__(SourceType.MARKET, kind, code=code)


class ComposerSource(ExtensionSource):
    """Extension required through the package manager"""

    def __init__(self, kind: ExtensionKind, composer_package: str, code: Optional[str] = None):
        super().__init__(SourceType.COMPOSER, kind, code=code, composer_package=composer_package)
