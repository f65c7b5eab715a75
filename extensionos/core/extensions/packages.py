"""Package manager interface used for remote artifact updates"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class PackageManager(ABC):
    """Installs and updates extension files from a package repository"""

    @abstractmethod
    def available_updates(self) -> Dict[str, Tuple[str, str]]:
        """
        Packages with a newer release

        Returns:
            {package: (installed_version, available_version)}
        """
        pass

    @abstractmethod
    def update(self, package: str) -> Optional[Tuple[str, str]]:
        """
        Update one package

        Returns:
            (from_version, to_version), or None if nothing was upgraded
        """
        pass

    @abstractmethod
    def require(self, package: str) -> Optional[Path]:
        """
        Install a package

        Returns:
            Directory the package was installed to, or None on failure
        """
        pass

    def update_available(self, package: str) -> bool:
        return package in self.available_updates()


class NullPackageManager(PackageManager):
    """Package manager for installations without a package repository"""

    def available_updates(self) -> Dict[str, Tuple[str, str]]:
        return {}

    def update(self, package: str) -> Optional[Tuple[str, str]]:
        logger.debug(f"No package manager configured, {package} not updated")
        return None

    def require(self, package: str) -> Optional[Path]:
        logger.debug(f"No package manager configured, {package} not installed")
        return None
