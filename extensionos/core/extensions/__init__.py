"""
Extension lifecycle and migrations

Discovers plugins, themes and modules, applies and reverts their versioned
migrations, tracks enable/disable flags and talks to the remote catalog.
"""

from extensionos.core.extensions.coordinator import (
    KIND_HANDLERS,
    ExtensionCoordinator,
    ExtensionManagerInterface,
)
from extensionos.core.extensions.engine import MigrationEngine
from extensionos.core.extensions.exceptions import (
    ApplicationError,
    ArchiveError,
    CircularDependencyError,
    ExtensionError,
    InvalidManifestError,
    LedgerError,
    RemoteCatalogError,
    ScriptExecutionError,
    TargetVersionNotFoundError,
    UnknownExtensionError,
)
from extensionos.core.extensions.ledger import MigrationLedger
from extensionos.core.extensions.manifest import VersionFileReader
from extensionos.core.extensions.models import (
    DisabledFlag,
    Extension,
    ExtensionKind,
    MigrationResult,
    UpdateReport,
    VersionManifest,
)
from extensionos.core.extensions.registry import ExtensionRegistry
from extensionos.core.extensions.sources import (
    ComposerSource,
    ExtensionSource,
    LocalSource,
    MarketSource,
    SourceStatus,
    SourceType,
)
from extensionos.core.extensions.system import SystemUpdater

__all__ = [
    # Coordination
    "ExtensionCoordinator",
    "ExtensionManagerInterface",
    "KIND_HANDLERS",
    "MigrationEngine",
    "MigrationLedger",
    "VersionFileReader",
    "ExtensionRegistry",
    "SystemUpdater",
    # Sources
    "ExtensionSource",
    "LocalSource",
    "MarketSource",
    "ComposerSource",
    "SourceStatus",
    "SourceType",
    # Models
    "DisabledFlag",
    "Extension",
    "ExtensionKind",
    "MigrationResult",
    "UpdateReport",
    "VersionManifest",
    # Exceptions
    "ExtensionError",
    "ApplicationError",
    "ArchiveError",
    "CircularDependencyError",
    "InvalidManifestError",
    "LedgerError",
    "RemoteCatalogError",
    "ScriptExecutionError",
    "TargetVersionNotFoundError",
    "UnknownExtensionError",
]
