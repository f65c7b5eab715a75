"""Exception classes for the Extension system"""

from typing import Iterable, Optional


class ExtensionError(Exception):
    """Base exception for all extension-related errors"""
    pass


class ApplicationError(ExtensionError):
    """User-facing error raised by lifecycle operations"""
    pass


class InvalidManifestError(ExtensionError):
    """Raised when an extension's version file cannot be parsed"""

    def __init__(self, extension: str, detail: str):
        self.extension = extension
        self.detail = detail
        super().__init__(f"Invalid version file for {extension}: {detail}")


class ScriptExecutionError(ExtensionError):
    """Raised when a migration script fails while applying or reverting"""

    def __init__(self, extension: str, version: str, script: str, reason: Optional[str] = None):
        self.extension = extension
        self.version = version
        self.script = script
        message = f"Migration script {script} ({extension} {version}) failed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class CircularDependencyError(ExtensionError):
    """Raised when dependency ordering cannot make progress"""

    def __init__(self, bound: int, unresolved: Iterable[str] = ()):
        self.bound = bound
        self.unresolved = sorted(unresolved)
        super().__init__(
            f"Circular dependency detected after {bound} iterations "
            f"(unresolved: {', '.join(self.unresolved) or 'none'})"
        )


class UnknownExtensionError(ExtensionError):
    """Raised when an identifier does not match any discovered extension"""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Unable to find extension {identifier}")


class TargetVersionNotFoundError(ExtensionError):
    """Raised when a requested target version is not known for an extension"""

    def __init__(self, extension: str, version: str):
        self.extension = extension
        self.version = version
        super().__init__(f"Version {version} not found for extension {extension}")


class RemoteCatalogError(ApplicationError):
    """Raised when the remote catalog returns an unusable response"""
    pass


class ArchiveError(ApplicationError):
    """Raised when an archive cannot be extracted or packed"""
    pass


class LedgerError(ExtensionError):
    """Raised when migration ledger storage operations fail"""
    pass
