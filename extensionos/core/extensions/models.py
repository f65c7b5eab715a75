"""Data models for the Extension system"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from extensionos.core.extensions.exceptions import ApplicationError
from extensionos.core.extensions.versions import compare_versions, is_valid_version


class ExtensionKind(str, Enum):
    """Kinds of extension managed by the system"""
    PLUGIN = "plugin"
    THEME = "theme"
    MODULE = "module"


class DisabledFlag(str, Enum):
    """Reasons an extension can be disabled; several may apply at once"""
    MISSING = "disabled-missing"
    REPLACED = "disabled-replaced"
    REPLACEMENT_FAILED = "disabled-replacement-failed"
    MISSING_DEPENDENCIES = "disabled-dependencies"
    REQUEST = "disabled-request"
    BY_USER = "disabled-user"
    BY_CONFIG = "disabled-config"


class HistoryType(str, Enum):
    """Type of a migration history row"""
    COMMENT = "comment"
    SCRIPT = "script"


class MigrationStatus(str, Enum):
    """Outcome of applying a version manifest"""
    NO_MANIFEST = "no_manifest"
    UP_TO_DATE = "up_to_date"
    MIGRATED = "migrated"


class Extension(BaseModel):
    """A discovered plugin, theme or module"""
    identifier: str = Field(description="Extension identifier (e.g., 'Acme.Blog')")
    kind: ExtensionKind
    path: Path = Field(description="Extension root directory")
    descriptor_path: Optional[Path] = None
    name: Optional[str] = None
    description: Optional[str] = None
    composer_package: Optional[str] = Field(default=None, description="Remote package reference")
    requires: List[str] = Field(default_factory=list)
    replaces: Dict[str, str] = Field(
        default_factory=dict,
        description="Superseded identifiers mapped to a version constraint"
    )
    elevated: bool = False

    @field_validator('identifier')
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Extension identifier cannot be empty")
        return v

    @field_validator('requires', mode='before')
    @classmethod
    def normalize_requires(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return list(v)

    @field_validator('replaces', mode='before')
    @classmethod
    def normalize_replaces(cls, v: Any) -> Dict[str, str]:
        """Accept a bare identifier or list, meaning any version is replaced"""
        if v is None:
            return {}
        if isinstance(v, str):
            return {v: "*"}
        if isinstance(v, (list, tuple)):
            return {str(code): "*" for code in v}
        return {str(code): str(constraint or "*") for code, constraint in dict(v).items()}

    @property
    def updates_path(self) -> Path:
        return self.path / "updates"

    @property
    def version_file(self) -> Path:
        return self.updates_path / "version.yaml"


class ChangeDescriptor(BaseModel):
    """A single comment or script listed under a manifest version"""
    model_config = ConfigDict(frozen=True)

    text: str
    type: HistoryType

    @property
    def is_script(self) -> bool:
        return self.type == HistoryType.SCRIPT


class VersionEntry(BaseModel):
    """One version of an extension and its change descriptors"""
    model_config = ConfigDict(frozen=True)

    version: str
    descriptors: Tuple[ChangeDescriptor, ...] = ()

    @property
    def comments(self) -> List[str]:
        return [d.text for d in self.descriptors if not d.is_script]

    @property
    def scripts(self) -> List[str]:
        return [d.text for d in self.descriptors if d.is_script]


class VersionManifest(BaseModel):
    """Ordered, immutable view of an extension's updates/version.yaml"""
    model_config = ConfigDict(frozen=True)

    extension: str
    entries: Tuple[VersionEntry, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def versions(self) -> List[str]:
        return [entry.version for entry in self.entries]

    @property
    def latest(self) -> Optional[str]:
        return self.entries[-1].version if self.entries else None

    def index_of(self, version: str) -> Optional[int]:
        """Position of a version in the manifest, compared by precedence"""
        if not is_valid_version(version):
            return None
        for index, entry in enumerate(self.entries):
            if compare_versions(entry.version, version) == 0:
                return index
        return None

    def contains(self, version: str) -> bool:
        return self.index_of(version) is not None

    def get(self, version: str) -> Optional[VersionEntry]:
        index = self.index_of(version)
        return self.entries[index] if index is not None else None

    def entries_after(self, version: str) -> List[VersionEntry]:
        """Entries strictly newer than version; all entries when version is unknown"""
        index = self.index_of(version)
        if index is None:
            return list(self.entries)
        return list(self.entries[index + 1:])

    def entries_up_to(self, version: str) -> List[VersionEntry]:
        """Entries at or below version"""
        index = self.index_of(version)
        if index is None:
            return []
        return list(self.entries[:index + 1])


class LedgerRecord(BaseModel):
    """Installed version state of one extension"""
    code: str
    version: str = "0"
    is_disabled: bool = False
    is_frozen: bool = False
    created_at: Optional[datetime] = None


class HistoryEntry(BaseModel):
    """A comment or script recorded when a version was applied"""
    id: int
    code: str
    type: HistoryType
    version: str
    detail: Optional[str] = None
    created_at: Optional[datetime] = None


class MigrationResult(BaseModel):
    """Result of MigrationEngine.apply_up_to"""
    extension: str
    status: MigrationStatus
    from_version: str = "0"
    to_version: Optional[str] = None
    applied: List[str] = Field(default_factory=list, description="Versions applied in order")
    messages: List[str] = Field(default_factory=list)


class AvailableUpdate(BaseModel):
    """A newer version known for an installed extension"""
    identifier: str
    from_version: str
    to_version: str


class UpdateReport(BaseModel):
    """Outcome of a batch update"""
    updated: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    messages: Dict[str, List[str]] = Field(default_factory=dict)
    failures: Dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            summary = "; ".join(f"{code}: {error}" for code, error in self.failures.items())
            raise ApplicationError(f"Update failed for {len(self.failures)} extension(s): {summary}")
