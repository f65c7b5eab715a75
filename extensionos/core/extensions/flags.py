"""Disable flags for extensions, computed once and cached per loaded set"""

import hashlib
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from extensionos.core.extensions.cache import ExtensionCache, MemoryCache
from extensionos.core.extensions.models import DisabledFlag

logger = logging.getLogger(__name__)

CACHE_PREFIX = "extensionos.flags."
DEFAULT_TTL_DAYS = 30


class FlagStore:
    """
    Tracks why extensions are disabled

    An extension is disabled while it carries at least one flag. Flags are
    independent: clearing one never clears another.
    """

    def __init__(self, cache: Optional[ExtensionCache] = None, ttl_days: int = DEFAULT_TTL_DAYS):
        self.cache = cache or MemoryCache()
        self.ttl_seconds = ttl_days * 24 * 60 * 60
        self.flags: Dict[str, Set[str]] = {}
        self.extra: Dict[str, Any] = {}
        self._key: Optional[str] = None

    @staticmethod
    def cache_key(loaded: Iterable[str], config_disabled: Iterable[str]) -> str:
        codes = [code.lower() for code in loaded] + [code.lower() for code in config_disabled]
        return CACHE_PREFIX + hashlib.md5(".".join(codes).encode("utf-8")).hexdigest()

    def load(
        self,
        loaded: Iterable[str],
        config_disabled: Iterable[str],
        builder: Callable[["FlagStore"], Optional[Dict[str, Any]]]
    ) -> None:
        """
        Restore flags from the cache, running builder on a miss

        Args:
            loaded: Identifiers of every discovered extension
            config_disabled: Identifiers disabled by configuration
            builder: Sets flags on this store; may return extra data
                (e.g. active replacements) to cache alongside them
        """
        loaded = list(loaded)
        config_disabled = list(config_disabled)
        self._key = self.cache_key(loaded, config_disabled)

        def compute() -> Dict[str, Any]:
            logger.debug("Regenerating extension flags")
            self.flags = {}
            extra = builder(self) or {}
            return {
                "flags": {code: sorted(flags) for code, flags in self.flags.items()},
                "extra": extra,
            }

        data = self.cache.remember(self._key, self.ttl_seconds, compute)
        self.flags = {code: set(flags) for code, flags in data["flags"].items()}
        self.extra = dict(data.get("extra") or {})

    def clear_cache(self) -> None:
        if self._key is not None:
            self.cache.invalidate(self._key)

    def flag(self, code: str, flag: DisabledFlag) -> None:
        self.flags.setdefault(code.lower(), set()).add(DisabledFlag(flag).value)

    def unflag(self, code: str, flag: DisabledFlag) -> None:
        code = code.lower()
        flags = self.flags.get(code)
        if flags is None:
            return
        flags.discard(DisabledFlag(flag).value)
        if not flags:
            del self.flags[code]

    def get_flags(self, code: str) -> List[DisabledFlag]:
        return [DisabledFlag(flag) for flag in sorted(self.flags.get(code.lower(), ()))]

    def has_flag(self, code: str, flag: DisabledFlag) -> bool:
        return DisabledFlag(flag).value in self.flags.get(code.lower(), ())

    def is_disabled(self, code: str) -> bool:
        return bool(self.flags.get(code.lower()))

    def flagged_codes(self) -> List[str]:
        return sorted(self.flags)
