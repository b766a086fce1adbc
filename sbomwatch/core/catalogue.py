"""
Component type catalogue.

SBOM producers mostly label every component a "library". The catalogue
refines that from the package manager and name, e.g. pkg:apk/alpine-baselayout
is the operating system and pkg:deb/debian/libssl3 a cryptography library.
"""
import logging
import os
from typing import Dict, Optional

import yaml

from sbomwatch.core.entities import ComponentType, DependencyKey

logger = logging.getLogger(__name__)

CATALOGUE_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "catalogue.yaml")


class Catalogue:
    def __init__(self, entries: Dict[str, ComponentType], aliases: Optional[Dict[str, str]] = None):
        self.entries = entries
        self.aliases = aliases or {}

    @classmethod
    def load(cls, path: str = CATALOGUE_PATH) -> "Catalogue":
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}

        entries = {}
        for purl, value in (raw.get("catalogue") or {}).items():
            kind = ComponentType.parse(value)
            if kind is ComponentType.UNKNOWN:
                raise ValueError(f"Catalogue entry {purl} has unknown component type '{value}'")
            entries[str(purl).lower()] = kind
        aliases = {str(k).lower(): str(v).lower() for k, v in (raw.get("aliases") or {}).items()}
        logger.debug(f"Loaded {len(entries)} catalogue entries from {path}")
        return cls(entries, aliases)

    def lookup(self, manager: str, namespace: str, name: str) -> Optional[ComponentType]:
        """Exact package URL first, then the name and manager wildcards"""
        manager = (manager or "").lower()
        name = (name or "").lower()
        name = self.aliases.get(name, name)
        prefix = f"{namespace.lower()}/" if namespace else ""

        for candidate in (f"pkg:{manager}/{prefix}{name}", f"pkg:*/{name}", f"pkg:{manager}/*"):
            kind = self.entries.get(candidate)
            if kind is not None:
                return kind
        return None

    def classify(self, key: DependencyKey, declared: Optional[str] = None) -> ComponentType:
        """
        Component type for a dependency. An explicit, specific type from the
        SBOM is kept; generic ones (library, application, unknown) are looked up.
        """
        kind = ComponentType.parse(declared)
        if not kind.is_generic:
            return kind
        return self.lookup(key.manager, key.namespace, key.name) or kind


_default: Optional[Catalogue] = None


def default_catalogue() -> Catalogue:
    global _default
    if _default is None:
        _default = Catalogue.load()
    return _default
