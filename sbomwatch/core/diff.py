from typing import Iterable

from sbomwatch.core.entities import DependencyKey, SnapshotDiff


def diff_dependencies(old: Iterable[DependencyKey], new: Iterable[DependencyKey]) -> SnapshotDiff:
    """Set comparison of two dependency sets keyed by (component, version)"""
    old_keys = set(old)
    new_keys = set(new)
    return SnapshotDiff(
        added=new_keys - old_keys,
        removed=old_keys - new_keys,
        unchanged=old_keys & new_keys,
    )
