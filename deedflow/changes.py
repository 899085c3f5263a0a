"""Field-level change sets between two versions of a form's content."""

from typing import Any, Dict, List

from deedflow.models import FieldChange
from deedflow.types import ChangeKind


def merge_fields(current: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow merge: patch keys replace existing keys wholesale."""
    merged = dict(current)
    merged.update(patch)
    return merged


def compute_changes(original: Dict[str, Any], edited: Dict[str, Any], prefix: str = "") -> List[FieldChange]:
    """Classify every differing field as added, removed or modified.

    Nested dicts are walked so that the change set names the innermost
    differing key (``"seller.name"`` rather than ``"seller"``). Lists and
    scalars are compared as whole values. Output is sorted by path.

    Examples:
        >>> [c.path for c in compute_changes({"a": 1, "b": 2}, {"a": 1, "c": 3})]
        ['b', 'c']
    """
    changes: List[FieldChange] = []
    for key in sorted(set(original) | set(edited), key=str):
        path = f"{prefix}{key}"
        if key not in original:
            changes.append(FieldChange(path=path, kind=ChangeKind.ADDED, new=edited[key]))
        elif key not in edited:
            changes.append(FieldChange(path=path, kind=ChangeKind.REMOVED, old=original[key]))
        else:
            old, new = original[key], edited[key]
            if isinstance(old, dict) and isinstance(new, dict):
                changes.extend(compute_changes(old, new, prefix=f"{path}."))
            elif old != new:
                changes.append(FieldChange(path=path, kind=ChangeKind.MODIFIED, old=old, new=new))
    return changes


__all__ = ["merge_fields", "compute_changes"]
