"""
Path parsing for the storage drive.

A drive path is ``""`` (the drive root), ``"<bucket>"`` or
``"<bucket>/<object path>"``. Backslashes are accepted and normalized to ``/``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .error import InvalidRelationException


SEPARATOR = "/"


class PathType(Enum):
    DRIVE = "drive"
    BUCKET = "bucket"
    OBJECT = "object"


@dataclass(frozen=True)
class ObjectPath:
    """A parsed drive path. Classification is derived from which fields are set."""
    bucket: Optional[str] = None
    path: Optional[str] = None

    def __post_init__(self):
        if self.path is not None and "\\" in self.path:
            object.__setattr__(self, "path", self.path.replace("\\", SEPARATOR))

    @classmethod
    def parse(cls, raw: Optional[str]) -> "ObjectPath":
        """Split at the first separator: bucket before it, object path after it."""
        raw = (raw or "").lstrip("/\\")
        if not raw:
            return cls()
        cut = -1
        for i, ch in enumerate(raw):
            if ch in "/\\":
                cut = i
                break
        if cut < 0:
            return cls(bucket=raw)
        # "bucket/" names the bucket itself.
        return cls(bucket=raw[:cut], path=raw[cut + 1:] or None)

    @classmethod
    def for_object(cls, bucket: str, name: str) -> "ObjectPath":
        return cls(bucket=bucket, path=name or None)

    @property
    def type(self) -> PathType:
        if not self.bucket:
            return PathType.DRIVE
        if not self.path:
            return PathType.BUCKET
        return PathType.OBJECT

    @property
    def is_folder_path(self) -> bool:
        return bool(self.path) and self.path.endswith(SEPARATOR)

    def as_folder(self) -> "ObjectPath":
        """The same path with exactly one trailing separator on the object path."""
        if not self.path:
            return self
        return ObjectPath(self.bucket, self.path.rstrip(SEPARATOR) + SEPARATOR)

    def relative_path_to_child(self, child_object_path: str) -> str:
        prefix = self.path or ""
        if not child_object_path.startswith(prefix):
            raise InvalidRelationException(child_object_path, prefix)
        return child_object_path[len(prefix):]

    def __str__(self) -> str:
        if self.type == PathType.DRIVE:
            return ""
        if self.type == PathType.BUCKET:
            return self.bucket
        return f"{self.bucket}{SEPARATOR}{self.path}"


def parent_prefix(object_path: str) -> str:
    """
    The listing prefix of the folder holding ``object_path``.

    ``"a/b/c.txt"`` -> ``"a/b/"``, ``"a/b/"`` -> ``"a/"``, ``"a"`` -> ``""``.
    """
    trimmed = object_path.rstrip(SEPARATOR)
    cut = trimmed.rfind(SEPARATOR)
    return trimmed[:cut + 1] if cut >= 0 else ""


def folder_prefix(object_path: Optional[str]) -> str:
    """The listing prefix for the children of a folder path; ``""`` for the bucket root."""
    if not object_path:
        return ""
    return object_path.rstrip(SEPARATOR) + SEPARATOR


def child_name(object_path: str) -> str:
    """Last segment of an object path, without a trailing separator."""
    trimmed = object_path.rstrip(SEPARATOR)
    return trimmed[trimmed.rfind(SEPARATOR) + 1:]
