"""
Data models for StorageDrive
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict


FOLDER_CONTENT_TYPE = "Folder"


@dataclass
class Project:
    """Represents a project visible to the caller."""
    project_id: str
    name: Optional[str] = None
    lifecycle_state: str = "ACTIVE"


@dataclass
class Bucket:
    """Represents a bucket."""
    name: str
    project_number: Optional[str] = None
    creation_date: Optional[datetime] = None
    location: Optional[str] = None
    storage_class: Optional[str] = None


@dataclass
class ObjectMetadata:
    """
    Represents object metadata.

    ``synthetic`` is set for folders inferred from a listing prefix; such a
    record has no backing object in the store.
    """
    object_name: str
    bucket_name: str
    size: int = 0
    etag: Optional[str] = None
    generation: Optional[int] = None
    last_modified: Optional[datetime] = None
    content_type: Optional[str] = None
    media_link: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    synthetic: bool = False

    @classmethod
    def folder(cls, bucket_name: str, object_name: str) -> "ObjectMetadata":
        """Build the record that stands in for a folder with no marker object."""
        return cls(
            object_name=object_name,
            bucket_name=bucket_name,
            content_type=FOLDER_CONTENT_TYPE,
            synthetic=True,
        )


@dataclass
class ListObjectsResult:
    """Represents one page of an object listing."""
    objects: List[ObjectMetadata] = field(default_factory=list)
    common_prefixes: List[str] = field(default_factory=list)
    next_page_token: Optional[str] = None


@dataclass
class ListBucketsResult:
    """Represents one page of a bucket listing."""
    buckets: List[Bucket] = field(default_factory=list)
    next_page_token: Optional[str] = None


@dataclass
class ListProjectsResult:
    """Represents one page of a project listing."""
    projects: List[Project] = field(default_factory=list)
    next_page_token: Optional[str] = None
