"""
StorageDrive - browse a flat object store as buckets and folders
"""

__version__ = "1.0.0"

from .client import StorageClient
from .navigator import DriveItem, DriveRoot, StorageNavigator
from .paths import ObjectPath, PathType
from .bucket_index import BucketObjectIndex, IndexedObject
from .bucket_cache import ProjectBucketCache
from .streams import ContentReader, ContentStreamBridge, ContentWriter
from .telemetry import InMemoryResultReporter, LoggingResultReporter, ResultReporter
from .models import (
    Bucket,
    Project,
    ObjectMetadata,
    ListObjectsResult,
    ListBucketsResult,
    ListProjectsResult,
)
from .error import (
    StorageDriveException,
    NotFoundException,
    BucketNotFoundException,
    ObjectNotFoundException,
    PermissionDeniedException,
    AuthenticationException,
    ConflictException,
    ServerException,
    NotEmptyException,
    InvalidRelationException,
    InvalidOperationException,
    TransferFailedException,
    CancelledException,
    RecursiveOperationException,
)

__all__ = [
    "StorageClient",
    "StorageNavigator",
    "DriveItem",
    "DriveRoot",
    "ObjectPath",
    "PathType",
    "BucketObjectIndex",
    "IndexedObject",
    "ProjectBucketCache",
    "ContentReader",
    "ContentStreamBridge",
    "ContentWriter",
    "ResultReporter",
    "InMemoryResultReporter",
    "LoggingResultReporter",
    "Bucket",
    "Project",
    "ObjectMetadata",
    "ListObjectsResult",
    "ListBucketsResult",
    "ListProjectsResult",
    "StorageDriveException",
    "NotFoundException",
    "BucketNotFoundException",
    "ObjectNotFoundException",
    "PermissionDeniedException",
    "AuthenticationException",
    "ConflictException",
    "ServerException",
    "NotEmptyException",
    "InvalidRelationException",
    "InvalidOperationException",
    "TransferFailedException",
    "CancelledException",
    "RecursiveOperationException",
]
