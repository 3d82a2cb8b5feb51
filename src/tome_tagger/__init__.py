__version__ = "0.1.0"

__all__ = (
    "__version__",
    "main",
    "Config",
    "TaggingPipeline",
    # Model
    "AudioFile",
    "ChangeMap",
    "FileTags",
    "Group",
    "GroupKind",
    "Metadata",
    "PushResult",
    "RenameResult",
    "ScanResult",
    "SyncItem",
    "TagSlot",
    "WriteBatchResult",
    "WriteResult",
    # Stages
    "LibraryScanner",
    "group_files",
    "Reconciler",
    "compute_change_map",
    "TagWriter",
    "RenamePlanner",
    "AudiobookshelfClient",
    "SyncClient",
    "MetadataCache",
    # Providers
    "AudibleProvider",
    "GenerativeProvider",
    "GoogleBooksProvider",
    "MetadataProvider",
)

from tome_tagger.cache import MetadataCache
from tome_tagger.changeset import compute_change_map
from tome_tagger.cli import main
from tome_tagger.config import Config
from tome_tagger.models import (
    AudioFile,
    ChangeMap,
    FileTags,
    Group,
    GroupKind,
    Metadata,
    PushResult,
    RenameResult,
    ScanResult,
    SyncItem,
    TagSlot,
    WriteBatchResult,
    WriteResult,
)
from tome_tagger.pipeline import TaggingPipeline
from tome_tagger.providers import (
    AudibleProvider,
    GenerativeProvider,
    GoogleBooksProvider,
    MetadataProvider,
)
from tome_tagger.reconcile import Reconciler
from tome_tagger.rename import RenamePlanner
from tome_tagger.scanner import LibraryScanner, group_files
from tome_tagger.sync import AudiobookshelfClient, SyncClient
from tome_tagger.writer import TagWriter
