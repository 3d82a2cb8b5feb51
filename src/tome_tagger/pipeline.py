"""
Pipeline facade: scan → reconcile → write → rename → sync.

Each operation is an independent batch call taking explicit identifiers and
returning explicit results, so any stage can be replayed on its own inputs.
The facade keeps an index of the files seen by the last scan so callers can
refer to them by file id.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable, Mapping, Sequence
from pathlib import Path

from tome_tagger.batch import CancelToken, WorkerPool
from tome_tagger.cache import MetadataCache
from tome_tagger.changeset import compute_group_changes
from tome_tagger.codec import TagCodec, get_codec_for_file, inspect_tags
from tome_tagger.config import DEFAULT_CONFIG_PATH, Config
from tome_tagger.errors import CodecError
from tome_tagger.models import (
    AudioFile,
    ChangeMap,
    FileTags,
    Group,
    GroupKind,
    Metadata,
    PushResult,
    ScanResult,
    SyncItem,
    TagSlot,
    WriteAndRenameResult,
    WriteBatchResult,
    WriteResult,
)
from tome_tagger.providers import MetadataProvider, create_providers
from tome_tagger.rate_limiter import RateLimiterRegistry
from tome_tagger.reconcile import Reconciler
from tome_tagger.rename import RenamePlanner, RenameRequest
from tome_tagger.scanner import LibraryScanner
from tome_tagger.sync import AudiobookshelfClient, SyncClient
from tome_tagger.writer import TagWriter

log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class TaggingPipeline:
    """Boundary operations over the pipeline components."""

    def __init__(
        self,
        config: Config | None = None,
        providers: Sequence[MetadataProvider] | None = None,
        cache: MetadataCache | None = None,
        codec_factory: Callable[[Path], TagCodec] = get_codec_for_file,
        abs_client: AudiobookshelfClient | None = None,
        config_path: Path | None = None,
    ):
        self.config = config or Config()
        self.config_path = config_path
        self.codec_factory = codec_factory
        self.cancel_token = CancelToken()
        self.pool = WorkerPool(self.config.max_workers, self.cancel_token)
        self.rate_limits = RateLimiterRegistry()

        if providers is None:
            providers = create_providers(self.config, self.rate_limits)
        self.providers = list(providers)
        self.cache = cache or MetadataCache(
            self.config.cache.directory.expanduser(),
            ttl_seconds=self.config.cache.ttl_seconds,
            enabled=self.config.cache.enabled,
        )
        self._abs_client = abs_client

        self.scanner = LibraryScanner(self.config, self.pool, codec_factory)
        self.reconciler = Reconciler(self.providers, self.cache, self.config)
        self.writer = TagWriter(codec_factory, self.pool)
        self.planner = RenamePlanner(self.config.rename_template, self.config.library_root)

        self._groups: list[Group] = []
        self._files: dict[str, tuple[AudioFile, Group]] = {}

    def cancel(self) -> None:
        """Stop starting new items in the running stage."""
        self.cancel_token.cancel()

    def close(self) -> None:
        for provider in self.providers:
            provider.close()
        if self._abs_client is not None:
            self._abs_client.close()

    # Scan / reconcile

    def _index(self, groups: Iterable[Group]) -> None:
        self._files = {f.id: (f, g) for g in groups for f in g.files}

    def scan(
        self, paths: Iterable[Path], progress_callback: ProgressCallback | None = None
    ) -> ScanResult:
        self.cancel_token.reset()
        result = self.scanner.scan(paths, progress_callback)
        self._groups = result.groups
        self._index(result.groups)
        return result

    def _supported_slots(self, path: Path) -> Collection[TagSlot] | None:
        try:
            return self.codec_factory(path).supported_slots
        except CodecError:
            return None

    def reconcile(
        self,
        groups: Sequence[Group] | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> list[Group]:
        """
        Fill metadata and change maps for groups (default: the last scan's).

        A group whose reconciliation fails keeps ``metadata=None`` and empty
        change maps.
        """
        self.cancel_token.reset()
        explicit = groups is not None
        groups = list(groups) if groups is not None else list(self._groups)

        for outcome in self.pool.run(groups, self.reconciler.reconcile, progress_callback):
            group = outcome.item
            if not outcome.ok:
                log.error(f"Reconciliation failed for {group.name!r}: {outcome.error}")
                group.change_maps = {f.path: ChangeMap(f.path) for f in group.files}
                continue
            group.change_maps = compute_group_changes(group, self._supported_slots)

        if explicit:
            known = {g.key for g in self._groups}
            self._groups.extend(g for g in groups if g.key not in known)
            self._index(self._groups)
        return groups

    # Write / rename

    def _change_map_for(
        self, file_id: str, changes: Mapping[str, ChangeMap] | None
    ) -> ChangeMap | None:
        if changes and file_id in changes:
            return changes[file_id]
        entry = self._files.get(file_id)
        if entry is None:
            return None
        audio_file, group = entry
        return group.change_maps.get(audio_file.path, ChangeMap(audio_file.path))

    def write(
        self,
        file_ids: Sequence[str],
        changes: Mapping[str, ChangeMap] | None = None,
        backup: bool | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> WriteBatchResult:
        """
        Write tags for the given files.

        Args:
            file_ids: Ids of files from the last scan
            changes: Explicit ChangeMaps by file id, overriding reconciled ones
            backup: Back up originals first (default: config ``backup_tags``)

        Returns:
            One WriteResult per distinct requested id, in request order;
            unknown ids fail
        """
        file_ids = list(dict.fromkeys(file_ids))
        self.cancel_token.reset()
        backup = self.config.backup_tags if backup is None else backup

        requested: list[ChangeMap] = []
        unknown: dict[int, WriteResult] = {}
        for i, file_id in enumerate(file_ids):
            change_map = self._change_map_for(file_id, changes)
            if change_map is None:
                log.warning(f"Unknown file id {file_id}")
                unknown[i] = WriteResult.failed(
                    Path(file_id), "unknown file id", requested_id=file_id
                )
            else:
                requested.append(change_map)

        batch = self.writer.write_batch(
            requested, backup, self.config.backup_dir, progress_callback
        )
        written = iter(batch.results)
        results = [unknown[i] if i in unknown else next(written) for i in range(len(file_ids))]
        return WriteBatchResult(results)

    def preview_rename(
        self,
        path: Path,
        metadata: Metadata,
        reorganize: bool = False,
        library_root: Path | None = None,
        part: int | None = None,
    ) -> Path:
        """Target path for a file. Raises RenameError."""
        return self.planner.preview(path, metadata, reorganize, library_root, part)

    def _rename_request(
        self, file_id: str, path: Path, metadata_by_id: Mapping[str, Metadata] | None
    ) -> RenameRequest | None:
        entry = self._files.get(file_id)
        metadata = (metadata_by_id or {}).get(file_id)
        part = None
        if entry is not None:
            audio_file, group = entry
            metadata = metadata or group.metadata_for(audio_file)
            if group.kind is GroupKind.MULTI_FILE:
                part = audio_file.part
        if metadata is None:
            return None
        return RenameRequest(path, metadata, part)

    def write_and_rename(
        self,
        file_ids: Sequence[str],
        changes: Mapping[str, ChangeMap] | None = None,
        metadata_by_id: Mapping[str, Metadata] | None = None,
        backup: bool | None = None,
        reorganize: bool = False,
        library_root: Path | None = None,
    ) -> WriteAndRenameResult:
        """Write tags, then rename only the files whose write succeeded."""
        file_ids = list(dict.fromkeys(file_ids))
        write_result = self.write(file_ids, changes, backup)
        by_path = write_result.by_path()

        requests: list[RenameRequest] = []
        ids_by_path: dict[Path, str] = {}
        for file_id, result in zip(file_ids, write_result.results, strict=True):
            if not result.ok:
                continue
            request = self._rename_request(file_id, result.path, metadata_by_id)
            if request is None:
                log.warning(f"No metadata to rename {result.path}")
                continue
            requests.append(request)
            ids_by_path[result.path] = file_id

        rename_results = self.planner.apply_batch(
            requests, reorganize, library_root, write_results=by_path
        )

        for rename in rename_results:
            if rename.success and rename.new_path and rename.new_path != rename.path:
                self._relocate(ids_by_path[rename.path], rename.new_path)

        return WriteAndRenameResult(write_result, rename_results)

    def _relocate(self, file_id: str, new_path: Path) -> None:
        entry = self._files.pop(file_id, None)
        if entry is None:
            return
        audio_file, group = entry
        old_path = audio_file.path
        audio_file.path = new_path
        if old_path in group.change_maps:
            group.change_maps[new_path] = ChangeMap(new_path)
            del group.change_maps[old_path]
        if old_path in group.member_metadata:
            group.member_metadata[new_path] = group.member_metadata.pop(old_path)
        self._files[audio_file.id] = (audio_file, group)

    # Sync

    @property
    def abs_client(self) -> AudiobookshelfClient:
        if self._abs_client is None:
            self._abs_client = AudiobookshelfClient.from_config(
                self.config.audiobookshelf,
                rate_limiter=self.rate_limits.get_limiter("audiobookshelf"),
            )
        return self._abs_client

    def sync_items(
        self, groups: Sequence[Group] | None = None, written: WriteBatchResult | None = None
    ) -> list[SyncItem]:
        """
        One SyncItem per reconciled file.

        With ``written``, only files whose write in that batch succeeded.
        """
        written_ok = {r.path for r in written.results if r.ok} if written is not None else None
        items = []
        for group in groups if groups is not None else self._groups:
            for audio_file in group.files:
                if written_ok is not None and audio_file.path not in written_ok:
                    continue
                metadata = group.metadata_for(audio_file)
                if metadata is not None:
                    items.append(SyncItem(audio_file.path, metadata))
        return items

    def push_updates(self, items: Sequence[SyncItem]) -> PushResult:
        return SyncClient(self.abs_client).push_updates(items)

    # Maintenance

    def clear_cache(self) -> int:
        removed = self.cache.clear()
        log.info(f"Cleared {removed} cache entries")
        return removed

    def get_config(self) -> Config:
        return self.config

    def save_config(self, config: Config, config_path: Path | None = None) -> Path:
        """Persist configuration. Takes effect for components built afterwards."""
        path = config.save(config_path or self.config_path or DEFAULT_CONFIG_PATH.expanduser())
        self.config = config
        self.config_path = path
        return path

    def inspect(self, path: Path) -> FileTags:
        return self.codec_factory(path).read(path)

    def inspect_raw(self, path: Path) -> dict[str, object]:
        return inspect_tags(path)
