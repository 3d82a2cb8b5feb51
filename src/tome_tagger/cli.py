from __future__ import annotations

import json
import logging
import sys
from enum import StrEnum
from pathlib import Path
from typing import Any

import click
import yaml

from tome_tagger import console
from tome_tagger.config import DEFAULT_CONFIG_PATH, Config
from tome_tagger.errors import CodecError, ConfigError, RenameError, SyncError
from tome_tagger.models import Group, GroupKind
from tome_tagger.pipeline import TaggingPipeline
from tome_tagger.safe_logging import configure_safe_logging


class OutputFormat(StrEnum):
    """Output format for CLI commands."""

    TEXT = "text"
    JSON = "json"


class ExitCode:
    """Standard exit codes for CLI commands."""

    SUCCESS = 0
    ERROR = 1
    NO_RESULTS = 2


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _pipeline(ctx: click.Context) -> TaggingPipeline:
    """Build the pipeline once per invocation and close it with the context."""
    pipeline: TaggingPipeline | None = ctx.obj.get("pipeline")
    if pipeline is None:
        pipeline = TaggingPipeline(ctx.obj["config"], config_path=ctx.obj["config_path"])
        ctx.obj["pipeline"] = pipeline
        ctx.call_on_close(pipeline.close)
    return pipeline


def _scan_and_reconcile(
    ctx: click.Context, paths: tuple[Path, ...], reconcile: bool = True
) -> list[Group]:
    pipeline = _pipeline(ctx)
    show_progress = ctx.obj["output"] == OutputFormat.TEXT

    with console.stage_progress("Scanning...", show_progress) as callback:
        result = pipeline.scan(paths, callback)
    for error in result.errors:
        console.print_warning(f"{error.path}: {error.reason}")

    if reconcile and result.groups:
        with console.stage_progress("Looking up metadata...", show_progress) as callback:
            pipeline.reconcile(progress_callback=callback)
    return result.groups


def _all_file_ids(groups: list[Group]) -> list[str]:
    return [f.id for g in groups for f in g.files]


@click.group()
@click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML or TOML)",
)
@click.option(
    "--output",
    "-o",
    type=click.Choice(["text", "json"]),
    default="text",
    help="Output format",
)
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v for INFO, -vv for DEBUG)")
@click.option("--cache-dir", type=click.Path(path_type=Path), help="Metadata cache directory")
@click.option("--cache-ttl", type=int, help="Cache TTL in seconds")
@click.option("--no-cache", is_flag=True, help="Disable the metadata cache")
@click.option("--max-workers", type=int, help="Maximum concurrent file operations")
@click.option("--library-root", type=click.Path(path_type=Path), help="Audiobook library root")
@click.option(
    "--skip-unchanged/--no-skip-unchanged",
    default=None,
    help="Skip provider lookups for books whose tags look complete",
)
@click.pass_context
def tome(
    ctx: click.Context,
    config: Path | None,
    output: str,
    verbose: int,
    cache_dir: Path | None,
    cache_ttl: int | None,
    no_cache: bool,
    max_workers: int | None,
    library_root: Path | None,
    skip_unchanged: bool | None,
) -> None:
    """
    tome-tagger: audiobook metadata tagger.

    Scan a library, reconcile metadata from online providers, write tags,
    rename files and push the result to Audiobookshelf.
    """
    logger = logging.getLogger(__name__)

    config_path = config or DEFAULT_CONFIG_PATH.expanduser()
    try:
        cfg = Config.load(config_path)
    except ConfigError as e:
        console.print_error(str(e))
        sys.exit(ExitCode.ERROR)

    # CLI > Env > Config File > Defaults
    if cache_dir:
        cfg.cache.directory = cache_dir
    if cache_ttl is not None:
        cfg.cache.ttl_seconds = cache_ttl
    if no_cache:
        cfg.cache.enabled = False
    if max_workers is not None:
        cfg.max_workers = max(1, max_workers)
    if library_root:
        cfg.library_root = library_root
    if skip_unchanged is not None:
        cfg.skip_unchanged = skip_unchanged

    if verbose > 0:
        log_level = logging.DEBUG if verbose >= 2 else logging.INFO
    else:
        log_level = getattr(logging, cfg.logging.level.upper(), logging.WARNING)

    configure_safe_logging(
        level=log_level,
        format_string=cfg.logging.format,
        hash_paths=cfg.logging.hash_paths,
        library_root=cfg.library_root,
    )
    logger.debug(f"Logging configured: level={logging.getLevelName(log_level)}")

    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg
    ctx.obj["config_path"] = config_path
    ctx.obj["output"] = OutputFormat(output)


@tome.command()
@click.argument("paths", nargs=-1, type=click.Path(exists=True, path_type=Path), required=True)
@click.option("--no-reconcile", is_flag=True, help="Only group files, skip provider lookups")
@click.pass_context
def scan(ctx: click.Context, paths: tuple[Path, ...], no_reconcile: bool) -> None:
    """
    Scan audiobook files and show proposed tag changes.

    Files are grouped into books and series, metadata is reconciled from the
    enabled providers, and each file's pending changes are listed. Nothing is
    written.
    """
    output_format: OutputFormat = ctx.obj["output"]
    groups = _scan_and_reconcile(ctx, paths, reconcile=not no_reconcile)

    if output_format == OutputFormat.JSON:
        _echo_json({"groups": [g.to_dict() for g in groups]})
    elif groups:
        console.print(console.group_table(groups))
        for group in groups:
            for audio_file in group.files:
                change_map = group.change_maps.get(audio_file.path)
                if not change_map:
                    continue
                console.print(console.changes_table(audio_file.filename, change_map))
    else:
        click.echo("No audiobook files found.")

    sys.exit(ExitCode.SUCCESS if groups else ExitCode.NO_RESULTS)


@tome.command()
@click.argument("paths", nargs=-1, type=click.Path(exists=True, path_type=Path), required=True)
@click.option(
    "--backup/--no-backup", default=None, help="Back up originals before writing tags"
)
@click.pass_context
def write(ctx: click.Context, paths: tuple[Path, ...], backup: bool | None) -> None:
    """Scan, reconcile and write tags to every file with pending changes."""
    output_format: OutputFormat = ctx.obj["output"]
    pipeline = _pipeline(ctx)

    groups = _scan_and_reconcile(ctx, paths)
    file_ids = _all_file_ids(groups)
    if not file_ids:
        click.echo("No audiobook files found.")
        sys.exit(ExitCode.NO_RESULTS)

    with console.stage_progress("Writing tags...", output_format == OutputFormat.TEXT) as callback:
        result = pipeline.write(file_ids, backup=backup, progress_callback=callback)

    if output_format == OutputFormat.JSON:
        _echo_json(result.to_dict())
    else:
        console.print_success(f"{result.success} files written")
        for error in result.errors:
            console.print_error(f"{error['path']}: {error['error']}")

    sys.exit(ExitCode.SUCCESS if result.failed == 0 else ExitCode.ERROR)


def _preview_renames(
    pipeline: TaggingPipeline,
    groups: list[Group],
    reorganize: bool,
    library_root: Path | None,
) -> list[dict[str, Any]]:
    previews = []
    for group in groups:
        for audio_file in group.files:
            metadata = group.metadata_for(audio_file)
            entry: dict[str, Any] = {"path": str(audio_file.path), "new_path": None, "error": None}
            if metadata is None:
                entry["error"] = "no metadata"
            else:
                part = audio_file.part if group.kind is GroupKind.MULTI_FILE else None
                try:
                    target = pipeline.preview_rename(
                        audio_file.path, metadata, reorganize, library_root, part
                    )
                    entry["new_path"] = str(target)
                except RenameError as e:
                    entry["error"] = str(e)
            previews.append(entry)
    return previews


@tome.command()
@click.argument("paths", nargs=-1, type=click.Path(exists=True, path_type=Path), required=True)
@click.option("--reorganize", is_flag=True, help="Move files into Author/Series folders")
@click.option("--target-root", type=click.Path(path_type=Path), help="Root for --reorganize")
@click.option("--dry-run", is_flag=True, help="Show target paths without writing or moving")
@click.option(
    "--backup/--no-backup", default=None, help="Back up originals before writing tags"
)
@click.pass_context
def rename(
    ctx: click.Context,
    paths: tuple[Path, ...],
    reorganize: bool,
    target_root: Path | None,
    dry_run: bool,
    backup: bool | None,
) -> None:
    """
    Write tags, then rename files from the filename template.

    Files whose tag write fails are left where they are.
    """
    output_format: OutputFormat = ctx.obj["output"]
    pipeline = _pipeline(ctx)

    groups = _scan_and_reconcile(ctx, paths)
    file_ids = _all_file_ids(groups)
    if not file_ids:
        click.echo("No audiobook files found.")
        sys.exit(ExitCode.NO_RESULTS)

    if dry_run:
        previews = _preview_renames(pipeline, groups, reorganize, target_root)
        if output_format == OutputFormat.JSON:
            _echo_json({"renames": previews})
        else:
            for entry in previews:
                if entry["error"]:
                    console.print_warning(f"{entry['path']}: {entry['error']}")
                else:
                    click.echo(f"{entry['path']} -> {entry['new_path']}")
        failed = any(entry["error"] for entry in previews)
        sys.exit(ExitCode.ERROR if failed else ExitCode.SUCCESS)

    result = pipeline.write_and_rename(
        file_ids, backup=backup, reorganize=reorganize, library_root=target_root
    )
    renamed = [r for r in result.rename_results if r.success]
    failed_renames = [r for r in result.rename_results if not r.success]

    if output_format == OutputFormat.JSON:
        _echo_json(
            {
                "write": result.write_result.to_dict(),
                "renames": [r.to_dict() for r in result.rename_results],
            }
        )
    else:
        console.print_success(
            f"{result.write_result.success} files written, {len(renamed)} renamed"
        )
        for error in result.write_result.errors:
            console.print_error(f"{error['path']}: {error['error']}")
        for rename_result in failed_renames:
            console.print_error(f"{rename_result.path}: {rename_result.error}")

    ok = result.write_result.failed == 0 and not failed_renames
    sys.exit(ExitCode.SUCCESS if ok else ExitCode.ERROR)


@tome.command()
@click.argument("paths", nargs=-1, type=click.Path(exists=True, path_type=Path))
@click.option("--trigger-scan", is_flag=True, help="Ask Audiobookshelf to rescan afterwards")
@click.option("--check", is_flag=True, help="Only test the Audiobookshelf connection")
@click.pass_context
def push(ctx: click.Context, paths: tuple[Path, ...], trigger_scan: bool, check: bool) -> None:
    """Write tags, then push the metadata of every written file to Audiobookshelf."""
    output_format: OutputFormat = ctx.obj["output"]
    pipeline = _pipeline(ctx)

    if check:
        ok, message = pipeline.abs_client.test_connection()
        if output_format == OutputFormat.JSON:
            _echo_json({"connected": ok, "message": message})
        elif ok:
            console.print_success(f"{message}")
        else:
            console.print_error(message)
        sys.exit(ExitCode.SUCCESS if ok else ExitCode.ERROR)

    if not paths:
        raise click.UsageError("PATHS required unless --check is given")

    groups = _scan_and_reconcile(ctx, paths)
    file_ids = _all_file_ids(groups)
    with console.stage_progress("Writing tags...", output_format == OutputFormat.TEXT) as callback:
        written = pipeline.write(file_ids, progress_callback=callback)
    for error in written.errors:
        console.print_warning(f"Not pushing {error['path']}: {error['error']}")

    items = pipeline.sync_items(written=written)
    if not items:
        click.echo("Nothing to push.")
        sys.exit(ExitCode.NO_RESULTS)

    result = pipeline.push_updates(items)

    if trigger_scan and result.updated:
        try:
            pipeline.abs_client.trigger_scan()
        except SyncError as e:
            console.print_warning(f"Library rescan failed: {e}")

    if output_format == OutputFormat.JSON:
        _echo_json(result.to_dict())
    else:
        console.print_success(f"{result.updated} Audiobookshelf items updated")
        for path in result.unmatched:
            console.print_warning(f"No matching item: {path}")
        for item in result.failed:
            console.print_error(f"{item.path}: {item.reason}")

    sys.exit(ExitCode.SUCCESS if not (result.failed or written.failed) else ExitCode.ERROR)


@tome.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def inspect(ctx: click.Context, file: Path) -> None:
    """Show the logical tag record and raw tag keys of one file."""
    output_format: OutputFormat = ctx.obj["output"]

    try:
        info = _pipeline(ctx).inspect_raw(file)
    except CodecError as e:
        console.print_error(str(e))
        sys.exit(ExitCode.ERROR)

    if output_format == OutputFormat.JSON:
        _echo_json(info)
        sys.exit(ExitCode.SUCCESS)

    for table in console.tag_tables(info):
        console.print(table)

    sys.exit(ExitCode.SUCCESS)


@tome.group()
def cache() -> None:
    """Manage the metadata cache."""
    pass


@cache.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show cache status and statistics."""
    config: Config = ctx.obj["config"]
    output_format: OutputFormat = ctx.obj["output"]

    result = {"enabled": config.cache.enabled, **_pipeline(ctx).cache.stats()}

    if output_format == OutputFormat.JSON:
        _echo_json(result)
    else:
        click.echo("Cache Status")
        click.echo("=" * 40)
        click.echo(f"  Directory: {result['directory']}")
        click.echo(f"  Enabled: {result['enabled']}")
        click.echo(f"  TTL: {result['ttl_seconds']} seconds")
        click.echo(f"  Entries: {result['entries']}")
        click.echo(f"  Expired: {result['expired']}")
        size_mb = int(result["size_bytes"]) / (1024 * 1024)
        click.echo(f"  Size: {size_mb:.2f} MB")

    sys.exit(ExitCode.SUCCESS)


@cache.command()
@click.option("--expired-only", is_flag=True, help="Only purge expired entries")
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def purge(ctx: click.Context, expired_only: bool, force: bool) -> None:
    """Clear cached provider responses."""
    output_format: OutputFormat = ctx.obj["output"]
    pipeline = _pipeline(ctx)

    if expired_only:
        removed = pipeline.cache.purge_expired()
        result = {"action": "purge_expired", "removed_entries": removed}
    else:
        if not force:
            click.confirm("Are you sure you want to clear the metadata cache?", abort=True)
        removed = pipeline.clear_cache()
        result = {"action": "purge_all", "removed_entries": removed}

    if output_format == OutputFormat.JSON:
        _echo_json(result)
    elif expired_only:
        click.echo(f"✔︎ Purged {removed} expired entries")
    else:
        click.echo(f"✔︎ Cleared {removed} cache entries")

    sys.exit(ExitCode.SUCCESS)


@tome.group("config")
def config_group() -> None:
    """Show or save configuration."""
    pass


@config_group.command("show")
@click.option("--show-secrets", is_flag=True, help="Print API keys and tokens unredacted")
@click.pass_context
def config_show(ctx: click.Context, show_secrets: bool) -> None:
    """Print the effective configuration (file + environment + flags)."""
    from tome_tagger.safe_logging import redact_dict

    config: Config = ctx.obj["config"]
    data = config.model_dump(mode="json")
    if not show_secrets:
        data = redact_dict(data)

    if ctx.obj["output"] == OutputFormat.JSON:
        _echo_json(data)
    else:
        click.echo(yaml.safe_dump(data, sort_keys=False).rstrip())
    sys.exit(ExitCode.SUCCESS)


@config_group.command("save")
@click.option("--path", "target", type=click.Path(path_type=Path), help="Destination file")
@click.pass_context
def config_save(ctx: click.Context, target: Path | None) -> None:
    """Save the effective configuration as YAML."""
    pipeline = _pipeline(ctx)
    path = pipeline.save_config(ctx.obj["config"], target)

    if ctx.obj["output"] == OutputFormat.JSON:
        _echo_json({"path": str(path)})
    else:
        console.print_success(f"Configuration saved to {path}")
    sys.exit(ExitCode.SUCCESS)


def main() -> None:
    """Entry point for the tome CLI."""
    tome(obj={})


if __name__ == "__main__":
    main()


## Tests


def test_cli_help():
    from click.testing import CliRunner

    result = CliRunner().invoke(tome, ["--help"])
    assert result.exit_code == 0
    assert "audiobook metadata tagger" in result.output


def test_cli_scan_json_groups_files(tmp_path, monkeypatch):
    from click.testing import CliRunner

    monkeypatch.setenv("HOME", str(tmp_path))
    book = tmp_path / "Jane Doe" / "BookA"
    book.mkdir(parents=True)
    (book / "notes.txt").write_text("not audio")

    result = CliRunner().invoke(
        tome,
        ["-o", "json", "--cache-dir", str(tmp_path / "cache"), "scan", "--no-reconcile", str(book)],
    )
    assert result.exit_code == ExitCode.NO_RESULTS
    assert json.loads(result.stdout) == {"groups": []}
