# holdfast/cli.py
"""
Command line tools.

    holdfast backup <container> <worlds_path> <output> [--trim]
    holdfast backupjob <config> [--docker-path PATH] [--backup-path PATH]
    holdfast pack <archive> <folder>
    holdfast unpack <archive> <folder>
    holdfast trim <folder> [--trim-days N] [--keep-days N] [--min-keep N] [--dry-run]
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from holdfast.core.backup_config import load_backup_config
from holdfast.core.config import DOCKER_PATH, configure_logging
from holdfast.core.errors import HoldfastError, ServiceError
from holdfast.services.backup_actor import BackupActor
from holdfast.services.channels import ProcessChannel
from holdfast.services.container_connection import ContainerConnection, ToolConfig, load_containers
from holdfast.services.container_terminal import ContainerKind
from holdfast.services.retention import ArtifactKind, trim_backups
from holdfast.services.worlds import World

logger = logging.getLogger(__name__)


def _add_trim_options(parser: argparse.ArgumentParser):
    parser.add_argument("--trim-days", type=int, default=None,
                        help="How many days back to start trimming backups (default = 3)")
    parser.add_argument("--keep-days", type=int, default=None,
                        help="How many days back to keep any backups (default = 14)")
    parser.add_argument("--min-keep", type=int, default=None,
                        help="Minimum count of backups to keep for a single world (default = 1)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="holdfast", description="Minecraft server backup tools")
    parser.add_argument("--debug", action="store_true", help="Log debug level information")
    parser.add_argument("--trace", action="store_true", help="Log trace level information, overriding --debug")
    commands = parser.add_subparsers(dest="command", required=True)

    backup = commands.add_parser("backup", help="Back up every world of one container")
    backup.add_argument("container", help="Docker container name")
    backup.add_argument("worlds_path", help="Worlds folder of the server")
    backup.add_argument("output", help="Folder to write backups to")
    backup.add_argument("--kind", choices=[k.value for k in ContainerKind], default=ContainerKind.BEDROCK.value)
    backup.add_argument("--docker-path", default=DOCKER_PATH, help="Path to docker")
    backup.add_argument("--trim", action="store_true", help="Trim after backing up")
    _add_trim_options(backup)

    job = commands.add_parser("backupjob", help="Run one backup pass from a config file")
    job.add_argument("config", help="Path to the backup configuration")
    job.add_argument("--docker-path", default=None, help="Path to docker")
    job.add_argument("--backup-path", default=None, help="Folder to write backups to")

    pack = commands.add_parser("pack", help="Pack a world folder into an archive")
    pack.add_argument("archive", help="Archive to create (.mcworld for Bedrock, .zip for Java)")
    pack.add_argument("folder", help="World folder to pack")

    unpack = commands.add_parser("unpack", help="Unpack an archived world")
    unpack.add_argument("archive", help="World archive (.mcworld or .zip)")
    unpack.add_argument("folder", help="Folder to unpack into")

    trim = commands.add_parser("trim", help="Apply the retention policy to a backup folder")
    trim.add_argument("folder", help="Folder to trim")
    trim.add_argument("--dry-run", "-n", action="store_true", help="Don't delete, only perform a dry run")
    _add_trim_options(trim)

    return parser


# ==========================================
# Commands
# ==========================================

def _trim_folder(folder: Path, args: argparse.Namespace, dry_run: bool = False):
    for kind in (ArtifactKind.WORLD, ArtifactKind.EXTRAS):
        trim_backups(folder, kind, args.trim_days, args.keep_days, args.min_keep, dry_run=dry_run)


async def _backup(args: argparse.Namespace):
    output = Path(args.output)
    channel = ProcessChannel(args.container, [args.docker_path, "attach", "--sig-proxy=false", args.container])
    container = ContainerConnection(args.container, ContainerKind(args.kind), channel,
                                    worlds_folder=Path(args.worlds_path))
    async with container.attached():
        await container.run_backup(output)
    if args.trim:
        await asyncio.to_thread(_trim_folder, output, args)


async def _backupjob(args: argparse.Namespace):
    config = load_backup_config(Path(args.config))
    if args.docker_path:
        config.docker_path = args.docker_path
    backup_path = args.backup_path or config.backup_path
    if not backup_path:
        raise ServiceError("No backup folder given, set backupPath or pass --backup-path")

    if config.logging_level and not (args.debug or args.trace):
        configure_logging(config.logging_level)

    actor = BackupActor(
        Path(backup_path),
        load_containers(config, ToolConfig.from_config(config)),
        trim=config.trim,
        ownership=config.ownership,
    )
    await actor.cleanup_containers()
    await actor.backup_all_containers(is_daily=True)
    if not actor.is_healthy:
        raise ServiceError("One or more containers failed to back up")


def _pack(args: argparse.Namespace):
    world = World.open(Path(args.folder))
    archive = world.pack(Path(args.archive))
    print(f"Packed {world.name} into {archive.location}")


def _unpack(args: argparse.Namespace):
    world = World.open(Path(args.archive))
    folder = world.unpack(Path(args.folder))
    print(f"Unpacked {world.name} into {folder.location}")


def _trim(args: argparse.Namespace):
    _trim_folder(Path(args.folder), args, dry_run=args.dry_run)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging("trace" if args.trace else "debug" if args.debug else None)

    try:
        if args.command == "backup":
            asyncio.run(_backup(args))
        elif args.command == "backupjob":
            asyncio.run(_backupjob(args))
        elif args.command == "pack":
            _pack(args)
        elif args.command == "unpack":
            _unpack(args)
        elif args.command == "trim":
            _trim(args)
    except (HoldfastError, OSError) as e:
        logger.debug("%s failed", args.command, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
