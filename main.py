"""msgdrive Application Entry Point.

Wires configuration, logging, the local index and the managers together, and
offers an offline command line for browsing the local index. Talking to the
messaging platform needs a Transport implementation, which is passed to
``build_services`` by the embedding application.
"""

import sys
import argparse
import logging
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Import configuration
from config.config_manager import ConfigManager, LoggingConfig

# Import core components
from core.db_manager import DBManager
from core.download_cache import ContentCache
from core.indexer import Indexer
from core.sync_manager import RECONCILE_DONE_KEY, STORAGE_CHAT_KEY, SYNC_DONE_KEY, WATERMARK_KEY, SyncManager
from core.transport import TimeoutTransport, Transport

# Import logic layer
from logic.directory_manager import DirectoryManager, DirNode
from logic.file_manager import FileManager


# Configure logging
def setup_logging(log_level: str, log_path: Path, max_bytes: int = 10485760, backup_count: int = 5):
    """
    Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_path: Path to log file
        max_bytes: Size at which the log file is rotated
        backup_count: Number of rotated files to keep
    """
    # Ensure log directory exists
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Configure root logger
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ],
        force=True
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized at level {log_level}")
    logger.info(f"Log file: {log_path}")


@dataclass
class Services:
    """Managers sharing one index, one transport and one cache."""
    db: DBManager
    cache: ContentCache
    transport: Transport
    directories: DirectoryManager
    files: FileManager
    indexer: Indexer
    sync: SyncManager


def open_index(config_manager: ConfigManager) -> DBManager:
    """Open (and create if needed) the local index database."""
    storage = config_manager.get_storage_config()
    db = DBManager(config_manager.expand_path(storage.db_path))
    db.initialize_database()
    return db


def build_services(config_manager: ConfigManager, transport: Transport) -> Services:
    """
    Build the managers on top of a transport.

    Every transport call is bounded by ``transport.call_timeout``.

    Args:
        config_manager: Loaded configuration
        transport: Transport to the messaging platform
    """
    storage = config_manager.get_storage_config()
    transport_config = config_manager.get_transport_config()
    sync_config = config_manager.get_sync_config()
    chat_id = transport_config.storage_chat_id

    db = open_index(config_manager)
    cache = ContentCache(config_manager.expand_path(storage.cache_dir), db)
    cache.ensure_dirs()

    bounded = TimeoutTransport(transport, transport_config.call_timeout)
    directories = DirectoryManager(db, bounded, chat_id, sync_config)
    files = FileManager(db, bounded, cache, chat_id, sync_config)
    indexer = Indexer(db, bounded, directories, chat_id, sync_config)
    sync = SyncManager(db, bounded, indexer, chat_id, sync_config)

    return Services(
        db=db,
        cache=cache,
        transport=bounded,
        directories=directories,
        files=files,
        indexer=indexer,
        sync=sync,
    )


def parse_arguments(argv=None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description='msgdrive - browse the local index of a message-backed drive',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show the directory tree
  python main.py tree

  # List the files of a directory
  python main.py files 01HV3K8ZQ6Y1T5W4N2M9R0B7CD

  # Search for PDF files whose name contains "invoice"
  python main.py search --name invoice --type pdf
        """
    )

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        metavar='PATH',
        help='Path to configuration file'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Override logging level from config'
    )

    commands = parser.add_subparsers(dest='command', required=True)

    commands.add_parser('tree', help='Print the directory tree')

    files_parser = commands.add_parser('files', help='List files of a directory')
    files_parser.add_argument('dir_id', help='Directory id')

    search_parser = commands.add_parser('search', help='Search files by name and type')
    search_parser.add_argument('--dir', dest='dir_id', default=None, help='Restrict to a directory')
    search_parser.add_argument('--name', default=None, help='Name substring')
    search_parser.add_argument('--type', dest='file_type', default=None, help='File extension')
    search_parser.add_argument('--limit', type=int, default=None, help='Maximum results')

    commands.add_parser('status', help='Show sync markers')

    return parser.parse_args(argv)


def format_tree(node: DirNode, depth: int = 0) -> str:
    """Render a directory tree as indented text, one directory per line."""
    lines = []
    for child in sorted(node.children, key=lambda c: c.name.lower()):
        marker = " [broken]" if child.is_broken else ""
        lines.append(f"{'  ' * depth}{child.name}/  ({child.id}){marker}")
        subtree = format_tree(child, depth + 1)
        if subtree:
            lines.append(subtree)
    return "\n".join(lines)


def main(argv=None) -> int:
    """Main application entry point."""
    args = parse_arguments(argv)

    config_path = Path(args.config) if args.config else None
    try:
        config_manager = ConfigManager(config_path)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    logging_config: LoggingConfig = config_manager.get_logging_config()
    setup_logging(
        args.log_level or logging_config.level,
        config_manager.expand_path(logging_config.log_path),
        logging_config.max_log_size,
        logging_config.backup_count,
    )
    logger = logging.getLogger(__name__)

    db = open_index(config_manager)
    storage = config_manager.get_storage_config()
    cache = ContentCache(config_manager.expand_path(storage.cache_dir), db)
    # Offline browsing never reaches the transport.
    directories = DirectoryManager(db, None, config_manager.get_transport_config().storage_chat_id)
    files = FileManager(db, None, cache, config_manager.get_transport_config().storage_chat_id)

    if args.command == 'tree':
        print(format_tree(directories.list_tree()) or "(empty)")
    elif args.command in ('files', 'search'):
        if args.command == 'files':
            items = files.list_files(args.dir_id)
        else:
            items = files.search(args.dir_id, args.name, args.file_type, args.limit)
        for item in items:
            flags = []
            if item.is_downloaded:
                flags.append("cached")
            if item.is_broken:
                flags.append("broken")
            suffix = f"  [{', '.join(flags)}]" if flags else ""
            print(f"{item.id}  {item.size:>10}  {item.name}{suffix}")
        logger.debug(f"Listed {len(items)} files")
    elif args.command == 'status':
        print(f"storage chat: {db.get_sync(STORAGE_CHAT_KEY) or 'not synced'}")
        print(f"watermark: {db.get_sync(WATERMARK_KEY) or 0}")
        print(f"last full sync: {db.get_sync(SYNC_DONE_KEY) or 'never'}")
        print(f"last reconcile: {db.get_sync(RECONCILE_DONE_KEY) or 'never'}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
