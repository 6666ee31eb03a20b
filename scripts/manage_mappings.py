#!/usr/bin/env python3
"""
Manage folder to gallery field mappings.

Usage:
    manage_mappings.py list
    manage_mappings.py add FOLDER_ID FIELD_KEY TARGET_ID
    manage_mappings.py remove FOLDER_ID FIELD_KEY TARGET_ID
"""

import argparse
import sys
from pathlib import Path

# Add the src directory to the Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from foldersync.database import init_database, close_database, DuplicateMappingError
from foldersync.database.field_targets import FieldTargetService
from foldersync.database.folder_tree import FolderTreeService
from foldersync.utils.logging import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage folder to gallery field mappings")
    parser.add_argument("--database-url", help="Override DB_URL")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("list", help="List all mappings")

    for name in ("add", "remove"):
        command = commands.add_parser(name, help=f"{name.capitalize()} a mapping")
        command.add_argument("folder_id", type=int)
        command.add_argument("field_key")
        command.add_argument("target_id", type=int)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(log_level="WARNING", log_format="console", log_file="")

    db_manager = init_database(args.database_url, create_tables=True)
    targets = FieldTargetService(db_manager)
    folders = FolderTreeService(db_manager)

    try:
        if args.command == "list":
            mappings = targets.list_mappings()
            if not mappings:
                print("No mappings configured")
            for mapping in mappings:
                folder = folders.get_folder(mapping.folder_id)
                folder_name = folder.name if folder else "<missing folder>"
                print(f"{mapping.folder_id:>6}  {folder_name:<30} {mapping.field_key:<30} {mapping.target_id}")
            return 0

        if args.command == "add":
            if folders.get_folder(args.folder_id) is None:
                print(f"Folder {args.folder_id} does not exist", file=sys.stderr)
                return 1
            try:
                targets.add_mapping(args.folder_id, args.field_key, args.target_id)
            except DuplicateMappingError as e:
                print(str(e), file=sys.stderr)
                return 1
            print("Mapping added")
            return 0

        if not targets.remove_mapping(args.folder_id, args.field_key, args.target_id):
            print("Mapping not found", file=sys.stderr)
            return 1
        print("Mapping removed")
        return 0

    finally:
        close_database()


if __name__ == "__main__":
    sys.exit(main())
