"""
hive init - Create a Hive workspace in the current directory.
"""

from pathlib import Path

from hive.db.client import hive_db
from hive.lib.config import DEFAULT_CONFIG_YAML, HivePaths


def cmd_init(args, root: Path) -> int:
    paths = HivePaths(root)
    if paths.hive_dir.exists() and not args.force:
        print(f"ERROR: {paths.hive_dir} already exists (use --force to re-initialize)")
        return 2

    paths.hive_dir.mkdir(parents=True, exist_ok=True)
    if not paths.config_path.exists():
        paths.config_path.write_text(DEFAULT_CONFIG_YAML)
    # Opening the database applies the schema
    with hive_db(paths.db_path):
        pass

    print(f"Initialized Hive workspace at {paths.hive_dir}")
    print("Next: hive team add <name> --repo-url <url> --repo-path <path>")
    return 0
