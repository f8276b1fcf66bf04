"""
hive msg - Mailbox between agent sessions. The manager forwards pending
messages into the recipient's terminal on its next tick.
"""

from pathlib import Path

from hive.db.client import hive_db
from hive.db.queries import messages as message_queries
from hive.lib.config import HiveConfig, HivePaths


def cmd_msg_send(args, root: Path, config: HiveConfig) -> int:
    with hive_db(HivePaths(root).db_path) as conn:
        message_id = message_queries.create_message(
            conn, args.from_session, args.to, args.body, subject=args.subject,
        )
    print(f"Queued {message_id} for {args.to}")
    return 0


def cmd_msg_reply(args, root: Path, config: HiveConfig) -> int:
    with hive_db(HivePaths(root).db_path) as conn:
        original = message_queries.get_message(conn, args.message_id)
        if original is None:
            print(f"ERROR: Message not found: {args.message_id}")
            return 1
        subject = original["subject"] or original["id"]
        message_id = message_queries.create_message(
            conn, args.from_session, original["from_session"], args.body, subject=f"Re: {subject}",
        )
        message_queries.mark_message_replied(conn, original["id"])
    print(f"Queued reply {message_id} for {original['from_session']}")
    return 0
