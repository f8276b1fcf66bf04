"""
hive escalation - Review and resolve escalations.
"""

from pathlib import Path

from hive.db.client import hive_db
from hive.db.queries import escalations as escalation_queries
from hive.db.queries import logs
from hive.lib.config import HiveConfig, HivePaths
from hive.lib.types import EscalationStatus


def cmd_escalation_list(args, root: Path, config: HiveConfig) -> int:
    with hive_db(HivePaths(root).db_path) as conn:
        if args.human:
            escalations = escalation_queries.get_pending_human_escalations(conn)
        else:
            escalations = escalation_queries.get_active_escalations(conn)

    if not escalations:
        print("No active escalations")
        return 0
    for esc in escalations:
        print(f"{esc['id']:<16} {esc['status']:<13} {esc['created_at']}  {esc['story_id'] or '-'}")
        print(f"    {esc['reason']}")
    return 0


def cmd_escalation_resolve(args, root: Path, config: HiveConfig) -> int:
    with hive_db(HivePaths(root).db_path) as conn:
        esc = escalation_queries.get_escalation(conn, args.escalation_id)
        if esc is None:
            print(f"ERROR: Escalation not found: {args.escalation_id}")
            return 1
        if esc["status"] == EscalationStatus.RESOLVED.value:
            print(f"{args.escalation_id} is already resolved")
            return 0
        escalation_queries.resolve_escalation(conn, esc["id"], args.resolution)
        logs.create_log(conn, args.from_session or "human", "ESCALATION_RESOLVED", args.resolution,
                        story_id=esc["story_id"], metadata={"escalation_id": esc["id"]})
    print(f"Resolved {args.escalation_id}")
    return 0
