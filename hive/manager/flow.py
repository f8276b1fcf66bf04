"""Prefect wrapper so manager ticks show up as flow runs."""

from prefect import flow

from hive.manager.tick import ManagerContext, TickSummary, run_tick


@flow(name="manager_tick", validate_parameters=False)
def manager_tick_flow(ctx: ManagerContext) -> TickSummary:
    """One manager tick. Failed phases are retried by the next tick, not by Prefect."""
    return run_tick(ctx)
