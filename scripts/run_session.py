from __future__ import annotations

"""
CLI to drive one supervised simulator session.

Examples
--------
# Dry run against the bundled stub simulator (no real simulator needed)
python -m scripts.run_session --project /tmp/proj --config /tmp/proj/cfg.json --stub

# Real project: <project>/simics is launched with the config as its last argument
python -m scripts.run_session --project ~/simics-projects/fuzz --config targets/x86.simics --cycles 5

Session
-------
init -> N x (run, status, reset) -> teardown

Outputs
-------
<outdir>/
  events.csv      # lifecycle transitions (time, pid, generation, from, to, reason)
  session.json    # the run configuration and final status code
"""

import json
import sys
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.table import Table

from core.config import LaunchSettings, SupervisorConfig
from core.errors import SimulatorError, StatusCode
from core.log import setup_logging
from supervisor.manager import InstanceManager


app = typer.Typer(add_completion=False, no_args_is_help=True)


def _mk_outdir(path: str | Path) -> Path:
    p = Path(path).expanduser().resolve()
    p.mkdir(parents=True, exist_ok=True)
    return p


def _preview(manager: InstanceManager, n: int = 20) -> None:
    if not manager.events:
        rprint("[yellow]no lifecycle events recorded[/yellow]")
        return
    tbl = Table(title=f"Lifecycle events (last {n})")
    for c in ("pid", "generation", "from", "to", "reason"):
        tbl.add_column(c)
    for ev in list(manager.events)[-n:]:
        tbl.add_row(*[str(ev[c]) for c in ("pid", "generation", "from", "to", "reason")])
    rprint(tbl)


def _build_config(stub: bool, launch_timeout: Optional[float], command_timeout: Optional[float],
                  log_dir: Optional[str]) -> SupervisorConfig:
    base = SupervisorConfig.from_env()
    launch = base.launch.model_dump()
    if stub:
        # the stub runs with cwd=<project>, so point it back at this checkout
        launch["command"] = [sys.executable, "-m", "harness.stub_simulator"]
        launch["env"] = {**launch["env"], "PYTHONPATH": str(Path(__file__).resolve().parents[1])}
    if launch_timeout is not None:
        launch["launch_timeout"] = launch_timeout
    if log_dir is not None:
        launch["log_dir"] = Path(log_dir)
    cfg = base.model_dump()
    cfg["launch"] = LaunchSettings(**launch)
    if command_timeout is not None:
        cfg["command_timeout"] = command_timeout
    return SupervisorConfig(**cfg)


@app.command()
def main(
    project: str = typer.Option(..., help="Simulator project directory."),
    config: str = typer.Option(..., help="Config/script passed to the simulator."),
    cycles: int = typer.Option(1, min=0, help="Number of run/status/reset cycles."),
    stub: bool = typer.Option(False, "--stub/--no-stub", help="Launch the bundled stub simulator."),
    launch_timeout: Optional[float] = typer.Option(None, help="Seconds to wait for the simulator to be ready."),
    command_timeout: Optional[float] = typer.Option(None, help="Seconds to wait for each acknowledgment."),
    log_dir: Optional[str] = typer.Option(None, help="Capture simulator output here."),
    outdir: str = typer.Option("outputs/session", help="Output directory."),
    log_level: str = typer.Option("INFO", help="Logging level."),
):
    """
    Launch a simulator, cycle it through run/reset, tear it down, and export the event log.
    """
    setup_logging(log_level)
    outp = _mk_outdir(outdir)
    cfg = _build_config(stub, launch_timeout, command_timeout, log_dir)

    status = StatusCode.OK
    with InstanceManager(config=cfg) as manager:
        try:
            handle = manager.init(project, config)
            rprint(f"[green]Simulator ready[/green] as [bold]{handle}[/bold]")
            for i in range(cycles):
                manager.run(handle)
                rprint(f"[cyan]cycle {i + 1}[/cyan]: run accepted, status={manager.query(handle)}")
                manager.reset(handle)
            manager.teardown(handle)
        except SimulatorError as e:
            status = e.code
            rprint(f"[red]{e.code.name}[/red]: {e}")

        _preview(manager)
        manager.to_dataframe().to_csv(outp / "events.csv", index=False)

    session = dict(
        project=project,
        config=config,
        cycles=cycles,
        stub=stub,
        supervisor=cfg.model_dump(mode="json"),
        status=status.name,
        outdir=str(outp),
    )
    with open(outp / "session.json", "w", encoding="utf-8") as f:
        json.dump(session, f, indent=2)

    rprint(f"[bold green]Done ({status.name}). Outputs in {outp}[/bold green]")
    raise typer.Exit(code=int(status))


if __name__ == "__main__":
    app()
