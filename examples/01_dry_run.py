"""Dry run: converge an in-memory cluster with commands that run locally."""

import asyncio
import tempfile

import nodeforge as nf
from nodeforge.logging import setup_logging, teardown_logging


async def main() -> None:
    state = tempfile.mkdtemp(prefix="nodeforge-")

    tasks = [
        nf.ConvergenceTask(
            "hostname",
            apply=f"echo $node_name > {state}/$node_name.hostname",
            check=f"test -f {state}/$node_name.hostname",
        ),
        nf.ConvergenceTask(
            "join",
            apply=f"echo 'join $control_ip:$api_port as $node_ip' >> {state}/$node_name.log",
            check=f"grep -q join {state}/$node_name.log 2>/dev/null",
        ),
    ]

    provider = await nf.Memory(boot_delay=0.2).create_provider()
    engine = nf.ConvergenceEngine(nf.LocalExecutor())
    orchestrator = nf.ClusterOrchestrator(provider, engine, nf.Topology(worker_count=2), tasks)

    # First run changes every host, the second finds nothing to do.
    for attempt in (1, 2):
        report = await orchestrator.up()
        for host, outcome in report.run.outcomes.items():
            print(f"  run {attempt}: {host} {outcome.state} ({outcome.changed} changed)")

    print(nf.render_inventory(nf.build_inventory(report.machines)))
    await orchestrator.down()


if __name__ == "__main__":
    handlers = setup_logging(nf.LogConfig(level="INFO"))
    try:
        asyncio.run(main())
    finally:
        teardown_logging(handlers)
