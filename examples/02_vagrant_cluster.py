"""Three Vagrant VMs converged over SSH, built from code instead of TOML.

Requires vagrant and VirtualBox on this machine.
"""

import asyncio

import nodeforge as nf

TASKS = [
    nf.ConvergenceTask(
        "swap-off",
        apply="swapoff -a && sed -i '/ swap / s/^/#/' /etc/fstab",
        check="! swapon --show | grep -q .",
        become=True,
    ),
    nf.ConvergenceTask(
        "hosts-entry",
        apply="echo '$node_ip $node_name' >> /etc/hosts",
        check="grep -q '^$node_ip $node_name$' /etc/hosts",
        become=True,
    ),
]


async def main() -> int:
    provider = await nf.Vagrant(workdir=".nodeforge/machines").create_provider()
    executor = nf.SSHExecutor(user="vagrant", key_path="~/.vagrant.d/insecure_private_key")
    engine = nf.ConvergenceEngine(executor, nf.ConvergenceSettings(max_parallel_hosts=3))
    orchestrator = nf.ClusterOrchestrator(
        provider,
        engine,
        nf.Topology(worker_count=2, memory_mb=2048, provider_options={"linked_clone": True}),
        TASKS,
    )
    try:
        report = await orchestrator.up()
    finally:
        await executor.close()

    print(f"cluster {report.status}")
    for host in report.failed_hosts:
        print(f"  {host}: {report.run.outcomes[host].reason}")
    return 0 if report.is_ready else 1


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
