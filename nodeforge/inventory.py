"""Inventory derivation from provisioned machines.

The inventory is the resolved, ordered list of hosts plus the per-host
variables convergence tasks are rendered with. Control comes first so
that its address is fixed before any worker variables are computed.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from nodeforge.api import InventoryEntry, ProvisionedMachine
from nodeforge.core.exceptions import IncompleteTopologyError


def _order(machine: ProvisionedMachine) -> tuple[int, int]:
    return (0 if machine.spec.is_control else 1, machine.spec.index)


def build_inventory(machines: Iterable[ProvisionedMachine]) -> list[InventoryEntry]:
    """Build inventory entries for a fully running machine set.

    Raises:
        IncompleteTopologyError: If any machine is not running.
    """
    ordered = sorted(machines, key=_order)

    for machine in ordered:
        if machine.state != "running":
            raise IncompleteTopologyError(machine.name, machine.state)

    control = next((m for m in ordered if m.spec.is_control), None)
    control_ip = control.ip if control is not None else None

    entries: list[InventoryEntry] = []
    for machine in ordered:
        spec = machine.spec
        host_vars: dict[str, Any] = {
            "node_ip": spec.ip,
            "node_name": spec.name,
            "node_role": spec.role,
        }
        if control_ip is not None:
            host_vars["control_ip"] = control_ip
        if spec.forwarded_ports:
            host_vars["forwarded_ports"] = ",".join(
                f"{guest}:{host}" for guest, host in sorted(spec.forwarded_ports)
            )
        entries.append(
            InventoryEntry(
                hostname=spec.name,
                ip=spec.ip,
                role=spec.role,
                index=spec.index,
                vars=host_vars,
            )
        )
    return entries


def render_inventory(
    entries: Sequence[InventoryEntry],
    *,
    user: str | None = None,
    key_path: str | None = None,
) -> str:
    """Render an INI inventory with ``[control]`` and ``[workers]`` groups.

    Host lines carry ``ansible_host`` and every extra variable, so the
    same inventory can be handed to external configuration tools.
    """
    groups: dict[str, list[InventoryEntry]] = {"control": [], "workers": []}
    for entry in entries:
        groups["control" if entry.role == "control" else "workers"].append(entry)

    lines: list[str] = []
    for group, members in groups.items():
        lines.append(f"[{group}]")
        for entry in members:
            fields = [entry.hostname, f"ansible_host={entry.ip}"]
            fields.extend(f"{k}={v}" for k, v in entry.vars.items() if k != "node_name")
            lines.append(" ".join(fields))
        lines.append("")

    shared: list[str] = []
    if user:
        shared.append(f"ansible_user={user}")
    if key_path:
        shared.append(f"ansible_ssh_private_key_file={key_path}")
    if shared:
        lines.append("[all:vars]")
        lines.extend(shared)
        lines.append("")

    return "\n".join(lines)
