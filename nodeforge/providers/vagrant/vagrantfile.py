"""Vagrantfile rendering for a single machine."""

from __future__ import annotations

import json
from typing import Any

from nodeforge.api import ResourceSpec


def _ruby_literal(value: Any) -> str:
    match value:
        case bool():
            return "true" if value else "false"
        case int() | float():
            return str(value)
        case None:
            return "nil"
        case list() | tuple():
            return "[" + ", ".join(_ruby_literal(v) for v in value) + "]"
        case _:
            return json.dumps(str(value))


def render(spec: ResourceSpec, backend: str = "virtualbox") -> str:
    """Render a Vagrantfile for one machine.

    Provider options are emitted as ``provider.<key> = <value>`` lines
    inside the backend block, in the order given.
    """
    lines = [
        'Vagrant.configure("2") do |config|',
        f"  config.vm.box = {json.dumps(spec.image)}",
        f"  config.vm.hostname = {json.dumps(spec.name)}",
        f'  config.vm.network "private_network", ip: {json.dumps(spec.ip)}',
    ]
    for guest, host in sorted(spec.forwarded_ports):
        lines.append(f'  config.vm.network "forwarded_port", guest: {guest}, host: {host}')

    lines.append(f"  config.vm.provider {json.dumps(backend)} do |provider|")
    lines.append(f"    provider.memory = {spec.memory_mb}")
    lines.append(f"    provider.cpus = {spec.vcpus}")
    for key, value in spec.provider_options:
        lines.append(f"    provider.{key} = {_ruby_literal(value)}")
    lines.append("  end")
    lines.append("end")
    return "\n".join(lines) + "\n"
