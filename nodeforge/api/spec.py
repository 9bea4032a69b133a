"""Specification dataclasses for cluster topology and machine resources.

These are the immutable configuration objects that define what
the user wants. The orchestrator expands a Topology into ResourceSpecs
and hands those to a provider.
"""

from __future__ import annotations

import hashlib
import ipaddress
import json
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from nodeforge.core.exceptions import InvalidSpecError

type NodeRole = Literal["control", "worker"]

type PortForward = tuple[int, int]  # (guest_port, host_port)

DEFAULT_BASE_IMAGE = "bento/ubuntu-22.04"
CONTROL_NAME = "master"
WORKER_PREFIX = "node"


@dataclass(frozen=True, slots=True)
class Topology:
    """Declarative cluster shape: one control node plus N workers.

    Args:
        worker_count: Number of worker nodes (>= 0).
        memory_mb: Memory per node in MB.
        vcpus: Virtual CPUs per node.
        base_image: Box/image reference every node boots from.
        subnet_base: First three octets of the private network, e.g. "10.10.2".
        api_port: Control plane port forwarded from the control node.
        control_host: Last octet of the control node IP.
        worker_offset: Worker i gets last octet ``worker_offset + i``.
        provider_options: Opaque provider-specific tuning, passed through untouched.
    """

    worker_count: int = 2
    memory_mb: int = 2048
    vcpus: int = 2
    base_image: str = DEFAULT_BASE_IMAGE
    subnet_base: str = "10.10.2"
    api_port: int = 6443
    control_host: int = 10
    worker_offset: int = 20
    provider_options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.worker_count < 0:
            raise InvalidSpecError(f"worker_count must be >= 0, got {self.worker_count}")
        if self.memory_mb <= 0:
            raise InvalidSpecError(f"memory_mb must be > 0, got {self.memory_mb}")
        if self.vcpus <= 0:
            raise InvalidSpecError(f"vcpus must be > 0, got {self.vcpus}")
        if not _valid_port(self.api_port):
            raise InvalidSpecError(f"api_port out of range: {self.api_port}")
        try:
            ipaddress.IPv4Address(f"{self.subnet_base}.0")
        except ValueError:
            raise InvalidSpecError(f"Malformed subnet base: {self.subnet_base!r}") from None

    @property
    def node_count(self) -> int:
        return self.worker_count + 1

    @property
    def control_ip(self) -> str:
        return f"{self.subnet_base}.{self.control_host}"


@dataclass(frozen=True, slots=True)
class ResourceSpec:
    """Everything a provider needs to create one machine.

    Frozen once submitted. ``provider_options`` is never interpreted by the
    orchestrator; providers read whatever keys they understand.
    """

    name: str
    role: NodeRole
    index: int
    image: str
    ip: str
    memory_mb: int
    vcpus: int
    forwarded_ports: frozenset[PortForward] = frozenset()
    provider_options: tuple[tuple[str, Any], ...] = ()

    @property
    def is_control(self) -> bool:
        return self.role == "control"

    @property
    def options(self) -> dict[str, Any]:
        return dict(self.provider_options)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["forwarded_ports"] = sorted(list(p) for p in self.forwarded_ports)
        data["provider_options"] = [list(kv) for kv in self.provider_options]
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ResourceSpec:
        return cls(
            name=data["name"],
            role=data["role"],
            index=int(data["index"]),
            image=data["image"],
            ip=data["ip"],
            memory_mb=int(data["memory_mb"]),
            vcpus=int(data["vcpus"]),
            forwarded_ports=frozenset(
                (int(g), int(h)) for g, h in data.get("forwarded_ports", ())
            ),
            provider_options=tuple(
                (str(k), v) for k, v in data.get("provider_options", ())
            ),
        )

    def fingerprint(self) -> str:
        """Stable content hash, used to detect spec drift for an existing name."""
        payload = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.sha256(payload.encode()).hexdigest()[:16]


def _valid_port(port: int) -> bool:
    return 0 < port <= 65535


def validate(spec: ResourceSpec) -> ResourceSpec:
    """Validate a single spec. Returns it unchanged so calls can be chained."""
    if not spec.name:
        raise InvalidSpecError("Machine name must not be empty")
    try:
        ipaddress.IPv4Address(spec.ip)
    except ValueError:
        raise InvalidSpecError(f"{spec.name}: malformed IP address {spec.ip!r}") from None
    if spec.memory_mb <= 0:
        raise InvalidSpecError(f"{spec.name}: memory_mb must be > 0, got {spec.memory_mb}")
    if spec.vcpus <= 0:
        raise InvalidSpecError(f"{spec.name}: vcpus must be > 0, got {spec.vcpus}")
    for guest, host in spec.forwarded_ports:
        if not (_valid_port(guest) and _valid_port(host)):
            raise InvalidSpecError(f"{spec.name}: invalid port forward {guest}->{host}")
    return spec


def validate_batch(specs: Iterable[ResourceSpec]) -> tuple[ResourceSpec, ...]:
    """Validate every spec and the uniqueness constraints across the batch.

    Names, IPs and forwarded host ports must be unique, since every
    machine lives on the same physical host and subnet.
    """
    batch = tuple(validate(s) for s in specs)

    names: set[str] = set()
    ips: dict[str, str] = {}
    host_ports: dict[int, str] = {}

    for spec in batch:
        if spec.name in names:
            raise InvalidSpecError(f"Duplicate machine name: {spec.name}")
        names.add(spec.name)

        if spec.ip in ips:
            raise InvalidSpecError(f"{spec.name}: IP {spec.ip} already assigned to {ips[spec.ip]}")
        ips[spec.ip] = spec.name

        for _, host in spec.forwarded_ports:
            if host in host_ports:
                raise InvalidSpecError(
                    f"{spec.name}: host port {host} already forwarded by {host_ports[host]}"
                )
            host_ports[host] = spec.name

    return batch
