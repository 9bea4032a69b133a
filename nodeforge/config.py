"""TOML-based cluster configuration.

Loads ~/.nodeforge/defaults.toml (global) and nodeforge.toml (project),
merges them, and resolves the result into immutable settings objects.
"""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from nodeforge.api import Topology
from nodeforge.convergence.engine import ConvergenceSettings
from nodeforge.convergence.task import ConvergenceTask, tasks_from_config
from nodeforge.core.exceptions import ConfigurationError
from nodeforge.logging import LogConfig
from nodeforge.orchestrator import OrchestratorSettings
from nodeforge.retry import RetryPolicy

if TYPE_CHECKING:
    from nodeforge.convergence.transport import RemoteExecutor
    from nodeforge.providers.memory.config import Memory
    from nodeforge.providers.vagrant.config import Vagrant

    type ProviderConfig = Memory | Vagrant

type RawConfig = dict[str, Any]
type ExecutorType = Literal["ssh", "local"]

GLOBAL_CONFIG_PATH = Path.home() / ".nodeforge" / "defaults.toml"
PROJECT_CONFIG_NAME = "nodeforge.toml"

# Accept the camelCase option names alongside the Python field names.
_TOPOLOGY_ALIASES = {
    "workerCount": "worker_count",
    "memoryMB": "memory_mb",
    "baseImage": "base_image",
    "subnetBase": "subnet_base",
    "apiPort": "api_port",
    "controlHost": "control_host",
    "workerOffset": "worker_offset",
    "providerOptions": "provider_options",
}


@dataclass(frozen=True, slots=True)
class SSHSettings:
    user: str = "vagrant"
    key_path: str | None = None
    port: int = 22
    connect_timeout: float = 30.0


@dataclass(frozen=True, slots=True)
class Settings:
    """Everything needed to build an orchestrator, fully resolved."""

    topology: Topology
    provider: ProviderConfig
    executor: ExecutorType = "ssh"
    ssh: SSHSettings = field(default_factory=SSHSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    convergence: ConvergenceSettings = field(default_factory=ConvergenceSettings)
    tasks: tuple[ConvergenceTask, ...] = ()
    logging: LogConfig = field(default_factory=LogConfig)


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    config_path: Path | None = None,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    """Merge global defaults with the project file.

    ``config_path`` replaces the ``nodeforge.toml`` lookup in ``project_dir``.
    """
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = config_path or (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    if config_path is not None and not config_path.is_file():
        raise ConfigurationError(f"Config file not found: {config_path}")
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    for section in ("topology", "provider", "provisioning", "convergence", "ssh", "executor"):
        merged.setdefault(section, {})
    merged.setdefault("tasks", [])
    merged["_base_dir"] = str(project_path.parent)
    return merged


def _construct[T](cls: type[T], section: str, raw: Mapping[str, Any]) -> T:
    _check_keys(section, raw, {f.name for f in fields(cls)})  # type: ignore[arg-type]
    return cls(**raw)


def build_topology(raw: Mapping[str, Any], *, worker_count: int | None = None) -> Topology:
    normalized = {_TOPOLOGY_ALIASES.get(k, k): v for k, v in raw.items()}
    if worker_count is not None:
        normalized["worker_count"] = worker_count
    return _construct(Topology, "topology", normalized)


def _get_provider_map() -> dict[str, type]:
    from nodeforge.providers.memory.config import Memory
    from nodeforge.providers.vagrant.config import Vagrant

    return {
        "memory": Memory,
        "vagrant": Vagrant,
    }


def build_provider(raw: Mapping[str, Any]) -> ProviderConfig:
    raw = dict(raw)
    provider_type = raw.pop("type", "vagrant")

    provider_map = _get_provider_map()
    cls = provider_map.get(provider_type)
    if cls is None:
        raise ConfigurationError(
            f"Unknown provider type '{provider_type}'. "
            f"Valid: {', '.join(provider_map)}"
        )
    return _construct(cls, "provider", raw)


_RETRY_KEYS = {"attempts", "backoff_base", "backoff_max"}


def _check_keys(section: str, raw: Mapping[str, Any], allowed: set[str]) -> None:
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ConfigurationError(f"[{section}] unknown keys: {', '.join(unknown)}")


def _build_retry(
    section: str, raw: Mapping[str, Any], extra: frozenset[str] = frozenset(),
) -> RetryPolicy:
    _check_keys(section, raw, _RETRY_KEYS | extra)
    return RetryPolicy(
        attempts=int(raw.get("attempts", 3)),
        base_delay=float(raw.get("backoff_base", 1.0)),
        max_delay=float(raw.get("backoff_max", 30.0)),
    )


def _build_convergence(raw: Mapping[str, Any]) -> ConvergenceSettings:
    return ConvergenceSettings(
        max_parallel_hosts=int(raw.get("max_parallel_hosts", 4)),
        retry=_build_retry(
            "convergence", raw, frozenset({"max_parallel_hosts", "task_timeout"}),
        ),
        task_timeout=float(raw.get("task_timeout", 300.0)),
    )


def _load_tasks(config: RawConfig) -> tuple[ConvergenceTask, ...]:
    raw_tasks = list(config.get("tasks", []))
    tasks_file = config.get("tasks_file")
    if tasks_file:
        path = Path(tasks_file)
        if not path.is_absolute():
            path = Path(config["_base_dir"]) / path
        if not path.is_file():
            raise ConfigurationError(f"Tasks file not found: {path}")
        raw_tasks.extend(_read_toml(path).get("tasks", []))
    return tasks_from_config(raw_tasks)


def _build_executor_type(raw: Mapping[str, Any]) -> ExecutorType:
    executor = raw.get("type", "ssh")
    if executor not in ("ssh", "local"):
        raise ConfigurationError(f"Unknown executor type '{executor}'. Valid: ssh, local")
    return executor


def resolve_settings(
    *,
    config_path: Path | None = None,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    worker_count: int | None = None,
) -> Settings:
    config = load_config(
        config_path=config_path, project_dir=project_dir, global_path=global_path,
    )
    logging_raw = config.get("logging", {})
    return Settings(
        topology=build_topology(config["topology"], worker_count=worker_count),
        provider=build_provider(config["provider"]),
        executor=_build_executor_type(config["executor"]),
        ssh=_construct(SSHSettings, "ssh", config["ssh"]),
        orchestrator=OrchestratorSettings(
            provisioning=_build_retry("provisioning", config["provisioning"]),
        ),
        convergence=_build_convergence(config["convergence"]),
        tasks=_load_tasks(config),
        logging=_construct(LogConfig, "logging", logging_raw),
    )


def build_executor(settings: Settings) -> RemoteExecutor:
    from nodeforge.convergence.transport import LocalExecutor, SSHExecutor

    if settings.executor == "local":
        return LocalExecutor()
    key_path = str(Path(settings.ssh.key_path).expanduser()) if settings.ssh.key_path else None
    return SSHExecutor(
        user=settings.ssh.user,
        key_path=key_path,
        port=settings.ssh.port,
        connect_timeout=settings.ssh.connect_timeout,
    )
