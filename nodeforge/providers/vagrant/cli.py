from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path


class VagrantCommandError(RuntimeError):
    def __init__(self, command: str, returncode: int, stderr: str) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{command} failed (exit {returncode}): {stderr}")


async def run(binary: str, *args: str, cwd: Path | None = None) -> str:
    proc = await asyncio.create_subprocess_exec(
        binary, *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise
    if proc.returncode != 0:
        cmd = f"{binary} {' '.join(args)}"
        raise VagrantCommandError(cmd, proc.returncode or 1, stderr.decode().strip())
    return stdout.decode().strip()


def parse_machine_readable(output: str) -> dict[str, str]:
    """Collect ``type -> data`` pairs from ``--machine-readable`` output."""
    fields: dict[str, str] = {}
    for line in output.splitlines():
        parts = line.split(",", 3)
        if len(parts) == 4:
            fields[parts[2]] = parts[3]
    return fields
