"""Decode inspection script output into a :class:`NodeSnapshot`.

Decoding never fails: lines that do not fit their section are dropped and
reported back as :class:`DecodeError` diagnostics.
"""
from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import DecodeError
from .models import AcceleratorSample, NodeSnapshot, ProcessSample
from .remote_script import SECTION_CPU, SECTION_GPU, SECTION_MEM, SECTION_PROCESS

_LOGGER = logging.getLogger(__name__)

_SENTINEL_RE = re.compile(r"^___SECTION_([A-Za-z0-9_]+?)___$")
_FLOAT_RE = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")
_NUMBER_TOKEN_RE = re.compile(r"^[-+]?(?:\d+\.?\d*|\.\d+)$")

# Key for text before the first sentinel; older scripts printed GPU rows there
_PRELUDE = ""

GPU_FIELDS = 10
LEGACY_GPU_FIELDS = 9
PROCESS_FIELDS = 5


@dataclass
class DecodeResult:
    """A decoded snapshot plus the lines that were skipped."""

    snapshot: NodeSnapshot
    diagnostics: List[DecodeError] = field(default_factory=list)


def _safe_float(value: Any) -> Optional[float]:
    """Return *value* as a finite float or ``None`` when conversion fails."""

    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(result):
        return None
    return result


def _safe_int(value: Any) -> Optional[int]:
    """Return *value* as int or ``None`` when conversion fails."""

    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def split_sections(output: str) -> Dict[str, str]:
    """Return the text of each section keyed by its sentinel name.

    A repeated section keeps its first occurrence.
    """
    sections: Dict[str, List[str]] = {}
    current: List[str] = sections.setdefault(_PRELUDE, [])
    for line in output.splitlines():
        match = _SENTINEL_RE.match(line.strip())
        if match:
            name = match.group(1).upper()
            if name in sections:
                current = []
            else:
                current = sections.setdefault(name, [])
            continue
        current.append(line)
    return {name: "\n".join(lines) for name, lines in sections.items()}


def parse_gpu_line(line: str) -> Tuple[Optional[AcceleratorSample], Optional[str]]:
    """Decode one GPU CSV row; return (sample, reason-if-dropped)."""
    parts = [part.strip() for part in line.split(",")]
    if len(parts) >= GPU_FIELDS:
        gpu_uuid, name = parts[1], parts[2]
        numbers = parts[3:GPU_FIELDS]
    elif len(parts) == LEGACY_GPU_FIELDS:
        gpu_uuid, name = None, parts[1]
        numbers = parts[2:LEGACY_GPU_FIELDS]
    else:
        return None, f"expected {GPU_FIELDS} or {LEGACY_GPU_FIELDS} fields, got {len(parts)}"

    index = _safe_int(parts[0])
    values = [_safe_float(value) for value in numbers]
    if index is None or any(value is None for value in values):
        return None, "non-numeric field"

    util_gpu, util_mem, mem_used, mem_total, temp, power, limit = values
    return (
        AcceleratorSample(
            index=index,
            uuid=gpu_uuid if gpu_uuid is not None else f"UNKNOWN-{index}",
            name=name,
            util_gpu=util_gpu,
            util_memory=util_mem,
            memory_used=mem_used,
            memory_total=mem_total,
            temperature=temp,
            power_draw=power,
            power_limit=limit,
        ),
        None,
    )


def format_gpu_row(gpu: AcceleratorSample) -> str:
    """Render *gpu* as the 10-field row ``nvidia-smi`` prints."""
    return ", ".join(
        str(value)
        for value in (
            gpu.index,
            gpu.uuid,
            gpu.name,
            gpu.util_gpu,
            gpu.util_memory,
            gpu.memory_used,
            gpu.memory_total,
            gpu.temperature,
            gpu.power_draw,
            gpu.power_limit,
        )
    )


def parse_gpus(raw: str, diagnostics: List[DecodeError]) -> List[AcceleratorSample]:
    gpus: List[AcceleratorSample] = []
    for line in raw.splitlines():
        if not line.strip():
            continue
        gpu, reason = parse_gpu_line(line)
        if gpu is None:
            diagnostics.append(DecodeError(SECTION_GPU, line, reason or "invalid"))
            continue
        gpus.append(gpu)
    return gpus


def parse_cpu(raw: str) -> float:
    """Return CPU usage as 100 minus the idle figure of a ``top`` line."""
    for part in raw.split(","):
        if "id" not in part:
            continue
        match = _FLOAT_RE.search(part)
        if match:
            idle = _safe_float(match.group(0))
            if idle is not None:
                return max(0.0, 100.0 - idle)
    return 0.0


def parse_mem(raw: str) -> Tuple[float, float]:
    """Return (used, total) in GB from a ``free -m`` line (total comes first)."""
    numbers = [float(token) for token in raw.split() if _NUMBER_TOKEN_RE.match(token)]
    if len(numbers) < 2:
        return 0.0, 0.0
    total, used = numbers[0], numbers[1]
    return used / 1024.0, total / 1024.0


def parse_processes(
    raw: str, gpu_map: Dict[str, int], diagnostics: List[DecodeError]
) -> List[ProcessSample]:
    procs: List[ProcessSample] = []
    for line in raw.splitlines():
        if not line.strip() or "PROCESS___" in line:
            continue
        parts = [part.strip() for part in line.split(",")]
        if len(parts) < PROCESS_FIELDS:
            diagnostics.append(
                DecodeError(SECTION_PROCESS, line, f"expected {PROCESS_FIELDS} fields, got {len(parts)}")
            )
            continue
        memory = _safe_float(parts[2])
        if memory is None:
            diagnostics.append(DecodeError(SECTION_PROCESS, line, "non-numeric memory"))
            continue
        procs.append(
            ProcessSample(
                pid=parts[1],
                user=parts[3],
                command=parts[4],
                memory_used=memory,
                gpu_index=gpu_map.get(parts[0]),
            )
        )
    return procs


def parse_output(output: str, node_id: str, now: Optional[float] = None) -> DecodeResult:
    """Decode a full inspection payload for *node_id*."""
    snapshot = NodeSnapshot(
        node_id=node_id,
        connected=True,
        timestamp=time.time() if now is None else now,
    )
    diagnostics: List[DecodeError] = []
    sections = split_sections(output)

    gpu_raw = sections.get(SECTION_GPU)
    if gpu_raw is None:
        # login banners end up in the prelude too; only CSV-looking lines count
        prelude = sections.get(_PRELUDE, "")
        gpu_raw = "\n".join(line for line in prelude.splitlines() if "," in line)
    snapshot.gpus = parse_gpus(gpu_raw, diagnostics)
    gpu_map = {gpu.uuid: gpu.index for gpu in snapshot.gpus}

    if SECTION_CPU in sections:
        snapshot.cpu_usage = parse_cpu(sections[SECTION_CPU])
    if SECTION_MEM in sections:
        snapshot.ram_used, snapshot.ram_total = parse_mem(sections[SECTION_MEM])
    if SECTION_PROCESS in sections:
        snapshot.processes = parse_processes(sections[SECTION_PROCESS], gpu_map, diagnostics)

    for diag in diagnostics:
        _LOGGER.debug("Dropped line for %s: %s", node_id, diag)
    return DecodeResult(snapshot=snapshot, diagnostics=diagnostics)
