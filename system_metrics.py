"""Host resource metrics for the settings screen.

The ``gpu`` section is a platform guess, not a hardware check: macOS is reported as
having a Metal GPU and every other platform as having none.
"""

from __future__ import annotations

import os
import platform
import sys
from typing import Optional

import psutil


ESTIMATED_MODEL_SIZE_GB = {
    "aya:8b": 4.8,
    "qwen2.5:3b": 1.9,
    "llama3.1:8b": 4.9,
}

# Above this the server has almost certainly loaded a model into memory.
LOADED_MODEL_THRESHOLD_MB = 100

_MB = 1024 * 1024


def _server_memory_mb(process_name: str = "ollama") -> int:
    for process in psutil.process_iter(["name", "memory_info"]):
        name = (process.info.get("name") or "").lower()
        memory = process.info.get("memory_info")
        if process_name in name and memory is not None:
            return memory.rss // _MB
    return 0


def _own_memory_mb() -> int:
    try:
        return psutil.Process(os.getpid()).memory_info().rss // _MB
    except psutil.Error:
        return 0


def get_system_metrics(cpu_interval: Optional[float] = None) -> dict:
    memory = psutil.virtual_memory()
    per_core = psutil.cpu_percent(interval=cpu_interval, percpu=True)
    average = sum(per_core) / len(per_core) if per_core else 0.0
    gpu_available = sys.platform == "darwin"

    return {
        "memory": {
            "total_mb": memory.total // _MB,
            "used_mb": memory.used // _MB,
            "available_mb": memory.available // _MB,
            "usage_percent": int(memory.percent),
            "app_memory_mb": _own_memory_mb(),
            "ollama_memory_mb": _server_memory_mb(),
        },
        "cpu": {
            "count": len(per_core),
            "usage_percent": average,
            "per_core": per_core,
        },
        "gpu": {
            "available": gpu_available,
            "status": "Metal GPU Available" if gpu_available else "GPU Not Available",
        },
        "system": {
            "os": sys.platform,
            "arch": platform.machine(),
        },
    }


def get_model_metrics(model_name: str) -> dict:
    server_memory = _server_memory_mb()
    return {
        "model": model_name,
        "estimated_size_gb": ESTIMATED_MODEL_SIZE_GB.get(model_name, 0.0),
        "current_memory_mb": server_memory,
        "loaded": server_memory > LOADED_MODEL_THRESHOLD_MB,
    }
