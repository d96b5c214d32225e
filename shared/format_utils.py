from __future__ import annotations

from typing import List

BYTE_UNITS = ["B", "KB", "MB", "GB", "TB"]


def format_bytes(num_bytes: int) -> str:
    """Human-readable size with at most two decimals: 1536 -> '1.5 KB'."""
    if not num_bytes or num_bytes <= 0:
        return "0 B"
    value, unit = float(num_bytes), 0
    while value >= 1024 and unit < len(BYTE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, 2):g} {BYTE_UNITS[unit]}"


def infer_capabilities(model_name: str) -> List[str]:
    """Guess model capabilities from its name (Ollama tags carry no capability metadata)."""
    name = (model_name or "").lower()
    caps = ["chat"]
    if any(k in name for k in ("code", "coder", "deepseek")):
        caps.append("code")
    if any(k in name for k in ("vision", "llava")):
        caps.append("vision")
    if "embed" in name:
        caps.append("embeddings")
    return caps


def excerpt(text: str, limit: int = 50) -> str:
    """Single-line excerpt used as a default job name."""
    flat = " ".join((text or "").split())
    if len(flat) <= limit:
        return flat
    return flat[: limit - 3].rstrip() + "..."
