from __future__ import annotations

from typing import Dict, List, Optional


class DashboardError(Exception):
    """Base class for errors rendered as {"success": false, "error": ...}."""

    status_code = 500
    job_id: Optional[str] = None  # set when the failure was recorded on a job

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DashboardError):
    status_code = 400


class NotFoundError(DashboardError):
    status_code = 404


class InvalidTransitionError(DashboardError):
    """A job status change that is not an edge of the job state machine."""

    status_code = 409

    def __init__(self, job_id: str, current: Optional[str], target: str):
        super().__init__(f"Job {job_id} cannot move from {current or 'unknown'} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class NotConfiguredError(DashboardError):
    status_code = 503


class AuthError(DashboardError):
    status_code = 503


class ProviderConnectionError(DashboardError):
    status_code = 503

    def __init__(self, provider: str, detail: str = "", local: bool = True):
        if local:
            message = f"Cannot connect to {provider}. Is {provider} running?"
        else:
            message = f"Cannot reach {provider}. Check network access and the endpoint URL."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.provider = provider


class UpstreamError(DashboardError):
    status_code = 502

    def __init__(self, provider: str, status: int, body: str):
        super().__init__(f"{provider} returned HTTP {status}: {body}")
        self.provider = provider
        self.status = status
        self.body = body


class JobTimeoutError(DashboardError):
    status_code = 504


class CredentialDecryptError(Exception):
    """Stored ciphertext failed authentication or could not be parsed."""


CUDA_UNSUPPORTED_REMEDIATION = [
    "This ComfyUI install is using a PyTorch/CUDA build that doesn't support this GPU architecture.",
    "Fix: reinstall PyTorch with a CUDA build that supports your GPU, then restart ComfyUI.",
]


def _contains_any(message: str, needles: List[str]) -> bool:
    lowered = message.lower()
    return any(needle.lower() in lowered for needle in needles)


def classify_comfy_error(msg: str) -> Dict[str, object]:
    """Classify a ComfyUI execution error for display + remediation guidance."""
    message = msg or ""
    if _contains_any(message, ["no kernel image is available for execution on the device"]):
        return {
            "category": "cuda_unsupported_arch",
            "short": "Torch/CUDA build doesn't support this GPU (kernel image not available).",
            "action": CUDA_UNSUPPORTED_REMEDIATION,
        }
    if _contains_any(message, ["cuda out of memory", "out of memory"]):
        return {
            "category": "oom",
            "short": "CUDA out of memory.",
            "action": [
                "Reduce resolution, steps, or batch size.",
                "Close other GPU workloads and retry.",
            ],
        }
    if _contains_any(message, ["could not find checkpoint", "checkpoint not found", "value not in list: ckpt_name"]):
        return {
            "category": "missing_checkpoint",
            "short": "Checkpoint not found.",
            "action": [
                "Pick a checkpoint listed by /api/comfyui/options.",
                "Verify the checkpoint file exists in ComfyUI's models/checkpoints folder.",
            ],
        }
    if _contains_any(message, ["prompt_outputs_failed_validation", "invalid prompt"]):
        return {
            "category": "invalid_workflow",
            "short": "ComfyUI rejected the workflow.",
            "action": ["Check node inputs in the workflow graph."],
        }
    return {
        "category": "unknown",
        "short": "ComfyUI execution error.",
        "action": ["Check ComfyUI logs for the full traceback."],
    }
