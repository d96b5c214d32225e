"""
ComfyUI backend: asynchronous image generation.

Submitting a workflow (POST /prompt) only yields a prompt_id. Completion
is discovered by reading /history/{prompt_id}; rendered files are fetched
through /view. The job tracker drives those checks.
"""
from __future__ import annotations

import copy
import random
from typing import Any, Dict, List, Optional

from backends.base import Artifact, ImageStatus, ImageSubmission, ProviderBackend
from dashboard.errors import ProviderConnectionError, UpstreamError, ValidationError
from dashboard.logging_utils import get_logger
from shared.schemas import SEED_MAX

DEFAULT_CHECKPOINT = "v1-5-pruned-emaonly-fp16.safetensors"
DEFAULT_NEGATIVE_PROMPT = "low quality, blurry, distorted"

DEFAULT_PARAMETERS: Dict[str, Any] = {
    "width": 512,
    "height": 512,
    "steps": 20,
    "cfg_scale": 7.0,
    "seed": -1,
    "sampler_name": "euler",
    "scheduler": "normal",
    "batch_size": 1,
}

SAMPLERS = [
    "euler", "euler_ancestral", "heun", "heunpp2",
    "dpm_2", "dpm_2_ancestral", "lms", "dpm_fast",
    "dpm_adaptive", "dpmpp_2s_ancestral", "dpmpp_sde",
    "dpmpp_sde_gpu", "dpmpp_2m", "dpmpp_2m_sde",
    "dpmpp_2m_sde_gpu", "dpmpp_3m_sde", "dpmpp_3m_sde_gpu",
    "ddpm", "lcm", "ddim", "uni_pc", "uni_pc_bh2",
]

SCHEDULERS = ["normal", "karras", "exponential", "sgm_uniform", "simple", "ddim_uniform", "beta"]

DIMENSIONS = [512, 768, 1024, 1280, 1536, 2048]

SDXL_DIMENSIONS = [
    {"width": 1024, "height": 1024, "label": "1:1 Square"},
    {"width": 1152, "height": 896, "label": "9:7 Landscape"},
    {"width": 896, "height": 1152, "label": "7:9 Portrait"},
    {"width": 1216, "height": 832, "label": "3:2 Landscape"},
    {"width": 832, "height": 1216, "label": "2:3 Portrait"},
]

SAMPLER_NODES = ("KSampler", "KSamplerAdvanced")

log = get_logger()


def build_txt2img_workflow(prompt: str, negative_prompt: Optional[str] = None) -> Dict[str, Any]:
    """Basic SD 1.5 txt2img graph in ComfyUI API format."""
    return {
        "3": {
            "class_type": "KSampler",
            "inputs": {
                "cfg": 7,
                "denoise": 1,
                "latent_image": ["5", 0],
                "model": ["4", 0],
                "negative": ["7", 0],
                "positive": ["6", 0],
                "sampler_name": "euler",
                "scheduler": "normal",
                "seed": 0,
                "steps": 20,
            },
        },
        "4": {"class_type": "CheckpointLoaderSimple", "inputs": {"ckpt_name": DEFAULT_CHECKPOINT}},
        "5": {"class_type": "EmptyLatentImage", "inputs": {"batch_size": 1, "height": 512, "width": 512}},
        "6": {"class_type": "CLIPTextEncode", "inputs": {"clip": ["4", 1], "text": prompt}},
        "7": {
            "class_type": "CLIPTextEncode",
            "inputs": {"clip": ["4", 1], "text": negative_prompt or DEFAULT_NEGATIVE_PROMPT},
        },
        "8": {"class_type": "VAEDecode", "inputs": {"samples": ["3", 0], "vae": ["4", 2]}},
        "9": {"class_type": "SaveImage", "inputs": {"filename_prefix": "dashboard", "images": ["8", 0]}},
    }


def resolve_seed(seed: Optional[int], rng: Optional[random.Random] = None) -> int:
    if seed is None or seed == -1:
        return (rng or random).randrange(0, SEED_MAX)
    return seed


def apply_parameters(
    workflow: Dict[str, Any],
    params: Dict[str, Any],
    prompt: str,
    negative_prompt: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> Dict[str, Any]:
    """
    Return a copy of ``workflow`` with sampler, latent and checkpoint inputs
    overridden from ``params``. Prompt text goes to the nodes wired into the
    first sampler's positive/negative inputs. ``params["seed"]`` is replaced
    by the concrete seed used.
    """
    graph = copy.deepcopy(workflow)
    params["seed"] = resolve_seed(params.get("seed"), rng)

    for node in graph.values():
        inputs = node.get("inputs")
        if inputs is None:
            continue
        class_type = node.get("class_type")
        if class_type in SAMPLER_NODES:
            seed_key = "noise_seed" if class_type == "KSamplerAdvanced" else "seed"
            inputs[seed_key] = params["seed"]
            if params.get("steps") is not None:
                inputs["steps"] = params["steps"]
            if params.get("cfg_scale") is not None:
                inputs["cfg"] = params["cfg_scale"]
            if params.get("sampler_name") is not None:
                inputs["sampler_name"] = params["sampler_name"]
            if params.get("scheduler") is not None:
                inputs["scheduler"] = params["scheduler"]
        elif class_type == "EmptyLatentImage":
            for key in ("width", "height", "batch_size"):
                if params.get(key) is not None:
                    inputs[key] = params[key]
        elif class_type == "CheckpointLoaderSimple":
            if params.get("checkpoint_name"):
                inputs["ckpt_name"] = params["checkpoint_name"]

    sampler = next((n for n in graph.values() if n.get("class_type") in SAMPLER_NODES), None)
    if sampler is None:
        raise ValidationError("Workflow has no KSampler node")
    for ref_key, text in (("positive", prompt), ("negative", negative_prompt or DEFAULT_NEGATIVE_PROMPT)):
        ref = sampler["inputs"].get(ref_key)
        if isinstance(ref, list) and ref:
            target = graph.get(str(ref[0]))
            if target and target.get("inputs") is not None:
                target["inputs"]["text"] = text
    return graph


def extract_images_from_history(history: Dict, prompt_id: str) -> List[Dict[str, str]]:
    """
    Extract image references from a /history response.

    Returns list of dicts with keys: filename, subfolder, type
    """
    images: List[Dict[str, str]] = []
    prompt_history = history.get(prompt_id)
    if not prompt_history:
        return images

    for node_outputs in (prompt_history.get("outputs") or {}).values():
        for image_info in node_outputs.get("images", []):
            filename = image_info.get("filename")
            if not filename:
                continue
            images.append({
                "filename": filename,
                "subfolder": image_info.get("subfolder", ""),
                "type": image_info.get("type", "output"),
            })
    return images


def _history_error(status: Dict[str, Any]) -> Optional[str]:
    if status.get("status_str") != "error" and "error" not in status:
        return None
    for message in status.get("messages") or []:
        if isinstance(message, (list, tuple)) and len(message) == 2 and message[0] == "execution_error":
            detail = message[1] or {}
            return detail.get("exception_message") or detail.get("exception_type") or "execution_error"
    error = status.get("error")
    if isinstance(error, dict):
        return error.get("message", str(error))
    return str(error or "ComfyUI reported an error")


def parse_history(history: Dict[str, Any], prompt_id: str) -> ImageStatus:
    """Map one /history/{prompt_id} response onto running|completed|failed."""
    entry = history.get(prompt_id)
    if not entry:
        return ImageStatus(state="running")

    status = entry.get("status") or {}
    error = _history_error(status)
    if error:
        return ImageStatus(state="failed", error=error)

    images = extract_images_from_history(history, prompt_id)
    if images:
        return ImageStatus(state="completed", outputs=images)
    if status.get("completed"):
        return ImageStatus(state="failed", error="Job reported complete but history contains no outputs")
    return ImageStatus(state="running")


class ComfyUIBackend(ProviderBackend):
    name = "comfyui"
    display_name = "ComfyUI"
    local = True
    supports_chat = False
    supports_image = True
    default_model = DEFAULT_CHECKPOINT

    def __init__(self, base_url: str, transport=None, rng: Optional[random.Random] = None):
        super().__init__(base_url, transport)
        self._rng = rng

    def validate_image_request(self, request) -> None:
        params = request.parameters
        if params.sampler_name not in SAMPLERS:
            raise ValidationError(f"Unknown sampler '{params.sampler_name}'")
        if params.scheduler not in SCHEDULERS:
            raise ValidationError(f"Unknown scheduler '{params.scheduler}'")
        if request.workflow is not None and not any(
            isinstance(node, dict) and node.get("class_type") in SAMPLER_NODES for node in request.workflow.values()
        ):
            raise ValidationError("Workflow has no KSampler node")

    def prepare(self, request) -> Dict[str, Any]:
        """Resolve parameters and the final graph for an ImageRequest."""
        self.validate_image_request(request)
        params = request.parameters.model_dump()
        if request.model and not params.get("checkpoint_name"):
            params["checkpoint_name"] = request.model

        base = request.workflow or build_txt2img_workflow(request.prompt, request.negative_prompt)
        graph = apply_parameters(base, params, request.prompt, request.negative_prompt, rng=self._rng)
        return {"parameters": params, "workflow": graph}

    async def submit_image(self, request, credential=None) -> ImageSubmission:
        prepared = self.prepare(request)
        async with self.client() as client:
            data = self.json_body(await self.send(client, "POST", "/prompt", json={"prompt": prepared["workflow"]}))
        prompt_id = data.get("prompt_id")
        if not prompt_id:
            raise UpstreamError(self.display_name, 200, f"no prompt_id in response: {data}")
        log.info("comfy_prompt_submitted", prompt_id=prompt_id, seed=prepared["parameters"]["seed"])
        return ImageSubmission(token=prompt_id, resolved=prepared)

    async def check_image(self, token: str) -> ImageStatus:
        async with self.client() as client:
            history = self.json_body(await self.send(client, "GET", f"/history/{token}"))
        return parse_history(history or {}, token)

    async def fetch_artifact(self, ref: Dict[str, str]) -> Artifact:
        params = {
            "filename": ref["filename"],
            "subfolder": ref.get("subfolder", ""),
            "type": ref.get("type", "output"),
        }
        async with self.client() as client:
            resp = await self.send(client, "GET", "/view", params=params)
        return Artifact(
            filename=ref["filename"],
            data=resp.content,
            content_type=resp.headers.get("content-type", "image/png"),
        )

    async def options(self) -> Dict[str, Any]:
        """
        Sampler/scheduler catalogs plus checkpoints and LoRAs installed in
        ComfyUI. When ComfyUI is down the static catalogs are still returned
        with empty model lists and ``available: false``.
        """
        available = True
        try:
            async with self.client() as client:
                info = self.json_body(await self.send(client, "GET", "/object_info"))
        except ProviderConnectionError as exc:
            log.warning("comfy_options_unavailable", error=exc.message)
            info, available = {}, False

        def _choices(node: str, field: str) -> List[str]:
            spec = ((info.get(node) or {}).get("input") or {}).get("required", {}).get(field)
            if isinstance(spec, list) and spec and isinstance(spec[0], list):
                return spec[0]
            return []

        return {
            "available": available,
            "samplers": SAMPLERS,
            "schedulers": SCHEDULERS,
            "checkpoints": _choices("CheckpointLoaderSimple", "ckpt_name"),
            "loras": _choices("LoraLoader", "lora_name"),
            "dimensions": {"common": DIMENSIONS, "sdxl_optimal": SDXL_DIMENSIONS},
            "defaults": DEFAULT_PARAMETERS,
        }

    async def test_connection(self, credential=None) -> None:
        async with self.client() as client:
            await self.send(client, "GET", "/system_stats")
