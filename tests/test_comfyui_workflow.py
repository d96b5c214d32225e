"""ComfyUI workflow preparation and /history parsing."""
import json
import random

import httpx
import pytest

from backends.comfyui_backend import (
    DEFAULT_CHECKPOINT,
    DEFAULT_NEGATIVE_PROMPT,
    SAMPLERS,
    ComfyUIBackend,
    apply_parameters,
    build_txt2img_workflow,
    extract_images_from_history,
    parse_history,
)
from dashboard.errors import ValidationError
from shared.schemas import SEED_MAX, ImageRequest
from fakes import COMFY_URL


def custom_graph():
    """Graph whose node ids differ from the built-in template."""
    return {
        "10": {"class_type": "CheckpointLoaderSimple", "inputs": {"ckpt_name": "sdxl.safetensors"}},
        "20": {"class_type": "CLIPTextEncode", "inputs": {"clip": ["10", 1], "text": "old positive"}},
        "21": {"class_type": "CLIPTextEncode", "inputs": {"clip": ["10", 1], "text": "old negative"}},
        "30": {"class_type": "EmptyLatentImage", "inputs": {"width": 1024, "height": 1024, "batch_size": 1}},
        "40": {
            "class_type": "KSamplerAdvanced",
            "inputs": {
                "noise_seed": 1,
                "steps": 30,
                "cfg": 5,
                "sampler_name": "euler",
                "scheduler": "karras",
                "positive": ["20", 0],
                "negative": ["21", 0],
                "latent_image": ["30", 0],
                "model": ["10", 0],
            },
        },
    }


class TestApplyParameters:
    def test_overrides_sampler_and_latent(self):
        params = {"width": 768, "height": 512, "steps": 12, "cfg_scale": 6.5, "seed": 7,
                  "sampler_name": "dpmpp_2m", "scheduler": "karras", "batch_size": 2}
        graph = apply_parameters(build_txt2img_workflow("a cat"), params, "a cat")

        sampler = graph["3"]["inputs"]
        assert (sampler["seed"], sampler["steps"], sampler["cfg"]) == (7, 12, 6.5)
        assert (sampler["sampler_name"], sampler["scheduler"]) == ("dpmpp_2m", "karras")
        assert graph["5"]["inputs"] == {"batch_size": 2, "height": 512, "width": 768}
        assert graph["6"]["inputs"]["text"] == "a cat"
        assert graph["7"]["inputs"]["text"] == DEFAULT_NEGATIVE_PROMPT
        assert graph["4"]["inputs"]["ckpt_name"] == DEFAULT_CHECKPOINT

    def test_does_not_mutate_input_graph(self):
        base = build_txt2img_workflow("a cat")
        apply_parameters(base, {"seed": 1, "steps": 99}, "a dog")
        assert base["3"]["inputs"]["steps"] == 20
        assert base["6"]["inputs"]["text"] == "a cat"

    def test_random_seed_is_resolved_and_reported(self):
        params = {"seed": -1}
        graph = apply_parameters(build_txt2img_workflow("x"), params, "x", rng=random.Random(1234))
        assert 0 <= params["seed"] < SEED_MAX
        assert graph["3"]["inputs"]["seed"] == params["seed"]

    def test_prompts_follow_sampler_wiring(self):
        params = {"seed": 5, "checkpoint_name": "custom.safetensors"}
        graph = apply_parameters(custom_graph(), params, "a lighthouse", "fog")

        assert graph["20"]["inputs"]["text"] == "a lighthouse"
        assert graph["21"]["inputs"]["text"] == "fog"
        assert graph["40"]["inputs"]["noise_seed"] == 5
        assert "seed" not in graph["40"]["inputs"]
        assert graph["10"]["inputs"]["ckpt_name"] == "custom.safetensors"

    def test_empty_checkpoint_keeps_workflow_value(self):
        graph = apply_parameters(custom_graph(), {"seed": 5, "checkpoint_name": ""}, "p")
        assert graph["10"]["inputs"]["ckpt_name"] == "sdxl.safetensors"

    def test_graph_without_sampler_rejected(self):
        with pytest.raises(ValidationError):
            apply_parameters({"1": {"class_type": "SaveImage", "inputs": {}}}, {"seed": 1}, "p")


class TestHistoryParsing:
    def test_absent_prompt_is_running(self):
        assert parse_history({}, "p-1").state == "running"

    def test_outputs_complete_the_job(self):
        history = {"p-1": {
            "status": {"status_str": "success", "completed": True},
            "outputs": {
                "9": {"images": [{"filename": "a.png", "subfolder": "", "type": "output"}]},
                "12": {"images": [{"filename": "b.png", "subfolder": "batch"}]},
            },
        }}
        status = parse_history(history, "p-1")
        assert status.state == "completed"
        assert [o["filename"] for o in status.outputs] == ["a.png", "b.png"]
        assert status.outputs[1] == {"filename": "b.png", "subfolder": "batch", "type": "output"}

    def test_execution_error_message_is_surfaced(self):
        history = {"p-1": {
            "status": {
                "status_str": "error",
                "messages": [
                    ["execution_start", {"prompt_id": "p-1"}],
                    ["execution_error", {"exception_message": "no kernel image is available for execution on the device"}],
                ],
            },
            "outputs": {},
        }}
        status = parse_history(history, "p-1")
        assert status.state == "failed"
        assert "no kernel image" in status.error

    def test_completed_without_outputs_fails(self):
        history = {"p-1": {"status": {"status_str": "success", "completed": True}, "outputs": {}}}
        status = parse_history(history, "p-1")
        assert status.state == "failed"
        assert "no outputs" in status.error

    def test_in_progress_entry_is_running(self):
        history = {"p-1": {"status": {"completed": False}, "outputs": {}}}
        assert parse_history(history, "p-1").state == "running"

    def test_extract_skips_entries_without_filename(self):
        history = {"p-1": {"outputs": {"9": {"images": [{"subfolder": ""}, {"filename": "ok.png"}]}}}}
        assert extract_images_from_history(history, "p-1") == [
            {"filename": "ok.png", "subfolder": "", "type": "output"}
        ]


class TestComfyBackend:
    def test_unknown_sampler_rejected(self):
        backend = ComfyUIBackend(COMFY_URL)
        with pytest.raises(ValidationError):
            backend.validate_image_request(ImageRequest(prompt="p", parameters={"samplerName": "warp_drive"}))

    def test_prepare_uses_model_as_checkpoint(self):
        backend = ComfyUIBackend(COMFY_URL, rng=random.Random(0))
        prepared = backend.prepare(ImageRequest(prompt="p", model="dreamshaper.safetensors"))
        assert prepared["parameters"]["checkpoint_name"] == "dreamshaper.safetensors"
        assert prepared["workflow"]["4"]["inputs"]["ckpt_name"] == "dreamshaper.safetensors"
        assert prepared["parameters"]["seed"] >= 0

    @pytest.mark.asyncio
    async def test_submit_posts_prepared_graph(self, upstream):
        upstream.json("POST", f"{COMFY_URL}/prompt", {"prompt_id": "p-9"})
        backend = ComfyUIBackend(COMFY_URL, transport=upstream.transport)

        submission = await backend.submit_image(ImageRequest(prompt="a fox", parameters={"seed": 3}))

        assert submission.token == "p-9"
        assert submission.resolved["parameters"]["seed"] == 3
        sent = json.loads(upstream.calls[0].content)
        assert sent["prompt"]["6"]["inputs"]["text"] == "a fox"

    @pytest.mark.asyncio
    async def test_options_when_comfy_is_down(self, upstream):
        upstream.add("GET", f"{COMFY_URL}/object_info", httpx.ConnectError("refused"))
        backend = ComfyUIBackend(COMFY_URL, transport=upstream.transport)

        options = await backend.options()

        assert options["available"] is False
        assert options["checkpoints"] == []
        assert options["samplers"] == SAMPLERS

    @pytest.mark.asyncio
    async def test_options_lists_installed_models(self, upstream):
        upstream.json("GET", f"{COMFY_URL}/object_info", {
            "CheckpointLoaderSimple": {"input": {"required": {"ckpt_name": [["a.safetensors", "b.safetensors"]]}}},
            "LoraLoader": {"input": {"required": {"lora_name": [["detail.safetensors"]]}}},
        })
        backend = ComfyUIBackend(COMFY_URL, transport=upstream.transport)

        options = await backend.options()

        assert options["available"] is True
        assert options["checkpoints"] == ["a.safetensors", "b.safetensors"]
        assert options["loras"] == ["detail.safetensors"]
