"""
Unit tests for the Automatic1111 backend client.

Requests are served by httpx.MockTransport so paths, payloads and error
mapping can be checked without a running web UI.
"""

import json

import httpx
import pytest

from backends.auto1111 import Auto1111Backend, build_upscale_payload
from shared.errors import BackendError


def make_backend(handler):
    return Auto1111Backend.from_url("http://sd.local:7860/", transport=httpx.MockTransport(handler))


class TestGenerate:
    @pytest.mark.asyncio
    async def test_txt2img_injects_defaults(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"images": ["aaa"], "info": "{}"})

        backend = make_backend(handler)
        result = await backend.generate({"prompt": "cat", "steps": 20})

        assert result["images"] == ["aaa"]
        assert seen["path"] == "/sdapi/v1/txt2img"
        assert seen["body"] == {"prompt": "cat", "steps": 20, "scheduler": "Automatic", "enable_hr": True}
        await backend.aclose()

    @pytest.mark.asyncio
    async def test_caller_values_win_over_defaults(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"images": []})

        backend = make_backend(handler)
        await backend.generate({"enable_hr": False, "scheduler": "Karras"})

        assert seen["body"]["enable_hr"] is False
        assert seen["body"]["scheduler"] == "Karras"
        await backend.aclose()

    @pytest.mark.asyncio
    async def test_http_error_becomes_backend_error(self):
        backend = make_backend(lambda request: httpx.Response(500, json={"error": "OutOfMemoryError", "errors": "CUDA out of memory"}))

        with pytest.raises(BackendError, match="Failed to generate image: HTTP 500: OutOfMemoryError"):
            await backend.generate({})
        await backend.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_becomes_backend_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = make_backend(handler)
        with pytest.raises(BackendError, match="connection refused"):
            await backend.generate({})
        await backend.aclose()

    @pytest.mark.asyncio
    async def test_missing_images_rejected(self):
        backend = make_backend(lambda request: httpx.Response(200, json={"detail": "ok"}))
        with pytest.raises(BackendError, match="images"):
            await backend.generate({})
        await backend.aclose()


class TestOtherEndpoints:
    @pytest.mark.asyncio
    async def test_select_model(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=None)

        backend = make_backend(handler)
        await backend.select_model("sdxl_base.safetensors")

        assert seen == {"path": "/sdapi/v1/options", "body": {"sd_model_checkpoint": "sdxl_base.safetensors"}}
        await backend.aclose()

    @pytest.mark.asyncio
    async def test_select_model_failure_message(self):
        backend = make_backend(lambda request: httpx.Response(404, json={"detail": "Model not found"}))
        with pytest.raises(BackendError, match="Failed to set model"):
            await backend.select_model("nope")
        await backend.aclose()

    @pytest.mark.asyncio
    async def test_listings(self):
        routes = {
            "/sdapi/v1/sd-models": [{"title": "m1"}],
            "/sdapi/v1/samplers": [{"name": "Euler a"}],
            "/sdapi/v1/upscalers": [{"name": "R-ESRGAN 4x+"}],
        }
        backend = make_backend(lambda request: httpx.Response(200, json=routes[request.url.path]))

        assert await backend.list_models() == [{"title": "m1"}]
        assert await backend.list_samplers() == [{"name": "Euler a"}]
        assert await backend.list_upscalers() == [{"name": "R-ESRGAN 4x+"}]
        await backend.aclose()

    @pytest.mark.asyncio
    async def test_upscale_posts_img2img(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            return httpx.Response(200, json={"images": ["up"]})

        backend = make_backend(handler)
        result = await backend.upscale_via_script(build_upscale_payload("b64", {"prompt": "p"}))

        assert seen["path"] == "/sdapi/v1/img2img"
        assert result["images"] == ["up"]
        await backend.aclose()


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self):
        def handler(request):
            if request.url.path == "/sdapi/v1/memory":
                return httpx.Response(200, json={"ram": {"free": 1}})
            assert request.url.params["skip_current_image"] == "true"
            return httpx.Response(200, json={"progress": 0.0})

        backend = make_backend(handler)
        health = await backend.health_check()

        assert health["status"] == "ok"
        assert health["memory"] == {"ram": {"free": 1}}
        assert health["progress"] == {"progress": 0.0}
        await backend.aclose()

    @pytest.mark.asyncio
    async def test_unreachable_never_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = make_backend(handler)
        health = await backend.health_check()

        assert health["status"] == "error"
        assert "connection refused" in health["details"]
        await backend.aclose()


class TestUpscalePayload:
    def test_defaults(self):
        payload = build_upscale_payload("IMG", {"prompt": "a cat", "negative_prompt": "blurry"})
        assert payload == {
            "init_images": ["IMG"],
            "prompt": "a cat",
            "negative_prompt": "blurry",
            "denoising_strength": 0.15,
            "script_name": "SD upscale",
            "script_args": [None, 64, "None", 2.5],
        }

    def test_overrides(self):
        payload = build_upscale_payload(
            "IMG",
            {},
            {
                "upscale_upscaler": "R-ESRGAN 4x+",
                "upscale_scale_factor": 2,
                "upscale_denoising_strength": 0.3,
                "upscale_tile_overlap": 32,
            },
        )
        assert payload["prompt"] == ""
        assert payload["denoising_strength"] == 0.3
        assert payload["script_args"] == [None, 32, "R-ESRGAN 4x+", 2.0]
