"""
Async Automatic1111 (stable-diffusion-webui ``--api``) backend.

Provides:
- select_model(name)                 POST /sdapi/v1/options
- generate(params) -> {images: [...]} POST /sdapi/v1/txt2img
- upscale_via_script(params)         POST /sdapi/v1/img2img ("SD upscale" script)
- list_models / list_samplers / list_upscalers
- health_check() -> {"status": "ok" | "error", ...}   (never raises)

Images are base64-encoded PNG strings, exactly as the web UI returns them.
Every failure surfaces as shared.errors.BackendError.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from server.http_client import LoggedHTTPClient, auto1111_client
from server.logging_utils import get_logger
from shared.errors import BackendError

UPSCALE_SCRIPT_NAME = "SD upscale"

# Injected into every txt2img call unless the caller set them.
TXT2IMG_OVERRIDES = {"scheduler": "Automatic", "enable_hr": True}


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(body, dict):
        for key in ("error", "detail", "errors", "message"):
            if body.get(key):
                return str(body[key])
    return str(body)[:300]


class Auto1111Backend:
    def __init__(self, http: LoggedHTTPClient):
        self.http = http
        self.slog = get_logger()

    @classmethod
    def from_url(cls, base_url: str, timeout_s: float = 300.0, **client_kwargs) -> "Auto1111Backend":
        return cls(auto1111_client(base_url, timeout_s=timeout_s, **client_kwargs))

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _call(self, method: str, path: str, action: str, **kwargs) -> Any:
        try:
            response = await self.http.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise BackendError(f"Failed to {action}: backend timed out ({exc})") from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"Failed to {action}: {exc or type(exc).__name__}") from exc
        if response.status_code >= 400:
            raise BackendError(
                f"Failed to {action}: HTTP {response.status_code}: {_error_detail(response)}"
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(f"Failed to {action}: backend returned invalid JSON") from exc

    async def select_model(self, name: str) -> None:
        await self._call("POST", "/sdapi/v1/options", "set model", json={"sd_model_checkpoint": name})

    async def generate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        payload = {**TXT2IMG_OVERRIDES, **params}
        self.slog.debug(
            "txt2img_request",
            steps=payload.get("steps"),
            batch_size=payload.get("batch_size"),
            size=f"{payload.get('width')}x{payload.get('height')}",
        )
        return self._images(await self._call("POST", "/sdapi/v1/txt2img", "generate image", json=payload))

    async def upscale_via_script(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self._images(await self._call("POST", "/sdapi/v1/img2img", "upscale image", json=params))

    def _images(self, body: Any) -> Dict[str, Any]:
        if not isinstance(body, dict) or not isinstance(body.get("images"), list):
            raise BackendError("Backend response did not contain an images list")
        return body

    async def list_models(self) -> List[Dict[str, Any]]:
        return await self._call("GET", "/sdapi/v1/sd-models", "get models") or []

    async def list_samplers(self) -> List[Dict[str, Any]]:
        return await self._call("GET", "/sdapi/v1/samplers", "get samplers") or []

    async def list_upscalers(self) -> List[Dict[str, Any]]:
        return await self._call("GET", "/sdapi/v1/upscalers", "get upscalers") or []

    async def health_check(self) -> Dict[str, Any]:
        try:
            memory = await self._call("GET", "/sdapi/v1/memory", "read memory", timeout=10.0)
            progress = await self._call(
                "GET", "/sdapi/v1/progress", "read progress", params={"skip_current_image": "true"}, timeout=10.0
            )
        except BackendError as exc:
            self.slog.warning("backend_health_failed", error=exc.message)
            return {"status": "error", "message": "Auto1111 server not available", "details": exc.message}
        return {"status": "ok", "version": "Auto1111", "memory": memory, "progress": progress}


def build_upscale_payload(
    image_b64: str,
    metadata: Dict[str, str],
    config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """img2img payload that runs the SD upscale script over one image."""
    config = config or {}
    return {
        "init_images": [image_b64],
        "prompt": metadata.get("prompt", ""),
        "negative_prompt": metadata.get("negative_prompt", ""),
        "denoising_strength": float(config.get("upscale_denoising_strength", 0.15)),
        "script_name": UPSCALE_SCRIPT_NAME,
        "script_args": [
            None,
            int(config.get("upscale_tile_overlap", 64)),
            config.get("upscale_upscaler", "") or "None",
            float(config.get("upscale_scale_factor", 2.5)),
        ],
    }
