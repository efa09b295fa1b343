"""
Websocket call handlers.

Each handler receives the envelope ``data`` and returns the response ``data``.
QueueError subclasses and pydantic validation errors raised here are turned
into error envelopes by the hub.
"""

from __future__ import annotations

from typing import Any, Dict

from backends.auto1111 import Auto1111Backend
from server.config_store import ConfigStore
from server.logging_utils import get_logger
from server.scheduler import JobScheduler
from server.storage import ImageStore
from server.transport import ChannelHub
from shared import protocol
from shared.errors import InvalidRequest, NotFound
from shared.schemas import (
    DEFAULT_GENERATION_PARAMS,
    ConfigIdRequest,
    ConfigNameRequest,
    JobIdRequest,
    QueueUpscaleRequest,
    SavedConfig,
    SetModelRequest,
    UpdateSavedConfigRequest,
)


def register_handlers(
    hub: ChannelHub,
    scheduler: JobScheduler,
    backend: Auto1111Backend,
    config_store: ConfigStore,
    image_store: ImageStore,
) -> None:
    slog = get_logger()

    # ----- Jobs -----
    async def start_generation(data: Any):
        if not isinstance(data, dict):
            raise InvalidRequest("startGeneration expects a generation config object")
        return scheduler.submit_generation(data)

    async def queue_upscale(data: Any):
        req = QueueUpscaleRequest.model_validate(data)
        if not await image_store.exists(req.image_path):
            raise NotFound(f"Image {req.image_path} not found")
        return scheduler.submit_upscale(req.image_path, req.config)

    async def cancel_job(data: Any):
        req = JobIdRequest.model_validate(data)
        scheduler.cancel(req.job_id)
        return {"jobId": req.job_id}

    async def get_job(data: Any):
        return scheduler.get_job(JobIdRequest.model_validate(data).job_id)

    async def get_queue_status(data: Any):
        return scheduler.status()

    async def get_server_status(data: Any) -> Dict[str, Any]:
        status = {
            "queue": scheduler.status().to_wire(),
            "backend": await backend.health_check(),
        }
        hub.broadcast(protocol.SERVER_STATUS, status)
        return status

    async def get_default_config(data: Any) -> Dict[str, Any]:
        return dict(DEFAULT_GENERATION_PARAMS)

    # ----- Saved recipes -----
    async def get_configs(data: Any):
        return await config_store.list()

    async def create_config(data: Any):
        return await config_store.add(SavedConfig.model_validate(data))

    async def update_config(data: Any):
        req = UpdateSavedConfigRequest.model_validate(data)
        return await config_store.update(req.name, parameters=req.parameters, model=req.model)

    async def delete_config(data: Any):
        req = ConfigNameRequest.model_validate(data)
        await config_store.delete(req.name)
        return {"name": req.name}

    # ----- Continuous configs -----
    async def start_config(data: Any):
        saved = await config_store.get(ConfigNameRequest.model_validate(data).name)
        parameters = dict(saved.parameters)
        if saved.model:
            parameters["model"] = saved.model
        return scheduler.add_config(saved.name, parameters)

    async def stop_config(data: Any):
        return scheduler.stop_config(ConfigIdRequest.model_validate(data).config_id)

    async def resume_config(data: Any):
        return scheduler.start_config(ConfigIdRequest.model_validate(data).config_id)

    async def remove_config(data: Any):
        req = ConfigIdRequest.model_validate(data)
        scheduler.remove_config(req.config_id)
        return {"configId": req.config_id}

    # ----- Backend proxies -----
    async def get_models(data: Any):
        return await backend.list_models()

    async def get_samplers(data: Any):
        return await backend.list_samplers()

    async def get_upscalers(data: Any):
        return await backend.list_upscalers()

    async def set_model(data: Any):
        req = SetModelRequest.model_validate(data)
        await backend.select_model(req.model_name)
        slog.info("model_selected", model=req.model_name)
        return {"modelName": req.model_name}

    async def check_health(data: Any):
        return await backend.health_check()

    handlers = {
        "startGeneration": start_generation,
        "queueUpscale": queue_upscale,
        "cancelJob": cancel_job,
        "removeJob": cancel_job,
        "getJob": get_job,
        "getQueueStatus": get_queue_status,
        "getServerStatus": get_server_status,
        "getDefaultConfig": get_default_config,
        "getConfigs": get_configs,
        "createConfig": create_config,
        "updateConfig": update_config,
        "deleteConfig": delete_config,
        "startConfig": start_config,
        "stopConfig": stop_config,
        "resumeConfig": resume_config,
        "removeConfig": remove_config,
        "getModels": get_models,
        "getSamplers": get_samplers,
        "getUpscalers": get_upscalers,
        "setModel": set_model,
        "checkHealth": check_health,
    }
    for type_, handler in handlers.items():
        hub.register(type_, handler)
