"""
Single-flight job scheduler.

Owns every work item (one-shot jobs and continuous configs) in one id -> item
map, plus two id-only indexes:

- ``_upscale_queue``: upscale jobs, FIFO, always served first
- ``_rotation``: generation round-robin; one-shot generation jobs leave it
  after their run, continuous configs go back to the tail

A fixed-period tick runs at most one unit; while a unit is processing every
other tick is a no-op, so the backend never sees two calls at once.

Items are frozen pydantic snapshots. A transition builds the next snapshot,
publishes it, then stores it, so a broadcast always precedes the state being
visible through ``status()``.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Union

from backends.auto1111 import build_upscale_payload
from server.logging_utils import get_logger
from server.storage import ImageStore
from shared import protocol
from shared.errors import InvalidRequest, InvalidState, NotFound, QueueError, classify_backend_error
from shared.schemas import (
    QUEUE_ONLY_KEYS,
    ConfigStatus,
    ContinuousConfig,
    Job,
    JobKind,
    JobStatus,
    JobSummary,
    QueueSnapshot,
    utcnow,
)
from shared.timers import PeriodicTask

WorkItem = Union[Job, ContinuousConfig]
Publisher = Callable[[str, Any], None]

TICK_INTERVAL_S = 1.0
EVICTION_DELAY_S = 300.0
UPSCALE_OUTPUT_NAME = "upscaled"


def drop_preview_grid(images: List[str], params: Dict[str, Any]) -> List[str]:
    """Drop the leading grid image the backend adds to multi-image batches."""
    requested = int(params.get("batch_size") or 1) * int(params.get("n_iter") or 1)
    if requested > 1 and len(images) > requested:
        return images[1:]
    return images


def txt2img_params(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value
        for key, value in payload.items()
        if key not in QUEUE_ONLY_KEYS and not key.startswith("upscale_")
    }


def _error_message(exc: Exception) -> str:
    if isinstance(exc, QueueError):
        return exc.message
    return str(exc) or type(exc).__name__


def _discard(index: Deque[str], item_id: str) -> None:
    try:
        index.remove(item_id)
    except ValueError:
        pass


class JobScheduler:
    def __init__(
        self,
        backend,
        images: ImageStore,
        publish: Optional[Publisher] = None,
        tick_interval_s: float = TICK_INTERVAL_S,
        eviction_delay_s: float = EVICTION_DELAY_S,
    ):
        self.backend = backend
        self.images = images
        self.publish: Publisher = publish or (lambda type_, data: None)
        self.eviction_delay_s = eviction_delay_s
        self.slog = get_logger()

        self._items: Dict[str, WorkItem] = {}
        self._upscale_queue: Deque[str] = deque()
        self._rotation: Deque[str] = deque()
        self._active_id: Optional[str] = None
        self._stop_requested: Set[str] = set()
        self._evictions: Dict[str, asyncio.TimerHandle] = {}
        self._ticker = PeriodicTask(self.tick, tick_interval_s, name="scheduler-tick")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if not self._ticker.running:
            self.slog.info("scheduler_started", tick_interval_s=self._ticker.interval_s)
        self._ticker.start()

    async def stop(self) -> None:
        await self._ticker.stop()
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        self.slog.info("scheduler_stopped", pending=len(self._upscale_queue) + len(self._rotation))

    @property
    def running(self) -> bool:
        return self._ticker.running

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit_generation(self, config: Dict[str, Any]) -> Job:
        name = str(config.get("name") or config.get("id") or "").strip()
        if not name:
            raise InvalidRequest("Configuration must have a name or id")

        job = Job(kind=JobKind.GENERATION, name=name, payload=dict(config))
        self._rotation.append(job.id)
        self._commit(job)
        self.slog.info("job_queued", job_id=job.id, job_kind=job.kind.value, name=name)
        return job

    def submit_upscale(self, image_path: str, config: Optional[Dict[str, Any]] = None) -> Job:
        job = Job(
            kind=JobKind.UPSCALE,
            name=UPSCALE_OUTPUT_NAME,
            payload={"image_path": image_path, "config": dict(config or {})},
        )
        self._upscale_queue.append(job.id)
        self._commit(job)
        self.slog.info("job_queued", job_id=job.id, job_kind=job.kind.value, image_path=image_path)
        return job

    def cancel(self, job_id: str) -> None:
        """Remove a queued job (or clear a finished one). Processing jobs cannot be aborted."""
        job = self._items.get(job_id)
        if not isinstance(job, Job):
            raise NotFound(f"Job {job_id} not found")
        if job_id == self._active_id or job.status == JobStatus.PROCESSING:
            raise InvalidState(f"Job {job_id} is processing and cannot be cancelled")

        self._forget(job_id)
        self.slog.info("job_cancelled", job_id=job_id, status=job.status.value)
        self.publish(protocol.JOB_REMOVED, {"jobId": job_id, "kind": job.kind.value})
        self.publish(protocol.QUEUE_UPDATE, self.status())

    # ------------------------------------------------------------------
    # Continuous configs
    # ------------------------------------------------------------------
    def add_config(self, name: str, parameters: Optional[Dict[str, Any]] = None) -> ContinuousConfig:
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("Continuous config must have a name")
        self._ensure_unique_name(name)

        config = ContinuousConfig(name=name, parameters=dict(parameters or {}))
        self._rotation.append(config.id)
        self._commit(config)
        self.slog.info("config_started", job_id=config.id, name=name)
        return config

    def update_config(
        self,
        config_id: str,
        name: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> ContinuousConfig:
        config = self._get_config(config_id)
        changes: Dict[str, Any] = {}
        if name is not None and name.strip() != config.name:
            self._ensure_unique_name(name.strip(), exclude_id=config_id)
            changes["name"] = name.strip()
        if parameters is not None:
            changes["parameters"] = dict(parameters)
        if not changes:
            return config
        updated = config.model_copy(update=changes)
        self._commit(updated)
        return updated

    def stop_config(self, config_id: str) -> ContinuousConfig:
        config = self._get_config(config_id)
        if config_id == self._active_id:
            # takes effect when the in-flight run ends
            self._stop_requested.add(config_id)
            self.slog.info("config_stop_requested", job_id=config_id)
            return config
        if config.status == ConfigStatus.STOPPED:
            return config
        _discard(self._rotation, config_id)
        stopped = config.model_copy(update={"status": ConfigStatus.STOPPED})
        self._commit(stopped)
        self.slog.info("config_stopped", job_id=config_id)
        return stopped

    def start_config(self, config_id: str) -> ContinuousConfig:
        config = self._get_config(config_id)
        if config_id == self._active_id:
            self._stop_requested.discard(config_id)
            return config
        if config_id not in self._rotation:
            self._rotation.append(config_id)
        if config.status == ConfigStatus.ACTIVE:
            return config
        resumed = config.model_copy(update={"status": ConfigStatus.ACTIVE})
        self._commit(resumed)
        self.slog.info("config_resumed", job_id=config_id)
        return resumed

    def remove_config(self, config_id: str) -> None:
        config = self._get_config(config_id)
        self._forget(config_id)
        self.slog.info("config_removed", job_id=config_id, name=config.name, in_flight=config_id == self._active_id)
        self.publish(protocol.JOB_REMOVED, {"jobId": config_id, "kind": "continuous"})
        self.publish(protocol.QUEUE_UPDATE, self.status())

    def find_config(self, name: str) -> Optional[ContinuousConfig]:
        for item in self._items.values():
            if isinstance(item, ContinuousConfig) and item.name == name:
                return item
        return None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_job(self, job_id: str) -> Job:
        job = self._items.get(job_id)
        if not isinstance(job, Job):
            raise NotFound(f"Job {job_id} not found")
        return job

    def status(self) -> QueueSnapshot:
        jobs = [item for item in self._items.values() if isinstance(item, Job)]
        configs = [item for item in self._items.values() if isinstance(item, ContinuousConfig)]
        return QueueSnapshot(
            queue_depth=len(self._upscale_queue) + len(self._rotation),
            upscale_queue_length=len(self._upscale_queue),
            generation_queue_length=len(self._rotation),
            active_job_id=self._active_id,
            processing=self._active_id is not None,
            jobs=[
                JobSummary(
                    id=job.id,
                    kind=job.kind,
                    name=job.name,
                    status=job.status,
                    progress=job.progress,
                    started_at=job.started_at,
                    completed_at=job.completed_at,
                    error=job.error,
                )
                for job in jobs
            ],
            configs=configs,
        )

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    async def tick(self) -> bool:
        """Run the next eligible unit. Returns False when skipped or idle."""
        if self._active_id is not None:
            return False
        item_id = self._next_unit()
        if item_id is None:
            return False

        self._active_id = item_id
        try:
            item = self._items[item_id]
            if isinstance(item, ContinuousConfig):
                await self._run_config(item)
            elif item.kind == JobKind.UPSCALE:
                await self._run_job(item, self._execute_upscale)
            else:
                await self._run_job(item, self._execute_generation)
        finally:
            self._active_id = None
            self.publish(protocol.QUEUE_UPDATE, self.status())
        return True

    def _next_unit(self) -> Optional[str]:
        while self._upscale_queue:
            job_id = self._upscale_queue.popleft()
            if job_id in self._items:
                return job_id
        while self._rotation:
            item_id = self._rotation.popleft()
            item = self._items.get(item_id)
            if item is None:
                continue
            if isinstance(item, ContinuousConfig) and item.status != ConfigStatus.ACTIVE:
                continue
            return item_id
        return None

    async def _run_job(self, job: Job, execute) -> None:
        started = job.model_copy(
            update={"status": JobStatus.PROCESSING, "started_at": utcnow(), "progress": 0.0}
        )
        self._commit(started)

        with self.slog.job_context(job.id, job.kind.value, name=job.name) as ctx:
            try:
                paths = await execute(started, ctx)
            except Exception as exc:
                message = _error_message(exc)
                category = classify_backend_error(message)["category"]
                ctx.error("job_failed", error=message, category=category)
                finished = started.model_copy(
                    update={
                        "status": JobStatus.FAILED,
                        "completed_at": utcnow(),
                        "error": message,
                        "error_category": category,
                    }
                )
            else:
                ctx.milestone("job_completed", images=len(paths))
                finished = started.model_copy(
                    update={
                        "status": JobStatus.COMPLETED,
                        "completed_at": utcnow(),
                        "progress": 100.0,
                        "result": paths,
                    }
                )
        self._commit(finished)
        self._schedule_eviction(job.id)

    async def _run_config(self, config: ContinuousConfig) -> None:
        running = config.model_copy(update={"status": ConfigStatus.PROCESSING, "last_run_at": utcnow()})
        self._commit(running)

        with self.slog.job_context(config.id, "continuous", name=config.name) as ctx:
            payload = {**config.parameters, "name": config.name}
            try:
                paths = await self._generate(config.name, payload, ctx)
            except Exception as exc:
                message = _error_message(exc)
                category = classify_backend_error(message)["category"]
                ctx.error("config_run_failed", error=message, category=category)
                succeeded = False
            else:
                ctx.milestone("config_run_completed", images=len(paths))
                succeeded = True

        current = self._items.get(config.id)
        stop = config.id in self._stop_requested
        self._stop_requested.discard(config.id)
        if not isinstance(current, ContinuousConfig):
            self.slog.info("config_run_discarded", job_id=config.id, reason="removed")
            return

        changes: Dict[str, Any] = {"status": ConfigStatus.STOPPED if stop else ConfigStatus.ACTIVE}
        if succeeded:
            changes.update(completed_runs=current.completed_runs + 1, last_artifacts=paths, last_error=None,
                           last_error_category=None)
        else:
            changes.update(failed_runs=current.failed_runs + 1, last_error=message, last_error_category=category)
        self._commit(current.model_copy(update=changes))
        if not stop and config.id not in self._rotation:
            self._rotation.append(config.id)

    # ------------------------------------------------------------------
    # Execution against the backend
    # ------------------------------------------------------------------
    async def _generate(self, name: str, payload: Dict[str, Any], ctx) -> List[str]:
        model = payload.get("model")
        if model:
            await self.backend.select_model(model)
            ctx.milestone("model_selected", model=model)

        params = txt2img_params(payload)
        result = await self.backend.generate(params)
        images = drop_preview_grid(list(result.get("images") or []), params)
        return await self.images.save_all(name, images)

    async def _execute_generation(self, job: Job, ctx) -> List[str]:
        return await self._generate(job.name, job.payload, ctx)

    async def _execute_upscale(self, job: Job, ctx) -> List[str]:
        image_path = job.payload["image_path"]
        metadata = await self.images.read_metadata(image_path)
        image_b64 = await self.images.load_base64(image_path)
        result = await self.backend.upscale_via_script(
            build_upscale_payload(image_b64, metadata, job.payload.get("config"))
        )
        return await self.images.save_all(job.name, list(result.get("images") or []))

    # ------------------------------------------------------------------
    # Registry helpers
    # ------------------------------------------------------------------
    def _commit(self, item: WorkItem) -> None:
        if isinstance(item, Job):
            self.publish(protocol.JOB_UPDATE, item)
        else:
            self.publish(protocol.CONFIG_UPDATE, item)
        self._items[item.id] = item
        self.publish(protocol.QUEUE_UPDATE, self.status())

    def _forget(self, item_id: str) -> None:
        self._items.pop(item_id, None)
        _discard(self._upscale_queue, item_id)
        _discard(self._rotation, item_id)
        self._stop_requested.discard(item_id)
        handle = self._evictions.pop(item_id, None)
        if handle is not None:
            handle.cancel()

    def _get_config(self, config_id: str) -> ContinuousConfig:
        config = self._items.get(config_id)
        if not isinstance(config, ContinuousConfig):
            raise NotFound(f"Continuous config {config_id} not found")
        return config

    def _ensure_unique_name(self, name: str, exclude_id: Optional[str] = None) -> None:
        existing = self.find_config(name)
        if existing is not None and existing.id != exclude_id:
            raise InvalidState(f'Continuous config "{name}" already exists')

    def _schedule_eviction(self, job_id: str) -> None:
        loop = asyncio.get_running_loop()
        previous = self._evictions.pop(job_id, None)
        if previous is not None:
            previous.cancel()
        self._evictions[job_id] = loop.call_later(self.eviction_delay_s, self._evict, job_id)

    def _evict(self, job_id: str) -> None:
        self._evictions.pop(job_id, None)
        job = self._items.get(job_id)
        if not isinstance(job, Job) or not job.is_terminal:
            return
        self._items.pop(job_id, None)
        self.slog.debug("job_evicted", job_id=job_id)
        self.publish(protocol.JOB_REMOVED, {"jobId": job_id, "kind": job.kind.value})
        self.publish(protocol.QUEUE_UPDATE, self.status())
