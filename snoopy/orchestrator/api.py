import asyncio
import uuid

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException
from loguru import logger

from snoopy.common.errors import SnoopyError
from snoopy.common.models import Task, TaskDescription
from snoopy.orchestrator.task_store import TaskStore


class TaskApi:
    def __init__(self, task_store: TaskStore, host: str = "0.0.0.0", port: int = 8000, enabled: bool = True):
        """Task submission and status API."""
        self.task_store = task_store
        self.host = host
        self.port = int(port)
        self.enabled = enabled
        self.server: uvicorn.Server | None = None
        self.server_task: asyncio.Task[None] | None = None

    def get_router(self) -> APIRouter:
        """Creates and returns a FastAPI router with the task endpoints."""
        router = APIRouter()

        @router.post("/tasks")
        async def submit_task(description: TaskDescription) -> uuid.UUID:
            try:
                task = await self.task_store.create(query_id=description.query_id, ts=description.ts)
            except SnoopyError as exc:
                raise HTTPException(status_code=503, detail=str(exc)) from exc
            return task.id

        @router.get("/tasks/{task_id}")
        async def get_task_status(task_id: uuid.UUID) -> Task:
            task = await self.task_store.get(task_id)
            if task is None:
                return Task.not_found(task_id)
            return task

        @router.get("/tasks")
        async def get_all_tasks() -> list[Task]:
            return await self.task_store.list_tasks()

        return router

    def get_app(self) -> FastAPI:
        app = FastAPI(title="snoopy")
        app.include_router(self.get_router())
        return app

    async def start(self) -> None:
        if not self.enabled:
            logger.warning("Task API is disabled")
            return

        config = uvicorn.Config(
            app=self.get_app(),
            host=self.host,
            port=self.port,
            log_level="info",
            workers=1,
            reload=False,
            loop="asyncio",
        )
        self.server = uvicorn.Server(config)
        self.server_task = asyncio.create_task(self.server.serve())
        logger.info(f"Started task API on {self.host}:{self.port}")

    async def shutdown(self) -> None:
        if self.server is not None:
            self.server.should_exit = True
        if self.server_task is not None:
            await self.server_task
