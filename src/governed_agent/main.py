"""
Governed Agent Client Service

Local HTTP surface over the task orchestrators, so a UI process can watch a governed
task, read its current view and dispatch commands without holding the push channel
itself.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .api_client import TaskEngineClient
from .credentials import CredentialProvider, credential_provider_from_settings
from .errors import StaleModeError
from .event_channel import SSEEventChannel
from .logging_config import configure_logging
from .models import AgentMode
from .orchestrator import GovernedTaskOrchestrator, OrchestratorFactory, OrchestratorRegistry
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


class RequestChangesBody(BaseModel):
    feedback: str
    fromMode: Optional[AgentMode] = None


class NavigateBody(BaseModel):
    mode: AgentMode
    fromMode: Optional[AgentMode] = None


class AnswerBody(BaseModel):
    question: str
    answer: str


class SubmitAnswersBody(BaseModel):
    answers: Optional[Dict[str, str]] = None
    fromMode: Optional[AgentMode] = None


class CommandBody(BaseModel):
    fromMode: Optional[AgentMode] = None


def require_authorization(authorization: Optional[str] = Header(default=None)) -> None:
    """FastAPI dependency enforcing bearer token authentication."""
    token = get_settings().local_auth_token

    # If no token is configured, allow access (development mode)
    if not token:
        return

    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    provided = authorization.split(" ", 1)[1]
    if provided != token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid bearer token")


def get_registry(request: Request) -> OrchestratorRegistry:
    return request.app.state.registry


def get_orchestrator(task_id: str, request: Request) -> GovernedTaskOrchestrator:
    orchestrator = get_registry(request).get(task_id)
    if orchestrator is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Task {task_id} is not being watched")
    return orchestrator


def command_result(orchestrator: GovernedTaskOrchestrator, accepted: bool) -> Dict[str, Any]:
    return {"accepted": accepted, "view": orchestrator.view.to_dict()}


def _default_factory(
    settings: Settings, credentials: CredentialProvider
) -> tuple[OrchestratorFactory, TaskEngineClient, SSEEventChannel]:
    client = TaskEngineClient.from_settings(settings, credentials)
    channel = SSEEventChannel(
        settings.api_base_url,
        credentials,
        settings.stream,
        connect_timeout=settings.connect_timeout,
    )

    def factory(task_id: str) -> GovernedTaskOrchestrator:
        return GovernedTaskOrchestrator(task_id, client, channel)

    return factory, client, channel


def create_app(orchestrator_factory: Optional[OrchestratorFactory] = None) -> FastAPI:
    """Create the local service; a factory may be injected for tests."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        configure_logging()
        settings = get_settings()

        client: Optional[TaskEngineClient] = None
        channel: Optional[SSEEventChannel] = None
        factory = orchestrator_factory
        if factory is None:
            credentials = credential_provider_from_settings(settings)
            factory, client, channel = _default_factory(settings, credentials)

        app.state.registry = OrchestratorRegistry(factory)
        logger.info("Governed agent client started", extra={"api_base_url": settings.api_base_url})

        yield

        await app.state.registry.close()
        if client is not None:
            await client.aclose()
        if channel is not None:
            await channel.aclose()
        logger.info("Governed agent client shutdown")

    app = FastAPI(
        title="Governed Agent Client",
        description="Client-side coordinator for governed agent tasks",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    auth = [Depends(require_authorization)]

    @app.get("/health")
    async def health(request: Request) -> Dict[str, Any]:
        return {"status": "ok", "watchedTasks": get_registry(request).task_ids()}

    @app.post("/tasks/{task_id}/watch", dependencies=auth)
    async def watch_task(task_id: str, request: Request) -> Dict[str, Any]:
        orchestrator = await get_registry(request).watch(task_id)
        return orchestrator.view.to_dict()

    @app.get("/tasks/{task_id}", dependencies=auth)
    async def read_task(task_id: str, request: Request) -> Dict[str, Any]:
        return get_orchestrator(task_id, request).view.to_dict()

    @app.post("/tasks/{task_id}/refresh", dependencies=auth)
    async def refresh_task(task_id: str, request: Request) -> Dict[str, Any]:
        orchestrator = get_orchestrator(task_id, request)
        await orchestrator.refresh()
        return orchestrator.view.to_dict()

    @app.delete("/tasks/{task_id}", dependencies=auth)
    async def stop_task(task_id: str, request: Request) -> Dict[str, Any]:
        stopped = await get_registry(request).stop(task_id)
        if not stopped:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Task {task_id} is not being watched")
        return {"success": True, "taskId": task_id}

    @app.delete("/tasks/{task_id}/error", dependencies=auth)
    async def dismiss_error(task_id: str, request: Request) -> Dict[str, Any]:
        orchestrator = get_orchestrator(task_id, request)
        dismissed = orchestrator.dismiss_error()
        return {"dismissed": dismissed, "view": orchestrator.view.to_dict()}

    @app.put("/tasks/{task_id}/answers", dependencies=auth)
    async def set_answer(task_id: str, body: AnswerBody, request: Request) -> Dict[str, Any]:
        orchestrator = get_orchestrator(task_id, request)
        try:
            orchestrator.set_answer(body.question, body.answer)
        except KeyError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Question is not being asked")
        return orchestrator.view.to_dict()

    async def run_command(orchestrator: GovernedTaskOrchestrator, command, *args, **kwargs) -> Dict[str, Any]:
        try:
            accepted = await command(*args, **kwargs)
        except StaleModeError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        return command_result(orchestrator, accepted)

    @app.post("/tasks/{task_id}/approve", dependencies=auth)
    async def approve(task_id: str, request: Request, body: Optional[CommandBody] = None) -> Dict[str, Any]:
        orchestrator = get_orchestrator(task_id, request)
        from_mode = body.fromMode if body else None
        return await run_command(orchestrator, orchestrator.approve, from_mode)

    @app.post("/tasks/{task_id}/request-plan", dependencies=auth)
    async def request_plan(task_id: str, request: Request, body: Optional[CommandBody] = None) -> Dict[str, Any]:
        orchestrator = get_orchestrator(task_id, request)
        from_mode = body.fromMode if body else None
        return await run_command(orchestrator, orchestrator.request_plan, from_mode)

    @app.post("/tasks/{task_id}/request-changes", dependencies=auth)
    async def request_changes(task_id: str, body: RequestChangesBody, request: Request) -> Dict[str, Any]:
        orchestrator = get_orchestrator(task_id, request)
        return await run_command(orchestrator, orchestrator.request_changes, body.feedback, body.fromMode)

    @app.post("/tasks/{task_id}/go-back", dependencies=auth)
    async def go_back(task_id: str, request: Request, body: Optional[CommandBody] = None) -> Dict[str, Any]:
        orchestrator = get_orchestrator(task_id, request)
        from_mode = body.fromMode if body else None
        return await run_command(orchestrator, orchestrator.go_back, from_mode)

    @app.post("/tasks/{task_id}/navigate", dependencies=auth)
    async def navigate(task_id: str, body: NavigateBody, request: Request) -> Dict[str, Any]:
        orchestrator = get_orchestrator(task_id, request)
        return await run_command(orchestrator, orchestrator.navigate, body.mode, body.fromMode)

    @app.post("/tasks/{task_id}/submit-answers", dependencies=auth)
    async def submit_answers(
        task_id: str, request: Request, body: Optional[SubmitAnswersBody] = None
    ) -> Dict[str, Any]:
        orchestrator = get_orchestrator(task_id, request)
        answers = body.answers if body else None
        from_mode = body.fromMode if body else None
        return await run_command(orchestrator, orchestrator.submit_answers, answers, from_mode)

    logger.info("Governed agent client application created")
    return app


# Convenience function for running the server
def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the governed agent client service directly."""
    import uvicorn

    settings = get_settings()
    app = create_app()
    uvicorn.run(
        app,
        host=host or settings.host,
        port=port or settings.port,
        log_level="info",
    )
