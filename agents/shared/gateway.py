"""
Execution Gateway Client

Spawns, polls and cancels remote sub-agent sessions over HTTP.
The orchestrator only depends on the ExecutionGateway interface; the HTTP
client is the production implementation.
"""

import os
import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

import httpx

from agents.shared.schemas import GatewayStatus, SubAgentConfig, Task, TaskType
from orchestrator.errors import GatewayError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "kimi-code/kimi-for-coding"
DEFAULT_TOOLS = ["read", "write", "edit", "exec", "web_search", "web_fetch"]

# Sub-agent presets per task type. Types without a preset use the code preset.
SPECIALIZED_CONFIGS: Dict[TaskType, SubAgentConfig] = {
    TaskType.CODE: SubAgentConfig(
        model=DEFAULT_MODEL, thinking="high", timeout=900,
        tools=["read", "write", "edit", "exec", "web_search"],
    ),
    TaskType.BUGFIX: SubAgentConfig(
        model=DEFAULT_MODEL, thinking="high", timeout=600,
        tools=["read", "write", "edit", "exec", "web_search"],
    ),
    TaskType.REVIEW: SubAgentConfig(
        model=DEFAULT_MODEL, thinking="medium", timeout=300,
        tools=["read", "web_search"],
    ),
    TaskType.DEPLOY: SubAgentConfig(
        model=DEFAULT_MODEL, thinking="low", timeout=300,
        tools=["read", "exec", "web_search"],
    ),
    TaskType.DOCUMENTATION: SubAgentConfig(
        model=DEFAULT_MODEL, thinking="medium", timeout=400,
        tools=["read", "write", "edit", "web_search"],
    ),
}


def sub_agent_config_for(task: Task) -> SubAgentConfig:
    """
    Resolve the sub-agent config for a task.

    Starts from the preset for the task's type and applies any fields set in
    the task's own sub_agent_config.
    """
    preset = SPECIALIZED_CONFIGS.get(task.type, SPECIALIZED_CONFIGS[TaskType.CODE])
    if task.sub_agent_config is None:
        return preset.model_copy()
    overrides = task.sub_agent_config.model_dump(exclude_none=True)
    return preset.model_copy(update=overrides)


def format_task_for_agent(task: Task) -> str:
    """Render the markdown brief handed to the sub-agent"""
    sections = [
        f"# Task: {task.title}",
        "",
        "## Description",
        task.description,
        "",
        "## Requirements",
        f"- Task ID: {task.id}",
        f"- Type: {task.type.value}",
        f"- Priority: {task.priority.value}",
    ]

    if task.repository:
        sections.append(f"- Repository: {task.repository}")
    if task.branch:
        sections.append(f"- Branch: {task.branch}")
    if task.file_paths:
        sections.append(f"- Related Files: {', '.join(task.file_paths)}")
    if task.related_issues:
        sections.append("- Related Issues: " + ", ".join(f"#{n}" for n in task.related_issues))

    sections.extend([
        "",
        "## Instructions",
        "1. Read the relevant files to understand the codebase",
        "2. Implement the required changes",
        "3. Test your changes if possible",
        "4. Commit with a descriptive message",
        "5. Report your findings and actions taken",
    ])
    return "\n".join(sections)


def build_spawn_request(task: Task, workdir: str) -> Dict[str, Any]:
    """Build the JSON body for a spawn call"""
    config = sub_agent_config_for(task)
    return {
        "task": format_task_for_agent(task),
        "model": config.model or DEFAULT_MODEL,
        "thinking": config.thinking or "medium",
        "timeout": config.timeout or 600,
        "tools": config.tools or list(DEFAULT_TOOLS),
        "workdir": workdir,
    }


class ExecutionGateway(ABC):
    """Interface to the service that runs sub-agent sessions"""

    @abstractmethod
    async def spawn(self, task: Task) -> str:
        """Start a remote session for a task and return its external id"""

    @abstractmethod
    async def poll(self, external_session_id: str) -> GatewayStatus:
        """Fetch the current status of a remote session"""

    @abstractmethod
    async def cancel(self, external_session_id: str) -> None:
        """Ask the gateway to stop a remote session"""

    async def health_check(self) -> Dict[str, Any]:
        return {"healthy": True}

    async def close(self) -> None:
        return None


class ExecutionGatewayClient(ExecutionGateway):
    """
    HTTP client for the execution gateway.

    All transport and HTTP status failures are raised as GatewayError.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        poll_timeout: float = 10.0,
        workdir: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize gateway client.

        Args:
            base_url: Gateway URL (defaults to EXECUTION_GATEWAY_URL env var)
            api_key: Bearer token (defaults to EXECUTION_GATEWAY_API_KEY env var)
            timeout: Timeout in seconds for spawn and cancel calls
            poll_timeout: Timeout in seconds for status polls
            workdir: Working directory for sub-agents (defaults to WORKSPACE_DIR env var)
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = (base_url or os.getenv("EXECUTION_GATEWAY_URL", "http://localhost:3001")).rstrip("/")
        self.api_key = api_key if api_key is not None else os.getenv("EXECUTION_GATEWAY_API_KEY", "")
        self.timeout = timeout
        self.poll_timeout = poll_timeout
        self.workdir = workdir or os.getenv("WORKSPACE_DIR", "/workspace")

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
            transport=transport
        )

        logger.info(f"Execution gateway client initialized: base_url={self.base_url}")

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            raise GatewayError(
                f"Gateway returned {e.response.status_code} for {method} {path}",
                status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Gateway request {method} {path} failed: {e}") from e

    @staticmethod
    def _json_object(response: httpx.Response, what: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError(f"Gateway {what} response is not JSON: {response.text[:200]!r}") from e
        if not isinstance(data, dict):
            raise GatewayError(f"Gateway {what} response must be a JSON object, got {type(data).__name__}")
        return data

    async def spawn(self, task: Task) -> str:
        request = build_spawn_request(task, self.workdir)
        logger.info(f"Spawning sub-agent for task {task.id} (type: {task.type.value}, model: {request['model']})")

        response = await self._request("POST", "/api/sessions/spawn", json=request)
        data = self._json_object(response, "spawn")
        external_id = data.get("sessionId") or data.get("id")
        if not external_id:
            raise GatewayError(f"Gateway spawn response for task {task.id} has no session id")

        logger.info(f"Sub-agent spawned for task {task.id}: {external_id}")
        return str(external_id)

    async def poll(self, external_session_id: str) -> GatewayStatus:
        response = await self._request(
            "GET",
            f"/api/sessions/{external_session_id}",
            timeout=self.poll_timeout
        )
        data = self._json_object(response, "status")
        return GatewayStatus(
            status=str(data.get("status") or "running"),
            output=data.get("output"),
            error=data.get("error"),
            completed_at=data.get("completedAt")
        )

    async def cancel(self, external_session_id: str) -> None:
        await self._request("POST", f"/api/sessions/{external_session_id}/cancel", json={})
        logger.info(f"Session cancelled on gateway: {external_session_id}")

    async def health_check(self) -> Dict[str, Any]:
        try:
            response = await self.client.get("/health", timeout=5.0)
        except httpx.HTTPError as e:
            return {"healthy": False, "error": str(e)}

        version = None
        if response.status_code == 200:
            try:
                version = self._json_object(response, "health").get("version")
            except GatewayError:
                version = None
        return {"healthy": response.status_code == 200, "version": version}

    async def close(self) -> None:
        await self.client.aclose()
