"""
CLI Client for the Task Orchestrator Admin API

Create, inspect and manage tasks and agents from the command line.
"""

import argparse
import json
import os
import sys
import time
from typing import Any, Dict, Optional

import httpx

DEFAULT_API_URL = "http://localhost:8000"
TERMINAL_STATUSES = ("completed", "failed", "cancelled")


class AdminClient:
    """Thin synchronous client for the admin API"""

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        headers = {"X-Admin-API-Key": api_key} if api_key else {}
        self.client = httpx.Client(base_url=api_url, headers=headers, timeout=30.0, transport=transport)

    def request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None, **params) -> Any:
        """
        Send a request and return the decoded JSON body.

        Raises:
            httpx.HTTPStatusError: For 4xx/5xx responses
        """
        response = self.client.request(
            method,
            path,
            json=body,
            params={key: value for key, value in params.items() if value is not None}
        )
        response.raise_for_status()
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def close(self) -> None:
        self.client.close()


def poll_task(
    client: AdminClient,
    task_id: str,
    interval: float = 2.0,
    timeout: float = 600.0
) -> Dict[str, Any]:
    """
    Poll a task until it reaches a terminal status or the timeout passes.

    Args:
        client: Admin API client
        task_id: Task to watch
        interval: Polling interval in seconds
        timeout: Max time to wait in seconds

    Returns:
        The last task record fetched
    """
    start_time = time.time()
    last = None

    while True:
        task = client.request("GET", f"/tasks/{task_id}")
        state = (task["status"], task["progress"])
        if state != last:
            print(f"Status: {task['status']} ({task['progress']}%)")
            last = state

        if task["status"] in TERMINAL_STATUSES:
            return task

        if time.time() - start_time > timeout:
            print(f"\nTimeout after {timeout:.0f}s")
            return task

        time.sleep(interval)


def format_task(task: Dict[str, Any]) -> None:
    print("\n" + "=" * 60)
    print(f"Task {task['id']}: {task['title']}")
    print("=" * 60)
    print(f"Type: {task['type']}  Priority: {task['priority']}  Status: {task['status']}")
    print(f"Progress: {task['progress']}%")
    if task.get("assigned_to"):
        print(f"Assigned to: {task['assigned_to']}")
    if task.get("result"):
        print(f"\nSummary: {task['result']['summary']}")
        if task["result"].get("output"):
            print("\nOutput:")
            print(task["result"]["output"])
    if task.get("error"):
        print(f"\nError: {task['error']}")
    print("=" * 60)


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CLI client for the Task Orchestrator admin API")
    parser.add_argument("--api-url", default=os.getenv("ORCHESTRATOR_API_URL", DEFAULT_API_URL))
    parser.add_argument("--api-key", default=os.getenv("ADMIN_API_KEY"), help="Admin API key")

    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create a task")
    create.add_argument("title")
    create.add_argument("description")
    create.add_argument("--type", required=True)
    create.add_argument("--priority", default="medium")
    create.add_argument("--repository")
    create.add_argument("--branch")
    create.add_argument("--file", dest="file_paths", action="append")
    create.add_argument("--tag", dest="tags", action="append")
    create.add_argument("--assign", action="store_true", help="Assign immediately")
    create.add_argument("--watch", action="store_true", help="Poll until the task finishes")

    tasks = commands.add_parser("tasks", help="List tasks")
    tasks.add_argument("--status")
    tasks.add_argument("--type")
    tasks.add_argument("--limit", type=int)

    show = commands.add_parser("show", help="Show a task")
    show.add_argument("task_id")

    watch = commands.add_parser("watch", help="Poll a task until it finishes")
    watch.add_argument("task_id")
    watch.add_argument("--interval", type=float, default=2.0)
    watch.add_argument("--timeout", type=float, default=600.0)

    assign = commands.add_parser("assign", help="Assign a pending task")
    assign.add_argument("task_id")
    assign.add_argument("--agent")

    cancel = commands.add_parser("cancel", help="Cancel a task")
    cancel.add_argument("task_id")
    cancel.add_argument("--reason")

    commands.add_parser("next", help="Assign the next task in the queue")

    agents = commands.add_parser("agents", help="List agents")
    agents.add_argument("--status")

    register = commands.add_parser("register", help="Register an agent")
    register.add_argument("name")
    register.add_argument("--capability", "-c", dest="capabilities", action="append", required=True)

    remove = commands.add_parser("remove", help="Deregister an agent")
    remove.add_argument("agent_id")

    metrics = commands.add_parser("metrics", help="Show agent metrics")
    metrics.add_argument("agent_id")

    commands.add_parser("sweep", help="Run an agent health sweep")
    commands.add_parser("stats", help="Show orchestrator statistics")
    commands.add_parser("health", help="Check service health")

    return parser


def run(args: argparse.Namespace, client: AdminClient) -> None:
    """Execute one parsed command"""
    if args.command == "create":
        body = {
            "title": args.title,
            "description": args.description,
            "type": args.type,
            "priority": args.priority,
            "repository": args.repository,
            "branch": args.branch,
            "file_paths": args.file_paths,
            "tags": args.tags,
            "auto_assign": args.assign,
        }
        task = client.request("POST", "/tasks", {k: v for k, v in body.items() if v is not None})
        print(f"Created task {task['id']} ({task['status']})")
        if args.watch:
            format_task(poll_task(client, task["id"]))

    elif args.command == "tasks":
        for task in client.request("GET", "/tasks", status=args.status, type=args.type, limit=args.limit):
            print(f"{task['id']}  {task['status']:<12} {task['priority']:<9} {task['type']:<14} {task['title']}")

    elif args.command == "show":
        format_task(client.request("GET", f"/tasks/{args.task_id}"))

    elif args.command == "watch":
        format_task(poll_task(client, args.task_id, args.interval, args.timeout))

    elif args.command == "assign":
        task = client.request("POST", f"/tasks/{args.task_id}/assign", {"agent_id": args.agent})
        print(f"Task {task['id']}: {task['status']} (agent: {task.get('assigned_to') or '-'})")

    elif args.command == "cancel":
        task = client.request("POST", f"/tasks/{args.task_id}/cancel", {"reason": args.reason})
        print(f"Task {task['id']} cancelled: {task['error']}")

    elif args.command == "next":
        result = client.request("POST", "/tasks/process-next")
        if result["assigned"]:
            print(f"Assigned task {result['task']['id']} to {result['task']['assigned_to']}")
        else:
            print("No task could be assigned")

    elif args.command == "agents":
        for agent in client.request("GET", "/agents", status=args.status):
            print(
                f"{agent['id']}  {agent['status']:<8} {agent['name']:<20} "
                f"success={agent['success_rate']:.0f}% done={agent['total_tasks_completed']}"
            )

    elif args.command == "register":
        agent = client.request("POST", "/agents", {"name": args.name, "capabilities": args.capabilities})
        print(f"Registered agent {agent['id']} ({agent['name']})")

    elif args.command == "remove":
        client.request("DELETE", f"/agents/{args.agent_id}")
        print(f"Agent {args.agent_id} deregistered")

    elif args.command == "metrics":
        print_json(client.request("GET", f"/agents/{args.agent_id}/metrics"))

    elif args.command == "sweep":
        result = client.request("POST", "/agents/health-sweep")
        print(f"{result['count']} agents marked offline")

    elif args.command == "stats":
        print_json(client.request("GET", "/stats"))

    elif args.command == "health":
        print_json(client.request("GET", "/health"))


def main():
    """Main CLI entry point"""
    args = build_parser().parse_args()
    client = AdminClient(args.api_url, args.api_key)

    try:
        run(args, client)
    except httpx.HTTPStatusError as e:
        try:
            detail = e.response.json()
        except ValueError:
            detail = e.response.text
        print(f"Error {e.response.status_code}: {json.dumps(detail) if isinstance(detail, dict) else detail}")
        sys.exit(1)
    except httpx.HTTPError as e:
        print(f"Error contacting API: {e}")
        sys.exit(1)
    finally:
        client.close()


if __name__ == "__main__":
    main()
