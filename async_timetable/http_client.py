"""HTTP client for the timetable control plane."""

from typing import Any, Dict, List, Optional

import aiohttp

from async_timetable.errors import AuthTokenError, RemoteHttpError
from async_timetable.models import CommandKind


class TimetableHttpClient:
    """HTTP client for calling a timetable control plane."""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 5.0,
    ):
        """
        Initialize HTTP client.

        Args:
            base_url: Base URL of the control plane (e.g., "https://timetable.internal")
            auth_token: Optional auth token for X-Timetable-Token header
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["X-Timetable-Token"] = self.auth_token
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Send a request and decode the JSON response.

        Raises:
            AuthTokenError: If the control plane rejects the token
            RemoteHttpError: If the HTTP request fails
        """
        url = f"{self.base_url}{path}"

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.request(
                    method, url, json=json_body, params=params, headers=self._headers()
                ) as resp:
                    response_body = await resp.text()

                    if resp.status == 401:
                        raise AuthTokenError(f"Failed to {action}: invalid or missing auth token")

                    if resp.status >= 400:
                        raise RemoteHttpError(
                            status_code=resp.status,
                            message=f"Failed to {action}: {response_body}",
                            response_body=response_body,
                        )

                    return await resp.json()

            except aiohttp.ClientError as e:
                raise RemoteHttpError(
                    status_code=0,
                    message=f"Network error: {str(e)}",
                ) from e

    async def add_job(
        self,
        *,
        name: str,
        command: str,
        schedule: Optional[str] = None,
        parameters: Any = None,
        kind: CommandKind = CommandKind.SQL,
        client_name: Optional[str] = None,
        max_instances: Optional[int] = None,
        live: bool = True,
        self_destruct: bool = False,
        ignore_errors: bool = True,
        exclusive: bool = False,
    ) -> int:
        """
        Add a one-task chain via HTTP API.

        Returns:
            The created chain ID

        Raises:
            RemoteHttpError: If the HTTP request fails
        """
        request_body = {
            "name": name,
            "schedule": schedule,
            "command": command,
            "parameters": parameters,
            "kind": CommandKind(kind).value,
            "live": live,
            "self_destruct": self_destruct,
            "ignore_errors": ignore_errors,
            "exclusive": exclusive,
        }
        if client_name:
            request_body["client_name"] = client_name
        if max_instances is not None:
            request_body["max_instances"] = max_instances

        data = await self._request("POST", "/chains/jobs", "add job", json_body=request_body)
        return data["chain_id"]

    async def get_chain(self, chain_id: int) -> Dict[str, Any]:
        """Get chain details by ID."""
        return await self._request("GET", f"/chains/{chain_id}", "get chain")

    async def list_chains(
        self, *, live_only: bool = False, client_name: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        params = {"live_only": "true" if live_only else "false"}
        if client_name:
            params["client_name"] = client_name
        return await self._request("GET", "/chains", "list chains", params=params)

    async def delete_job(self, name: str) -> bool:
        data = await self._request("DELETE", f"/chains/by-name/{name}", "delete job")
        return data["deleted"]

    async def start_chain(self, chain_id: int, worker_name: str) -> Dict[str, Any]:
        """Ask ``worker_name`` to start a chain now."""
        return await self._request(
            "POST",
            f"/chains/{chain_id}/start",
            "start chain",
            json_body={"worker_name": worker_name},
        )

    async def stop_chain(self, chain_id: int, worker_name: str) -> Dict[str, Any]:
        """Ask ``worker_name`` to stop a running chain."""
        return await self._request(
            "POST",
            f"/chains/{chain_id}/stop",
            "stop chain",
            json_body={"worker_name": worker_name},
        )

    async def add_task(
        self,
        kind: CommandKind,
        command: str,
        parent_id: int,
        order_delta: float = 10.0,
    ) -> int:
        data = await self._request(
            "POST",
            "/tasks",
            "add task",
            json_body={
                "kind": CommandKind(kind).value,
                "command": command,
                "parent_id": parent_id,
                "order_delta": order_delta,
            },
        )
        return data["task_id"]

    async def move_task_up(self, task_id: int) -> bool:
        data = await self._request("POST", f"/tasks/{task_id}/move-up", "move task")
        return data["moved"]

    async def move_task_down(self, task_id: int) -> bool:
        data = await self._request("POST", f"/tasks/{task_id}/move-down", "move task")
        return data["moved"]

    async def delete_task(self, task_id: int) -> bool:
        data = await self._request("DELETE", f"/tasks/{task_id}", "delete task")
        return data["deleted"]
