import json
import logging
from typing import List, Optional

import httpx

from rank_gateway.errors import ExternalServiceFailure, NotFound

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
CSRF_URL = "https://auth.roblox.com/v2/logout"
SAFE_METHODS = ("GET", "HEAD", "OPTIONS")


class RobloxAPIError(ExternalServiceFailure):
    def __init__(self, upstream_status: int, message: str):
        self.upstream_status = upstream_status
        super().__init__("external_service_failure", f"Roblox API Error {upstream_status}: {message}")

    def payload(self) -> dict:
        body = super().payload()
        body["upstream_status"] = self.upstream_status
        return body


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("errors", [{}])[0].get("message", response.text)
    except (json.JSONDecodeError, IndexError, KeyError, AttributeError):
        return response.text


class RobloxClient:
    """Thin async wrapper over the Roblox web endpoints the gateway needs.

    Mutating calls need an ``x-csrf-token``. Roblox hands one out as a 403 on
    the logout endpoint, and rotates it every few minutes, so a rejected token
    is refreshed and the request retried exactly once.
    """

    def __init__(self, cookie: str, timeout: float = 30.0):
        self._csrf_token: Optional[str] = None
        self._session = httpx.AsyncClient(
            cookies={".ROBLOSECURITY": cookie},
            headers={"User-Agent": USER_AGENT, "Accept": "application/json, text/plain, */*"},
            timeout=timeout,
            follow_redirects=True,
            http2=True,
        )
        logging.info("RobloxClient initialized.")

    async def aclose(self): await self._session.aclose()

    async def _get_csrf_token(self):
        logging.info("Attempting to refresh CSRF token...")
        try:
            response = await self._session.post(CSRF_URL)
        except httpx.RequestError as e:
            raise RobloxAPIError(503, f"Network error when trying to get CSRF token: {e}")
        if response.status_code == 403 and "x-csrf-token" in response.headers:
            self._csrf_token = response.headers["x-csrf-token"]
            logging.info("Successfully refreshed CSRF token.")
        else:
            raise RobloxAPIError(response.status_code, f"Failed to get CSRF token. Unexpected response: {response.text}")

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers", {}))
        if method not in SAFE_METHODS and self._csrf_token:
            headers["x-csrf-token"] = self._csrf_token
        try:
            return await self._session.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as e:
            raise RobloxAPIError(503, f"Network error calling {url}: {e}")

    async def request(self, method: str, url: str, **kwargs):
        method = method.upper()
        if method not in SAFE_METHODS and self._csrf_token is None:
            await self._get_csrf_token()

        response = await self._send(method, url, **kwargs)
        if response.status_code == 403 and "x-csrf-token" in response.headers and method not in SAFE_METHODS:
            logging.warning("CSRF token validation failed. Retrying with a new token...")
            self._csrf_token = response.headers["x-csrf-token"]
            response = await self._send(method, url, **kwargs)

        if response.is_error:
            raise RobloxAPIError(response.status_code, _error_message(response))
        if not response.text: return None
        return response.json()

    async def get_authenticated_user(self) -> dict:
        response = await self.request("GET", "https://users.roblox.com/v1/users/authenticated")
        if not response or not response.get("id"):
            raise RobloxAPIError(401, "Could not retrieve authenticated user. The ROBLOSECURITY cookie might be invalid or expired.")
        return response

    async def get_roles(self, group_id: int) -> List[dict]:
        """Roles of the group, ascending by rank."""
        logging.info(f"Fetching all roles for group {group_id}.")
        response = await self.request("GET", f"https://groups.roblox.com/v1/groups/{group_id}/roles")
        if not response or "roles" not in response:
            raise RobloxAPIError(502, "Roles response was empty or malformed.")
        return sorted(response["roles"], key=lambda r: r.get("rank", 0))

    async def get_role_in_group(self, group_id: int, user_id: int) -> dict:
        """The user's role in the group; non-members come back as Guest (rank 0)."""
        logging.info(f"Fetching current role for user {user_id} in group {group_id}.")
        try:
            response = await self.request("GET", f"https://groups.roblox.com/v2/users/{user_id}/groups/roles")
        except RobloxAPIError as e:
            if e.upstream_status == 400:
                raise NotFound("user_not_found", f"User with ID {user_id} does not exist.")
            raise
        for group_data in (response or {}).get("data", []):
            if group_data.get("group", {}).get("id") == group_id and group_data.get("role"):
                return group_data["role"]
        return {"name": "Guest", "rank": 0}

    async def set_rank(self, group_id: int, user_id: int, role_id: int):
        logging.info(f"Setting role {role_id} for user {user_id} in group {group_id}.")
        await self.request("PATCH", f"https://groups.roblox.com/v1/groups/{group_id}/users/{user_id}", json={"roleId": role_id})

    async def get_id_from_username(self, username: str) -> int:
        logging.info(f"Resolving username '{username}' to ID...")
        payload = {"usernames": [username], "excludeBannedUsers": True}
        response = await self.request("POST", "https://users.roblox.com/v1/usernames/users", json=payload)
        if response and response.get("data"):
            return response["data"][0]["id"]
        raise NotFound("user_not_found", f"User with username '{username}' not found.")

    async def get_username_from_id(self, user_id: int) -> str:
        try:
            response = await self.request("GET", f"https://users.roblox.com/v1/users/{user_id}")
        except RobloxAPIError as e:
            if e.upstream_status == 404:
                raise NotFound("user_not_found", f"User with ID {user_id} does not exist.")
            raise
        return response["name"]

    async def get_thumbnail(self, user_id: int, size: str = "150x150") -> Optional[str]:
        url = f"https://thumbnails.roblox.com/v1/users/avatar-headshot?userIds={user_id}&size={size}&format=Png&isCircular=true"
        response = await self.request("GET", url)
        data = (response or {}).get("data") or [{}]
        return data[0].get("imageUrl")
