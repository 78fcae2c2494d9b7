"""
GP51 platform client.

Thin async wrapper over the GP51 ``webapi`` endpoint. Every call is a JSON
POST to ``{base}/webapi?action=<action>&token=<token>``; GP51 answers with
``status == 0`` on success or a ``cause`` string otherwise. Failures are
mapped onto the platform error taxonomy so callers can decide what to retry.
"""
import asyncio
import hashlib
import logging
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.core.exceptions import (
    FatalPlatformError,
    RecordValidationError,
    RetryableError,
    StructuralError,
)
from app.schemas.gp51 import GP51DeviceRecord, GP51DeviceSummary, GP51UserRecord

logger = logging.getLogger("fleetsync.gp51")

# GP51 causes that mean the session or credentials are no longer valid
_AUTH_CAUSES = ("token", "login", "password", "not authorized")


def hash_password(password: str) -> str:
    """GP51 expects the md5 hex digest of the plain password."""
    return hashlib.md5(password.encode("utf-8")).hexdigest()


class GP51Client:
    """Authenticated GP51 API client."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Platform root, e.g. https://www.gps51.com
            username: GP51 admin account
            password: Plain password; hashed before it is sent
            timeout: Per-call timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.base_url = (base_url or settings.GP51_API_BASE_URL).rstrip("/")
        self.username = username if username is not None else settings.GP51_USERNAME
        self._password = password if password is not None else settings.GP51_PASSWORD
        self.timeout = timeout or settings.GP51_REQUEST_TIMEOUT

        self._token: Optional[str] = None
        self._login_lock = asyncio.Lock()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def login(self) -> str:
        """
        Log in and cache the session token.

        Raises:
            FatalPlatformError: If GP51 rejects the credentials
        """
        async with self._login_lock:
            if self._token:
                return self._token

            if not self.username or not self._password:
                raise FatalPlatformError("GP51 credentials are not configured", error_kind="configuration")

            body = await self._post("login", {
                "username": self.username,
                "password": hash_password(self._password),
                "from": "WEB",
                "type": "USER",
            })

            if body.get("status") != 0 or not body.get("token"):
                cause = body.get("cause") or "login rejected"
                logger.error(f"GP51 login failed for {self.username}: {cause}")
                raise FatalPlatformError(f"GP51 login failed: {cause}")

            self._token = body["token"]
            logger.info(f"Logged in to GP51 as {self.username}")
            return self._token

    async def _post(self, action: str, payload: Dict[str, Any], token: Optional[str] = None) -> Dict[str, Any]:
        """POST one action and return the decoded body, classifying transport failures."""
        if not self.base_url:
            raise StructuralError("GP51_API_BASE_URL is not configured")

        params = {"action": action}
        if token:
            params["token"] = token

        try:
            response = await self._client.post("/webapi", params=params, json=payload)
        except httpx.TimeoutException as e:
            raise RetryableError(f"GP51 {action} timed out", error_kind="timeout") from e
        except httpx.TransportError as e:
            raise RetryableError(f"GP51 {action} network error: {e}", error_kind="network") from e

        if response.status_code in (401, 403):
            raise FatalPlatformError(f"GP51 {action} rejected with HTTP {response.status_code}")
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RetryableError(
                f"GP51 {action} rate limited",
                error_kind="rate_limit",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None
            )
        if response.status_code >= 500:
            raise RetryableError(f"GP51 {action} returned HTTP {response.status_code}", error_kind="server_error")
        if response.status_code >= 400:
            raise FatalPlatformError(
                f"GP51 {action} returned HTTP {response.status_code}", error_kind="schema"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise FatalPlatformError(f"GP51 {action} returned a non-JSON body", error_kind="schema") from e

        if not isinstance(body, dict):
            raise FatalPlatformError(f"GP51 {action} returned an unexpected payload", error_kind="schema")
        return body

    async def _call(self, action: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Perform an authenticated action.

        A token-related cause triggers one re-login before it is treated as
        fatal. Any other non-zero status is reported as a record error.
        """
        for attempt in (1, 2):
            token = await self.login()
            body = await self._post(action, payload, token=token)

            if body.get("status") == 0:
                return body

            cause = str(body.get("cause") or f"status {body.get('status')}")
            if any(marker in cause.lower() for marker in _AUTH_CAUSES):
                self._token = None
                if attempt == 1:
                    logger.info(f"GP51 session rejected during {action}, logging in again")
                    continue
                raise FatalPlatformError(f"GP51 {action} rejected: {cause}")

            raise RecordValidationError(f"GP51 {action} failed: {cause}", details={"action": action}, step="fetch")

        raise FatalPlatformError(f"GP51 {action} rejected after re-login")

    async def list_users(self) -> List[str]:
        """Usernames of every account visible to the admin account, in platform order."""
        body = await self._call("queryuserlist", {"username": self.username})
        users = body.get("users")
        if not isinstance(users, list):
            raise FatalPlatformError("queryuserlist payload has no users list", error_kind="schema")

        usernames = []
        for entry in users:
            username = entry.get("username") if isinstance(entry, dict) else None
            if username and username not in usernames:
                usernames.append(username)
        return usernames

    async def list_devices(self, usernames: Optional[List[str]] = None) -> List[GP51DeviceSummary]:
        """
        Devices grouped under each account.

        Args:
            usernames: Accounts to list; defaults to the admin account

        Returns:
            List[GP51DeviceSummary]: Devices in platform order, without duplicates
        """
        devices: List[GP51DeviceSummary] = []
        seen = set()
        for username in usernames or [self.username]:
            for summary in await self.list_account_devices(username):
                if summary.deviceid not in seen:
                    seen.add(summary.deviceid)
                    devices.append(summary)
        return devices

    async def list_account_devices(self, username: str) -> List[GP51DeviceSummary]:
        """Devices of a single account, flattened out of ``groups[].devices[]``."""
        body = await self._call("querymonitorlist", {"username": username})
        groups = body.get("groups")
        if not isinstance(groups, list):
            raise FatalPlatformError("querymonitorlist payload has no groups list", error_kind="schema")

        devices = []
        for group in groups:
            for device in (group or {}).get("devices") or []:
                try:
                    devices.append(GP51DeviceSummary.model_validate(device))
                except PydanticValidationError as e:
                    logger.warning(f"Skipping malformed device entry for {username}: {e}")
        return devices

    async def fetch_record(self, item: Any) -> Union[GP51UserRecord, GP51DeviceRecord]:
        """
        Fetch and validate one work item.

        Args:
            item: Work item with ``kind`` ("user" or "vehicle") and ``identifier``

        Raises:
            RecordValidationError: If GP51 returns a malformed record
        """
        if item.kind == "user":
            body = await self._call("queryuserdetail", {"username": item.identifier})
            payload, model = body.get("user", body), GP51UserRecord
        elif item.kind == "vehicle":
            body = await self._call("querydevicedetail", {"deviceid": item.identifier})
            payload, model = body.get("device", body), GP51DeviceRecord
        else:
            raise RecordValidationError(f"Unknown work item kind: {item.kind}")

        try:
            return model.model_validate(payload)
        except PydanticValidationError as e:
            raise RecordValidationError(
                f"Malformed {item.kind} record {item.identifier}: {e.error_count()} invalid field(s)",
                details={"errors": e.errors(include_url=False, include_context=False, include_input=False)}
            ) from e

    async def ping(self) -> None:
        """Cheap authenticated call used by the health probe."""
        await self._call("queryuserdetail", {"username": self.username})


# Singleton instance
_gp51_client = None

def get_gp51_client() -> GP51Client:
    """Get the process-wide GP51 client, created on first use."""
    global _gp51_client
    if _gp51_client is None:
        _gp51_client = GP51Client()
    return _gp51_client
