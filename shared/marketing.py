"""ConvertKit v3 client used to tag onboarded members."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import aiohttp

from shared.config import (
    get_convertkit_api_key,
    get_convertkit_api_secret,
    get_convertkit_form_id,
    get_convertkit_tag_id,
)

__all__ = ["API_BASE", "ConvertKitClient", "MarketingError", "tag_member"]

log = logging.getLogger("pumpkin.marketing")

API_BASE = "https://api.convertkit.com/v3"
_TIMEOUT = aiohttp.ClientTimeout(total=10)


class MarketingError(RuntimeError):
    """Raised when the marketing API answers with a non-2xx status."""

    def __init__(self, status: int, path: str) -> None:
        super().__init__(f"ConvertKit {path} returned HTTP {status}")
        self.status = status
        self.path = path


class ConvertKitClient:
    def __init__(
        self,
        *,
        api_key: str,
        api_secret: str,
        tag_id: str,
        form_id: str,
        session: aiohttp.ClientSession | None = None,
        base_url: str = API_BASE,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.tag_id = tag_id
        self.form_id = form_id
        self.base_url = base_url.rstrip("/")
        self._session = session

    @classmethod
    def from_config(cls, session: aiohttp.ClientSession | None = None) -> "ConvertKitClient":
        return cls(
            api_key=get_convertkit_api_key(),
            api_secret=get_convertkit_api_secret(),
            tag_id=get_convertkit_tag_id(),
            form_id=get_convertkit_form_id(),
            session=session,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.api_secret and self.tag_id and self.form_id)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Mapping[str, Any]:
        url = f"{self.base_url}{path}"
        if self._session is not None:
            return await self._send(self._session, method, url, path, **kwargs)
        async with aiohttp.ClientSession(timeout=_TIMEOUT) as session:
            return await self._send(session, method, url, path, **kwargs)

    async def _send(
        self, session: aiohttp.ClientSession, method: str, url: str, path: str, **kwargs: Any
    ) -> Mapping[str, Any]:
        async with session.request(method, url, **kwargs) as resp:
            if not 200 <= resp.status < 300:
                raise MarketingError(resp.status, path)
            data = await resp.json(content_type=None)
        return data if isinstance(data, Mapping) else {}

    async def fetch_subscriber(self, email: str) -> Optional[Mapping[str, Any]]:
        data = await self._request(
            "GET",
            "/subscribers",
            params={"api_secret": self.api_secret, "email_address": email},
        )
        subscribers = data.get("subscribers") or []
        return subscribers[0] if subscribers else None

    def _credentials(self, email: str) -> dict[str, str]:
        return {"api_key": self.api_key, "api_secret": self.api_secret, "email": email}

    async def subscribe_to_tag(self, email: str) -> None:
        await self._request("POST", f"/tags/{self.tag_id}/subscribe", json=self._credentials(email))

    async def subscribe_to_form(self, email: str) -> None:
        await self._request("POST", f"/forms/{self.form_id}/subscribe", json=self._credentials(email))

    async def tag(self, email: str) -> str:
        """Tag ``email``; existing subscribers get the tag, new ones go through the form.

        Returns ``"tagged"`` or ``"subscribed"``.
        """

        if await self.fetch_subscriber(email):
            await self.subscribe_to_tag(email)
            return "tagged"
        await self.subscribe_to_form(email)
        return "subscribed"


async def tag_member(email: str, *, client: ConvertKitClient | None = None) -> Optional[str]:
    """Tag ``email`` with the configured client; ``None`` when skipped."""

    resolved = client or ConvertKitClient.from_config()
    if not email:
        log.info("marketing tag skipped: account has no email")
        return None
    if not resolved.configured:
        log.info("marketing tag skipped: ConvertKit not configured")
        return None
    outcome = await resolved.tag(email)
    log.info("marketing tag applied", extra={"outcome": outcome})
    return outcome
