import asyncio
from typing import Any, Callable, Optional, Union

import aiohttp
from booking_status_client.errors import TransportError
from booking_status_client.models import (
    BookingStatus,
    ResourceCategory,
    VerificationResult,
)
from loguru import logger

STATUS_PATHS = {
    ResourceCategory.flight: "/products/flights/booking/{reference}/status",
    ResourceCategory.hotel: "/products/hotels/booking/{reference}/status",
    ResourceCategory.visa: "/products/visa/{reference}/status",
    ResourceCategory.insurance: "/products/travel-insurance/policy/status/{reference}",
    ResourceCategory.package: "/products/packages/booking/{reference}/status",
}

VERIFY_PATHS = {
    ResourceCategory.flight: "/products/flights/verify-payment",
    ResourceCategory.hotel: "/products/hotels/verify-payment",
    ResourceCategory.visa: "/products/visa/{resource_id}/verify-payment",
    ResourceCategory.insurance: "/products/travel-insurance/policy/{resource_id}/verify-payment",
    ResourceCategory.package: "/products/packages/verify-payment",
}


class BookingApiClient:
    """aiohttp adapter serving status fetches and payment verification calls.

    Owns one ``aiohttp.ClientSession`` for its lifetime, unless a session is
    passed in, in which case the caller keeps ownership.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.logger = logger
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)

    async def __aenter__(self) -> "BookingApiClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("BookingApiClient is not open; use 'async with'")
        return self._session

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with self.session.request(method, url, **kwargs) as response:
                response.raise_for_status()
                data = await response.json()
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {url}: {e.message}")
            raise TransportError(
                f"HTTP {e.status} from {url}: {e.message}",
                retryable=e.status != 404,
                status=e.status,
            ) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"Request to {url} failed: {e!r}")
            raise TransportError(f"Request to {url} failed: {e!r}") from e

        if not isinstance(data, dict):
            raise TransportError(f"Unexpected response body from {url}: {data!r}")

        # {"success": ..., "message": ..., "data": {...}} envelopes carry the
        # payload in "data"; the outer success flag only describes the request
        inner = data.get("data")
        if isinstance(inner, dict):
            if "message" in data:
                inner.setdefault("message", data["message"])
            return inner
        return data

    async def fetch_status(
        self, category: Union[ResourceCategory, str], reference: str
    ) -> BookingStatus:
        category = ResourceCategory(category)
        path = STATUS_PATHS[category].format(reference=reference)
        data = await self._request("GET", path)
        return BookingStatus.from_payload(data)

    def status_fetcher(
        self, category: Union[ResourceCategory, str]
    ) -> Callable[[str], Any]:
        """Bind a category, giving the one-argument fetcher polling expects"""
        category = ResourceCategory(category)

        async def fetch(reference: str) -> BookingStatus:
            return await self.fetch_status(category, reference)

        return fetch

    async def verify_payment(
        self,
        category: Union[ResourceCategory, str],
        reference: str,
        resource_id: Optional[str] = None,
    ) -> VerificationResult:
        category = ResourceCategory(category)
        if category.requires_resource_id and not resource_id:
            raise TransportError(
                f"{category.value} payment verification requires a resource id",
                retryable=False,
            )
        path = VERIFY_PATHS[category].format(resource_id=resource_id)
        data = await self._request("POST", path, json={"reference": reference})
        return VerificationResult.from_payload(data)
