from __future__ import annotations

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter


class OracleFeedError(Exception):
    pass


async def fetch_json(url: str, *, headers: dict[str, str] | None = None, params: dict | None = None) -> dict:
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=0.5, max=4),
        retry=retry_if_exception_type((httpx.TransportError, OracleFeedError)),
        reraise=True,
    ):
        with attempt:
            async with httpx.AsyncClient(timeout=10) as client:
                response = await client.get(url, headers=headers, params=params)
                if response.status_code >= 500:
                    raise OracleFeedError(f"Feed error {response.status_code} from {url}")
                response.raise_for_status()
                payload = response.json()
                if not isinstance(payload, dict):
                    raise OracleFeedError(f"Unexpected payload type from {url}")
                return payload
    raise OracleFeedError("Unreachable")
