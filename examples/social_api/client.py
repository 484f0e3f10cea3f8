"""
Publishing a post through a flaky social platform API.

Each platform gets its own circuit breaker from the registry; every request
runs under the jittered social_api retry profile, and the breaker sits
outside the retries so one exhausted request counts as one failure.

Run with:
    OPENAI_BREAKER_TIMEOUT=30 python client.py
"""

import asyncio
from pathlib import Path

import aiohttp

from backstop import (
    CircuitBreakerOpenError,
    CircuitBreakerRegistry,
    get_logger,
    load_config,
    setup_logging_from_config,
    with_retry_and_jitter,
)
from backstop.observability import configure_metrics

logger = get_logger("backstop.examples.social_api")


class SocialClient:
    def __init__(self, base_url: str, config_dir: Path):
        self.base_url = base_url
        self.config = load_config(config_dir)
        self.retry_options = self.config.retry_options("social_api")
        self.breakers = CircuitBreakerRegistry.from_config(self.config)
        self.session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> "SocialClient":
        self.session = aiohttp.ClientSession(base_url=self.base_url)
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self.session is not None:
            await self.session.close()

    async def _post(self, path: str, payload: dict) -> dict:
        assert self.session is not None
        async with self.session.post(path, json=payload) as response:
            # 429/5xx become aiohttp.ClientResponseError, which backstop classifies by status
            response.raise_for_status()
            return await response.json()

    async def publish(self, platform: str, account_id: str, body: str) -> dict | None:
        breaker = self.breakers.get(platform)

        async def attempt() -> dict:
            return await self._post(f"/{platform}/accounts/{account_id}/posts", {"body": body})

        try:
            return await breaker.execute(
                lambda: with_retry_and_jitter(attempt, self.retry_options, name=f"publish:{platform}")
            )
        except CircuitBreakerOpenError as e:
            logger.warning(f"{platform} temporarily unavailable, retry after {e.retry_after}")
            return None


async def main() -> None:
    config_dir = Path(__file__).parent
    async with SocialClient("http://localhost:8080", config_dir) as client:
        setup_logging_from_config(client.config.data)
        configure_metrics(client.config.data)
        result = await client.publish("twitter", "acct-42", "Hello from backstop")
        logger.info(f"Publish result: {result}")


if __name__ == "__main__":
    asyncio.run(main())
