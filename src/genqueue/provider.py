"""HTTP client for the external asynchronous generation provider."""

import logging
from typing import Any

import httpx

from .config import Config
from .exceptions import ProviderSubmissionError

logger = logging.getLogger(__name__)


class HttpProviderClient:
    """Submits jobs to a fal.ai-style queue API.

    ``POST {base_url}/{model_identifier}?fal_webhook={callback_url}`` with the
    model input as JSON; the response carries the ``request_id`` that the
    provider later echoes back in its webhook.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url: str = (base_url or Config.PROVIDER_BASE_URL).rstrip("/")
        self.api_key: str = api_key if api_key is not None else Config.PROVIDER_API_KEY
        self.timeout: float = timeout or Config.PROVIDER_TIMEOUT_SECONDS
        self._client: httpx.AsyncClient | None = client

    async def submit(
        self, model_identifier: str, payload: dict[str, Any], callback_url: str
    ) -> str:
        """Submit a generation job.

        Args:
            model_identifier: Provider-side model path (e.g. ``fal-ai/nano-banana``)
            payload: Opaque parameter payload; ``provider_input`` is sent
                as-is when present, otherwise the whole payload
            callback_url: Webhook address for the completion notification

        Returns:
            Provider correlation token

        Raises:
            ProviderSubmissionError: On transport errors, non-2xx responses
                or a response without ``request_id``
        """
        body = payload.get("provider_input") or payload
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Key {self.api_key}"

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.post(
                f"{self.base_url}/{model_identifier}",
                params={"fal_webhook": callback_url},
                json=body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise ProviderSubmissionError(f"Submission to {model_identifier} failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code >= 400:
            raise ProviderSubmissionError(
                f"Provider rejected {model_identifier} with HTTP {response.status_code}: "
                f"{response.text[:300]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderSubmissionError(f"Provider returned invalid JSON for {model_identifier}") from e
        if not isinstance(data, dict):
            raise ProviderSubmissionError(
                f"Provider response for {model_identifier} is not a JSON object"
            )

        request_id = data.get("request_id")
        if not request_id:
            raise ProviderSubmissionError(f"Provider response for {model_identifier} has no request_id")

        logger.debug(f"Provider accepted {model_identifier} as {request_id}")
        return str(request_id)
