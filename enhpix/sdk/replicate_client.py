"""
Replicate inference provider.

Creates upscaling predictions over the Replicate HTTP API and polls them.
"""

import asyncio
from typing import Any, Dict, Optional

import httpx

from ..config.loader import InferenceSettings
from ..core.errors import ProviderError
from ..core.providers import (
    InferenceProvider,
    Prediction,
    PredictionStatus,
    Sleep,
    SimulatedProvider,
    SourceImage,
)
from ..observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0


class ReplicateProvider:
    """Real inference provider backed by Replicate.

    Replicate upscaling models accept at most 4x per call.
    """
    name = "replicate"
    simulated = False
    max_scale = 4

    def __init__(
        self,
        api_token: str,
        api_base: str = "https://api.replicate.com/v1",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the provider.

        Args:
            api_token: Replicate API token (required)
            api_base: API root URL
            http_client: Client to reuse (one is created when omitted)

        Raises:
            ValueError: If api_token is missing/empty
        """
        if not api_token or not api_token.strip():
            raise ValueError("api_token is required and cannot be empty")
        self.api_base = api_base.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_token}"}
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()

    async def create_prediction(self, image: SourceImage, scale: int, model: str) -> Prediction:
        """Start an upscaling prediction.

        Args:
            image: Image to enhance, sent inline as a data URL
            scale: Upscaling factor
            model: "owner/name:version" model reference

        Raises:
            ProviderError: If the request fails or is rejected
        """
        version = model.split(":", 1)[1] if ":" in model else model
        payload = {"version": version, "input": {"image": image.to_data_url(), "scale": scale}}
        logger.info("creating_replicate_prediction", model=model, scale=scale, file_size_bytes=image.size_bytes)
        data = await self._request("POST", "/predictions", json=payload)
        prediction = _parse_prediction(data)
        logger.info("replicate_prediction_created", prediction_id=prediction.id, status=prediction.status.value)
        return prediction

    async def get_prediction(self, prediction_id: str) -> Prediction:
        """Fetch the current state of a prediction.

        Raises:
            ProviderError: If the request fails or is rejected
        """
        data = await self._request("GET", f"/predictions/{prediction_id}")
        return _parse_prediction(data)

    async def cancel_prediction(self, prediction_id: str) -> None:
        """Ask Replicate to stop a prediction.

        Raises:
            ProviderError: If the request fails or is rejected
        """
        await self._request("POST", f"/predictions/{prediction_id}/cancel")
        logger.info("replicate_prediction_canceled", prediction_id=prediction_id)

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self.http_client.request(
                method, f"{self.api_base}{path}", json=json, headers=self._headers
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            detail = _error_detail(e.response)
            logger.error(
                "replicate_request_rejected",
                path=path,
                status_code=e.response.status_code,
                detail=detail,
            )
            raise ProviderError(detail) from e
        except httpx.HTTPError as e:
            logger.error("replicate_request_failed", path=path, error=str(e), error_type=type(e).__name__)
            raise ProviderError(f"Replicate request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Replicate returned invalid JSON: {e}") from e


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"Replicate returned HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return f"Replicate returned HTTP {response.status_code}"


def _parse_prediction(data: Dict[str, Any]) -> Prediction:
    try:
        status = PredictionStatus(data["status"])
        prediction_id = data["id"]
    except (KeyError, ValueError, TypeError) as e:
        raise ProviderError(f"Unexpected prediction payload: {e}") from e

    output = data.get("output")
    # Some models return a list of files
    if isinstance(output, list):
        output = output[0] if output else None

    error = data.get("error")
    return Prediction(
        id=prediction_id,
        status=status,
        output=output,
        error=str(error) if error else None,
    )


def select_provider(settings: InferenceSettings, sleep: Sleep = asyncio.sleep) -> InferenceProvider:
    """Pick the provider variant once, from the configured credentials.

    Missing credentials are a configuration problem that is logged, and
    the simulated provider is used instead.
    """
    if settings.has_credentials:
        return ReplicateProvider(settings.api_token, api_base=settings.api_base)
    logger.warning(
        "inference_credentials_missing",
        fallback="simulation",
        detail="REPLICATE_API_TOKEN is not set; results will be simulated",
    )
    return SimulatedProvider(sleep=sleep)
