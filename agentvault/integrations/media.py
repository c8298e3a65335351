"""Media generation adapters: FAL and ModelsLab."""

from collections.abc import Mapping
from typing import Any

from agentvault.integrations.base import HttpIntegration, IntegrationResult, endpoint

FAL_BASE_URL = "https://fal.run"
MODELSLAB_BASE_URL = "https://modelslab.com/api/v6"

FAL_MODELS = {
    "image": "fal-ai/flux/dev",
    "audio": "fal-ai/stable-audio",
    "video": "fal-ai/fast-svd",
}

# Options consumed here and not forwarded to the provider.
_LOCAL_OPTIONS = frozenset({"media_kind", "model"})


def _provider_options(options: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in options.items() if k not in _LOCAL_OPTIONS}


class FalIntegration(HttpIntegration):
    """Synchronous FAL run: POST https://fal.run/<model> with the prompt."""

    name = "fal"

    async def invoke(
        self,
        credentials: Mapping[str, Any],
        input: str,
        options: Mapping[str, Any],
    ) -> IntegrationResult:
        kind = options.get("media_kind") or "image"
        model = options.get("model") or FAL_MODELS.get(kind, FAL_MODELS["image"])
        body = await self._post_json(
            f"{FAL_BASE_URL}/{model}",
            {"prompt": input, **_provider_options(options)},
            credentials,
            headers={"Authorization": f"Key {credentials['apiKey']}"},
        )
        media: list[Any] = []
        for key in ("images", "videos", "audio"):
            value = body.get(key)
            if isinstance(value, list):
                media.extend(value)
            elif isinstance(value, dict):
                media.append(value)
        for key in ("video", "audio_file"):
            if isinstance(body.get(key), dict):
                media.append(body[key])

        return IntegrationResult(
            success=True,
            type="media",
            text=f"Generated {kind}",
            media=media,
            metadata={"provider": self.name, "model": model, "request_id": body.get("request_id")},
        )


class ModelsLabIntegration(HttpIntegration):
    """ModelsLab text-to-video. The API key travels in the JSON body."""

    name = "modelslab"

    async def invoke(
        self,
        credentials: Mapping[str, Any],
        input: str,
        options: Mapping[str, Any],
    ) -> IntegrationResult:
        base = endpoint(credentials, MODELSLAB_BASE_URL)
        body = await self._post_json(
            f"{base}/video/text2video",
            {**_provider_options(options), "key": credentials["apiKey"], "prompt": input},
            credentials,
        )
        status = body.get("status")
        output = body.get("output") or []
        return IntegrationResult(
            success=status in ("success", "processing"),
            type="media",
            text="Video generated" if status == "success" else f"Video request {status or 'unknown'}",
            media=output if isinstance(output, list) else [output],
            metadata={"provider": self.name, "status": status, "request_id": body.get("id")},
        )
