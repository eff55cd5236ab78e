"""
Unit tests for the generation backends (Gemini Flash and ComfyUI).
"""

import httpx
import json
import pytest
import requests
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from google.genai import errors as genai_errors

from ghostguard.backends.comfyui import ComfyUIBackend
from ghostguard.backends.gemini_flash import GeminiFlashBackend
from ghostguard.config import BackendConfig, RetryConfig
from ghostguard.errors import ConfigError, PermanentBackendFailure, TransientBackendFailure
from ghostguard.models import GenerationOutcome, GenerationRequest, Route
from ghostguard.steps.step2_route_selector import RouteSelector
from ghostguard.steps.step3_bounded_retry import BoundedRetryExecutor


def gemini_response(parts=None, candidates=None, feedback=None):
    if candidates is None:
        candidates = [SimpleNamespace(content=SimpleNamespace(parts=parts or []), finish_reason="STOP")]
    return SimpleNamespace(candidates=candidates, prompt_feedback=feedback)


def image_part(data=b"\x89PNG fake", mime="image/png"):
    return SimpleNamespace(inline_data=SimpleNamespace(data=data, mime_type=mime), text=None)


def text_part(text):
    return SimpleNamespace(inline_data=None, text=text)


@pytest.fixture
def genai_client():
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock()
    return client


@pytest.fixture
def text_request():
    return GenerationRequest(prompt="ghost mannequin, " + "detail " * 200, session_id="s1")


class TestGeminiFlashBackend:
    """Response parsing and error mapping for the primary route."""

    @pytest.mark.asyncio
    async def test_returns_image(self, genai_client, text_request):
        genai_client.aio.models.generate_content.return_value = gemini_response([text_part("here"), image_part()])
        backend = GeminiFlashBackend(genai_client, model="test-model")

        outcome = await backend.generate(text_request)

        assert outcome.success
        assert outcome.result["image_bytes"] == b"\x89PNG fake"
        assert outcome.result["mime_type"] == "image/png"
        kwargs = genai_client.aio.models.generate_content.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["config"].response_modalities == ["IMAGE", "TEXT"]

    @pytest.mark.asyncio
    async def test_retry_trims_prompt(self, genai_client, text_request):
        genai_client.aio.models.generate_content.return_value = gemini_response([image_part()])
        backend = GeminiFlashBackend(genai_client, max_prompt_chars=50)

        await backend.generate(text_request.with_options(retry=True))

        contents = genai_client.aio.models.generate_content.call_args.kwargs["contents"]
        assert len(contents[0].parts[-1].text) == 50

    @pytest.mark.asyncio
    async def test_reference_image_file(self, genai_client, sample_image, temp_dir):
        path = temp_dir / "garment.png"
        sample_image.save(path)
        genai_client.aio.models.generate_content.return_value = gemini_response([image_part()])

        await GeminiFlashBackend(genai_client).generate(GenerationRequest("prompt", (str(path),)))

        contents = genai_client.aio.models.generate_content.call_args.kwargs["contents"]
        assert len(contents[0].parts) == 2
        assert contents[0].parts[0].inline_data.mime_type == "image/png"

    @pytest.mark.asyncio
    async def test_missing_reference_is_permanent(self, genai_client, generation_request):
        with pytest.raises(PermanentBackendFailure):
            await GeminiFlashBackend(genai_client).generate(generation_request)
        genai_client.aio.models.generate_content.assert_not_called()

    @pytest.mark.asyncio
    async def test_text_only_is_quality_failure(self, genai_client, text_request):
        genai_client.aio.models.generate_content.return_value = gemini_response([text_part("cannot draw that")])

        outcome = await GeminiFlashBackend(genai_client).generate(text_request)

        assert not outcome.success
        assert outcome.error_details == "quality failure: no image in response"

    @pytest.mark.asyncio
    async def test_blocked_prompt_is_policy_violation(self, genai_client, text_request):
        genai_client.aio.models.generate_content.return_value = gemini_response(
            candidates=[], feedback=SimpleNamespace(block_reason="SAFETY")
        )

        outcome = await GeminiFlashBackend(genai_client).generate(text_request)
        assert outcome.error_details.startswith("policy violation")

    @pytest.mark.asyncio
    async def test_empty_response(self, genai_client, text_request):
        genai_client.aio.models.generate_content.return_value = gemini_response(candidates=[])

        outcome = await GeminiFlashBackend(genai_client).generate(text_request)
        assert outcome.error_details == "quality failure: empty response"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, genai_client, text_request):
        genai_client.aio.models.generate_content.side_effect = genai_errors.ServerError(
            503, {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}}
        )

        with pytest.raises(TransientBackendFailure, match="api failure"):
            await GeminiFlashBackend(genai_client).generate(text_request)

    @pytest.mark.asyncio
    async def test_quota_is_transient(self, genai_client, text_request):
        genai_client.aio.models.generate_content.side_effect = genai_errors.ClientError(
            429, {"error": {"code": 429, "message": "quota", "status": "RESOURCE_EXHAUSTED"}}
        )

        with pytest.raises(TransientBackendFailure, match="quota"):
            await GeminiFlashBackend(genai_client).generate(text_request)

    @pytest.mark.asyncio
    async def test_bad_request_is_permanent(self, genai_client, text_request):
        genai_client.aio.models.generate_content.side_effect = genai_errors.ClientError(
            400, {"error": {"code": 400, "message": "invalid argument", "status": "INVALID_ARGUMENT"}}
        )

        with pytest.raises(PermanentBackendFailure):
            await GeminiFlashBackend(genai_client).generate(text_request)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        httpx.ConnectError("connection refused"),
        httpx.ReadTimeout("read timed out"),
        httpx.RemoteProtocolError("peer closed connection"),
    ])
    async def test_transport_errors_are_transient(self, genai_client, text_request, error):
        genai_client.aio.models.generate_content.side_effect = error

        with pytest.raises(TransientBackendFailure, match="network transport error"):
            await GeminiFlashBackend(genai_client).generate(text_request)

    @pytest.mark.asyncio
    async def test_connection_drop_retries_then_falls_back(self, genai_client, text_request, scripted_backend):
        genai_client.aio.models.generate_content.side_effect = httpx.ConnectError("connection refused")
        fallback = scripted_backend(GenerationOutcome.ok("comfy image"))
        executor = BoundedRetryExecutor(
            {Route.PRIMARY: GeminiFlashBackend(genai_client), Route.FALLBACK: fallback},
            RetryConfig(delay_ms=0),
        )

        result = await executor.execute(RouteSelector().decide(), text_request)

        assert result.success
        assert result.fallback_triggered
        assert result.result == "comfy image"
        assert genai_client.aio.models.generate_content.await_count == 2
        assert result.attempts[0].retryable

    def test_from_env(self):
        with patch("ghostguard.backends.gemini_flash.genai.Client") as mock_client:
            backend = GeminiFlashBackend.from_env(BackendConfig(gemini_model="custom-model"))

        mock_client.assert_called_once_with(api_key="test-api-key")
        assert backend.model == "custom-model"

    def test_from_env_without_key(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        with pytest.raises(ConfigError):
            GeminiFlashBackend.from_env()


WORKFLOW = {
    "6": {"class_type": "CLIPTextEncode", "inputs": {"text": ""}},
    "10": {"class_type": "LoadImage", "inputs": {"image": ""}},
    "3": {"class_type": "KSampler", "inputs": {"seed": 0}},
}


def http_response(status_code=200, payload=None, content=b""):
    response = MagicMock(status_code=status_code, content=content, text=json.dumps(payload or {}))
    response.json.return_value = payload or {}
    return response


def comfy_session(history, queue_status=200):
    """Session whose /history responses are played back in order."""
    session = MagicMock(spec=requests.Session)
    history = list(history)

    def request(method, url, **kwargs):
        if url.endswith("/prompt"):
            return http_response(queue_status, {"prompt_id": "abc"})
        if "/history/" in url:
            return http_response(200, history.pop(0) if len(history) > 1 else history[0])
        if url.endswith("/view"):
            return http_response(200, content=b"comfy png")
        raise AssertionError(f"unexpected call {method} {url}")

    session.request.side_effect = request
    return session


DONE = {"abc": {
    "status": {"status_str": "success", "completed": True, "messages": []},
    "outputs": {"9": {"images": [{"filename": "ghost_0001.png", "subfolder": "", "type": "output"}]}},
}}


class TestComfyUIBackend:
    """Queue, poll and download against the ComfyUI HTTP API."""

    @pytest.mark.asyncio
    async def test_generates_image(self, generation_request):
        session = comfy_session([{}, DONE])
        backend = ComfyUIBackend(
            "http://comfy:8188/", WORKFLOW, "6", image_node="10", seed_node="3",
            poll_interval=0, session=session,
        )

        outcome = await backend.generate(generation_request.with_options(seed=7))

        assert outcome.success
        assert outcome.result["image_bytes"] == b"comfy png"
        assert outcome.result["prompt_id"] == "abc"

        method, url = session.request.call_args_list[0].args
        queued = session.request.call_args_list[0].kwargs["json"]["prompt"]
        assert (method, url) == ("post", "http://comfy:8188/prompt")
        assert queued["6"]["inputs"]["text"] == generation_request.prompt
        assert queued["10"]["inputs"]["image"] == "garment.jpg"
        assert queued["3"]["inputs"]["seed"] == 7
        assert WORKFLOW["6"]["inputs"]["text"] == ""

    @pytest.mark.asyncio
    async def test_workflow_error(self, generation_request):
        failed = {"abc": {"status": {
            "status_str": "error",
            "completed": False,
            "messages": [["execution_error", {"exception_type": "OOM", "exception_message": "CUDA out of memory"}]],
        }, "outputs": {}}}
        backend = ComfyUIBackend("http://comfy:8188", WORKFLOW, "6", poll_interval=0, session=comfy_session([failed]))

        outcome = await backend.generate(generation_request)

        assert not outcome.success
        assert outcome.error_details == "workflow error: OOM: CUDA out of memory"

    @pytest.mark.asyncio
    async def test_completed_without_images(self, generation_request):
        empty = {"abc": {"status": {"status_str": "success", "completed": True}, "outputs": {}}}
        backend = ComfyUIBackend("http://comfy:8188", WORKFLOW, "6", poll_interval=0, session=comfy_session([empty]))

        outcome = await backend.generate(generation_request)
        assert outcome.error_details == "workflow error: completed without output images"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, generation_request):
        backend = ComfyUIBackend("http://comfy:8188", WORKFLOW, "6", session=comfy_session([DONE], queue_status=503))

        with pytest.raises(TransientBackendFailure, match="resource unavailable"):
            await backend.generate(generation_request)

    @pytest.mark.asyncio
    async def test_rejected_workflow_is_permanent(self, generation_request):
        backend = ComfyUIBackend("http://comfy:8188", WORKFLOW, "6", session=comfy_session([DONE], queue_status=400))

        with pytest.raises(PermanentBackendFailure, match="workflow rejected"):
            await backend.generate(generation_request)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, generation_request):
        session = MagicMock(spec=requests.Session)
        session.request.side_effect = requests.ConnectionError("refused")
        backend = ComfyUIBackend("http://comfy:8188", WORKFLOW, "6", session=session)

        with pytest.raises(TransientBackendFailure, match="resource unavailable"):
            await backend.generate(generation_request)

    def test_unknown_prompt_node(self):
        with pytest.raises(ValueError):
            ComfyUIBackend("http://comfy:8188", WORKFLOW, "99")

    def test_from_workflow_file(self, temp_dir):
        path = temp_dir / "workflow.json"
        path.write_text(json.dumps(WORKFLOW), encoding="utf-8")

        backend = ComfyUIBackend.from_workflow_file(path, "6", BackendConfig(comfyui_url="http://gpu:8188/"))

        assert backend.base_url == "http://gpu:8188"
        assert backend.workflow == WORKFLOW

    @pytest.mark.asyncio
    async def test_aclose_closes_session(self):
        session = MagicMock(spec=requests.Session)
        await ComfyUIBackend("http://comfy:8188", WORKFLOW, "6", session=session).aclose()
        session.close.assert_called_once()
