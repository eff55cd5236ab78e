"""
Fallback route: ComfyUI workflow over HTTP.

HTTP calls use a ``requests.Session`` in a worker thread; the wait between
history polls is an ``asyncio.sleep`` so the executor can cancel the call
between polls. Failures are reported with reasons that the fallback
allow-list understands (gpu, memory, workflow, resource).
"""

from __future__ import annotations

import copy
import json
import uuid
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import requests

from ..config import BackendConfig
from ..errors import PermanentBackendFailure, TransientBackendFailure
from ..models import GenerationOutcome, GenerationRequest, Route
from .base import GenerationBackend

logger = logging.getLogger("ghostguard.backends.comfyui")

ROUTE = Route.FALLBACK.value


class ComfyUIBackend(GenerationBackend):
    name = "comfyui"

    def __init__(
        self,
        base_url: str,
        workflow: Dict[str, Any],
        prompt_node: str,
        image_node: Optional[str] = None,
        seed_node: Optional[str] = None,
        poll_interval: float = 1.0,
        session: Optional[requests.Session] = None,
        request_timeout: float = 30.0,
    ):
        if prompt_node not in workflow:
            raise ValueError(f"prompt node {prompt_node!r} not in workflow")
        self.base_url = base_url.rstrip("/")
        self.workflow = workflow
        self.prompt_node = prompt_node
        self.image_node = image_node
        self.seed_node = seed_node
        self.poll_interval = poll_interval
        self.session = session or requests.Session()
        self.request_timeout = request_timeout

    @classmethod
    def from_workflow_file(
        cls,
        path: Union[str, Path],
        prompt_node: str,
        config: Optional[BackendConfig] = None,
        **kwargs: Any,
    ) -> "ComfyUIBackend":
        config = config or BackendConfig()
        workflow = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls(config.comfyui_url, workflow, prompt_node, poll_interval=config.comfyui_poll_interval, **kwargs)

    async def generate(self, request: GenerationRequest) -> GenerationOutcome:
        workflow = self._build_workflow(request)
        prompt_id = await asyncio.to_thread(self._queue_prompt, workflow)
        logger.info(f"ComfyUI queued prompt {prompt_id} for session {request.session_id or '-'}")

        while True:
            entry = await asyncio.to_thread(self._history, prompt_id)
            if entry is not None:
                status = entry.get("status", {})
                if status.get("status_str") == "error":
                    return GenerationOutcome.failed(f"workflow error: {self._error_text(status)}")
                images = self._output_images(entry)
                if images:
                    data = await asyncio.to_thread(self._get_image, images[0])
                    logger.info(f"✅ ComfyUI returned {images[0].get('filename')} ({len(data)} bytes)")
                    return GenerationOutcome.ok({
                        "image_bytes": data,
                        "mime_type": "image/png",
                        "prompt_id": prompt_id,
                    })
                if status.get("completed"):
                    return GenerationOutcome.failed("workflow error: completed without output images")
            await asyncio.sleep(self.poll_interval)

    def _build_workflow(self, request: GenerationRequest) -> Dict[str, Any]:
        workflow = copy.deepcopy(self.workflow)
        workflow[self.prompt_node]["inputs"]["text"] = request.prompt
        if self.image_node and request.reference_images:
            workflow[self.image_node]["inputs"]["image"] = request.reference_images[0]
        if self.seed_node and "seed" in request.options:
            workflow[self.seed_node]["inputs"]["seed"] = int(request.options["seed"])
        return workflow

    def _queue_prompt(self, workflow: Dict[str, Any]) -> str:
        payload = {"prompt": workflow, "client_id": str(uuid.uuid4())}
        response = self._call("post", "/prompt", json=payload)
        if response.status_code >= 500:
            raise TransientBackendFailure(f"resource unavailable: ComfyUI returned {response.status_code}", ROUTE)
        if response.status_code != 200:
            raise PermanentBackendFailure(f"workflow rejected: {response.text[:500]}", ROUTE)
        return response.json()["prompt_id"]

    def _history(self, prompt_id: str) -> Optional[Dict[str, Any]]:
        response = self._call("get", f"/history/{prompt_id}")
        if response.status_code != 200:
            return None
        return response.json().get(prompt_id)

    def _get_image(self, image_info: Dict[str, Any]) -> bytes:
        params = {
            "filename": image_info["filename"],
            "subfolder": image_info.get("subfolder", ""),
            "type": image_info.get("type", "output"),
        }
        response = self._call("get", "/view", params=params)
        if response.status_code != 200:
            raise TransientBackendFailure(f"resource unavailable: image download returned {response.status_code}", ROUTE)
        return response.content

    def _call(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        try:
            return self.session.request(method, f"{self.base_url}{path}", timeout=self.request_timeout, **kwargs)
        except requests.Timeout as e:
            raise TransientBackendFailure(f"timeout contacting ComfyUI: {e}", ROUTE, e) from e
        except requests.RequestException as e:
            raise TransientBackendFailure(f"resource unavailable: {e}", ROUTE, e) from e

    @staticmethod
    def _output_images(entry: Dict[str, Any]) -> List[Dict[str, Any]]:
        for node_output in entry.get("outputs", {}).values():
            if node_output.get("images"):
                return node_output["images"]
        return []

    @staticmethod
    def _error_text(status: Dict[str, Any]) -> str:
        for message in status.get("messages", []):
            if len(message) == 2 and message[0] == "execution_error":
                detail = message[1]
                return f"{detail.get('exception_type', 'error')}: {detail.get('exception_message', '')}".strip()
        return "execution failed"

    async def aclose(self):
        self.session.close()
