# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Pipeline endpoints."""

import json
from typing import Any, Iterator, Literal

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from tokenpipe.api.middleware import SESSION_HEADER
from tokenpipe.backends.base import BackendOptions, DevicePreference
from tokenpipe.backends.selector import available_devices
from tokenpipe.exceptions import TokenpipeError, ToolResultError
from tokenpipe.models.registry import ModelRegistry
from tokenpipe.pipeline.stream import EventStream
from tokenpipe.pipeline.types import GenerationRequest, SamplingParams, ToolDefinition

router = APIRouter()

_STATUS_FOR_KIND = {
    "not_found": 404,
    "unsupported": 400,
    "resource_exhausted": 507,
    "tool_result": 409,
    "configuration": 400,
}


class GenerateOptions(BaseModel):
    temperature: float = Field(0.7, ge=0)
    top_p: float = Field(1.0, gt=0, le=1)
    top_k: int = Field(0, ge=0)
    max_tokens: int = Field(2048, ge=0)
    stop: list[str] = Field(default_factory=list)
    seed: int | None = None
    logprobs: bool = False


class GenerateRequest(BaseModel):
    model: str | None = None
    prompt: str
    stream: bool = True
    options: GenerateOptions = Field(default_factory=GenerateOptions)
    tools: list[dict[str, Any]] = Field(default_factory=list)
    device: Literal["auto", "cpu", "gpu"] = "auto"
    quantization: str | None = None
    memory_limit: int | None = Field(None, gt=0)
    tool_timeout: float | None = Field(None, gt=0)


class ToolResultRequest(BaseModel):
    call_id: str
    result: Any = None
    error: str | None = None


def _get_state():
    """Import state lazily to avoid circular imports."""
    from tokenpipe.api.server import state

    return state


def _http_error(error: TokenpipeError) -> HTTPException:
    return HTTPException(
        status_code=_STATUS_FOR_KIND.get(error.kind, 500),
        detail={"kind": error.kind, "reason": str(error)},
    )


def _to_generation_request(req: GenerateRequest) -> GenerationRequest:
    try:
        tools = tuple(ToolDefinition.from_openai(t) for t in req.tools)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    opts = req.options
    return GenerationRequest(
        prompt=req.prompt,
        model_id=req.model or "",
        sampling=SamplingParams(
            temperature=opts.temperature,
            top_p=opts.top_p,
            top_k=opts.top_k,
            max_tokens=opts.max_tokens,
            stop=tuple(opts.stop),
            seed=opts.seed,
            logprobs=opts.logprobs,
        ),
        tools=tools,
        options=BackendOptions(
            device_preference=DevicePreference(req.device),
            quantization=req.quantization,
            memory_limit=req.memory_limit,
        ),
        tool_timeout=req.tool_timeout,
    )


def _ndjson(stream: EventStream) -> Iterator[str]:
    try:
        yield json.dumps({"type": "session", "session_id": stream.session_id}) + "\n"
        for event in stream:
            yield json.dumps(event.to_dict()) + "\n"
    finally:
        # Client went away or the stream ended; either way nothing keeps running
        stream.close()


@router.post("/api/generate")
def api_generate(req: GenerateRequest):
    pipeline = _get_state().get_pipeline()
    request = _to_generation_request(req)

    if req.stream:
        stream = pipeline.submit(request)
        return StreamingResponse(
            _ndjson(stream),
            media_type="application/x-ndjson",
            headers={SESSION_HEADER: stream.session_id},
        )

    if request.tools:
        raise HTTPException(
            status_code=400, detail="Requests with tools must use stream=true to receive tool calls"
        )
    result = pipeline.generate(request)
    if result.error is not None:
        raise _http_error(result.error)
    return {
        "model": request.model_id or pipeline.default_model,
        "text": result.text,
        "finish_reason": result.finish_reason,
        "usage": {
            "prompt_tokens": result.usage.prompt_tokens,
            "completion_tokens": result.usage.completion_tokens,
        },
        "logprobs": result.logprobs if request.sampling.logprobs else None,
    }


@router.post("/api/sessions/{session_id}/tool_results")
def api_tool_result(session_id: str, body: ToolResultRequest):
    stream = _get_state().get_pipeline().get_stream(session_id)
    if stream is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    try:
        stream.submit_tool_result(body.call_id, result=body.result, error=body.error)
    except ToolResultError as e:
        raise _http_error(e) from None
    return {"session_id": session_id, "call_id": body.call_id, "accepted": True}


@router.delete("/api/sessions/{session_id}")
def api_cancel(session_id: str):
    stream = _get_state().get_pipeline().get_stream(session_id)
    if stream is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    stream.cancel("Cancelled via API")
    return {"session_id": session_id, "cancelled": True}


@router.get("/api/models")
def api_models():
    state = _get_state()
    loaded = state.pipeline.cache.loaded() if state.pipeline else []
    loaded_ids = {h.model_id for h in loaded}
    registry = ModelRegistry()
    return {
        "models": [
            {
                "name": m.name,
                "alias": m.alias,
                "format": m.format,
                "size": m.size_bytes,
                "quantization": m.quantization,
                "context_length": m.context_length,
                "loaded": m.name in loaded_ids or (m.alias is not None and m.alias in loaded_ids),
            }
            for m in registry.list_all()
        ],
        "loaded": [
            {
                "model_id": h.model_id,
                "backend": h.backend.name,
                "kind": h.backend_kind.value,
                "quantization": h.key.quantization,
                "active_sessions": h.active_sessions,
            }
            for h in loaded
        ],
    }


@router.get("/api/devices")
def api_devices():
    return {
        "devices": [
            {
                "kind": d.kind.value,
                "device": d.device,
                "memory_budget": d.memory_budget,
                "shared_pool": d.shared_pool,
            }
            for d in available_devices()
        ]
    }
