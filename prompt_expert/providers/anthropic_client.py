"""Anthropic Messages API 适配器。

- URL: {base_url}/v1/messages
- 认证: x-api-key: <api_key>，anthropic-version 请求头

工具调用以 content block 形式往返：assistant 消息里的 tool_use，
以及 user 消息里的 tool_result（同一轮的所有结果合并在一条消息中）。
"""

from typing import Any, Dict, List

import httpx

from prompt_expert.config.settings import settings
from prompt_expert.domain.exceptions import ApiError, AuthenticationError, NetworkError, RateLimitError
from prompt_expert.domain.models import ChatChoice, ChatMessage, ChatRequest, ChatResult, ChatUsage
from prompt_expert.providers.registry import ANTHROPIC_CONFIG, ModelConfig
from prompt_expert.tools.definitions import ToolCall, ToolDef, ToolResult

_TOOL_CHOICE = {"auto": {"type": "auto"}, "required": {"type": "any"}, "none": {"type": "none"}}


class AnthropicClient:
    """Anthropic Provider 客户端实现。"""

    name = "anthropic"

    def __init__(self, cfg=settings):
        self._settings = cfg

    async def chat(self, req: ChatRequest) -> ChatResult:
        api_key = getattr(self._settings, "anthropic_api_key", None)
        if not api_key:
            raise AuthenticationError(code="MISSING_API_KEY", message="ANTHROPIC_API_KEY not set", http_status=401)
        model_cfg = ANTHROPIC_CONFIG.model(req.model)
        payload = self._build_payload(req, model_cfg)
        base = getattr(self._settings, "anthropic_base_url", None) or ANTHROPIC_CONFIG.base_url
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(
                    f"{base.rstrip('/')}/v1/messages",
                    json=payload,
                    headers={
                        "x-api-key": api_key,
                        "anthropic-version": getattr(self._settings, "anthropic_version", "2023-06-01"),
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)
        if resp.status_code in (401, 403):
            raise AuthenticationError(code="AUTH_FAILED", message=resp.text, http_status=resp.status_code)
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Anthropic rate limit", http_status=429)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(code="INVALID_RESPONSE", message=f"Response is not valid JSON: {e}", http_status=502)
        if not isinstance(data, dict):
            raise ApiError(code="INVALID_RESPONSE", message="Response JSON is not an object", http_status=502)
        return self._parse_response(data, req)

    # ---- 辅助方法 ----

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> dict:
        system_parts = [req.system] if req.system else []
        msgs: List[Dict[str, Any]] = []
        for m in req.messages:
            if m.role == "system":
                system_parts.append(m.content)
                continue
            msgs.append(self._message_to_payload(m))
        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "max_tokens": req.max_tokens or model_cfg.max_tokens,
            "temperature": req.temperature if req.temperature is not None else model_cfg.default_temperature,
            "messages": msgs,
        }
        if req.top_p is not None:
            payload["top_p"] = req.top_p
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if req.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            payload["tool_choice"] = _TOOL_CHOICE.get(req.tool_choice, {"type": "auto"})
        return payload

    def _message_to_payload(self, message: ChatMessage) -> Dict[str, Any]:
        if message.role == "tool_result":
            return {
                "role": "user",
                "content": [self._tool_result_block(r) for r in (message.tool_results or [])],
            }
        if message.role == "tool":
            return {
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.content,
                }],
            }
        if message.role == "assistant" and message.tool_calls:
            blocks: List[Dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls:
                blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
            return {"role": "assistant", "content": blocks}
        return {"role": message.role, "content": message.content}

    @staticmethod
    def _tool_result_block(result: ToolResult) -> Dict[str, Any]:
        block: Dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": result.call_id,
            "content": result.content,
        }
        if not result.success:
            block["is_error"] = True
        return block

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        return {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.parameters_schema(),
        }

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        texts: List[str] = []
        tool_calls: List[ToolCall] = []
        for idx, block in enumerate(data.get("content") or []):
            kind = block.get("type")
            if kind == "text":
                texts.append(block.get("text") or "")
            elif kind == "tool_use":
                raw_input = block.get("input")
                tool_calls.append(
                    ToolCall(
                        id=block.get("id") or f"tool_use_{idx}",
                        name=block.get("name") or "",
                        arguments=raw_input if isinstance(raw_input, dict) else {},
                    )
                )
        message = ChatMessage(
            role="assistant",
            content="\n".join(t for t in texts if t),
            tool_calls=tool_calls or None,
        )
        usage_raw = data.get("usage") or {}
        prompt_tokens = usage_raw.get("input_tokens", 0)
        completion_tokens = usage_raw.get("output_tokens", 0)
        return ChatResult(
            provider=self.name,
            model=req.model,
            choices=[ChatChoice(index=0, message=message, finish_reason=data.get("stop_reason"))],
            usage=ChatUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            raw=data,
            text_segments=texts,
        )
