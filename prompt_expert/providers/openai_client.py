"""OpenAI 兼容接口适配器（chat/completions）。

- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

只依赖公共字段：model/messages/temperature/max_tokens/top_p/tools。
合并的 tool_result 消息在这里展开成若干条 role="tool" 消息。
"""

import json
from typing import Any, Dict, List

import httpx

from prompt_expert.config.settings import settings
from prompt_expert.domain.exceptions import ApiError, AuthenticationError, NetworkError, RateLimitError
from prompt_expert.domain.models import ChatChoice, ChatMessage, ChatRequest, ChatResult, ChatUsage
from prompt_expert.providers.registry import OPENAI_CONFIG, ModelConfig
from prompt_expert.tools.definitions import ToolCall, ToolDef


class OpenAICompatibleClient:
    """OpenAI 兼容 Provider 客户端实现。"""

    name = "openai"

    def __init__(self, cfg=settings):
        self._settings = cfg

    async def chat(self, req: ChatRequest) -> ChatResult:
        api_key = getattr(self._settings, "openai_api_key", None)
        if not api_key:
            raise AuthenticationError(code="MISSING_API_KEY", message="OPENAI_API_KEY not set", http_status=401)
        model_cfg = OPENAI_CONFIG.model(req.model)
        payload = self._build_payload(req, model_cfg)
        base = getattr(self._settings, "openai_base_url", None) or OPENAI_CONFIG.base_url
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(
                    f"{base.rstrip('/')}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)
        if resp.status_code in (401, 403):
            raise AuthenticationError(code="AUTH_FAILED", message=resp.text, http_status=resp.status_code)
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="OpenAI-compatible rate limit", http_status=429)
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
        msgs: List[Dict[str, Any]] = []
        if req.system:
            msgs.append({"role": "system", "content": req.system})
        for m in req.messages:
            msgs.extend(self._message_to_payload(m))
        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": msgs,
            "temperature": req.temperature if req.temperature is not None else model_cfg.default_temperature,
            "max_tokens": req.max_tokens or model_cfg.max_tokens,
            "stream": False,
        }
        if req.top_p is not None:
            payload["top_p"] = req.top_p
        if req.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            payload["tool_choice"] = req.tool_choice
        return payload

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        choices: list[ChatChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            msg = ch.get("message") or {}
            cm = self._build_chat_message(msg)
            choices.append(ChatChoice(index=i, message=cm, finish_reason=ch.get("finish_reason")))
        usage_raw = data.get("usage") or {}
        usage = ChatUsage(
            prompt_tokens=usage_raw.get("prompt_tokens", 0),
            completion_tokens=usage_raw.get("completion_tokens", 0),
            total_tokens=usage_raw.get("total_tokens", 0),
        )
        texts = [c.message.content for c in choices[:1] if c.message.content]
        return ChatResult(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=usage,
            raw=data,
            text_segments=texts,
        )

    def _build_chat_message(self, payload: Dict[str, Any]) -> ChatMessage:
        """解析 message，兼容 tool_calls/function_call。"""

        content = payload.get("content") or ""
        tool_calls: List[ToolCall] = []
        for idx, call in enumerate(payload.get("tool_calls") or []):
            func = call.get("function") or {}
            tool_calls.append(
                ToolCall(
                    id=call.get("id") or f"tool_call_{idx}",
                    name=func.get("name") or call.get("name") or "",
                    arguments=self._parse_arguments(func.get("arguments")),
                )
            )

        function_call = payload.get("function_call")
        if function_call:
            tool_calls.append(
                ToolCall(
                    id=function_call.get("id") or "function_call",
                    name=function_call.get("name") or "",
                    arguments=self._parse_arguments(function_call.get("arguments")),
                )
            )

        return ChatMessage(role="assistant", content=content, tool_calls=tool_calls or None)

    def _message_to_payload(self, message: ChatMessage) -> List[Dict[str, Any]]:
        if message.role == "tool_result":
            return [
                {"role": "tool", "tool_call_id": r.call_id, "content": r.content}
                for r in (message.tool_results or [])
            ]
        payload: Dict[str, Any] = {"role": message.role, "content": message.content or None}
        if message.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for call in message.tool_calls
            ]
        if message.tool_call_id:
            payload["tool_call_id"] = message.tool_call_id
        return [payload]

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters_schema(),
            },
        }

    @staticmethod
    def _parse_arguments(raw: Any) -> Dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                return {"_raw": raw}
            return parsed if isinstance(parsed, dict) else {"_raw": raw}
        return {}
