import json
import re

import requests
from requests.exceptions import ConnectionError, ConnectTimeout, HTTPError, Timeout

from backend.config import get_float, get_str

OPENROUTER_URL = get_str("OPENROUTER_URL", "https://openrouter.ai/api/v1/chat/completions")
DEFAULT_MODEL = "openai/gpt-4o-mini"
LLM_CONNECT_TIMEOUT = get_float("LLM_CONNECT_TIMEOUT", 10.0)
LLM_TIMEOUT = get_float("LLM_TIMEOUT", 120.0)

API_KEY_SETTING = "openrouter_api_key"
MODEL_SETTING = "openrouter_model"

_FENCE_RE = re.compile(r"```(?:json)?(.*?)```", flags=re.S)


class LLMError(Exception):
    pass


class LLMUnavailable(LLMError):
    pass


def get_api_key(store) -> str:
    try:
        key = store.get_setting(API_KEY_SETTING)
    except Exception as e:
        print(f"LLM_SETTINGS_ERROR key={API_KEY_SETTING} err={str(e)[:200]}")
        key = None
    return (key or get_str("OPENROUTER_API_KEY", "") or "").strip()


def get_model(store) -> str:
    try:
        model = store.get_setting(MODEL_SETTING)
    except Exception as e:
        print(f"LLM_SETTINGS_ERROR key={MODEL_SETTING} err={str(e)[:200]}")
        model = None
    return (model or get_str("OPENROUTER_MODEL", DEFAULT_MODEL) or DEFAULT_MODEL).strip()


def extract_json_block(text: str) -> str:
    """Strip a markdown code fence around a JSON payload, if there is one."""
    text = (text or "").strip()
    m = _FENCE_RE.search(text)
    if m:
        text = m.group(1)
    return text.strip()


class ChatClient:
    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = OPENROUTER_URL,
        session: requests.Session | None = None,
        timeout: tuple[float, float] | None = None,
    ):
        self.api_key = api_key
        self.model = model or DEFAULT_MODEL
        self.base_url = base_url
        self.session = session or requests.Session()
        self.timeout = timeout or (LLM_CONNECT_TIMEOUT, LLM_TIMEOUT)

    def _post(self, messages: list[dict], stream: bool) -> requests.Response:
        payload = {"model": self.model, "messages": messages}
        if stream:
            payload["stream"] = True
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        try:
            resp = self.session.post(
                self.base_url,
                json=payload,
                headers=headers,
                timeout=self.timeout,
                stream=stream,
            )
            resp.raise_for_status()
            return resp
        except (ConnectTimeout, ConnectionError) as e:
            raise LLMUnavailable(f"llm_connection_error: {e}") from e
        except HTTPError as e:
            status = getattr(getattr(e, "response", None), "status_code", None)
            body = ""
            if e.response is not None:
                body = (e.response.text or "")[:300]
            raise LLMError(f"llm_http_error status={status}: {body}") from e
        except Timeout as e:
            raise LLMUnavailable(f"llm_timeout: {e}") from e

    def complete(self, messages: list[dict]) -> str:
        resp = self._post(messages, stream=False)
        try:
            data = resp.json() or {}
        except ValueError as e:
            raise LLMError(f"llm_invalid_response: {e}") from e
        choices = data.get("choices") or []
        if not choices:
            raise LLMError("llm_no_choices")
        return ((choices[0].get("message") or {}).get("content")) or ""

    def complete_stream(self, messages: list[dict], on_chunk) -> None:
        resp = self._post(messages, stream=True)
        try:
            for line in resp.iter_lines(decode_unicode=True):
                if not line or not line.startswith("data: "):
                    continue
                data = line[len("data: "):]
                if data.strip() == "[DONE]":
                    break
                try:
                    delta = json.loads(data)
                except ValueError:
                    continue
                choices = delta.get("choices") or []
                if not choices:
                    continue
                text = (choices[0].get("delta") or {}).get("content") or ""
                if text:
                    on_chunk(text)
        except requests.exceptions.RequestException as e:
            raise LLMUnavailable(f"llm_stream_error: {e}") from e
        finally:
            resp.close()


def complete(api_key: str, model: str, messages: list[dict]) -> str:
    return ChatClient(api_key, model).complete(messages)


def store_completer(store):
    """Return a messages -> text callable that reads the key and model on each call."""

    def _complete(messages: list[dict]) -> str:
        api_key = get_api_key(store)
        if not api_key:
            raise LLMUnavailable("no API key configured")
        return complete(api_key, get_model(store), messages)

    return _complete
