from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from nab_batch.errors import ConfigurationError

_PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
_PAYLOAD_SLOT = "{{payload}}"


@dataclass(frozen=True)
class PromptPack:
    prompt_id: str
    prompt_version: int
    template: str
    generation_config: dict[str, Any]
    response_schema: dict[str, Any]

    def render(self, payload_text: str) -> str:
        # Plain replacement: the template itself contains JSON braces.
        return self.template.replace(_PAYLOAD_SLOT, payload_text)


def _read_yaml(path: Path) -> Any:
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Prompt pack not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Failed to read prompt pack: {path}: {exc}") from exc


@lru_cache(maxsize=8)
def load_prompt_pack(name: str = "analysis_v1") -> PromptPack:
    data = _read_yaml(_PROMPTS_DIR / f"{name}.yaml")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Prompt pack {name} is not a mapping")
    template = data.get("template")
    if not isinstance(template, str) or _PAYLOAD_SLOT not in template:
        raise ConfigurationError(f"Prompt pack {name} must define a template with a {_PAYLOAD_SLOT} slot")
    generation_config = data.get("generation_config") if isinstance(data.get("generation_config"), dict) else {}
    response_schema = data.get("response_schema") if isinstance(data.get("response_schema"), dict) else {}
    return PromptPack(
        prompt_id=str(data.get("prompt_id") or name),
        prompt_version=int(data.get("prompt_version") or 1),
        template=template,
        generation_config=generation_config,
        response_schema=response_schema,
    )


def payload_to_text(payload: Any, max_chars: int) -> str:
    content = payload
    if isinstance(payload, dict) and payload.get("data") is not None:
        content = payload["data"]
    if isinstance(content, str):
        text = content
    else:
        text = json.dumps(content, ensure_ascii=False, default=str)
    if max_chars > 0 and len(text) > max_chars:
        return text[:max_chars]
    return text


def build_request(pack: PromptPack, payload_text: str, labels: dict[str, str]) -> dict[str, Any]:
    request: dict[str, Any] = {
        "contents": [
            {
                "role": "user",
                "parts": [{"text": pack.render(payload_text)}],
            }
        ],
        "labels": dict(labels),
    }
    if pack.generation_config:
        request["generationConfig"] = dict(pack.generation_config)
    return request


def request_prompt_text(request: Any) -> str | None:
    """Return the first text part of a (possibly echoed) generateContent request."""
    if not isinstance(request, dict):
        return None
    contents = request.get("contents")
    if not isinstance(contents, list):
        return None
    for content in contents:
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            continue
        for part in parts:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                return part["text"]
    return None
