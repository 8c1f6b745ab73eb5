from __future__ import annotations

import json
import re
from typing import Any, Awaitable, Callable, Optional

import httpx

# (prompt, image_base64, mime_type) -> raw model text
GenerateTextFn = Callable[..., Awaitable[str]]

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


async def gemini_generate(
    *,
    base_url: str,
    api_key: str,
    model: str,
    prompt: str,
    timeout_s: float,
    image_base64: Optional[str] = None,
    mime_type: Optional[str] = None,
) -> str:
    url = f"{base_url.rstrip('/')}/models/{model}:generateContent"
    parts: list[dict[str, Any]] = []
    if image_base64:
        parts.append({"inline_data": {"mime_type": mime_type or "image/jpeg", "data": image_base64}})
    parts.append({"text": prompt})

    async with httpx.AsyncClient(timeout=timeout_s) as client:
        res = await client.post(
            url,
            params={"key": api_key},
            json={"contents": [{"role": "user", "parts": parts}]},
        )

    try:
        data = res.json()
    except Exception:
        data = {"raw": res.text}

    if res.status_code >= 400 or (isinstance(data, dict) and data.get("error")):
        raise httpx.HTTPStatusError("Gemini returned error", request=res.request, response=res)

    text = extract_candidate_text(data)
    if not text:
        raise ValueError("Gemini returned no text content")
    return text


def make_generate_text(
    *,
    base_url: str,
    api_key: Optional[str],
    model: str,
    timeout_s: float,
) -> Optional[GenerateTextFn]:
    """Bind Gemini settings into a prompt -> text callable; None when no API key is configured."""
    if not api_key:
        return None

    async def _generate(
        prompt: str,
        *,
        image_base64: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> str:
        return await gemini_generate(
            base_url=base_url,
            api_key=api_key,
            model=model,
            prompt=prompt,
            timeout_s=timeout_s,
            image_base64=image_base64,
            mime_type=mime_type,
        )

    return _generate


def extract_candidate_text(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""
    first = candidates[0] if isinstance(candidates[0], dict) else {}
    content = first.get("content") if isinstance(first.get("content"), dict) else {}
    parts = content.get("parts") if isinstance(content.get("parts"), list) else []
    texts = [p.get("text") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
    if texts:
        return "".join(texts).strip()
    output_text = first.get("output_text")
    return output_text.strip() if isinstance(output_text, str) else ""


def extract_json_candidate(text: str) -> str:
    """Fenced ```json block first, otherwise the whole response."""
    if not text:
        return ""
    match = _FENCED_RE.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return text.strip()


def parse_json_payload(text: str) -> Optional[Any]:
    if not text:
        return None
    candidate = extract_json_candidate(text)
    try:
        return json.loads(candidate)
    except Exception:
        pass
    return extract_json_object(text)


def extract_json_object(text: str) -> Optional[dict[str, Any]]:
    if not text:
        return None

    for start in (i for i, ch in enumerate(text) if ch == "{"):
        candidate = _extract_braced(text, start)
        if not candidate:
            continue
        try:
            obj = json.loads(candidate)
        except Exception:
            continue
        if isinstance(obj, dict):
            return obj

    return None


def _extract_braced(text: str, start: int) -> Optional[str]:
    depth = 0
    in_str = False
    escape = False
    end: Optional[int] = None

    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if escape:
                escape = False
                continue
            if ch == "\\":
                escape = True
                continue
            if ch == '"':
                in_str = False
            continue

        if ch == '"':
            in_str = True
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                end = i
                break

    if end is None or depth != 0:
        return None
    return text[start : end + 1]
