"""Cloudflare Workers AI chat as an alternative summary backend (HTTPS, one request per summary)."""
from __future__ import annotations

import logging

import httpx

from meetstream.config import Settings, get_settings
from meetstream.errors import ConfigurationError, SummaryError, SummaryTimeout

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You summarize meeting transcripts. Be concise and factual; never invent content."


class CloudflareChatBackend:
    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    def _endpoint(self) -> tuple[str, dict[str, str]]:
        s = self._settings
        account_id = (s.CLOUDFLARE_ACCOUNT_ID or "").strip()
        token = (s.CLOUDFLARE_API_TOKEN or "").strip()
        if not account_id or not token:
            raise ConfigurationError("CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN are required for cloudflare summaries")
        url = f"https://api.cloudflare.com/client/v4/accounts/{account_id}/ai/run/{s.CLOUDFLARE_CHAT_MODEL}"
        return url, {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def send(self, prompt: str, timeout: float | None = None) -> str:
        url, headers = self._endpoint()
        timeout = timeout if timeout is not None else self._settings.SUMMARY_TIMEOUT_SECONDS
        payload = {
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": self._settings.CLOUDFLARE_CHAT_MAX_TOKENS,
        }
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, headers=headers, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    resp = await client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as e:
            raise SummaryTimeout(f"Cloudflare Workers AI timed out after {timeout:.0f}s") from e
        except (httpx.HTTPError, ValueError) as e:
            raise SummaryError(f"Cloudflare Workers AI request failed: {e}") from e
        # Workers AI returns {"result": {"response": "..."}} or {"response": "..."}
        result = data.get("result", data) if isinstance(data, dict) else data
        if isinstance(result, dict):
            content = result.get("response", "") or ""
        elif isinstance(result, str):
            content = result
        else:
            content = ""
        if not content.strip():
            raise SummaryError("Cloudflare Workers AI returned an empty response")
        logger.info("Cloudflare summary received (%d chars)", len(content))
        return content
