import asyncio
from typing import Optional, Dict, Any

import httpx

from tide.tide_serialize import deserialize


class HttpError(RuntimeError):
    def __init__(self, status: int, url: str, preview: str):
        super().__init__(f"HTTP {status} for {url}: {preview}")
        self.status = status
        self.url = url


async def http_request(method: str, url: str, *, config: Optional[Dict] = None,
                       data: Optional[str | bytes] = None) -> Any:
    """
    Core HTTP helper.

    config keys: timeout, retries, backoff, headers, params, raw, full.
      - raw  -> return the body text without deserializing
      - full -> return {status, headers, body} and do not raise on non-2xx
      - default: deserialize 2xx bodies by Content-Type; raise HttpError otherwise
    """
    cfg = dict(config or {})
    timeout = float(cfg.pop('timeout', 5.0))
    retries = int(cfg.pop('retries', 2))
    backoff = float(cfg.pop('backoff', 0.2))
    headers = dict(cfg.pop('headers', None) or {})
    params = dict(cfg.pop('params', None) or {})
    raw = bool(cfg.pop('raw', False))
    full = bool(cfg.pop('full', False))

    body = (data.encode('utf-8') if isinstance(data, str) else data) if data is not None else None
    if body is not None:
        headers.setdefault("Content-Type", "text/plain; charset=utf-8")

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        for attempt in range(retries + 1):
            try:
                resp = await client.request(
                    method.upper(),
                    url,
                    headers=headers,
                    params=params,
                    content=body,
                )
            except httpx.TransportError:
                if attempt < retries:
                    await asyncio.sleep(backoff * (2 ** attempt))
                    continue
                raise
            ct = resp.headers.get("Content-Type")
            value = resp.text if raw else deserialize(resp.content, content_type=ct)
            if full:
                return {
                    "status": int(resp.status_code),
                    "headers": {str(k).lower(): v for k, v in resp.headers.items()},
                    "body": value,
                }
            if 200 <= resp.status_code < 300:
                return value
            if resp.status_code >= 500 and attempt < retries:
                await asyncio.sleep(backoff * (2 ** attempt))
                continue
            raise HttpError(resp.status_code, url, (resp.text or "")[:200])


async def http_get(url: str, config: Optional[Dict] = None) -> Any:
    return await http_request('GET', url, config=config)


async def http_post(url: str, data: str, config: Optional[Dict] = None) -> Any:
    return await http_request('POST', url, config=config, data=data)

