import httpx
from typing import Dict, Optional

from fastapi import Request, HTTPException, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask


HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",  # Let httpx set the host header based on URL
    "content-length",
}

UPSTREAM_TIMEOUT = 30.0


def _filter_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """
    Remove hop-by-hop headers as per RFC 2616.
    These must not be forwarded by proxies.
    """
    return {
        k: v
        for k, v in headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS
    }


async def forward_request(
    *,
    request: Request,
    upstream_url: str,
    client_ip: str,
    body: Optional[bytes] = None,
) -> StreamingResponse:
    """
    Forward an admitted request to the protected upstream API and
    stream the response back untouched.

    ``body`` carries bytes the gateway already read for classification;
    without it the request body is streamed through unread.
    """
    client = httpx.AsyncClient(timeout=UPSTREAM_TIMEOUT)

    headers = _filter_headers(dict(request.headers))
    headers["x-forwarded-for"] = client_ip

    try:
        req = client.build_request(
            method=request.method,
            url=upstream_url,
            headers=headers,
            params=request.query_params,
            content=body if body is not None else request.stream(),
        )
        upstream = await client.send(req, stream=True)
    except httpx.RequestError:
        await client.aclose()
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Upstream service unreachable",
        )
    except Exception:
        await client.aclose()
        raise

    async def _close() -> None:
        await upstream.aclose()
        await client.aclose()

    return StreamingResponse(
        upstream.aiter_raw(),
        status_code=upstream.status_code,
        headers=_filter_headers(dict(upstream.headers)),
        media_type=upstream.headers.get("content-type"),
        background=BackgroundTask(_close),
    )
