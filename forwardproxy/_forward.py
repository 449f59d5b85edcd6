import h11
import httpx
import trio
from typing import AsyncIterator, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from ._adapter import TrioHTTPConnection
from ._whitelist import Whitelist

REJECTION_BODY = "<h1>This host is not on the proxy whitelist</h1>"

# How long the client may go quiet while sending a request, head or body.
REQUEST_TIMEOUT = 5

# RFC 7230, §6.1: these describe a single connection, not the message,
# so they are never passed along. Neither is anything the Connection
# header itself names.
HOP_BY_HOP_HEADERS = frozenset({
    b"connection",
    b"keep-alive",
    b"proxy-authenticate",
    b"proxy-authorization",
    b"proxy-connection",
    b"te",
    b"trailer",
    b"transfer-encoding",
    b"upgrade",
})

Headers = List[Tuple[bytes, bytes]]


def connection_options(headers: Iterable[Tuple[bytes, bytes]]) -> Set[bytes]:
    """Header names listed in any Connection header, lowercased."""
    options = set()
    for name, value in headers:
        if name.lower() == b"connection":
            options.update(token.strip().lower() for token in value.split(b",") if token.strip())
    return options


def end_to_end(headers: Iterable[Tuple[bytes, bytes]]) -> Headers:
    """Drop hop-by-hop headers, keeping everything else in its original order."""
    headers = list(headers)
    dropped = HOP_BY_HOP_HEADERS | connection_options(headers)
    return [(name, value) for name, value in headers if name.lower() not in dropped]


def has_body(request: h11.Request) -> bool:
    return any(name in (b"content-length", b"transfer-encoding") for name, _ in request.headers)


def target_authority(url: str) -> str:
    """
    The `host[:port]` part of an absolute-form request target.

    Raises ValueError if `url` is not an absolute http(s) URL.
    """
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"Not an absolute http(s) URL: {url!r}")
    return parts.netloc.rpartition("@")[2]


async def request_body(w: TrioHTTPConnection) -> AsyncIterator[bytes]:
    """
    Yield the client's request body as it arrives.

    Raises trio.TooSlowError if the client stalls for REQUEST_TIMEOUT.
    """
    while True:
        with trio.fail_after(REQUEST_TIMEOUT):
            event = await w.next_event()
        if isinstance(event, h11.Data):
            yield bytes(event.data)
        elif isinstance(event, h11.EndOfMessage):
            return
        else:
            raise h11.RemoteProtocolError(f"Unexpected {type(event).__name__} in request body")


async def forward_request(
        w: TrioHTTPConnection,
        request: h11.Request,
        whitelist: Whitelist,
        client: httpx.AsyncClient,
    ) -> None:
    """
    Forward one plain HTTP request to its origin, and relay the response.

    The request target must be in absolute form, as sent to a proxy.
    """
    url = request.target.decode("ascii")  # h11 ensures that this cannot break

    try:
        authority = target_authority(url)
    except ValueError:
        await w.send_error(400, f"Proxy requests need an absolute URI, not {url!r}")
        return

    if not whitelist.is_allowed(authority):
        w.info(f"Rejected {request.method.decode('ascii')} {url}: not whitelisted")
        await w.send_error(403, REJECTION_BODY, content_type="text/html; charset=utf-8")
        return

    w.info(f"Forwarding {request.method.decode('ascii')} {url}")

    content: Optional[AsyncIterator[bytes]] = None
    if has_body(request):
        content = request_body(w)
    else:
        async for _ in request_body(w):
            pass  # only EndOfMessage is left; consume it

    try:
        async with client.stream(
                request.method.decode("ascii"),
                url,
                headers=end_to_end(request.headers),
                content=content,
            ) as response:

            # h11 frames the body itself, from Content-Length or by chunking.
            headers = end_to_end(response.headers.raw)
            await w.send(h11.Response(
                status_code=response.status_code,
                reason=response.reason_phrase.encode("ascii", "replace"),
                headers=headers,
            ))
            async for chunk in response.aiter_raw():
                await w.send(h11.Data(data=chunk))
            await w.send(h11.EndOfMessage())

    except httpx.InvalidURL as e:
        await w.send_error(400, f"Invalid URL {url!r}: {e}")
    except httpx.HTTPError as e:
        if w.conn.our_state in {h11.IDLE, h11.SEND_RESPONSE}:
            await w.send_error(503, str(e) or type(e).__name__)
        else:
            # Too late for an error response; the client sees a truncated body.
            w.info(f"Upstream failed mid-response: {e!r}")
            await w.ensure_shutdown()
