import logging
import ssl
import threading
import traceback
from functools import partial
from typing import Awaitable, Callable, Optional

import h11
import httpx
import trio

from ._adapter import TrioHTTPConnection
from ._config import Configuration, ConfigurationError, Port, parse_host_and_port
from ._forward import REJECTION_BODY, REQUEST_TIMEOUT, forward_request
from ._whitelist import Whitelist

logger = logging.getLogger("forwardproxy")

CONNECT_TIMEOUT = 10
UPSTREAM_TIMEOUT = 30
BUFFER_SIZE = 16384

Dialer = Callable[[str, int], Awaitable[trio.abc.Stream]]

################################################################
#                  The proxy itself
################################################################

class Dispatcher:
    """
    Routes each request: CONNECT opens a tunnel, anything else is
    forwarded as plain HTTP.

    `open_connection` dials the tunnel destination; it takes a host and
    a port, like trio.open_tcp_stream.
    """

    def __init__(self,
            whitelist: Whitelist,
            client: httpx.AsyncClient,
            open_connection: Dialer = trio.open_tcp_stream,
            connect_timeout: float = CONNECT_TIMEOUT,
            ):
        self.whitelist = whitelist
        self.client = client
        self.open_connection = open_connection
        self.connect_timeout = connect_timeout

    async def dispatch(self, w: TrioHTTPConnection, request: h11.Request, tunnels: trio.Nursery) -> None:
        if request.method == b"CONNECT":
            await self.handle_connect(w, request, tunnels)
        else:
            await forward_request(w, request, self.whitelist, self.client)

    async def handle_connect(self, w: TrioHTTPConnection, request: h11.Request, tunnels: trio.Nursery) -> None:
        """
        Handles one CONNECT request. On success, the tunnel is started in
        `tunnels` and this returns straight away; the tunnel then owns
        both streams.
        """
        # Ignore any HTTP body (h11.Data entries)
        # and read until h11.EndOfMessage
        with trio.fail_after(REQUEST_TIMEOUT):
            while type(await w.next_event()) is not h11.EndOfMessage:
                pass

        target = request.target.decode("ascii")  # h11 ensures that this cannot break

        try:
            host, port = parse_host_and_port(target)
        except ValueError:
            await w.send_error(400, f"Malformed hostname: {target!r}")
            return

        if not self.whitelist.is_allowed(target):
            w.info(f"Rejected CONNECT {target}: not whitelisted")
            await w.send_error(403, REJECTION_BODY, content_type="text/html; charset=utf-8")
            return

        w.info(f"Making TCP connection to {host}:{port}")

        try:
            with trio.fail_after(self.connect_timeout):
                target_stream = await self.open_connection(host, int(port))  # takes _exactly_ int
        except trio.TooSlowError:
            await w.send_error(503, f"TCP connection to {host}:{port} timed out")
            return
        except OSError as e:
            await w.send_error(503, str(e) or f"TCP connection to {host}:{port} failed")
            return

        try:
            if w.conn.their_state is not h11.MIGHT_SWITCH_PROTOCOL:
                await trio.aclose_forcefully(target_stream)
                await w.send_error(500, "Cannot take over the client connection")
                return

            # All good!
            # Send a plain 200 OK, which will switch protocols.
            await w.send(h11.Response(status_code=200, reason="Connection established", headers=w.basic_headers()))
            assert w.conn.our_state == w.conn.their_state == h11.SWITCHED_PROTOCOL

            # Bytes the client sent right after the request head
            # (e.g. an eager TLS ClientHello) were already read by h11.
            trailing_data, _ = w.conn.trailing_data
            if trailing_data:
                await target_stream.send_all(trailing_data)
        except (trio.BrokenResourceError, trio.ClosedResourceError):
            w.info("Tunnel broke before it was established")
            await trio.aclose_forcefully(target_stream)
            await trio.aclose_forcefully(w.stream)
            return
        except BaseException:
            await trio.aclose_forcefully(target_stream)
            raise

        tunnels.start_soon(splice, w.stream, target_stream)


async def handle(stream: trio.abc.Stream, dispatcher: Dispatcher) -> None:
    """
    Serves one client connection from start to end.

    Tunnels opened by CONNECT run in this connection's own nursery, so
    the connection lives for as long as its tunnel does.
    """
    start_time = trio.current_time()
    w = TrioHTTPConnection(stream, shutdown_timeout=10)
    try:
        async with trio.open_nursery() as tunnels:
            await serve_connection(w, dispatcher, tunnels)
    finally:
        end_time = trio.current_time()
        w.info(f"Total time: {end_time - start_time:.6f}s")


async def serve_connection(w: TrioHTTPConnection, dispatcher: Dispatcher, tunnels: trio.Nursery) -> None:
    requests_served = 0

    try:
        while True:
            assert w.conn.states == {h11.CLIENT: h11.IDLE, h11.SERVER: h11.IDLE}

            with trio.fail_after(REQUEST_TIMEOUT):
                # Regular event sequence:
                # -----------------------
                #   1. Request (= start of request)
                #   2. Data* (optional)
                #   3. EndOfMessage (= end of request)
                #
                # At any moment: ConnectionClosed or exception
                e = await w.next_event()
            assert isinstance(e, (h11.Request, h11.ConnectionClosed)), "This assertion should always hold"

            if isinstance(e, h11.ConnectionClosed):
                w.info("Client closed the TCP connection")
                return

            await dispatcher.dispatch(w, e, tunnels)
            requests_served += 1

            if w.conn.our_state is h11.SWITCHED_PROTOCOL:
                return  # the tunnel owns the stream now
            if w.conn.states == {h11.CLIENT: h11.DONE, h11.SERVER: h11.DONE}:
                w.conn.start_next_cycle()
            else:
                await w.ensure_shutdown()
                return

    except Exception as e:
        w.info(f"Handling exception: {e!r}")
        try:
            if isinstance(e, trio.BrokenResourceError):
                w.info("Client abruptly closed connection; dropping request.")
            elif isinstance(e, h11.RemoteProtocolError):
                await w.send_error(e.error_status_hint, str(e))
            elif isinstance(e, trio.TooSlowError):
                if requests_served and w.conn.their_state is h11.IDLE:
                    w.info("Idle keep-alive connection timed out")
                else:
                    await w.send_error(408, "Client is too slow, terminating connection")
            else:
                w.info(f"Internal Server Error: {type(e)} {e}")
                await w.send_error(500, str(e))
            await w.ensure_shutdown()
        except Exception as e:
            w.info("Error while responding with an error: " + "\n".join(traceback.format_tb(e.__traceback__)))
            await trio.aclose_forcefully(w.stream)


async def splice(a: trio.abc.Stream, b: trio.abc.Stream) -> None:
    """
    "Splices" two TCP streams into one.
    That is, it forwards everything from a to b, and vice versa.

    When one part of the connection breaks or finishes, it cleans up
    the other one and returns.
    """
    async with a:
        async with b:
            async with trio.open_nursery() as nursery:
                # From RFC 7231, §4.3.6:
                # ----------------------
                # A tunnel is closed when a tunnel intermediary detects that
                # either side has closed its connection: the intermediary MUST
                # attempt to send any outstanding data that came from the
                # closed side to the other side, close both connections,
                # and then discard any remaining data left undelivered.

                # This holds, because the coroutines below run until one tries
                # to read from a closed socket, at which point both are cancelled.
                nursery.start_soon(forward, a, b, nursery.cancel_scope)
                nursery.start_soon(forward, b, a, nursery.cancel_scope)


async def forward(source: trio.abc.Stream, sink: trio.abc.Stream, cancel_scope: trio.CancelScope) -> None:
    try:
        while True:
            chunk = await source.receive_some(max_bytes=BUFFER_SIZE)
            if chunk:
                await sink.send_all(chunk)
            else:
                break  # nothing more to read
    except (trio.BrokenResourceError, trio.ClosedResourceError):
        pass
    finally:
        # Closing both ends unblocks the other direction, whichever way we got here.
        with trio.CancelScope(shield=True):
            await trio.aclose_forcefully(sink)
            await trio.aclose_forcefully(source)
        cancel_scope.cancel()

################################################################
#                  User-friendly objects
################################################################

def new_upstream_client(**kwargs) -> httpx.AsyncClient:
    """
    An httpx client for the plain HTTP round trip: no proxy settings from
    the environment, no redirects, no headers of its own.

    Extra keyword arguments go to httpx.AsyncClient (tests pass `transport`).
    """
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(UPSTREAM_TIMEOUT, connect=CONNECT_TIMEOUT),
        follow_redirects=False,
        trust_env=False,
        **kwargs,
    )
    client.headers.clear()
    return client


def make_ssl_context(pem_path: str, key_path: str) -> ssl.SSLContext:
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(pem_path, key_path)
    except OSError as e:
        raise ConfigurationError(f"Cannot load TLS certificate {pem_path} / key {key_path}: {e}") from e
    # h11 speaks HTTP/1.1 only.
    context.set_alpn_protocols(["http/1.1"])
    return context


class ForwardProxy:
    """
    An HTTP forward proxy which only allows destinations from a whitelist.

    Runs on a trio event loop.
    """

    def __init__(self, config: Configuration):
        """
        Compiles the whitelist and loads the TLS material up front, so
        that a bad configuration fails here, before anything listens.
        """
        self.config = config
        self.whitelist = Whitelist.from_patterns(config.whitelist)
        self.ssl_context: Optional[ssl.SSLContext] = None
        if config.proto == "https":
            self.ssl_context = make_ssl_context(config.pem_path, config.key_path)

    async def listen(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """
        Listen for incoming TCP connections.

        Parameters:
          host: the host interface to listen on (default: from the configuration)
          port: the port to listen on (default: from the configuration)
        """
        host = self.config.host if host is None else host
        port = self.config.port if port is None else port
        logger.info(f"Listening on {self.config.proto}://{host}:{port} ({len(self.whitelist)} whitelist rules)")

        async with new_upstream_client() as client:
            h = partial(handle, dispatcher=Dispatcher(self.whitelist, client))
            if self.ssl_context is None:
                await trio.serve_tcp(h, port, host=host)
            else:
                await trio.serve_ssl_over_tcp(h, port, self.ssl_context, host=host, https_compatible=True)


async def run_synchronously_cancellable_proxy(
        proxy: ForwardProxy,
        host: str,
        port: int,
        stop: threading.Event,
        stop_check_interval: float,
    ) -> None:
    """
    Runs the proxy, until cancelled through the `stop` event.
    It checks the event every `stop_check_interval` seconds.

    This function is meant for use primarily in the synchronous world:
    while it _can_ be used just fine in Trio, a plain trio.CancelScope
    is simpler and more idiomatic.
    """

    async def listen_for_stop(cancel_scope: trio.CancelScope) -> None:
        while not stop.is_set():
            await trio.sleep(stop_check_interval)
        cancel_scope.cancel()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(listen_for_stop, nursery.cancel_scope)
        nursery.start_soon(proxy.listen, host, port)


class SynchronousForwardProxy:
    """
    A wrapper around ForwardProxy which runs it in a separate
    thread, so you can use it from a traditional threaded program.

    Can stop, but not gently. (It kills all TCP connections.)
    """

    def __init__(self, config: Configuration, stop_check_interval: float = 0.010):
        """
        `stop_check_interval` is how long (in seconds) it may take to stop the proxy.
        """
        self._proxy = ForwardProxy(config)
        self._started = False
        self._stop = threading.Event()

        host, port = config.host, Port(config.port)
        self._thread = threading.Thread(
            name=f"SynchronousForwardProxy-on-{config.proto}://{host}:{port}/",
            target=trio.run,
            args=(run_synchronously_cancellable_proxy, self._proxy, host, port, self._stop, stop_check_interval),
        )

    def start(self) -> None:
        """Start the proxy, if not already started."""
        if not self._started:
            self._thread.start()
            self._started = True

    def stop(self) -> None:
        """Stop the proxy, if not already stopped."""
        self._stop.set()
        if self._started:
            self._thread.join()
