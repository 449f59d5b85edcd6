import logging
from itertools import count
from typing import List, Tuple
from wsgiref.handlers import format_date_time

import h11
import trio

logger = logging.getLogger("forwardproxy")

MAX_RECV = 2 ** 16


class TrioHTTPConnection:
    """
    Glues an h11 server-side state machine to a trio stream.

    Based on the trio example server shipped with h11.
    """

    _next_id = count()

    def __init__(self, stream: trio.abc.Stream, shutdown_timeout: float = 10) -> None:
        self.stream = stream
        self.conn = h11.Connection(h11.SERVER)
        self.shutdown_timeout = shutdown_timeout
        self.ident = " ".join([f"forwardproxy/{h11.__version__}", h11.PRODUCT_ID]).encode("ascii")
        self._obj_id = next(TrioHTTPConnection._next_id)
        self._shut_down = False

    async def send(self, event: h11.Event) -> None:
        # The code below doesn't send ConnectionClosed, so we don't bother
        # handling it here either -- it would require that we do something
        # appropriate when 'data' is None.
        assert type(event) is not h11.ConnectionClosed
        data = self.conn.send(event)
        assert data is not None
        try:
            await self.stream.send_all(data)
        except BaseException:
            # If send_all raises an exception (especially trio.Cancelled),
            # we have no choice but to give it up.
            self.conn.send_failed()
            raise

    async def _read_from_peer(self) -> None:
        if self.conn.they_are_waiting_for_100_continue:
            self.info("Sending 100 Continue")
            go_ahead = h11.InformationalResponse(status_code=100, headers=self.basic_headers())
            await self.send(go_ahead)
        try:
            data = await self.stream.receive_some(MAX_RECV)
        except ConnectionError:
            # They've stopped listening. Not much we can do about it here.
            data = b""
        self.conn.receive_data(data)

    async def next_event(self) -> h11.Event:
        while True:
            event = self.conn.next_event()
            if event is h11.NEED_DATA:
                await self._read_from_peer()
                continue
            return event

    async def send_error(self, status_code: int, msg: str, content_type: str = "text/plain; charset=utf-8") -> None:
        """
        Send a complete response with `msg` as its body, then ask the
        client to close the connection.

        Does nothing if a response is already underway.
        """
        if self.conn.our_state not in {h11.IDLE, h11.SEND_RESPONSE}:
            self.info(f"Cannot send {status_code}, response already started")
            return

        self.info(f"Sending {status_code}: {msg}")
        body = msg.encode("utf-8")
        headers = self.basic_headers() + [
            ("Content-Type", content_type.encode("ascii")),
            ("Content-Length", str(len(body)).encode("ascii")),
            ("Connection", b"close"),
        ]
        await self.send(h11.Response(status_code=status_code, headers=headers))
        await self.send(h11.Data(data=body))
        await self.send(h11.EndOfMessage())

    async def ensure_shutdown(self) -> None:
        """
        Close our side gently, give the client a chance to read
        everything, then close the stream.

        Safe to call more than once.
        """
        if self._shut_down:
            return
        self._shut_down = True

        # When this method is called, it's because we definitely want to
        # kill this connection, either as a clean shutdown or because of
        # some kind of error or loss-of-sync bug, and we no longer care if
        # that violates the protocol or not.
        if isinstance(self.stream, trio.abc.HalfCloseableStream):
            try:
                await self.stream.send_eof()
            except (trio.BrokenResourceError, trio.ClosedResourceError):
                await trio.aclose_forcefully(self.stream)
                return

        # Wait and read for a bit to give them a chance to see that we
        # closed things, but eventually give up and just close the socket.
        with trio.move_on_after(self.shutdown_timeout):
            try:
                while True:
                    got = await self.stream.receive_some(MAX_RECV)
                    if not got:
                        break
            except (trio.BrokenResourceError, trio.ClosedResourceError):
                pass
        await trio.aclose_forcefully(self.stream)

    def basic_headers(self) -> List[Tuple[str, bytes]]:
        # HTTP requires these headers in all responses (client would do
        # something different here)
        return [
            ("Date", format_date_time(None).encode("ascii")),
            ("Server", self.ident),
        ]

    def info(self, *args: object) -> None:
        logger.info("%s: %s", self._obj_id, " ".join(str(a) for a in args))
