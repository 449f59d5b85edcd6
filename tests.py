import logging
import trio, random, threading
import trio.testing, pytest
import h11, httpx
from datetime import timedelta
from hypothesis import given, settings, HealthCheck, assume
from hypothesis.strategies import data, integers, binary, floats, lists, builds, sets, sampled_from, randoms

from typing import Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from forwardproxy._proxy import splice


@given(integers(1, 100), data(), randoms())
async def test_splice(num_iterations: int, data, rand: random.Random):
    client, near = trio.testing.memory_stream_pair()
    far, server = trio.testing.memory_stream_pair()

    async def spliceit(near, far):
        await splice(near, far)

    async def testit(a, b):
        for i in range(num_iterations):
            a, b = rand.sample((a, b), k=2)

            to_send = data.draw(binary(min_size=1))  # we must send something or receive_some will block
            await a.send_all(to_send)
            received = await receive_exactly(b, len(to_send))

            assert to_send == received

        a, b = rand.sample((a, b), k=2)
        await a.aclose()  # kill one end, the rest should take care of itself
        assert await b.receive_some(100) == b"", "The other end should see the tunnel close"


    async with trio.open_nursery() as nursery:
        nursery.start_soon(spliceit, near, far)
        nursery.start_soon(testit, client, server)


async def test_splice_ends_when_one_side_breaks():
    client, near = trio.testing.memory_stream_pair()
    far, server = trio.testing.memory_stream_pair()

    async def break_it():
        await trio.testing.wait_all_tasks_blocked()
        await near.aclose()  # as if the client reset the connection

    async with trio.open_nursery() as nursery:
        nursery.start_soon(splice, near, far)
        nursery.start_soon(break_it)

    # splice returned, so both of its streams must be closed
    with pytest.raises(trio.ClosedResourceError):
        await far.send_all(b"too late")
    assert await server.receive_some(100) == b""


from forwardproxy._proxy import ForwardProxy, run_synchronously_cancellable_proxy
from forwardproxy._config import Configuration

# Thread scheduling varies, so we cannot reliably (nor quickly) test
# if SynchronousForwardProxy cancellation works, i.e. that:
#
#     1. the proxy _will_ be cancelled
#     2. it will happen in no more than `stop_check_interval` seconds
#
# However, by putting the cancellation logic in a separate function,
# we can get most of the way there.

@settings(suppress_health_check=[HealthCheck.function_scoped_fixture], deadline=timedelta(seconds=1))
@given(stop_check_interval=floats(0.001, 10.000))
async def test_cancellation_seen_promptly(stop_check_interval: float, autojump_clock):

    host = "localhost"
    port = 12349  # hopefully available

    p = ForwardProxy(Configuration(whitelist=()))
    stop = threading.Event()

    proxy_cancelled = False

    async def runner() -> None:
        nonlocal proxy_cancelled
        await run_synchronously_cancellable_proxy(p, host, port, stop, stop_check_interval)
        proxy_cancelled = True

    async def killer() -> None:
        await trio.to_thread.run_sync(stop.set)  # from another thread, as in SynchronousForwardProxy
        assert stop.is_set(), "This should always be the case, as it's a threading.Event"
        await trio.sleep(1.001 * stop_check_interval)
        assert proxy_cancelled, "After `stop_check_interval`, the proxy should have been cancelled"

    async with trio.open_nursery() as nursery:
        nursery.start_soon(runner)
        nursery.start_soon(killer)

from forwardproxy._config import Domain, Port

################################################################
#            Generating valid domains and ports
################################################################
def new_label(length: int, rand: random.Random) -> str:
    """
    Return a "label" element according to RFC 1035, of specified length (>0).
    """
    if length <= 0:
        raise ValueError("There are no valid zero- or negative-length labels")
    letter = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
    letter_digit = letter + "0123456789"
    letter_digit_hyphen = letter_digit + "-"

    if length == 1:
        label = rand.choice(letter)
    else:
        label = (rand.choice(letter)
            + "".join(rand.choice(letter_digit_hyphen) for _ in range(length - 2))
            + rand.choice(letter_digit)
        )
    return label

def new_domain(chunk_lengths: List[int], rand: random.Random) -> Domain:
    """
    Return a valid domain according to RFC 1035.

    `chunk_lengths` must be a non-empty list of positive integers.
    """
    if not chunk_lengths or any(l <= 0 for l in chunk_lengths):
        raise ValueError()

    return Domain(".".join(new_label(l, rand) for l in chunk_lengths))

def domains():
    return builds(new_domain, lists(integers(1, 10), min_size=1, max_size=10), randoms())

def ports(start: int = 1024, end: int = 65535):
    return builds(Port, integers(start, end))

@given(domains())
def test_domains(d: Domain) -> None:
    pass # We're testing example generation here.

@given(ports())
def test_ports(d: Port) -> None:
    pass # We're testing example generation here.

################################################################
#                  Whitelist matching
################################################################

from forwardproxy._whitelist import WILDCARD, Whitelist, compile_pattern, strip_port
from forwardproxy._config import ConfigurationError

@given(host=domains(), pattern=domains())
def test_literal_pattern_matches_only_itself(host: Domain, pattern: Domain) -> None:
    whitelist = Whitelist.from_patterns([pattern])
    assert whitelist.is_allowed(host) == (host == pattern)
    assert whitelist.is_allowed(pattern)

@given(prefix=domains())
def test_wildcard_needs_a_nonempty_prefix(prefix: Domain) -> None:
    whitelist = Whitelist.from_patterns(["*.example.com"])
    assert whitelist.is_allowed(f"{prefix}.example.com")
    assert not whitelist.is_allowed(f"{prefix}example.com")
    assert not whitelist.is_allowed(f"example.com.{prefix}")
    assert not whitelist.is_allowed("example.com")
    assert not whitelist.is_allowed(".example.com")

@given(host=domains(), port=ports(1, 65535), listed=sampled_from([True, False]))
def test_port_never_affects_the_decision(host: Domain, port: Port, listed: bool) -> None:
    whitelist = Whitelist.from_patterns([host] if listed else ["unrelated.example"])
    assert whitelist.is_allowed(f"{host}:{port}") == whitelist.is_allowed(host) == listed

@given(host=domains())
def test_empty_whitelist_rejects_everything(host: Domain) -> None:
    whitelist = Whitelist.from_patterns([])
    assert not whitelist.is_allowed(host)
    assert not whitelist.is_allowed(f"{host}:443")

def test_regex_metacharacters_are_literal() -> None:
    whitelist = Whitelist.from_patterns(["www.example.com", "a+b.test", "(x|y).test"])
    assert whitelist.is_allowed("www.example.com")
    assert not whitelist.is_allowed("wwwxexample.com")
    assert whitelist.is_allowed("a+b.test")
    assert not whitelist.is_allowed("aab.test")
    assert whitelist.is_allowed("(x|y).test")
    assert not whitelist.is_allowed("x.test")

def test_several_wildcards() -> None:
    whitelist = Whitelist.from_patterns(["api-*.*.example.com"])
    assert whitelist.is_allowed("api-v1.eu.example.com:443")
    assert whitelist.is_allowed("api-.x.example.com")
    assert not whitelist.is_allowed("api.eu.example.com")
    assert not whitelist.is_allowed("web-v1.eu.example.com")
    assert not whitelist.is_allowed("api-v1.example.com")

def test_bare_wildcard_allows_any_valid_hostname() -> None:
    whitelist = Whitelist.from_patterns(["*"])
    assert whitelist.is_allowed("anything.at.all:8080")
    assert not whitelist.is_allowed("")
    assert not whitelist.is_allowed("a..b")

def test_first_matching_rule_wins() -> None:
    whitelist = Whitelist.from_patterns(["*.example.com", "www.example.com"])
    assert whitelist.matching_rule("www.example.com").pattern == "*.example.com"
    assert whitelist.matching_rule("example.org") is None

def test_matching_is_case_sensitive() -> None:
    whitelist = Whitelist.from_patterns(["example.com"])
    assert not whitelist.is_allowed("EXAMPLE.com")

def test_ipv6_literals() -> None:
    whitelist = Whitelist.from_patterns(["[::1]"])
    assert whitelist.is_allowed("[::1]:443")
    assert whitelist.is_allowed("[::1]")
    assert strip_port("[::1]:443") == "[::1]"
    assert strip_port("example.com") == "example.com"

def test_compile_pattern() -> None:
    assert compile_pattern("example.com") == ("example.com",)
    assert compile_pattern("*.example.com") == (WILDCARD, ".example.com")
    assert compile_pattern("a**b*") == ("a", WILDCARD, "b", WILDCARD)
    assert compile_pattern("*") == (WILDCARD,)

@pytest.mark.parametrize("pattern", ["", "exa mple.com", "tab\t.com", "new\nline", 42, None, "example.com.", ".example.com", "a..b", "*.", "*..example.com"])
def test_malformed_patterns_are_configuration_errors(pattern) -> None:
    with pytest.raises(ConfigurationError):
        Whitelist.from_patterns([pattern])

################################################################
#                  Configuration
################################################################

from forwardproxy._config import parse_configuration_v1, load_configuration_from_file, parse_host_and_port

def test_parse_configuration() -> None:
    config = parse_configuration_v1({
        "proto": "https",
        "port": 8443,
        "pemPath": "cert.pem",
        "keyPath": "key.pem",
        "whitelist": ["*.example.com", "example.org"],
    })
    assert config == Configuration(
        proto="https",
        port=Port(8443),
        host="0.0.0.0",
        pem_path="cert.pem",
        key_path="key.pem",
        whitelist=("*.example.com", "example.org"),
    )

def test_missing_whitelist_is_empty() -> None:
    assert parse_configuration_v1({"proto": "http", "port": 8080}).whitelist == ()

@pytest.mark.parametrize("raw", [
    {"proto": "ftp", "port": 8080},
    {"proto": "http", "port": 70000},
    {"proto": "http", "port": "8080"},
    {"proto": "http", "port": True},
    {"proto": "https", "port": 8443},
    {"proto": "http", "port": 8080, "whitelist": "example.com"},
    {"proto": "http", "port": 8080, "whitelsit": ["example.com"]},
    ["not", "a", "mapping"],
])
def test_bad_configuration(raw) -> None:
    with pytest.raises(ConfigurationError):
        parse_configuration_v1(raw)

def test_load_configuration_from_file(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "proto: http\n"
        "port: 3128\n"
        "whitelist:\n"
        "  - '*.example.com'\n"
        "  - localhost\n"
    )
    config = load_configuration_from_file(str(path))
    assert config.proto == "http"
    assert config.port == 3128
    assert config.whitelist == ("*.example.com", "localhost")

def test_load_configuration_errors(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        load_configuration_from_file(str(tmp_path / "does-not-exist.yaml"))

    broken = tmp_path / "broken.yaml"
    broken.write_text("proto: [http\n")
    with pytest.raises(ConfigurationError):
        load_configuration_from_file(str(broken))

def test_https_needs_loadable_tls_material(tmp_path) -> None:
    config = Configuration(proto="https", pem_path=str(tmp_path / "no.pem"), key_path=str(tmp_path / "no.key"))
    with pytest.raises(ConfigurationError):
        ForwardProxy(config)

def test_bad_whitelist_pattern_fails_at_startup() -> None:
    with pytest.raises(ConfigurationError):
        ForwardProxy(Configuration(whitelist=("ok.com", "")))
    with pytest.raises(ConfigurationError):
        ForwardProxy(Configuration(whitelist=("example.com.",)))

@pytest.mark.parametrize("target, expected", [
    ("example.com:443", ("example.com", 443)),
    ("localhost:1", ("localhost", 1)),
    ("[::1]:8443", ("::1", 8443)),
])
def test_parse_host_and_port(target: str, expected: Tuple[str, int]) -> None:
    assert parse_host_and_port(target) == expected

@pytest.mark.parametrize("target", ["example.com", "example.com:", "a:b:c", ":443", "example.com:0", "example.com:65536", "example.com:-1", "[::1]", "[::1]443"])
def test_parse_host_and_port_rejects(target: str) -> None:
    with pytest.raises(ValueError):
        parse_host_and_port(target)

from forwardproxy.__main__ import main

def test_cli_exits_on_configuration_error(tmp_path) -> None:
    bad = tmp_path / "config.yaml"
    bad.write_text("proto: gopher\nport: 8080\n")
    assert main([str(bad)]) == 1
    assert main([str(tmp_path / "missing.yaml")]) == 1

    bad_pattern = tmp_path / "bad-pattern.yaml"
    bad_pattern.write_text("proto: http\nport: 8080\nwhitelist:\n  - 'a..b'\n")
    assert main([str(bad_pattern)]) == 1

################################################################
#                  Test doubles for the network
################################################################

from forwardproxy._proxy import CONNECT_TIMEOUT, Dispatcher, handle, new_upstream_client
from forwardproxy._adapter import TrioHTTPConnection

async def receive_exactly(stream: trio.abc.ReceiveStream, n: int) -> bytes:
    received = b""
    while len(received) < n:
        chunk = await stream.receive_some(n - len(received))
        assert chunk, "Stream closed early"
        received += chunk
    return received

async def dial_must_not_happen(host: str, port: int) -> trio.abc.Stream:
    raise AssertionError(f"The proxy dialled {host}:{port}")

def origin_must_not_be_reached(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"The proxy contacted {request.url}")

def make_dispatcher(whitelist: Iterable[str], upstream: httpx.AsyncClient, open_connection=dial_must_not_happen) -> Dispatcher:
    return Dispatcher(Whitelist.from_patterns(whitelist), upstream, open_connection=open_connection)

################################################################
#                  "HTTP client/server" functions
################################################################

async def connect(stream: trio.abc.Stream, host: Domain, port: Port, expected: bytes, method: str = "CONNECT") -> None:
    """Connect, assert it's OK, quit."""
    hostname = f"{host}:{port}"
    async with stream:
        await stream.send_all(f"{method} {hostname} HTTP/1.1\r\nHost: {hostname}\r\n\r\n".encode())
        resp = await stream.receive_some(10000)
        assert resp.startswith(expected)

async def connect_slowly(stream: trio.abc.Stream, host: Domain, port: Port, expected: bytes) -> None:
    """Like `connect`, does it very slowly."""
    async with stream:
        await trio.sleep(10)
        try:
            # This will blow up if the server already closed the connection.
            await stream.send_all(f"CONNECT {host}:{port} HTTP/1.1\r\nHost: whatever\r\n\r\n".encode())
        except trio.BrokenResourceError:
            pass
        resp = await stream.receive_some(10000)
        assert resp.startswith(expected)

async def connect_with_bytes(stream: trio.abc.Stream, host: Domain, port: Port, expected: bytes, to_send: bytes) -> None:
    """Like `connect`, but sends the given bytes instead of an actual HTTP request."""
    async with stream:
        await stream.send_all(to_send)
        resp = await stream.receive_some(10000)
        assert resp.startswith(expected)

async def accept_and_close_connection(s: trio.socket.SocketType) -> None:
    conn, _ = await s.accept()
    conn.close()

Exchange = Tuple[h11.Response, bytes]

async def http_requests(
        stream: trio.abc.Stream,
        requests: List[Tuple[str, str, bytes]],
        extra_headers: Optional[List[Tuple[str, str]]] = None,
    ) -> List[Exchange]:
    """
    Send (method, target, body) requests one after another over the same
    connection, as a client of the proxy would. Asks to close after the last.
    """
    conn = h11.Connection(h11.CLIENT)
    results = []
    async with stream:
        for i, (method, target, body) in enumerate(requests):
            headers = [("Host", urlsplit(target).netloc or "example.com")] + (extra_headers or [])
            if body:
                headers.append(("Content-Length", str(len(body))))
            if i == len(requests) - 1:
                headers.append(("Connection", "close"))

            await stream.send_all(conn.send(h11.Request(method=method, target=target, headers=headers)))
            if body:
                await stream.send_all(conn.send(h11.Data(data=body)))
            await stream.send_all(conn.send(h11.EndOfMessage()))

            response, chunks = None, []
            while True:
                event = conn.next_event()
                if event is h11.NEED_DATA:
                    conn.receive_data(await stream.receive_some(10000))
                elif isinstance(event, h11.Response):
                    response = event
                elif isinstance(event, h11.Data):
                    chunks.append(bytes(event.data))
                elif isinstance(event, h11.EndOfMessage):
                    break
                else:
                    raise AssertionError(f"Unexpected {event!r}")
            results.append((response, b"".join(chunks)))

            if conn.our_state is h11.DONE and conn.their_state is h11.DONE:
                conn.start_next_cycle()
    return results

################################################################
#               Tests for the CONNECT path
################################################################

# Summary of tests for handle()
# =============================
# Connect to a whitelisted hostname:
#   you should have access (200 OK), and the tunnel carries bytes both ways
#
# Connect to a non-whitelisted hostname:
#   you should get back a 403 error, and nothing is dialled
#
# Connect to a whitelisted, but unreachable upstream:
#   you should get back a 503 error (refused, or timed out after 10s)
#
# Anything else should fail with a 4xx error
#   client timeouts: 408 (Too Slow)
#   malformed request is 400 (Bad Request)

async def test_connect_to_whitelisted_host() -> None:

    expected = b"HTTP/1.1 200"

    # A real TCP connection, through trio.open_tcp_stream
    with trio.socket.socket() as sock:
        await sock.bind(("localhost", 0))
        sock.listen()

        _, port = sock.getsockname()

        async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
            dispatcher = Dispatcher(Whitelist.from_patterns(["localhost"]), upstream)

            client_stream, proxy_stream = trio.testing.memory_stream_pair()
            async with trio.open_nursery() as nursery:
                nursery.start_soon(connect, client_stream, "localhost", port, expected)
                nursery.start_soon(handle, proxy_stream, dispatcher)
                nursery.start_soon(accept_and_close_connection, sock)


@given(domains=sets(domains(), min_size=1), port=ports(), rand=randoms(), data=data())
async def test_tunnel_relays_bytes_both_ways(domains: Set[Domain], port: Port, rand: random.Random, data) -> None:

    client, proxy_side = trio.testing.memory_stream_pair()
    near, server = trio.testing.memory_stream_pair()
    host: Domain = rand.choice(list(domains))
    dialled = []

    async def dial(host: str, port: int) -> trio.abc.Stream:
        dialled.append((host, port))
        return near

    async def talk() -> None:
        async with client:
            await client.send_all(f"CONNECT {host}:{port} HTTP/1.1\r\nHost: {host}:{port}\r\n\r\n".encode())
            resp = await client.receive_some(10000)
            assert resp.startswith(b"HTTP/1.1 200")

            for _ in range(3):
                request = data.draw(binary(min_size=1))
                await client.send_all(request)
                assert await receive_exactly(server, len(request)) == request

                reply = data.draw(binary(min_size=1))
                await server.send_all(reply)
                assert await receive_exactly(client, len(reply)) == reply

        # The client hung up, so the destination must see the tunnel close.
        assert await server.receive_some(100) == b""
        await server.aclose()

    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(domains, upstream, open_connection=dial)
        async with trio.open_nursery() as nursery:
            nursery.start_soon(handle, proxy_side, dispatcher)
            nursery.start_soon(talk)

    assert dialled == [(host, port)]


async def test_bytes_sent_with_the_connect_request_reach_the_destination() -> None:
    client, proxy_side = trio.testing.memory_stream_pair()
    near, server = trio.testing.memory_stream_pair()

    async def dial(host: str, port: int) -> trio.abc.Stream:
        return near

    hello = b"\x16\x03\x01 pretend ClientHello"

    async def talk() -> None:
        async with client:
            await client.send_all(b"CONNECT example.com:443 HTTP/1.1\r\nHost: example.com:443\r\n\r\n" + hello)
            assert await receive_exactly(server, len(hello)) == hello
            resp = await client.receive_some(10000)
            assert resp.startswith(b"HTTP/1.1 200")
        await server.aclose()

    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(["*.com"], upstream, open_connection=dial)
        async with trio.open_nursery() as nursery:
            nursery.start_soon(handle, proxy_side, dispatcher)
            nursery.start_soon(talk)


@given(domains=sets(domains(), min_size=1), port=ports())
async def test_connect_to_non_whitelisted_host(domains: Set[Domain], port: Port) -> None:

    assume("non-whitelisted.domain" not in domains)
    expected = b"HTTP/1.1 403"

    # Connect to a non-whitelisted hostname:
    #   you should get back a 403 error, and no TCP connection is attempted
    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(domains, upstream, open_connection=dial_must_not_happen)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        async with trio.open_nursery() as nursery:
            nursery.start_soon(connect, client_stream, "non-whitelisted.domain", port, expected)
            nursery.start_soon(handle, proxy_stream, dispatcher)


@given(domains=sets(domains(), min_size=1), port=ports(), rand=randoms())
async def test_connect_to_whitelisted_unreachable_host(domains: Set[Domain], port: Port, rand: random.Random) -> None:

    # Connect to a whitelisted, but non-existent upstream:
    #   you should get back a 503 error, with the reason
    host: Domain = rand.choice(list(domains))

    async def refuse(host: str, port: int) -> trio.abc.Stream:
        raise ConnectionRefusedError(111, "Connection refused")

    async def connect_and_check(stream: trio.abc.Stream) -> None:
        async with stream:
            await stream.send_all(f"CONNECT {host}:{port} HTTP/1.1\r\nHost: {host}:{port}\r\n\r\n".encode())
            resp = b""
            while True:
                chunk = await stream.receive_some(10000)
                if not chunk:
                    break
                resp += chunk
            assert resp.startswith(b"HTTP/1.1 503")
            assert b"Connection refused" in resp

    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(domains, upstream, open_connection=refuse)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        async with trio.open_nursery() as nursery:
            nursery.start_soon(connect_and_check, client_stream)
            nursery.start_soon(handle, proxy_stream, dispatcher)


async def test_connect_to_whitelisted_slow_upstream_host(autojump_clock) -> None:

    # The dial never completes:
    #   you should get back a 503 error once the connect timeout expires, not later
    async def hang(host: str, port: int) -> trio.abc.Stream:
        await trio.sleep_forever()

    answered_at = None

    async def connect_and_time(stream: trio.abc.Stream) -> None:
        nonlocal answered_at
        await connect(stream, "slow.example.com", 443, b"HTTP/1.1 503")
        answered_at = trio.current_time()

    start = trio.current_time()
    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(["*.example.com"], upstream, open_connection=hang)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        async with trio.open_nursery() as nursery:
            nursery.start_soon(connect_and_time, client_stream)
            nursery.start_soon(handle, proxy_stream, dispatcher)

    assert answered_at is not None
    assert answered_at - start <= CONNECT_TIMEOUT + 0.1


@given(domains=sets(domains(), min_size=1), port=ports(), rand=randoms())
@settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
async def test_connect_where_client_times_out(domains: Set[Domain], port: Port, rand: random.Random, autojump_clock) -> None:

    expected = b"HTTP/1.1 408"

    # Anything else should fail with a 4xx error
    #   client timeouts: 408 (Too Slow)
    host: Domain = rand.choice(list(domains))

    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(domains, upstream)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        async with trio.open_nursery() as nursery:
            nursery.start_soon(connect_slowly, client_stream, host, port, expected)
            nursery.start_soon(handle, proxy_stream, dispatcher)


@given(domains=sets(domains(), min_size=1), port=ports(), rand=randoms())
async def test_connect_with_random_input(domains: Set[Domain], port: Port, rand: random.Random) -> None:

    expected = b"HTTP/1.1 400"

    #   malformed request: 400 (Bad Request)
    random_length = rand.randint(1, 100)
    random_bytes = bytes(rand.getrandbits(8) for _ in range(random_length))
    random_bytes += b"\r\n\r\n"  # we must terminate the line, or the server will time out
    assume(b" HTTP/1." not in random_bytes)

    host: Domain = rand.choice(list(domains))

    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(domains, upstream)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        async with trio.open_nursery() as nursery:
            # As of trio-typing 0.10.0, start_soon's type signature only supports up to 5 arguments.
            nursery.start_soon(connect_with_bytes, client_stream, host, port, expected, random_bytes)  # type: ignore
            nursery.start_soon(handle, proxy_stream, dispatcher)


@pytest.mark.parametrize("target", ["example.com", "example.com:http", "a:b:c"])
async def test_connect_with_malformed_target(target: str) -> None:
    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(["*"], upstream)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        to_send = f"CONNECT {target} HTTP/1.1\r\nHost: {target}\r\n\r\n".encode()
        async with trio.open_nursery() as nursery:
            nursery.start_soon(connect_with_bytes, client_stream, "unused", 0, b"HTTP/1.1 400", to_send)  # type: ignore
            nursery.start_soon(handle, proxy_stream, dispatcher)

async def test_connect_when_the_connection_cannot_be_taken_over() -> None:

    # h11 saw a plain GET, so it will not give up the raw stream:
    #   you should get back a 500 error, and the dialled connection is closed again
    client, proxy_side = trio.testing.memory_stream_pair()
    near, server = trio.testing.memory_stream_pair()
    dialled: List[trio.abc.Stream] = []

    async def dial(host: str, port: int) -> trio.abc.Stream:
        dialled.append(near)
        return near

    w = TrioHTTPConnection(proxy_side)
    await client.send_all(b"GET http://example.com/ HTTP/1.1\r\nHost: example.com\r\n\r\n")
    assert isinstance(await w.next_event(), h11.Request)
    request = h11.Request(method="CONNECT", target="example.com:443", headers=[("Host", "example.com:443")])

    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(["example.com"], upstream, open_connection=dial)
        async with trio.open_nursery() as tunnels:
            await dispatcher.handle_connect(w, request, tunnels)

    resp = await client.receive_some(10000)
    assert resp.startswith(b"HTTP/1.1 500")
    assert dialled == [near]
    assert await server.receive_some(100) == b""
    with pytest.raises(trio.ClosedResourceError):
        await near.send_all(b"x")


async def test_total_time_covers_the_whole_tunnel(autojump_clock, caplog) -> None:
    caplog.set_level(logging.INFO, logger="forwardproxy")
    client, proxy_side = trio.testing.memory_stream_pair()
    near, server = trio.testing.memory_stream_pair()

    async def dial(host: str, port: int) -> trio.abc.Stream:
        return near

    async def talk() -> None:
        async with client:
            await client.send_all(b"CONNECT example.com:443 HTTP/1.1\r\nHost: example.com:443\r\n\r\n")
            resp = await client.receive_some(10000)
            assert resp.startswith(b"HTTP/1.1 200")
            await trio.sleep(30)
        await server.aclose()

    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(["example.com"], upstream, open_connection=dial)
        async with trio.open_nursery() as nursery:
            nursery.start_soon(handle, proxy_side, dispatcher)
            nursery.start_soon(talk)

    [message] = [r.getMessage() for r in caplog.records if "Total time" in r.getMessage()]
    assert float(message.rpartition("Total time: ")[2].rstrip("s")) >= 30

################################################################
#               Tests for the plain HTTP path
################################################################

def body_stream(body: bytes) -> httpx.ByteStream:
    return httpx.ByteStream(body)

async def test_http_forward_relays_status_headers_and_body() -> None:
    seen: List[httpx.Request] = []
    body = b"<p>hello, world</p>"

    def origin(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            201,
            headers=[
                ("X-Multi", "one"),
                ("Set-Cookie", "a=1"),
                ("X-Multi", "two"),
                ("Set-Cookie", "b=2"),
                ("Content-Length", str(len(body))),
                ("Keep-Alive", "timeout=5"),
            ],
            stream=body_stream(body),
        )

    async with new_upstream_client(transport=httpx.MockTransport(origin)) as upstream:
        dispatcher = make_dispatcher(["*.example.com"], upstream)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        results: List[Exchange] = []

        async def client() -> None:
            results.extend(await http_requests(
                client_stream,
                [("GET", "http://www.example.com/a?b=c", b"")],
                extra_headers=[("Proxy-Connection", "keep-alive"), ("Accept", "text/html")],
            ))

        async with trio.open_nursery() as nursery:
            nursery.start_soon(client)
            nursery.start_soon(handle, proxy_stream, dispatcher)

    [(response, received)] = results
    assert response.status_code == 201
    assert [v for n, v in response.headers if n == b"x-multi"] == [b"one", b"two"]
    assert [v for n, v in response.headers if n == b"set-cookie"] == [b"a=1", b"b=2"]
    assert not any(n == b"keep-alive" for n, _ in response.headers)
    assert received == body

    [request] = seen
    assert request.method == "GET"
    assert str(request.url) == "http://www.example.com/a?b=c"
    assert request.headers["accept"] == "text/html"
    assert "proxy-connection" not in request.headers
    assert "user-agent" not in request.headers  # nothing added by the proxy


async def test_http_forward_streams_request_body() -> None:
    seen: List[Tuple[str, bytes]] = []

    def origin(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.content))
        return httpx.Response(204, stream=body_stream(b""))

    async with new_upstream_client(transport=httpx.MockTransport(origin)) as upstream:
        dispatcher = make_dispatcher(["api.example.com"], upstream)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        results: List[Exchange] = []

        async def client() -> None:
            results.extend(await http_requests(client_stream, [("POST", "http://api.example.com:8080/items", b'{"x": 1}')]))

        async with trio.open_nursery() as nursery:
            nursery.start_soon(client)
            nursery.start_soon(handle, proxy_stream, dispatcher)

    [(response, _)] = results
    assert response.status_code == 204
    assert seen == [("POST", b'{"x": 1}')]


async def test_http_forward_keeps_the_connection_alive() -> None:
    paths: List[str] = []

    def origin(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, headers=[("Content-Length", "2")], stream=body_stream(b"ok"))

    async with new_upstream_client(transport=httpx.MockTransport(origin)) as upstream:
        dispatcher = make_dispatcher(["example.com"], upstream)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        results: List[Exchange] = []

        async def client() -> None:
            results.extend(await http_requests(client_stream, [
                ("GET", "http://example.com/first", b""),
                ("GET", "http://example.com/second", b""),
            ]))

        async with trio.open_nursery() as nursery:
            nursery.start_soon(client)
            nursery.start_soon(handle, proxy_stream, dispatcher)

    assert [r.status_code for r, _ in results] == [200, 200]
    assert paths == ["/first", "/second"]


@given(host=domains())
async def test_http_forward_to_non_whitelisted_host(host: Domain) -> None:
    assume(not host.endswith(".example.com"))

    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(["*.example.com"], upstream)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        results: List[Exchange] = []

        async def client() -> None:
            results.extend(await http_requests(client_stream, [("GET", f"http://{host}/", b"")]))

        async with trio.open_nursery() as nursery:
            nursery.start_soon(client)
            nursery.start_soon(handle, proxy_stream, dispatcher)

    [(response, body)] = results
    assert response.status_code == 403
    assert b"whitelist" in body


async def test_http_forward_upstream_failure_is_503() -> None:

    def origin(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    async with new_upstream_client(transport=httpx.MockTransport(origin)) as upstream:
        dispatcher = make_dispatcher(["example.com"], upstream)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        results: List[Exchange] = []

        async def client() -> None:
            results.extend(await http_requests(client_stream, [("GET", "http://example.com/", b"")]))

        async with trio.open_nursery() as nursery:
            nursery.start_soon(client)
            nursery.start_soon(handle, proxy_stream, dispatcher)

    [(response, body)] = results
    assert response.status_code == 503
    assert b"Connection refused" in body


@pytest.mark.parametrize("target", ["/relative/path", "ftp://example.com/file"])
async def test_http_forward_needs_an_absolute_http_uri(target: str) -> None:
    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(["*"], upstream)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        results: List[Exchange] = []

        async def client() -> None:
            results.extend(await http_requests(client_stream, [("GET", target, b"")]))

        async with trio.open_nursery() as nursery:
            nursery.start_soon(client)
            nursery.start_soon(handle, proxy_stream, dispatcher)

    [(response, _)] = results
    assert response.status_code == 400


async def test_http_forward_drops_headers_named_by_connection() -> None:
    seen: List[httpx.Request] = []

    def origin(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            headers=[
                ("Connection", "X-Secret"),
                ("X-Secret", "s"),
                ("X-Public", "p"),
                ("Content-Length", "2"),
            ],
            stream=body_stream(b"ok"),
        )

    async with new_upstream_client(transport=httpx.MockTransport(origin)) as upstream:
        dispatcher = make_dispatcher(["example.com"], upstream)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        results: List[Exchange] = []

        async def client() -> None:
            results.extend(await http_requests(
                client_stream,
                [("GET", "http://example.com/", b"")],
                extra_headers=[("Connection", "X-Hop"), ("X-Hop", "1"), ("X-Kept", "k")],
            ))

        async with trio.open_nursery() as nursery:
            nursery.start_soon(client)
            nursery.start_soon(handle, proxy_stream, dispatcher)

    [(response, received)] = results
    assert response.status_code == 200
    assert not any(n == b"x-secret" for n, _ in response.headers)
    assert [v for n, v in response.headers if n == b"x-public"] == [b"p"]
    assert received == b"ok"

    [request] = seen
    assert "x-hop" not in request.headers
    assert request.headers["x-kept"] == "k"


async def test_http_forward_where_client_body_stalls(autojump_clock) -> None:

    # The client sends the head and part of the body, then goes quiet:
    #   you should get back a 408 error, and the origin is never reached
    head = b"POST http://example.com/upload HTTP/1.1\r\nHost: example.com\r\nContent-Length: 10\r\n\r\n"

    async with new_upstream_client(transport=httpx.MockTransport(origin_must_not_be_reached)) as upstream:
        dispatcher = make_dispatcher(["example.com"], upstream)

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        async with trio.open_nursery() as nursery:
            nursery.start_soon(connect_with_bytes, client_stream, "unused", 0, b"HTTP/1.1 408", head + b"half")  # type: ignore
            nursery.start_soon(handle, proxy_stream, dispatcher)
