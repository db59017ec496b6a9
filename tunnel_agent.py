"""
tunnel_agent.py — HTTP(S) proxy CONNECT tunnels with NTLM proxy authentication.

Architecture
------------
``HttpsProxyAgent`` hands out connections to a *target* ``host:port`` by
asking a forwarding proxy to open a raw tunnel with ``CONNECT``.  The
result is either a ready-to-use connection (TLS-wrapped when the target
needs it) or, when the proxy refuses, the raw proxy connection together
with the response bytes that were already read from it.

Key components:

* **build_connect_request** — serialises the ``CONNECT`` request with a
  deterministic header order (static proxy headers, credentials, ``Host``,
  per-request extras).
* **ReplayBuffer** — keeps every byte read before the response header
  block is complete, so a refused tunnel can be replayed verbatim.
* **parse_response / classify** — turn the header block into a
  ``TunnelResponse`` and decide between success, NTLM round, or handoff.
* **next_auth_round** — drives the two-message NTLM exchange through an
  external ``CredentialProvider``.
* **_TunnelProtocol** — the per-attempt ``asyncio.Protocol`` state machine
  that owns the proxy transport until the attempt resolves.
* **upgrade_to_tls** — wraps an established tunnel with ``loop.start_tls``.
* **TunnelHandoff** — gives the raw transport to the consumer and replays
  the buffered bytes onto its read path before anything else.

Threading model
~~~~~~~~~~~~~~~
One attempt runs on a single asyncio event loop.  The tunnel protocol is
the only reader of its transport; it resolves one future exactly once and
pauses reading in the same callback, so no byte is consumed after the
outcome is known.

Known exposure
~~~~~~~~~~~~~~
By default there is no limit on the size of the proxy's header block and
no timeout while waiting for it.  ``AgentConfig.max_header_size`` and
``AgentConfig.handshake_timeout`` opt into both.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import dataclasses
import logging
import ssl
import typing
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence, Union
from urllib.parse import unquote, urlparse


# ============================================================================
# Configuration
# ============================================================================


@dataclass(frozen=True)
class AgentConfig:
    """Tunable knobs for the agent.

    Timeouts are in seconds; ``None`` means wait indefinitely.

    Attributes
    ----------
    verify_ssl:
        Verify certificates of both the proxy (for ``https://`` proxies)
        and the target after the tunnel is upgraded.
    cafile:
        Extra CA bundle used for verification instead of the system store.
    connect_timeout:
        Maximum time to open the transport (and TLS session) to the proxy.
    handshake_timeout:
        Maximum time to wait for the proxy to finish the CONNECT exchange,
        NTLM rounds included.  Also bounds the TLS upgrade to the target.
    max_header_size:
        Largest response header block accepted from the proxy.  Unbounded
        when ``None``.
    """

    verify_ssl: bool = True
    cafile: Optional[str] = None

    connect_timeout: Optional[float] = None
    handshake_timeout: Optional[float] = None

    max_header_size: Optional[int] = None


DEFAULT_CONFIG = AgentConfig()

HEADER_TERMINATOR = b"\r\n\r\n"
CRLF = "\r\n"
NTLM_SCHEME = "NTLM"


# ============================================================================
# Errors
# ============================================================================


class TunnelError(Exception):
    """Base class for every failure raised by the agent."""


class TunnelConnectionError(TunnelError, ConnectionError):
    """The proxy could not be reached or dropped the connection mid-handshake."""


class TunnelTLSError(TunnelError):
    """The TLS session to the target could not be established over the tunnel."""


class TunnelProtocolError(TunnelError):
    """The proxy or the consumer broke the tunnel's contract."""


# ============================================================================
# Data Classes
# ============================================================================


class Protocol(Enum):
    """ALPN-negotiated protocol of a TLS session."""

    HTTP1 = "http/1.1"
    HTTP2 = "h2"


class Outcome(Enum):
    """What a complete proxy response means for the attempt."""

    SUCCESS = "success"
    AUTH = "auth"
    OTHER = "other"


class TunnelState(Enum):
    CONNECTING = "connecting"
    AWAITING_HEADERS = "awaiting_headers"
    AUTH_ROUND = "auth_round"
    RESOLVED = "resolved"


@dataclass
class ProxyConfig:
    """Where the proxy lives and how to talk to it.

    ``ntlm_challenge`` is only set while an NTLM exchange is in flight and
    carries the base64 message for the next ``CONNECT``.  The agent works
    on a private copy per attempt (see :meth:`for_attempt`).
    """

    host: str
    port: Optional[int] = None
    secure: bool = False
    auth: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)
    alpn_protocols: Optional[list[str]] = None
    ntlm_challenge: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError(
                "an HTTP(S) proxy server `host` and `port` must be specified"
            )
        self.port = int(self.port) if self.port else (443 if self.secure else 80)

    @classmethod
    def from_url(cls, url: str, **overrides: Any) -> ProxyConfig:
        """Build a config from ``http[s]://[user:pass@]host[:port]``."""
        parsed = urlparse(url)
        scheme = parsed.scheme.lower()
        if scheme not in ("http", "https"):
            raise ValueError(f"unsupported proxy scheme in {url!r}")
        if not parsed.hostname:
            raise ValueError(
                "an HTTP(S) proxy server `host` and `port` must be specified"
            )

        auth: Optional[str] = None
        if parsed.username is not None:
            auth = unquote(parsed.username)
            if parsed.password is not None:
                auth = f"{auth}:{unquote(parsed.password)}"

        kwargs: dict[str, Any] = {
            "host": parsed.hostname,
            "port": parsed.port,
            "secure": scheme == "https",
            "auth": auth,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def for_attempt(self) -> ProxyConfig:
        """Fresh copy owned by a single connection attempt."""
        return dataclasses.replace(
            self,
            headers=dict(self.headers),
            alpn_protocols=(
                list(self.alpn_protocols)
                if self.alpn_protocols is not None
                else None
            ),
            ntlm_challenge=None,
        )

    @property
    def offered_alpn(self) -> list[str]:
        # Force HTTP/1.1 against proxies that would otherwise pick h2.
        if self.alpn_protocols is not None:
            return list(self.alpn_protocols)
        return [Protocol.HTTP1.value]


@dataclass(frozen=True)
class TargetOptions:
    """The endpoint the consumer ultimately wants to talk to."""

    host: str
    port: int
    secure_endpoint: bool = False
    servername: Optional[str] = None
    alpn_protocols: Optional[tuple[str, ...]] = None

    @property
    def server_name(self) -> str:
        return self.servername or self.host


@dataclass(frozen=True)
class TunnelResponse:
    """Status and headers of a proxy response to ``CONNECT``.

    Header names are lower-cased; each maps to every value it was sent
    with, in arrival order.
    """

    status_code: int
    reason: str = ""
    headers: Mapping[str, list[str]] = field(default_factory=dict)

    def get_all(self, name: str) -> list[str]:
        return list(self.headers.get(name.lower(), ()))


@dataclass(frozen=True)
class AuthRound:
    """One NTLM step: the proxy's challenge and the message answering it."""

    challenge: str
    message: bytes

    @property
    def round(self) -> int:
        return 1 if self.challenge else 0

    @property
    def token(self) -> str:
        return base64.b64encode(self.message).decode("ascii")


class CredentialProvider(typing.Protocol):
    """Produces NTLM messages; the cryptography lives elsewhere."""

    def initial_message(self) -> bytes: ...

    def response_message(self, challenge: bytes) -> bytes: ...


# ============================================================================
# CONNECT Request
# ============================================================================


def is_default_port(port: int, secure: bool) -> bool:
    return (not secure and port == 80) or (secure and port == 443)


def build_connect_request(
    target: TargetOptions,
    proxy: ProxyConfig,
    additional_headers: Optional[Mapping[str, str]] = None,
) -> bytes:
    """Serialise a ``CONNECT`` request for *target*.

    Header order: the proxy's static headers, ``Proxy-Authorization``
    (NTLM wins over Basic while a round is active), ``Host``, then
    *additional_headers*.  Names already present in the static headers are
    overwritten in place.
    """
    lines = [f"CONNECT {target.host}:{target.port} HTTP/1.1"]

    headers = dict(proxy.headers)
    if proxy.auth:
        credential = base64.b64encode(proxy.auth.encode("utf-8")).decode("ascii")
        headers["Proxy-Authorization"] = f"Basic {credential}"
    if proxy.ntlm_challenge:
        headers["Proxy-Authorization"] = f"{NTLM_SCHEME} {proxy.ntlm_challenge}"

    host = target.host
    if not is_default_port(target.port, target.secure_endpoint):
        host = f"{host}:{target.port}"
    headers["Host"] = host

    lines.extend(f"{name}: {value}" for name, value in headers.items())
    if additional_headers:
        lines.extend(
            f"{name}: {value}" for name, value in additional_headers.items()
        )
    return (CRLF.join(lines) + CRLF + CRLF).encode("utf-8")


# ============================================================================
# Replay Buffer
# ============================================================================


class ReplayBuffer:
    """Bytes read from the proxy before the header block was complete.

    Append-only until the attempt decides: ``reset()`` drops the content
    (success, or the start of another NTLM round) and ``freeze()`` seals
    it for replay to the consumer.
    """

    __slots__ = ("_chunks", "_length", "_frozen")

    def __init__(self) -> None:
        self._chunks: list[bytes] = []
        self._length = 0
        self._frozen = False

    def append(self, data: bytes) -> None:
        if self._frozen:
            raise TunnelProtocolError("replay buffer is frozen")
        self._chunks.append(bytes(data))
        self._length += len(data)

    def snapshot(self) -> bytes:
        return b"".join(self._chunks)

    def reset(self) -> None:
        if self._frozen:
            raise TunnelProtocolError("replay buffer is frozen")
        self._chunks.clear()
        self._length = 0

    def freeze(self) -> bytes:
        data = self.snapshot()
        self._chunks = [data]
        self._frozen = True
        return data

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return self._length


# ============================================================================
# Response Classification
# ============================================================================


def parse_response(block: bytes) -> TunnelResponse:
    """Parse the status line and headers preceding the first blank line.

    A status line that cannot be parsed yields status ``0``, which the
    classifier treats like any other non-success status.
    """
    head = block.split(HEADER_TERMINATOR, 1)[0].decode("latin-1")
    lines = head.split(CRLF)

    status_code = 0
    reason = ""
    parts = lines[0].split(" ", 2)
    if (
        len(parts) >= 2
        and parts[0].startswith("HTTP/")
        and len(parts[1]) == 3
        and parts[1].isascii()
        and parts[1].isdigit()
    ):
        status_code = int(parts[1])
        reason = parts[2].strip() if len(parts) > 2 else ""

    headers: dict[str, list[str]] = {}
    for line in lines[1:]:
        if ":" not in line:
            continue
        name, value = line.split(":", 1)
        headers.setdefault(name.strip().lower(), []).append(value.strip())

    return TunnelResponse(status_code, reason, headers)


def classify(response: TunnelResponse, has_provider: bool) -> Outcome:
    if response.status_code == 200:
        return Outcome.SUCCESS
    if response.status_code == 407 and has_provider and is_ntlm_negotiation(response):
        return Outcome.AUTH
    return Outcome.OTHER


# ============================================================================
# NTLM Handshake
# ============================================================================


def find_ntlm(values: Iterable[str]) -> Optional[str]:
    """Return the first ``Proxy-Authenticate`` value using the NTLM scheme.

    The scheme token must be exactly ``NTLM``; ``"NTLM"`` and
    ``"NTLM <challenge>"`` match, ``"Negotiate"`` does not.
    """
    for value in values:
        parts = value.split()
        if parts and parts[0] == NTLM_SCHEME:
            return value
    return None


def is_ntlm_negotiation(response: TunnelResponse) -> bool:
    return find_ntlm(response.get_all("proxy-authenticate")) is not None


def extract_challenge(response: TunnelResponse) -> str:
    """Base64 challenge carried by the NTLM value, or ``""`` if none."""
    value = find_ntlm(response.get_all("proxy-authenticate"))
    if value is None:
        return ""
    parts = value.split()
    return parts[1] if len(parts) > 1 else ""


def next_auth_round(
    response: TunnelResponse, provider: CredentialProvider
) -> AuthRound:
    """Ask *provider* for the message answering this 407 response.

    No challenge means the exchange is starting (NEGOTIATE); otherwise the
    decoded challenge is answered (AUTHENTICATE).  The round is inferred
    from the challenge alone, so a proxy that keeps sending challenges
    keeps getting answers.
    """
    challenge = extract_challenge(response)
    if not challenge:
        message = provider.initial_message()
    else:
        try:
            # some proxies drop the trailing padding
            padded = challenge + "=" * (-len(challenge) % 4)
            decoded = base64.b64decode(padded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise TunnelProtocolError(
                f"malformed NTLM challenge from proxy: {e}"
            ) from e
        message = provider.response_message(decoded)
    return AuthRound(challenge, bytes(message))


# ============================================================================
# Transport Primitives
# ============================================================================


class ManagedConnection:
    """Thin wrapper around an ``(StreamReader, StreamWriter)`` pair.

    Provides a safe ``close()`` that handles SSL edge-cases without
    spamming the asyncio exception handler.
    """

    __slots__ = ("reader", "writer", "_closed")

    def __init__(self, reader: StreamReader, writer: StreamWriter):
        self.reader = reader
        self.writer = writer
        self._closed = False

    @property
    def ssl_object(self) -> Optional[ssl.SSLObject]:
        return self.writer.get_extra_info("ssl_object")

    @property
    def negotiated_protocol(self) -> Optional[Protocol]:
        """ALPN result of the outermost TLS session, if any."""
        ssl_obj = self.ssl_object
        if ssl_obj is None:
            return None
        return Protocol.HTTP2 if ssl_obj.selected_alpn_protocol() == "h2" else Protocol.HTTP1

    async def close(self, force: bool = False) -> None:
        """Close the underlying transport.

        Parameters
        ----------
        force:
            If ``True``, abort the transport immediately without
            attempting a graceful TLS ``close_notify`` shutdown.

        When *force* is ``False`` (the default), an SSL transport whose
        TCP connection was already reset by the peer is aborted directly,
        since ``writer.close()`` would only surface an ``SSLError``
        through the loop's exception handler.
        """
        if self._closed:
            return
        self._closed = True
        try:
            transport = self.writer.transport
            if force:
                transport.abort()
            if transport is None or transport.is_closing():
                return
            ssl_obj = transport.get_extra_info("ssl_object")
            if ssl_obj is not None:
                try:
                    ssl_obj.version()
                except Exception:
                    # SSL session is dead, skip graceful close
                    transport.abort()
                    return
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=2.0)
        except TimeoutError:
            transport = self.writer.transport
            if transport and not transport.is_closing():
                transport.abort()
            logger.trace("Connection close timed out, aborted")
        except OSError as e:
            logger.debug("Connection close error: %s", e)


class TLSContextFactory:
    """Creates client-side ``ssl.SSLContext`` objects.

    Contexts are cached by ALPN tuple so we don't re-create them on every
    connection.
    """

    __slots__ = ("verify", "cafile", "_ctx_cache")

    def __init__(self, verify: bool = True, cafile: Optional[str] = None):
        self.verify = verify
        self.cafile = cafile
        self._ctx_cache: dict[tuple[str, ...], ssl.SSLContext] = {}

    def create_client_context(
        self, alpn: Optional[Sequence[str]] = None
    ) -> ssl.SSLContext:
        key = tuple(alpn or ())
        if key not in self._ctx_cache:
            if self.verify:
                ctx = ssl.create_default_context(cafile=self.cafile)
            else:
                ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
                ctx.check_hostname = False
                ctx.verify_mode = ssl.CERT_NONE
            if key:
                ctx.set_alpn_protocols(list(key))
            self._ctx_cache[key] = ctx
        return self._ctx_cache[key]


def _attach_streams(
    transport: asyncio.BaseTransport, loop: asyncio.AbstractEventLoop
) -> ManagedConnection:
    reader = StreamReader()
    proto = asyncio.StreamReaderProtocol(reader)
    transport.set_protocol(proto)
    proto.connection_made(transport)
    writer = StreamWriter(transport, proto, reader, loop)  # type: ignore[arg-type]
    return ManagedConnection(reader, writer)


async def upgrade_to_tls(
    transport: asyncio.BaseTransport,
    server_hostname: str,
    ctx: ssl.SSLContext,
    timeout: Optional[float] = None,
) -> ManagedConnection:
    """Run a client TLS handshake over an already-connected transport.

    No new network connection is made.  On failure the transport is
    aborted and ``TunnelTLSError`` is raised.
    """
    loop = asyncio.get_running_loop()
    # Decrypted bytes go straight to the stream protocol.
    tls_reader = StreamReader()
    tls_proto = asyncio.StreamReaderProtocol(tls_reader)

    try:
        async with asyncio.timeout(timeout):
            ssl_transport = await loop.start_tls(
                transport,  # type: ignore[arg-type]
                tls_proto,
                ctx,
                server_side=False,
                server_hostname=server_hostname,
            )
    except OSError as e:
        transport.abort()  # type: ignore[attr-defined]
        raise TunnelTLSError(
            f"TLS handshake with {server_hostname} failed: {e}"
        ) from e

    if ssl_transport is None:
        transport.abort()  # type: ignore[attr-defined]
        raise TunnelTLSError(f"TLS handshake with {server_hostname} failed")

    logger.debug(
        "[%s] TLS established (%s)",
        server_hostname,
        ssl_transport.get_extra_info("ssl_object").version(),
    )
    tls_proto.connection_made(ssl_transport)
    tls_writer = StreamWriter(ssl_transport, tls_proto, tls_reader, loop)  # type: ignore[arg-type]
    return ManagedConnection(tls_reader, tls_writer)


# ============================================================================
# Consumer Handoff
# ============================================================================


class TunnelHandoff:
    """A refused tunnel: the raw proxy connection plus what was read from it.

    The consumer attaches its own read path with :meth:`attach` (an
    ``asyncio.Protocol`` or a ``StreamReader``) or :meth:`open_streams`.
    The buffered response bytes are delivered to that read path exactly
    once, before any further bytes from the transport.
    """

    __slots__ = ("transport", "response", "_replay", "_source", "_attached")

    def __init__(
        self,
        transport: asyncio.Transport,
        response: TunnelResponse,
        replay: bytes,
        source: Optional[_TunnelProtocol] = None,
    ):
        self.transport = transport
        self.response = response
        self._replay = replay
        self._source = source
        self._attached = False

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def attached(self) -> bool:
        return self._attached

    def attach(self, consumer: Union[asyncio.BaseProtocol, StreamReader]) -> None:
        """Make *consumer* the transport's read path and replay onto it."""
        if isinstance(consumer, StreamReader):
            self._attach(asyncio.StreamReaderProtocol(consumer), consumer.feed_data)
        elif callable(getattr(consumer, "data_received", None)):
            self._attach(consumer, consumer.data_received)  # type: ignore[union-attr]
        else:
            self.close()
            raise TunnelProtocolError(
                f"{type(consumer).__name__} exposes no read path to replay onto"
            )

    def open_streams(self) -> tuple[StreamReader, StreamWriter]:
        """Attach a fresh ``StreamReader`` and return it with its writer."""
        loop = asyncio.get_running_loop()
        reader = StreamReader()
        proto = asyncio.StreamReaderProtocol(reader)
        self._attach(proto, reader.feed_data)
        return reader, StreamWriter(self.transport, proto, reader, loop)

    def close(self) -> None:
        """Drop the connection without handing it to anyone.

        The handoff is spent afterwards; any later attach is rejected.
        """
        self._attached = True
        self._replay = b""
        self.transport.abort()

    def _attach(self, protocol: asyncio.BaseProtocol, deliver: Any) -> None:
        if self._attached:
            raise TunnelProtocolError("tunnel handoff was already attached or closed")
        self._attached = True

        replay, self._replay = self._replay, b""
        if self._source is not None:
            replay += self._source.take_overflow()

        self.transport.set_protocol(protocol)
        protocol.connection_made(self.transport)
        # Reading resumes on the next loop iteration at the earliest, so the
        # replay below always reaches the consumer first.
        self.transport.resume_reading()
        if replay:
            deliver(replay)


# ============================================================================
# Tunnel Protocol (one per connection attempt)
# ============================================================================


class _TunnelProtocol(asyncio.Protocol):
    """Drives the CONNECT exchange on a freshly opened proxy transport.

    ``result`` resolves once with ``(outcome, response, data)`` where
    *data* is the replay payload for ``Outcome.OTHER`` and any bytes past
    the header block for ``Outcome.SUCCESS``.  Errors resolve it with an
    exception and abort the transport.
    """

    def __init__(
        self,
        target: TargetOptions,
        proxy: ProxyConfig,
        provider: Optional[CredentialProvider],
        config: AgentConfig,
        result: asyncio.Future,
    ):
        self.target = target
        self.proxy = proxy
        self.provider = provider
        self.config = config
        self.result = result
        self.state = TunnelState.CONNECTING
        self.transport: Optional[asyncio.Transport] = None
        self.rounds: list[AuthRound] = []
        self._buffer = ReplayBuffer()
        self._overflow = bytearray()

    # -- asyncio callbacks -------------------------------------------------

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]
        self.state = TunnelState.AWAITING_HEADERS
        self._send({"Connection": "close"})

    def data_received(self, data: bytes) -> None:
        if self.state is TunnelState.RESOLVED:
            self._overflow.extend(data)
            return

        self._buffer.append(data)
        buffered = self._buffer.snapshot()
        end = buffered.find(HEADER_TERMINATOR)

        limit = self.config.max_header_size
        header_size = end + len(HEADER_TERMINATOR) if end >= 0 else len(buffered)
        if limit is not None and header_size > limit:
            self._fail(
                TunnelProtocolError(
                    f"proxy response headers exceed {limit} bytes"
                )
            )
            return

        if end < 0:
            logger.trace(
                "[%s:%d] have not received end of HTTP headers yet (%d bytes)",
                self.target.host,
                self.target.port,
                len(buffered),
            )
            return

        logger.trace("[%s:%d] proxy response: %r", self.target.host, self.target.port, buffered[:end])
        response = parse_response(buffered)
        outcome = classify(response, self.provider is not None)
        logger.debug(
            "[%s:%d] proxy answered %d %s -> %s",
            self.target.host,
            self.target.port,
            response.status_code,
            response.reason,
            outcome.value,
        )

        if outcome is Outcome.AUTH:
            self._next_round(response)
            return

        self.transport.pause_reading()
        if outcome is Outcome.SUCCESS:
            self._buffer.reset()
            self._resolve(outcome, response, buffered[end + len(HEADER_TERMINATOR):])
        else:
            self._resolve(outcome, response, self._buffer.freeze())

    def eof_received(self) -> Optional[bool]:
        logger.debug("[%s:%d] proxy sent EOF", self.target.host, self.target.port)
        if self.state is not TunnelState.RESOLVED:
            self._fail(
                TunnelConnectionError(
                    f"proxy {self.proxy.host}:{self.proxy.port} closed the "
                    "connection before completing the CONNECT response"
                )
            )
        return False

    def connection_lost(self, exc: Optional[BaseException]) -> None:
        logger.debug("[%s:%d] proxy connection lost: %s", self.target.host, self.target.port, exc)
        if self.state is TunnelState.RESOLVED:
            return
        error = TunnelConnectionError(
            f"connection to proxy {self.proxy.host}:{self.proxy.port} lost: "
            f"{exc or 'closed by peer'}"
        )
        error.__cause__ = exc
        self._fail(error)

    # -- internal ----------------------------------------------------------

    def take_overflow(self) -> bytes:
        data = bytes(self._overflow)
        self._overflow.clear()
        return data

    def _send(self, additional_headers: Mapping[str, str]) -> None:
        request = build_connect_request(self.target, self.proxy, additional_headers)
        logger.debug(
            "[%s:%d] CONNECT via %s:%d (round %d)",
            self.target.host,
            self.target.port,
            self.proxy.host,
            self.proxy.port,
            len(self.rounds),
        )
        self.transport.write(request)

    def _next_round(self, response: TunnelResponse) -> None:
        self.state = TunnelState.AUTH_ROUND
        try:
            auth = next_auth_round(response, self.provider)  # type: ignore[arg-type]
        except Exception as e:
            self._fail(e)
            return
        logger.debug(
            "[%s:%d] NTLM authentication required, sending %s message",
            self.target.host,
            self.target.port,
            "AUTHENTICATE" if auth.round else "NEGOTIATE",
        )
        self.rounds.append(auth)
        self.proxy.ntlm_challenge = auth.token
        self._buffer.reset()
        self._send({})

    def _resolve(self, outcome: Outcome, response: TunnelResponse, data: bytes) -> None:
        self.state = TunnelState.RESOLVED
        if not self.result.done():
            self.result.set_result((outcome, response, data))

    def _fail(self, exc: BaseException) -> None:
        self.state = TunnelState.RESOLVED
        if not self.result.done():
            self.result.set_exception(exc)
        if self.transport is not None:
            self.transport.abort()


# ============================================================================
# HttpsProxyAgent
# ============================================================================


class ConnectionProvider(typing.Protocol):
    """What a request-dispatch layer needs from a connection source."""

    async def connect(
        self, target: TargetOptions
    ) -> Union[ManagedConnection, TunnelHandoff]: ...


class HttpsProxyAgent:
    """Connection provider that reaches targets through an HTTP(S) proxy.

    Usage::

        agent = HttpsProxyAgent("http://proxy.corp:3128")
        conn = await agent.connect(TargetOptions("example.com", 443, secure_endpoint=True))
        if isinstance(conn, TunnelHandoff):
            reader, writer = conn.open_streams()   # proxy's own response
        else:
            conn.writer.write(b"GET / HTTP/1.1\\r\\nHost: example.com\\r\\n\\r\\n")

    Pass a :class:`CredentialProvider` to answer NTLM challenges; without
    one a ``407`` is handed back like any other refusal.
    """

    __slots__ = ("proxy", "credential_provider", "config", "_tls")

    def __init__(
        self,
        proxy: Union[ProxyConfig, str],
        credential_provider: Optional[CredentialProvider] = None,
        config: AgentConfig = DEFAULT_CONFIG,
    ):
        if isinstance(proxy, str):
            proxy = ProxyConfig.from_url(proxy)
        self.proxy = proxy
        self.credential_provider = credential_provider
        self.config = config
        self._tls = TLSContextFactory(verify=config.verify_ssl, cafile=config.cafile)
        logger.debug(
            "creating new HttpsProxyAgent for %s:%d (secure: %s)",
            proxy.host,
            proxy.port,
            proxy.secure,
        )

    @property
    def secure_proxy(self) -> bool:
        return self.proxy.secure

    async def connect(
        self,
        target: TargetOptions,
        *,
        credential_provider: Optional[CredentialProvider] = None,
    ) -> Union[ManagedConnection, TunnelHandoff]:
        """Open a tunnel to *target*.

        Returns a ``ManagedConnection`` when the proxy answered ``200``
        (already TLS-wrapped if ``target.secure_endpoint``), or a
        ``TunnelHandoff`` for any other answer.  Raises ``TunnelError``
        subclasses on transport or TLS failures.
        """
        provider = credential_provider or self.credential_provider
        proxy = self.proxy.for_attempt()
        loop = asyncio.get_running_loop()
        tunnel = _TunnelProtocol(target, proxy, provider, self.config, loop.create_future())

        ssl_ctx = self._tls.create_client_context(proxy.offered_alpn) if proxy.secure else None
        try:
            async with asyncio.timeout(self.config.connect_timeout):
                transport, _ = await loop.create_connection(
                    lambda: tunnel, proxy.host, proxy.port, ssl=ssl_ctx
                )
        except OSError as e:
            raise TunnelConnectionError(
                f"cannot connect to proxy {proxy.host}:{proxy.port}: {e}"
            ) from e

        try:
            async with asyncio.timeout(self.config.handshake_timeout):
                outcome, response, data = await tunnel.result
        except TimeoutError as e:
            transport.abort()
            raise TunnelConnectionError(
                f"proxy {proxy.host}:{proxy.port} did not complete CONNECT "
                f"within {self.config.handshake_timeout}s"
            ) from e
        except asyncio.CancelledError:
            transport.abort()
            raise

        if outcome is Outcome.SUCCESS:
            logger.debug("[%s:%d] Connection established", target.host, target.port)
            if target.secure_endpoint:
                if data:
                    logger.debug(
                        "[%s:%d] discarding %d bytes received before TLS upgrade",
                        target.host,
                        target.port,
                        len(data),
                    )
                ctx = self._tls.create_client_context(target.alpn_protocols)
                return await upgrade_to_tls(
                    transport,
                    target.server_name,
                    ctx,
                    timeout=self.config.handshake_timeout,
                )
            conn = _attach_streams(transport, loop)
            if data:
                conn.reader.feed_data(data)
            transport.resume_reading()
            return conn

        logger.warning(
            "[%s:%d] proxy refused tunnel: %d %s",
            target.host,
            target.port,
            response.status_code,
            response.reason,
        )
        return TunnelHandoff(transport, response, data, tunnel)


# ============================================================================
# Logging
# ============================================================================


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(5):
            self._log(5, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(5, "TRACE")

logger: CustomLogger = logging.getLogger(__name__)  # type: ignore[assignment]
