"""SOCKS5 server: per-connection negotiation, request handling and relaying."""

from __future__ import annotations

import asyncio
import errno
import logging
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional, Sequence

from merino.protocol import (
    SOCKS_VERSION,
    AuthMethod,
    MerinoError,
    ResponseCode,
    SockCommand,
    SocksError,
    User,
    addr_to_socket,
    pretty_print_addr,
    read_request,
    response_code_for,
    shutdown_writer,
    socks_reply,
)

logger = logging.getLogger("merino")

DEFAULT_CONNECT_TIMEOUT = 0.5
_CHUNK_SIZE = 64 * 1024


@contextmanager
def _io_errors() -> Iterator[None]:
    """Turn low-level stream failures into MerinoError."""
    try:
        yield
    except (OSError, asyncio.IncompleteReadError) as exc:
        raise MerinoError(f"IO error: {exc}") from exc


async def _pipe(reader: asyncio.StreamReader, writer) -> int:
    """Copy everything from reader to writer, then close writer's write half."""
    total = 0
    while True:
        chunk = await reader.read(_CHUNK_SIZE)
        if not chunk:
            break
        writer.write(chunk)
        await writer.drain()
        total += len(chunk)
    if writer.can_write_eof():
        writer.write_eof()
    return total


async def _connect_any(addresses: Sequence[tuple]):
    """Open a TCP connection to the first address that accepts it."""
    last_error: Optional[OSError] = None
    for address in addresses:
        try:
            return await asyncio.open_connection(address[0], address[1])
        except OSError as exc:
            last_error = exc
    if last_error is not None:
        raise last_error
    raise OSError(errno.EADDRNOTAVAIL, "could not resolve to any address")


class SocksClient:
    """One client connection going through negotiation and a single request."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer,
        authed_users: Iterable[User],
        auth_methods: Iterable[int],
        timeout: Optional[float] = None,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.authed_users = tuple(authed_users)
        self.auth_methods = tuple(int(m) for m in auth_methods)
        self.timeout = timeout
        self.socks_version = 0
        self.auth_nmethods = 0

    @classmethod
    def new_no_auth(cls, reader, writer, timeout=None) -> "SocksClient":
        """Create a client that accepts only unauthenticated connections."""
        return cls(reader, writer, (), (AuthMethod.NO_AUTH,), timeout)

    def _authed(self, user: User) -> bool:
        return user in self.authed_users

    async def shutdown(self) -> None:
        """Close the write half of the client stream."""
        await shutdown_writer(self.writer)

    async def init(self) -> None:
        """Negotiate with the client and serve its request."""
        logger.debug("New connection")
        with _io_errors():
            header = await self.reader.readexactly(2)
            self.socks_version, self.auth_nmethods = header[0], header[1]
            logger.debug(
                "Version: %d Auth nmethods: %d", self.socks_version, self.auth_nmethods
            )

            if self.socks_version != SOCKS_VERSION:
                logger.warning("Init: Unsupported version: SOCKS%d", self.socks_version)
                await self.shutdown()
                return

            await self._auth()
            await self.handle_client()

    async def _available_methods(self) -> list[int]:
        offered = await self.reader.readexactly(self.auth_nmethods)
        return [method for method in offered if method in self.auth_methods]

    async def _auth(self) -> None:
        logger.debug("Authenticating")
        methods = await self._available_methods()
        logger.debug("methods: %r", methods)

        if AuthMethod.USER_PASS in methods:
            logger.debug("Sending USER/PASS packet")
            self.writer.write(bytes([SOCKS_VERSION, AuthMethod.USER_PASS]))
            await self.writer.drain()

            header = await self.reader.readexactly(2)
            username = await self.reader.readexactly(header[1])
            plen = (await self.reader.readexactly(1))[0]
            secret = await self.reader.readexactly(plen)

            user = User(
                username.decode("utf-8", errors="replace"),
                secret.decode("utf-8", errors="replace"),
            )
            if self._authed(user):
                logger.debug("Access Granted. User: %s", user.username)
                self.writer.write(bytes([1, ResponseCode.SUCCESS]))
                await self.writer.drain()
            else:
                logger.debug("Access Denied. User: %s", user.username)
                self.writer.write(bytes([1, ResponseCode.FAILURE]))
                await self.writer.drain()
                await self.shutdown()
        elif AuthMethod.NO_AUTH in methods:
            logger.debug("Sending NOAUTH packet")
            self.writer.write(bytes([SOCKS_VERSION, AuthMethod.NO_AUTH]))
            await self.writer.drain()
            logger.debug("NOAUTH sent")
        else:
            logger.warning("Client has no suitable Auth methods!")
            self.writer.write(bytes([SOCKS_VERSION, AuthMethod.NO_METHODS]))
            await self.writer.drain()
            await self.shutdown()
            raise SocksError(ResponseCode.FAILURE)

    async def handle_client(self) -> int:
        """Serve one request; return the number of bytes relayed back to the client."""
        logger.debug("Starting to relay data")
        with _io_errors():
            req = await read_request(self.reader, self.writer)
            displayed = pretty_print_addr(req.addr_type, req.addr)
            logger.info(
                "New Request: Command: %s Addr: %s, Port: %d",
                req.command.name,
                displayed,
                req.port,
            )

            if req.command == SockCommand.BIND:
                raise MerinoError("IO error: Bind not supported")
            if req.command == SockCommand.UDP_ASSOCIATE:
                raise MerinoError("IO error: UdpAssosiate not supported")

            logger.debug("Handling CONNECT Command")
            addresses = await addr_to_socket(req.addr_type, req.addr, req.port)
            logger.debug("Connecting to: %r", addresses)

            limit = self.timeout if self.timeout is not None else DEFAULT_CONNECT_TIMEOUT
            try:
                target_reader, target_writer = await asyncio.wait_for(
                    _connect_any(addresses), limit
                )
            except asyncio.TimeoutError:
                raise SocksError(ResponseCode.CONNECTION_REFUSED) from None
            logger.debug("Connected!")

            try:
                self.writer.write(socks_reply(ResponseCode.SUCCESS))
                await self.writer.drain()
                return await self._relay(target_reader, target_writer)
            finally:
                target_writer.close()

    async def _relay(self, target_reader, target_writer) -> int:
        logger.debug("copy bidirectional")
        tasks = [
            asyncio.ensure_future(_pipe(self.reader, target_writer)),
            asyncio.ensure_future(_pipe(target_reader, self.writer)),
        ]
        try:
            _, target_to_client = await asyncio.gather(*tasks)
        except OSError as exc:
            for task in tasks:
                task.cancel()
            if exc.errno == errno.ENOTCONN:
                logger.debug("already closed")
                return 0
            raise
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        return target_to_client


class Merino:
    """A listening SOCKS5 proxy server."""

    def __init__(
        self,
        auth_methods: Iterable[int],
        users: Iterable[User],
        timeout: Optional[float] = None,
    ) -> None:
        self.auth_methods = tuple(int(m) for m in auth_methods)
        self.users = tuple(users)
        self.timeout = timeout
        self._server: Optional[asyncio.AbstractServer] = None
        self._closing = False

    @classmethod
    async def create(
        cls,
        port: int,
        ip: str,
        auth_methods: Iterable[int],
        users: Iterable[User],
        timeout: Optional[float] = None,
    ) -> "Merino":
        """Bind a listening socket on ip:port and start accepting clients."""
        logger.info("Listening on %s:%d", ip, port)
        merino = cls(auth_methods, users, timeout)
        merino._server = await asyncio.start_server(merino._handle_connection, ip, port)
        return merino

    @property
    def address(self) -> tuple:
        """The (host, port) the server is bound to."""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("server is not listening")
        return tuple(self._server.sockets[0].getsockname()[:2])

    async def _handle_connection(self, reader: asyncio.StreamReader, writer) -> None:
        client_addr = writer.get_extra_info("peername")
        client = SocksClient(reader, writer, self.users, self.auth_methods, self.timeout)
        try:
            await client.init()
        except Exception as error:
            logger.error("Error! %r, client: %r", error, client_addr)
            try:
                writer.write(socks_reply(response_code_for(error)))
                await writer.drain()
            except Exception as exc:
                logger.warning("Failed to send error code: %r", exc)
            try:
                await client.shutdown()
            except Exception as exc:
                logger.warning("Failed to shutdown TcpStream: %r", exc)
        finally:
            writer.close()

    async def serve(self) -> None:
        """Serve connections until the server is closed."""
        if self._server is None:
            raise RuntimeError("server is not listening")
        logger.info("Serving Connections...")
        try:
            await self._server.serve_forever()
        except asyncio.CancelledError:
            if not self._closing:
                raise

    async def close(self) -> None:
        """Stop listening and wait for the server to shut down."""
        if self._server is None:
            return
        self._closing = True
        self._server.close()
        await self._server.wait_closed()

    async def __aenter__(self) -> "Merino":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()