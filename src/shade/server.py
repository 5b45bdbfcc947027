"""
Shade - Relay server using asyncio.

Accepts client connections, speaks the newline-delimited JSON protocol,
keeps the presence registry, relays messages and call signaling, and runs
the periodic expiry sweep over the message store.

Each client connection runs in its own asyncio task. The relay never sees
plaintext: payloads are opaque envelopes produced by the clients.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from rich.logging import RichHandler

from .accounts import AccountStore
from .call import CallSignalingRelay
from .config import Config
from .constants import LOG_DATE_FORMAT, READ_TIMEOUT, STREAM_READ_CHUNK, VERSION
from .errors import ErrorCode, ProtocolError, ShadeError
from .message_store import MessageStore
from .presence import PresenceRegistry
from .protocol import Command, Event, decode_line, encode_line, make_event, make_response
from .relay import MessageRelay
from .utils import truncate_string

logger = logging.getLogger(__name__)


class ClientConnection:
    """One connected client and what it has authenticated as."""

    def __init__(self, connection_id: int, writer: asyncio.StreamWriter):
        self.connection_id = connection_id
        self.writer = writer
        self.address = writer.get_extra_info("peername")
        self.account: Optional[Dict[str, Any]] = None
        self.identity: Optional[str] = None  # Set once announced via addNewUser
        self._write_lock = asyncio.Lock()

    @property
    def user_id(self) -> Optional[str]:
        return self.account["id"] if self.account else None

    async def send(self, obj: Dict[str, Any]) -> None:
        """Write one frame. Responses and pushes never interleave."""
        data = encode_line(obj, max_size=None)
        async with self._write_lock:
            self.writer.write(data)
            await self.writer.drain()

    def __repr__(self) -> str:
        return f"ClientConnection({self.connection_id}, user={self.user_id})"


class ShadeServer:
    """Relay server for Shade clients."""

    def __init__(self, config: Config, host: Optional[str] = None, port: Optional[int] = None):
        """
        Initialize server.

        Args:
            config: Loaded configuration
            host: Bind address, overrides config
            port: Bind port, overrides config (0 picks a free port)
        """
        self.config = config
        self.host = host if host is not None else config.get("server", "host")
        self.port = port if port is not None else config.get("server", "port")
        self.max_message_size = config.get("limits", "max_message_size")
        self.sweep_interval = config.get("store", "sweep_interval")

        self.store: Optional[MessageStore] = None
        self.accounts: Optional[AccountStore] = None
        self.presence = PresenceRegistry()
        self.relay: Optional[MessageRelay] = None
        self.calls = CallSignalingRelay(self.presence, self._send_event)

        self.server: Optional[asyncio.Server] = None
        self.running = False
        self._stopped = asyncio.Event()
        self._sweep_task: Optional[asyncio.Task] = None

        self.clients: Dict[int, ClientConnection] = {}
        self.client_lock = asyncio.Lock()
        self.next_client_id = 1

    async def start(self) -> bool:
        """
        Open the stores and start listening.

        Returns:
            True if the server started
        """
        try:
            database = self.config.database_path()
            self.store = MessageStore(database, ttl_hours=self.config.get("store", "ttl_hours"))
            self.accounts = AccountStore(database)
            self.relay = MessageRelay(self.store, self.presence, self._send_event)

            self.server = await asyncio.start_server(self._handle_client, self.host, self.port)
            if self.port == 0:
                self.port = self.server.sockets[0].getsockname()[1]

            self.running = True
            self._sweep_task = asyncio.create_task(self._sweep_loop())

            logger.info(f"Shade relay {VERSION} listening on {self.host}:{self.port}")
            logger.info(f"Database: {database}")
            return True

        except (OSError, ShadeError) as e:
            logger.error(f"Failed to start server: {e}", exc_info=True)
            await self.stop()
            return False

    async def stop(self) -> None:
        """Stop listening, drop every client and close the stores."""
        logger.info("Stopping server...")
        self.running = False

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        if self.server:
            self.server.close()

        async with self.client_lock:
            connections = list(self.clients.values())
            self.clients.clear()
        for connection in connections:
            try:
                connection.writer.close()
                await connection.writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error closing client: {e}")

        # wait_closed() also waits for the connection handlers to finish
        if self.server:
            await self.server.wait_closed()
            self.server = None

        if self.store:
            self.store.close()
        if self.accounts:
            self.accounts.close()

        self._stopped.set()
        logger.info("Server stopped")

    async def run(self) -> None:
        """Serve until stop() is called."""
        await self._stopped.wait()

    async def _sweep_loop(self) -> None:
        """Delete expired messages every sweep interval."""
        while self.running:
            await asyncio.sleep(self.sweep_interval)
            await self.relay.sweep_expired()

    async def _send_event(self, handle: ClientConnection, event: Dict[str, Any]) -> None:
        await handle.send(event)

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """
        Handle one client connection.

        Reads newline-delimited JSON requests, answers each with a response
        carrying the same request_id, and cleans up presence and calls when
        the connection goes away.
        """
        async with self.client_lock:
            connection = ClientConnection(self.next_client_id, writer)
            self.next_client_id += 1
            self.clients[connection.connection_id] = connection

        logger.debug(f"Client connected from {connection.address}")
        buffer = b""

        try:
            while self.running:
                try:
                    data = await asyncio.wait_for(
                        reader.read(STREAM_READ_CHUNK), timeout=READ_TIMEOUT
                    )
                except asyncio.TimeoutError:
                    continue
                if not data:
                    break

                buffer += data
                if b"\n" not in buffer and len(buffer) > self.max_message_size:
                    logger.warning(f"Frame from {connection.address} exceeds size limit")
                    error = ProtocolError(ErrorCode.E207_MESSAGE_TOO_LARGE, "Frame too large")
                    await connection.send(make_response(None, self._error_result(error)))
                    break

                # Process complete messages (newline-delimited JSON)
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    if line.strip():
                        await self._handle_line(connection, line)

        except (ConnectionError, OSError) as e:
            logger.debug(f"Connection {connection.connection_id} dropped: {e}")
        finally:
            await self._drop_client(connection)

    async def _handle_line(self, connection: ClientConnection, line: bytes) -> None:
        try:
            request = decode_line(line)
        except ProtocolError as e:
            logger.warning(f"Invalid frame from client: {truncate_string(repr(line), 80)}")
            await connection.send(make_response(None, self._error_result(e)))
            return

        result = await self._process_command(connection, request)
        await connection.send(make_response(request.get("request_id"), result))

    async def _drop_client(self, connection: ClientConnection) -> None:
        async with self.client_lock:
            self.clients.pop(connection.connection_id, None)

        identity = await self.presence.remove_connection(connection)
        if identity is not None:
            await self.calls.drop_identity(identity)
            await self._broadcast_presence()

        try:
            connection.writer.close()
            await connection.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error closing writer: {e}")

        logger.debug(f"Client {connection.connection_id} disconnected")

    async def _broadcast_presence(self) -> None:
        """Send the full online snapshot to every connected client."""
        event = make_event(Event.ONLINE_USERS, users=self.presence.snapshot())
        await self._broadcast_to_clients(event)

    async def _broadcast_to_clients(self, event: Dict[str, Any]) -> None:
        async with self.client_lock:
            connections = list(self.clients.values())

        for connection in connections:
            try:
                await connection.send(event)
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error broadcasting to client: {e}")

    @staticmethod
    def _error_result(error: ShadeError) -> Dict[str, Any]:
        """Failure response: the error dict plus success and the legacy error text."""
        result: Dict[str, Any] = {"success": False, "error": error.message}
        result.update(error.to_dict())
        return result

    @staticmethod
    def _require_account(connection: ClientConnection) -> str:
        if connection.account is None:
            raise ProtocolError(ErrorCode.E210_NOT_AUTHENTICATED, "Login required")
        return connection.user_id

    @staticmethod
    def _check_identity(connection: ClientConnection, claimed: Optional[str]) -> str:
        """The acting identity is always the logged-in one; a different claim is rejected."""
        user_id = ShadeServer._require_account(connection)
        if claimed is not None and claimed != user_id:
            raise ProtocolError(
                ErrorCode.E210_NOT_AUTHENTICATED,
                "Cannot act for another identity",
                {"claimed": claimed},
            )
        return user_id

    @staticmethod
    def _require_param(params: Dict[str, Any], name: str) -> Any:
        value = params.get(name)
        if value is None or value == "":
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, f"Missing parameter: {name}", {"param": name}
            )
        return value

    async def _process_command(
        self, connection: ClientConnection, request: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Route one request to its handler.

        Returns:
            Response body with at least 'success'. Coded failures carry
            'error', 'code' and 'details'.
        """
        command = request.get("command")
        params = request.get("params") or {}
        if not isinstance(params, dict):
            return self._error_result(
                ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "params must be an object")
            )

        try:
            if command == Command.PING:
                return {"success": True, "message": "pong"}

            elif command == Command.REGISTER:
                return await self._handle_register(params)

            elif command == Command.LOGIN:
                return await self._handle_login(connection, params)

            elif command == Command.CONNECT:
                return await self._handle_connect(connection, params)

            elif command == Command.GET_USERS:
                self._require_account(connection)
                return {"success": True, "users": await self.accounts.list_users_async()}

            elif command == Command.GET_CONTACTS:
                self._require_account(connection)
                contacts = await self.accounts.get_contacts_async(connection.account["username"])
                return {"success": True, "contacts": contacts}

            elif command == Command.ADD_CONTACT:
                self._require_account(connection)
                contact = await self.accounts.add_contact_async(
                    connection.account["username"], self._require_param(params, "friendCode")
                )
                return {"success": True, "contact": contact}

            elif command == Command.GET_MESSAGES:
                user_id = self._check_identity(connection, params.get("userId"))
                messages = await self.relay.fetch_history(user_id)
                return {"success": True, "messages": [m.to_dict() for m in messages]}

            elif command == Command.SEND_MESSAGE:
                return await self._handle_send_message(connection, params)

            elif command == Command.TOGGLE_SAVE:
                user_id = self._require_account(connection)
                message = await self.relay.toggle_save(user_id, self._message_id(params.get("id")))
                if message is None:
                    return {
                        "success": False,
                        "error": "Message not found",
                        "code": ErrorCode.E206_INVALID_MESSAGE.value,
                    }
                return {"success": True, "message": message.to_dict()}

            elif command == Command.DELETE_MESSAGES:
                user_id = self._require_account(connection)
                ids = params.get("ids")
                if not isinstance(ids, list):
                    raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "ids must be a list")
                ids = [self._message_id(i) for i in ids]
                deleted = await self.relay.delete_messages(user_id, ids)
                return {"success": True, "deleted": deleted}

            elif command == Command.NUKE_CHAT:
                user_id = self._require_account(connection)
                target = self._require_param(params, "target")
                removed = await self.relay.nuke_chat(user_id, target)
                return {"success": True, "removed": removed}

            elif command == Command.CALL_USER:
                caller = self._check_identity(connection, params.get("from"))
                callee = self._require_param(params, "userToCall")
                signal = params.get("signalData") or {}
                session = await self.calls.offer(caller, callee, signal, origin=connection)
                return {"success": True, "state": session.state.name}

            elif command == Command.ANSWER_CALL:
                callee = self._require_account(connection)
                session = await self.calls.answer(
                    callee, self._require_param(params, "to"), params.get("signal") or {}
                )
                return {"success": True, "state": session.state.name}

            elif command == Command.END_CALL:
                sender = self._require_account(connection)
                ended = await self.calls.end(sender, self._require_param(params, "to"))
                return {"success": True, "ended": ended}

            else:
                raise ProtocolError(
                    ErrorCode.E804_INVALID_COMMAND,
                    f"Unknown command: {command}",
                    {"command": command},
                )

        except ShadeError as e:
            logger.info(f"Command {command} failed: {e}")
            return self._error_result(e)
        except Exception as e:
            logger.error(f"Command {command} crashed: {e}", exc_info=True)
            error = ShadeError(ErrorCode.E001_UNKNOWN_ERROR, "Internal server error")
            return self._error_result(error)

    @staticmethod
    def _message_id(value: Any) -> int:
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, f"Invalid message id: {value!r}"
            ) from e

    async def _handle_register(self, params: Dict[str, Any]) -> Dict[str, Any]:
        account = await self.accounts.register_async(
            self._require_param(params, "username"),
            self._require_param(params, "password"),
            self._require_param(params, "publicKey"),
            params.get("privateKey"),
        )
        return {"success": True, "account": account}

    async def _handle_login(
        self, connection: ClientConnection, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        account = await self.accounts.login_async(
            self._require_param(params, "username"), self._require_param(params, "password")
        )

        # Logging in as someone else retires the previous presence entry
        if connection.account is not None and connection.user_id != account["id"]:
            if await self.presence.remove_connection(connection) is not None:
                await self._broadcast_presence()
            connection.identity = None

        connection.account = account
        return {"success": True, "account": account}

    async def _handle_connect(
        self, connection: ClientConnection, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Announce the connection as the live one for its identity (addNewUser)."""
        user_id = self._check_identity(connection, params.get("userId"))

        replaced = await self.presence.add_connection(user_id, connection)
        if replaced is not None:
            replaced.identity = None
        connection.identity = user_id

        await self._broadcast_presence()
        return {"success": True, "users": self.presence.snapshot()}

    async def _handle_send_message(
        self, connection: ClientConnection, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Relay one message.

        A persistence failure answers success=False and the message is not
        considered sent; the client keeps its optimistic copy for retry.
        """
        data = dict(params)
        data["senderId"] = self._check_identity(connection, params.get("senderId"))
        message, delivered = await self.relay.relay_message(data)
        return {"success": True, "message": message.to_dict(), "delivered": delivered}


def setup_logging(config: Config, level: Optional[str] = None) -> None:
    """Configure root logging for the server process."""
    handlers = []
    if config.get("logging", "console_logging", True):
        handlers.append(
            RichHandler(
                rich_tracebacks=config.get("logging", "rich_tracebacks", False),
                show_path=False,
            )
        )
    else:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=(level or config.get("logging", "level", "INFO")).upper(),
        format="%(message)s",
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )


async def async_main(argv: Optional[list] = None) -> int:
    """Async main entry point for the relay server."""
    parser = argparse.ArgumentParser(description="Shade relay server")
    parser.add_argument("--config", type=str, default=None, help="Path to config.toml")
    parser.add_argument("--host", type=str, default=None, help="Bind address")
    parser.add_argument("--port", type=int, default=None, help="Bind port")
    parser.add_argument("--database", type=str, default=None, help="SQLite database path")
    parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING, ERROR")
    args = parser.parse_args(argv)

    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
    except ShadeError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if args.database:
        config.set("store", "database", str(Path(args.database).expanduser().resolve()))

    setup_logging(config, args.log_level)

    server = ShadeServer(config, args.host, args.port)
    if not await server.start():
        return 1

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, lambda: asyncio.create_task(server.stop()))
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    await server.run()
    return 0


def main():
    """Main entry point - runs async_main."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
