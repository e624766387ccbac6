"""
Realtime Relay — bridges terminal websockets to session shell channels.

A websocket is never owned by a session. It becomes the *bound* socket of
a session id the moment it sends ``input`` or ``resize`` for that id, and
the last socket to do so receives the shell's output. Output produced while
no socket is bound is dropped.

Every socket has its own inbound queue (frames are dispatched in order by
one task) and outbound queue (drained by one writer task), so a slow socket
or a slow shell open never stalls the receive loop of any socket, nor the
liveness sweep.
"""
import uuid
import codecs
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from aiohttp import web, WSCloseCode, WSMsgType

from ..conf import TerminalConfig
from ..exceptions import ChannelError, SessionNotFound
from ..session.channel import ShellChannel
from ..session.registry import SessionRegistry
from .frames import (
    DisconnectFrame,
    ErrorFrame,
    Frame,
    FrameError,
    InputFrame,
    OutputFrame,
    PingFrame,
    PongFrame,
    ResizeFrame,
    parse_client_frame,
)

logger = logging.getLogger("navigator.relay")

SESSION_NOT_FOUND = "Session not found"
SHELL_FAILED = "Failed to create shell"
INPUT_FAILED = "Failed to send input"


class ClientSocket:
    """One connected websocket and its I/O tasks."""

    def __init__(self, ws: web.WebSocketResponse, remote: Optional[str] = None):
        self.ws = ws
        self.remote = remote
        self.client_id = uuid.uuid4().hex[:8]
        self.alive = True
        self.terminating = False
        self.session_ids: set[str] = set()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []

    def __repr__(self) -> str:
        return f'<ClientSocket [{self.client_id}] remote={self.remote}>'

    @property
    def closed(self) -> bool:
        return self.ws.closed

    def start(
        self,
        dispatch: Callable[["ClientSocket", Union[str, bytes]], Awaitable[None]],
    ) -> None:
        self._tasks = [
            asyncio.create_task(self._dispatch_loop(dispatch)),
            asyncio.create_task(self._write_loop()),
        ]

    def receive(self, raw: Union[str, bytes]) -> None:
        self._inbox.put_nowait(raw)

    def send(self, frame: Frame) -> None:
        """Queue a frame; unbounded, there is no back-pressure."""
        if not self.ws.closed:
            self._outbox.put_nowait(frame.dumps())

    async def _dispatch_loop(self, dispatch) -> None:
        while True:
            raw = await self._inbox.get()
            try:
                await dispatch(self, raw)
            except Exception:
                logger.exception("Error handling frame from %r", self)

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            if self.ws.closed:
                return
            try:
                await self.ws.send_str(message)
            except ConnectionError as err:
                logger.debug("Send to %r failed: %s", self, err)
                return

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []


class RealtimeRelay:
    """Websocket endpoint multiplexing clients onto SSH sessions."""

    def __init__(
        self,
        registry: SessionRegistry,
        config: Optional[TerminalConfig] = None,
    ):
        self._registry = registry
        self._config = config or registry.config
        self._clients: set[ClientSocket] = set()
        self._bindings: dict[str, ClientSocket] = {}
        self._wired: dict[str, ShellChannel] = {}
        self._sweeper: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        registry.on_shell_opened(self._wire)

    @property
    def clients(self) -> frozenset:
        return frozenset(self._clients)

    def bound_socket(self, session_id: str) -> Optional[ClientSocket]:
        """Socket currently receiving output for session_id."""
        return self._bindings.get(session_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the liveness sweep."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())
            logger.debug(
                "Liveness sweep started (interval=%ss)", self._config.ping_interval,
            )

    async def shutdown(self) -> None:
        """Stop the sweep and close every socket."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await asyncio.gather(
            *(
                self._terminate(client, WSCloseCode.GOING_AWAY, b"Server shutdown")
                for client in list(self._clients)
            ),
            return_exceptions=True,
        )
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Websocket endpoint
    # ------------------------------------------------------------------

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        """aiohttp handler for the terminal websocket route."""
        ws = web.WebSocketResponse(autoping=False)
        await ws.prepare(request)
        client = ClientSocket(ws, request.remote)
        self._clients.add(client)
        client.start(self._dispatch)
        logger.info("WebSocket client connected: %r", client)
        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    client.receive(msg.data)
                elif msg.type == WSMsgType.PING:
                    await ws.pong(msg.data)
                elif msg.type == WSMsgType.PONG:
                    client.alive = True
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error on %r: %s", client, ws.exception())
        finally:
            self._release(client)
            await client.stop()
            logger.info("WebSocket client disconnected: %r", client)
        return ws

    def _release(self, client: ClientSocket) -> None:
        self._clients.discard(client)
        for session_id in client.session_ids:
            if self._bindings.get(session_id) is client:
                del self._bindings[session_id]
        client.session_ids.clear()

    def broadcast(self, frame: Frame) -> None:
        for client in list(self._clients):
            client.send(frame)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, client: ClientSocket, raw: Union[str, bytes]) -> None:
        try:
            frame = parse_client_frame(raw)
        except FrameError as err:
            client.send(ErrorFrame(session_id=err.session_id, error=err.message))
            return
        if isinstance(frame, InputFrame):
            await self._on_input(client, frame)
        elif isinstance(frame, ResizeFrame):
            await self._on_resize(client, frame)
        elif isinstance(frame, PingFrame):
            client.send(PongFrame(session_id=frame.session_id))
        else:
            raise TypeError(f"Unhandled frame type: {type(frame).__name__}")

    def _bind(self, client: ClientSocket, session_id: str) -> None:
        previous = self._bindings.get(session_id)
        if previous is not None and previous is not client:
            previous.session_ids.discard(session_id)
        self._bindings[session_id] = client
        client.session_ids.add(session_id)

    async def _on_input(self, client: ClientSocket, frame: InputFrame) -> None:
        session_id = frame.session_id
        session = self._registry.get(session_id)
        if session is None:
            client.send(ErrorFrame(session_id=session_id, error=SESSION_NOT_FOUND))
            return
        self._bind(client, session_id)
        shell = session.channel
        if shell is None:
            try:
                shell = await self._registry.create_shell(session_id)
            except SessionNotFound:
                client.send(ErrorFrame(session_id=session_id, error=SESSION_NOT_FOUND))
                return
            except ChannelError:
                client.send(ErrorFrame(session_id=session_id, error=SHELL_FAILED))
                return
        self._wire(shell)
        if not self._registry.send_input(session_id, frame.data.encode("utf-8")):
            client.send(ErrorFrame(session_id=session_id, error=INPUT_FAILED))

    async def _on_resize(self, client: ClientSocket, frame: ResizeFrame) -> None:
        session_id = frame.session_id
        session = self._registry.get(session_id)
        if session is None:
            logger.debug("Resize for unknown session %s ignored", session_id)
            return
        self._bind(client, session_id)
        if session.channel is not None:
            self._registry.resize(session_id, frame.cols, frame.rows)
            self._wire(session.channel)
            return
        try:
            shell = await self._registry.create_shell(session_id, frame.cols, frame.rows)
        except (ChannelError, SessionNotFound) as err:
            logger.info(
                "Shell for session %s not created on resize, will retry later: %s",
                session_id, err,
            )
            return
        if (shell.cols, shell.rows) != (frame.cols, frame.rows):
            # joined a creation started with other dimensions
            self._registry.resize(session_id, frame.cols, frame.rows)
        self._wire(shell)

    # ------------------------------------------------------------------
    # Output fan-out
    # ------------------------------------------------------------------

    def _wire(self, shell: ShellChannel) -> None:
        """Route the shell's output to whichever socket is bound to its session.

        Runs once per shell: from the registry before the shell is first
        read, and again (as a no-op) from every frame that uses it.
        """
        session_id = shell.session_id
        if shell.closed or self._wired.get(session_id) is shell:
            return
        self._wired[session_id] = shell
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        def on_output(data: bytes) -> None:
            self._deliver(session_id, decoder.decode(data))

        def on_close(closed: ShellChannel) -> None:
            self._deliver(session_id, decoder.decode(b"", final=True))
            self._on_shell_closed(session_id, closed)

        shell.on_output(on_output)
        shell.on_close(on_close)

    def _deliver(self, session_id: str, text: str) -> None:
        if not text:
            return
        client = self._bindings.get(session_id)
        if client is not None:
            client.send(OutputFrame(session_id=session_id, data=text))

    def _on_shell_closed(self, session_id: str, shell: ShellChannel) -> None:
        client = self._bindings.pop(session_id, None)
        if client is not None:
            client.send(DisconnectFrame(session_id=session_id))
            client.session_ids.discard(session_id)
        if self._wired.get(session_id) is shell:
            del self._wired[session_id]
        logger.debug("Shell for session %s closed, binding cleared", session_id)

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.ping_interval)
            self.sweep()

    def sweep(self) -> None:
        """Terminate sockets that missed the last ping, ping the rest."""
        for client in list(self._clients):
            if client.terminating:
                continue
            if not client.alive:
                logger.info("Terminating unresponsive client %r", client)
                self._spawn(
                    self._terminate(client, WSCloseCode.GOING_AWAY, b"Ping timeout")
                )
                continue
            client.alive = False
            self._spawn(self._ping(client))

    async def _ping(self, client: ClientSocket) -> None:
        try:
            await client.ws.ping()
        except (ConnectionError, RuntimeError) as err:
            logger.debug("Ping to %r failed: %s", client, err)

    async def _terminate(
        self,
        client: ClientSocket,
        code: int,
        message: bytes,
    ) -> None:
        if client.terminating:
            return
        client.terminating = True
        try:
            await asyncio.wait_for(
                client.ws.close(code=code, message=message),
                timeout=self._config.close_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Close handshake with %r timed out", client)
        except (ConnectionError, RuntimeError) as err:
            logger.debug("Close of %r failed: %s", client, err)
