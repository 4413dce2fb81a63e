"""
Control Plane
=============

[IPC] Local Unix-domain socket through which operators and tools talk to a
running node.

[FRAMING] 4 bytes length (big-endian) + JSON payload, both directions:
- request:  {"id": 1, "method": "getitem", "params": {"key": "k"}}
- response: {"id": 1, "result": ...}
          | {"id": 1, "error": {"type": "RoutingUnavailable", "message": "..."}}

[METHODS]
- getinfo()               -> {"version": ...}
- getpeers(key, limit)    -> [contact, ...]
- getitem(key)            -> value | null
- putitem(key, value)     -> {"stored": n}

[CONCURRENCY] Every session runs in its own task and every request in its
own task, so a slow network lookup never delays getinfo on any session.
Responses may therefore arrive out of request order; match them by id.

[SECURITY] No authentication beyond the socket's file permissions (0600).
"""

import asyncio
import json
import logging
import os
from itertools import count
from pathlib import Path
from typing import Any, Dict, Optional, Set, Union

from .errors import ControlError, DHTNodeError, InvalidRequest

logger = logging.getLogger(__name__)


MAX_FRAME_SIZE = 1024 * 1024
HEADER_SIZE = 4

METHODS = ("getinfo", "getpeers", "getitem", "putitem")


def pack_frame(payload: Dict[str, Any]) -> bytes:
    data = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return len(data).to_bytes(HEADER_SIZE, "big") + data


async def read_frame(reader: asyncio.StreamReader) -> Dict[str, Any]:
    """
    Read one frame.

    Raises:
        asyncio.IncompleteReadError: peer closed the connection
        ValueError: oversized or undecodable frame
    """
    header = await reader.readexactly(HEADER_SIZE)
    length = int.from_bytes(header, "big")
    if length > MAX_FRAME_SIZE:
        raise ValueError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")
    payload = await reader.readexactly(length)
    decoded = json.loads(payload.decode("utf-8"))
    if not isinstance(decoded, dict):
        raise ValueError("Frame is not a JSON object")
    return decoded


def _param(params: Dict[str, Any], name: str, default: Any = ...) -> Any:
    if name in params:
        return params[name]
    if default is ...:
        raise InvalidRequest(f"Missing parameter '{name}'")
    return default


def _int_param(params: Dict[str, Any], name: str, default: int) -> int:
    value = _param(params, name, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"Parameter '{name}' must be an integer, got {value!r}") from None


class ControlServer:
    """
    Serves the control-plane methods of one node.

    `node` provides get_info(), get_peers(), get_item() and put_item().
    """

    def __init__(self, node, path: Union[str, Path]):
        self.node = node
        self.path = str(path)
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> None:
        if self._server is not None:
            return

        if os.path.exists(self.path):
            # left behind by a previous process
            logger.info(f"[IPC] Removing stale control socket {self.path}")
            os.unlink(self.path)

        self._server = await asyncio.start_unix_server(self._handle_session, path=self.path)
        os.chmod(self.path, 0o600)
        logger.info(f"[IPC] Control plane listening on {self.path}")

    async def stop(self) -> None:
        if self._server is None:
            return

        self._server.close()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._server.wait_closed()
        self._server = None

        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        logger.info("[IPC] Control plane stopped")

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_session(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._track(asyncio.current_task())
        write_lock = asyncio.Lock()
        logger.debug("[IPC] Session opened")

        try:
            while True:
                try:
                    request = await read_frame(reader)
                except asyncio.IncompleteReadError:
                    break
                except (ValueError, UnicodeDecodeError) as e:
                    logger.warning(f"[IPC] Closing session after malformed frame: {e}")
                    break

                self._track(asyncio.create_task(self._serve_request(request, writer, write_lock)))
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            logger.debug("[IPC] Session closed")

    async def _serve_request(
        self,
        request: Dict[str, Any],
        writer: asyncio.StreamWriter,
        write_lock: asyncio.Lock,
    ) -> None:
        request_id = request.get("id")
        method = request.get("method")

        try:
            result = await self.dispatch(method, request.get("params"))
            response = {"id": request_id, "result": result}
        except DHTNodeError as e:
            response = {"id": request_id, "error": {"type": type(e).__name__, "message": str(e)}}
        except Exception as e:
            logger.exception(f"[IPC] Unexpected error while serving {method!r}")
            response = {"id": request_id, "error": {"type": "InternalError", "message": str(e)}}

        async with write_lock:
            try:
                writer.write(pack_frame(response))
                await writer.drain()
            except (ConnectionError, OSError) as e:
                logger.debug(f"[IPC] Client went away before {method!r} response: {e}")

    async def dispatch(self, method: Any, params: Any) -> Any:
        """
        Run one control method.

        Raises:
            InvalidRequest: unknown method or bad parameters
            DHTNodeError: whatever the node raised
        """
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise InvalidRequest("params must be an object")

        if method == "getinfo":
            return self.node.get_info()

        if method == "getpeers":
            contacts = self.node.get_peers(
                _param(params, "key"),
                _int_param(params, "limit", 20),
                _param(params, "exclude_id", None),
            )
            return [contact.to_dict() for contact in contacts]

        if method == "getitem":
            return await self.node.get_item(_param(params, "key"))

        if method == "putitem":
            stored = await self.node.put_item(_param(params, "key"), _param(params, "value"))
            return {"stored": stored}

        raise InvalidRequest(f"Unknown method {method!r}, expected one of {METHODS}")


class ControlClient:
    """
    Client side of the control plane.

    Several calls may be in flight on one session; responses are matched by id.

    [USAGE]
    ```python
    async with ControlClient("/tmp/dhtnode.sock") as client:
        print(await client.getinfo())
        await client.putitem("k", "v")
    ```
    """

    def __init__(self, path: Union[str, Path], timeout: Optional[float] = 30.0):
        self.path = str(path)
        self.timeout = timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._receiver: Optional[asyncio.Task] = None
        self._pending: Dict[Any, asyncio.Future] = {}
        self._ids = count(1)

    async def connect(self) -> "ControlClient":
        try:
            self._reader, self._writer = await asyncio.open_unix_connection(self.path)
        except OSError as e:
            raise ControlError("ConnectionFailed", f"Cannot reach node at {self.path}: {e}") from e
        self._receiver = asyncio.create_task(self._receive_loop())
        return self

    async def close(self) -> None:
        if self._receiver:
            self._receiver.cancel()
            try:
                await self._receiver
            except asyncio.CancelledError:
                pass
            self._receiver = None
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._writer = None
        self._fail_pending(ControlError("ConnectionClosed", "Client closed"))

    async def __aenter__(self) -> "ControlClient":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _receive_loop(self) -> None:
        try:
            while True:
                response = await read_frame(self._reader)
                future = self._pending.pop(response.get("id"), None)
                if future is None or future.done():
                    continue
                error = response.get("error")
                if error:
                    future.set_exception(ControlError(error.get("type", "Error"), error.get("message", "")))
                else:
                    future.set_result(response.get("result"))
        except (asyncio.IncompleteReadError, ConnectionError, ValueError) as e:
            self._fail_pending(ControlError("ConnectionClosed", f"Node closed the control session: {e}"))

    async def call(self, method: str, **params: Any) -> Any:
        """
        Invoke a control method.

        Raises:
            ControlError: the node answered with an error or the session broke
        """
        if self._writer is None:
            await self.connect()

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        self._writer.write(pack_frame({"id": request_id, "method": method, "params": params}))
        await self._writer.drain()

        try:
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ControlError("Timeout", f"{method} did not answer within {self.timeout}s") from None
        finally:
            self._pending.pop(request_id, None)

    async def getinfo(self) -> Dict[str, Any]:
        return await self.call("getinfo")

    async def getpeers(self, key: str, limit: int = 20) -> list:
        return await self.call("getpeers", key=key, limit=limit)

    async def getitem(self, key: str) -> Any:
        return await self.call("getitem", key=key)

    async def putitem(self, key: str, value: Any) -> Dict[str, Any]:
        return await self.call("putitem", key=key, value=value)
