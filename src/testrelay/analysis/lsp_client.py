#
# src/testrelay/analysis/lsp_client.py
#
"""
An AnalysisClient that talks JSON-RPC to a language server over stdio.

Requests and responses use the same Content-Length framing as the reporter
event channel. The server is started lazily, initialized once, and shut down
with the usual ``shutdown``/``exit`` pair.
"""

import asyncio
import itertools
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import structlog

from testrelay.config import AnalysisConfig
from testrelay.exceptions import AnalysisError, ProtocolError, RunTimeoutError, SpawnError
from testrelay.protocol.codec import encode_payload, read_message
from testrelay.protocols import AnalysisClient, ResolveResponse
from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("analysis.lsp_client")

SHUTDOWN_TIMEOUT = 5.0


class LanguageServerClient(AnalysisClient):
    """
    Implements the AnalysisClient protocol against a stdio language server.
    """

    def __init__(self, command: Sequence[str], root: Path, config: AnalysisConfig):
        if not command:
            raise AnalysisError("No language server command configured")
        self.command = list(command)
        self.root = root
        self.config = config
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._log = log.bind(root=str(root), command=" ".join(self.command))

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        if self.is_running:
            return
        self._log.info("Starting language server", emoji="🧠")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.root,
            )
        except OSError as e:
            raise SpawnError("Failed to start language server", command=" ".join(self.command), details=e) from e

        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        await self.request("initialize", {"rootUri": self.root.resolve().as_uri(), "capabilities": {}})
        self.notify("initialized", {})
        self._log.debug("Language server initialized")

    async def discover(self, uri: str) -> list[dict[str, Any]]:
        result = await self.request(self.config.discover_method, {"textDocument": {"uri": uri}})
        if result is None:
            return []
        if not isinstance(result, list):
            raise AnalysisError(f"Unexpected discovery result for {uri}: {type(result).__name__}")
        return result

    async def resolve_commands(self, items: list[dict[str, Any]]) -> ResolveResponse | None:
        result = await self.request(self.config.resolve_method, {"items": items})
        if result is None:
            return None
        try:
            return ResolveResponse.from_dict(result)
        except (AttributeError, KeyError, TypeError) as e:
            raise AnalysisError(f"Malformed command resolution result: {e}") from e

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        if not self.is_running:
            raise AnalysisError(f"Language server is not running (request '{method}')")
        request_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        self._write({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})

        try:
            response = await asyncio.wait_for(future, timeout=self.config.timeout_seconds)
        except TimeoutError as e:
            raise RunTimeoutError(
                f"Language server did not answer '{method}' within {self.config.timeout_seconds}s"
            ) from e
        finally:
            self._pending.pop(request_id, None)

        if error := response.get("error"):
            message = error.get("message", error) if isinstance(error, dict) else error
            raise AnalysisError(f"Language server error for '{method}': {message}")
        return response.get("result")

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        self._write({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def close(self) -> None:
        if self._process is None:
            return
        if self.is_running:
            try:
                await self.request("shutdown")
                self.notify("exit")
            except (AnalysisError, RunTimeoutError) as e:
                self._log.warning("Language server did not shut down cleanly", error=str(e))
            try:
                await asyncio.wait_for(self._process.wait(), timeout=SHUTDOWN_TIMEOUT)
            except TimeoutError:
                self._log.warning("Killing unresponsive language server")
                self._process.kill()
                await self._process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._reader_task, self._stderr_task) if t), return_exceptions=True
        )
        self._log.info("Language server stopped", exit_code=self._process.returncode)

    def _write(self, payload: dict[str, Any]) -> None:
        assert self._process is not None and self._process.stdin is not None
        self._process.stdin.write(encode_payload(payload))

    async def _read_loop(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        reason = "Language server closed its output"
        try:
            while True:
                message = await read_message(self._process.stdout)
                if message is None:
                    break
                if "id" in message and ("result" in message or "error" in message):
                    future = self._pending.get(message["id"])
                    if future is not None and not future.done():
                        future.set_result(message)
                    else:
                        self._log.debug("Dropping response for unknown request", request_id=message["id"])
                else:
                    self._log.debug("Ignoring server message", method=message.get("method"))
        except ProtocolError as e:
            reason = f"Language server sent a malformed message: {e}"
            self._log.error(reason)
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(AnalysisError(reason))

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        async for line in self._process.stderr:
            self._log.debug("Language server stderr", line=line.decode("utf-8", errors="replace").rstrip())
