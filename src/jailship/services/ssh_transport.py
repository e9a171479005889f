"""SSH command and file transfer service built on Paramiko."""

import codecs
import os
import socket
import sys
import time
from typing import Callable, Optional

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError
from rich.text import Text

from jailship.errors import CommandError, JailshipError, SSHConnectionError, TransferError
from jailship.errors_catalog import actionable_error
from jailship.models import CommandResult
from jailship.shell import quote

OutputObserver = Callable[[str], None]


def classify_connection_error(exc: BaseException) -> str:
    """Maps a connect failure onto an error catalog code."""
    if isinstance(exc, paramiko.AuthenticationException):
        return "authentication_failed"
    if isinstance(exc, socket.gaierror):
        return "host_not_found"
    if isinstance(exc, (NoValidConnectionsError, ConnectionRefusedError)):
        return "connection_refused"
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return "connection_timeout"
    return "connection_failed"


class SSHTransport:
    """Owns one SSH session to the jail host.

    Every remote interaction goes through `run`, `run_checked`, `upload` or
    `run_streaming`. Each call opens its own channel on the shared session and
    blocks until the remote side finishes, fails or times out. Nothing is
    retried here; callers decide whether a failure is worth another attempt.
    """

    DEFAULT_TIMEOUT = 60.0
    CONNECT_TIMEOUT = 15.0
    TIMEOUT_EXIT_CODE = -1
    UPLOAD_CHUNK_SIZE = 32 * 1024
    UPLOAD_CONFIRM_TIMEOUT = 30.0
    UPLOAD_SEND_TIMEOUT = 60.0
    RECV_SIZE = 4096
    POLL_INTERVAL = 0.05

    def __init__(
        self,
        host: str,
        user: str,
        port: int,
        logger,
        console,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        default_timeout: Optional[float] = None,
    ):
        self.host = host
        self.user = user
        self.port = port
        self.logger = logger
        self.console = console
        self.default_timeout = default_timeout or self.DEFAULT_TIMEOUT
        self._client_factory = client_factory
        self._client: Optional[paramiko.SSHClient] = None

    @classmethod
    def from_config(cls, server, logger, console, **kwargs) -> "SSHTransport":
        return cls(server.host, server.user, server.port, logger=logger, console=console, **kwargs)

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"

    def __enter__(self) -> "SSHTransport":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def connect(self):
        if self._client:
            return

        self.logger.debug("Connecting to %s", self.target)
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.user,
                timeout=self.CONNECT_TIMEOUT,
                allow_agent=True,
                look_for_keys=True,
            )
        except Exception as exc:
            client.close()
            code = classify_connection_error(exc)
            raise SSHConnectionError(
                actionable_error(code, target=self.target, reason=str(exc) or type(exc).__name__),
                code=code,
            ) from exc

        self._client = client
        self.logger.info("Connected to %s", self.target)

    def close(self):
        if self._client:
            self._client.close()
            self._client = None
            self.logger.debug("Disconnected from %s", self.target)

    def run(
        self,
        command: str,
        timeout: Optional[float] = None,
        observer: Optional[OutputObserver] = None,
    ) -> CommandResult:
        effective_timeout = self.default_timeout if timeout is None else timeout
        observer = observer or self._print_remote
        self.logger.debug("Executing on %s: %s", self.host, command)

        channel = self._open_channel(command)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        chunks = []
        deadline = time.monotonic() + effective_timeout

        try:
            while True:
                # Checked before reading so a chatty command still times out.
                if time.monotonic() >= deadline:
                    self.logger.warning(
                        "Command timed out after %.1fs on %s and the remote process may still be running: %s",
                        effective_timeout,
                        self.host,
                        command,
                    )
                    return CommandResult(command, "".join(chunks), self.TIMEOUT_EXIT_CODE)
                if channel.recv_ready():
                    self._forward(decoder.decode(channel.recv(self.RECV_SIZE)), chunks, observer)
                    continue
                if channel.exit_status_ready():
                    break
                time.sleep(self.POLL_INTERVAL)

            while channel.recv_ready():
                self._forward(decoder.decode(channel.recv(self.RECV_SIZE)), chunks, observer)
            self._forward(decoder.decode(b"", final=True), chunks, observer)
            exit_code = channel.recv_exit_status()
        except (OSError, paramiko.SSHException) as exc:
            raise JailshipError(f"SSH channel failed while running `{command}`: {exc}") from exc
        finally:
            channel.close()

        return CommandResult(command, "".join(chunks), exit_code)

    def run_checked(self, command: str, timeout: Optional[float] = None) -> str:
        result = self.run(command, timeout=timeout)
        if not result.ok:
            raise CommandError(command, result.exit_code, result.output)
        return result.output

    def upload(self, local_path: str, remote_path: str) -> int:
        """Streams a local file into `cat > remote_path` in fixed-size chunks."""
        try:
            size = os.path.getsize(local_path)
        except OSError as exc:
            raise TransferError(f"Cannot read {local_path}: {exc}") from exc

        self.console.print(
            f"[blue]Uploading {os.path.basename(local_path)} to {self.host}:{remote_path}[/blue]"
        )
        channel = self._open_channel(f"cat > {quote(remote_path)}")
        sent = 0

        try:
            channel.settimeout(self.UPLOAD_SEND_TIMEOUT)
            with open(local_path, "rb") as file_obj:
                for chunk in iter(lambda: file_obj.read(self.UPLOAD_CHUNK_SIZE), b""):
                    channel.sendall(chunk)
                    sent += len(chunk)
            channel.shutdown_write()

            deadline = time.monotonic() + self.UPLOAD_CONFIRM_TIMEOUT
            while not channel.exit_status_ready():
                if time.monotonic() >= deadline:
                    raise TransferError("Upload timed out waiting for remote confirmation")
                while channel.recv_ready():
                    self.logger.debug("Upload output: %s", channel.recv(self.RECV_SIZE))
                time.sleep(self.POLL_INTERVAL)
            exit_code = channel.recv_exit_status()
        except socket.timeout as exc:
            raise TransferError(
                f"Upload of {local_path} stalled after {sent} bytes: no progress for {self.UPLOAD_SEND_TIMEOUT:.0f}s"
            ) from exc
        except (OSError, paramiko.SSHException) as exc:
            raise TransferError(f"Upload of {local_path} failed after {sent} bytes: {exc}") from exc
        finally:
            channel.close()

        if exit_code != 0:
            raise TransferError(f"Upload failed: remote cat exited with code {exit_code}")

        self.console.print(f"[green]Upload complete ({size / 1024:.1f} KB)[/green]")
        return sent

    def run_streaming(self, command: str, observer: Optional[OutputObserver] = None) -> int:
        """Relays output until the remote side closes; interrupt with Ctrl+C."""
        observer = observer or self._write_raw
        self.logger.debug("Streaming from %s: %s", self.host, command)

        channel = self._open_channel(command)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        try:
            while True:
                if channel.recv_ready():
                    text = decoder.decode(channel.recv(self.RECV_SIZE))
                    if text:
                        observer(text)
                    continue
                if channel.exit_status_ready() or channel.closed:
                    break
                time.sleep(self.POLL_INTERVAL)

            while channel.recv_ready():
                text = decoder.decode(channel.recv(self.RECV_SIZE))
                if text:
                    observer(text)
            return channel.recv_exit_status()
        except (OSError, paramiko.SSHException) as exc:
            raise JailshipError(f"SSH channel failed while streaming `{command}`: {exc}") from exc
        finally:
            channel.close()

    def _open_channel(self, command: str):
        if not self._client:
            self.connect()

        session = self._client.get_transport()
        if session is None or not session.is_active():
            raise JailshipError(f"SSH session to {self.host} is no longer active.")

        try:
            channel = session.open_session()
            channel.set_combine_stderr(True)
            channel.exec_command(command)
        except (OSError, paramiko.SSHException) as exc:
            raise JailshipError(f"Could not open SSH channel to {self.host}: {exc}") from exc
        return channel

    @staticmethod
    def _forward(text: str, chunks, observer: OutputObserver):
        if text:
            chunks.append(text)
            observer(text)

    def _print_remote(self, text: str):
        for line in text.splitlines():
            if line.strip():
                self.console.print(Text.assemble((f"[{self.host}] ", "dim"), line))

    @staticmethod
    def _write_raw(text: str):
        sys.stdout.write(text)
        sys.stdout.flush()
