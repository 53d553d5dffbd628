import base64
import binascii
import socket
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from urllib.parse import urlsplit, unquote

import paramiko
from paramiko.pkey import UnknownKeyType

from .credentials import resolve_credential_path
from .errors import (
    AuthenticationError,
    ConfigurationError,
    CredentialLoadError,
    RemoteScriptError,
    TransportError,
)

DEFAULT_PORT = 22
DEFAULT_CONNECT_TIMEOUT = 30
DEFAULT_SCRIPT_TIMEOUT = 300


class HostKeyPolicy(paramiko.MissingHostKeyPolicy, ABC):
    """
    Decides whether the server's host key is acceptable.
    Runs during the transport handshake, before any authentication is attempted.
    """

    @abstractmethod
    def accepts(self, key_blob: bytes) -> bool:
        pass

    def missing_host_key(self, client, hostname, key):
        if not self.accepts(key.asbytes()):
            raise paramiko.BadHostKeyException(hostname, key, self.expected_key)


class IgnoreHostKey(HostKeyPolicy):
    def __init__(self):
        self.expected_key = None

    def accepts(self, key_blob: bytes) -> bool:
        return True

    def __repr__(self):
        return "IgnoreHostKey()"


class PinnedHostKey(HostKeyPolicy):
    def __init__(self, expected_key: paramiko.PKey):
        self.expected_key = expected_key
        self._expected_blob = expected_key.asbytes()

    def accepts(self, key_blob: bytes) -> bool:
        return key_blob == self._expected_blob

    def __repr__(self):
        return f"PinnedHostKey({self.expected_key.get_name()} {self.expected_key.get_base64()})"


def parse_host_key(value) -> HostKeyPolicy:
    """
    'ignore' disables host key checking; anything else is an SSH public key,
    either the bare base64 blob or an OpenSSH "type base64 [comment]" line.
    """
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError("key `host_key` must be \"ignore\" or an SSH public key")

    value = value.strip()
    if value == "ignore":
        return IgnoreHostKey()

    fields = value.split()
    encoded = fields[1] if len(fields) > 1 else fields[0]
    try:
        blob = base64.b64decode(encoded, validate=True)
        key_type = paramiko.Message(blob).get_text()
        key = paramiko.PKey.from_type_string(key_type, blob)
    except (binascii.Error, ValueError, UnknownKeyType, paramiko.SSHException) as e:
        raise ConfigurationError(f"parse host key failed ({e})") from e

    return PinnedHostKey(key)


def load_private_key(path: str) -> paramiko.PKey:
    try:
        return paramiko.PKey.from_path(path)
    except OSError as e:
        raise CredentialLoadError(f"failed to load private key \"{path}\" ({e.strerror or e})", path) from e
    except (paramiko.SSHException, UnknownKeyType, ValueError, TypeError) as e:
        raise CredentialLoadError(f"failed to load private key \"{path}\" ({e})", path) from e


def _timeout(raw: dict, key: str, default: float) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"key `{key}` must be a positive number of seconds")
    return float(value)


@dataclass(frozen=True)
class ConnectOptions:
    """Validated SSH connection parameters. Derived once per target at config load."""
    host: str
    port: int
    username: str
    private_key: paramiko.PKey
    host_key_policy: HostKeyPolicy
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    script_timeout: float = DEFAULT_SCRIPT_TIMEOUT

    @classmethod
    def from_config(cls, url: str, raw_ssh: dict, base_dir: str) -> "ConnectOptions":
        """
        Builds the options from the target URL (host, port, username) and the
        target's `ssh` block (private_key_file, host_key, optional timeouts).
        """
        if not isinstance(raw_ssh, dict):
            raise ConfigurationError("key `ssh` must be a mapping")

        parts = urlsplit(url)
        host = parts.hostname
        if not host:
            raise ConfigurationError("a hostname must be specified in the URL for SSH connections")

        try:
            port = parts.port or DEFAULT_PORT
        except ValueError as e:
            raise ConfigurationError(f"invalid port in URL \"{url}\"") from e

        username = unquote(parts.username or "")
        if not username:
            raise ConfigurationError("a username must be specified in the URL for SSH connections")

        for key in ('private_key_file', 'host_key'):
            if key not in raw_ssh:
                raise ConfigurationError(f"missing key `ssh.{key}`")

        host_key_policy = parse_host_key(raw_ssh['host_key'])
        key_path = resolve_credential_path(raw_ssh['private_key_file'], base_dir)

        return cls(
            host=host,
            port=port,
            username=username,
            private_key=load_private_key(key_path),
            host_key_policy=host_key_policy,
            connect_timeout=_timeout(raw_ssh, 'connect_timeout', DEFAULT_CONNECT_TIMEOUT),
            script_timeout=_timeout(raw_ssh, 'script_timeout', DEFAULT_SCRIPT_TIMEOUT),
        )


class SSHHelper:
    def __init__(self, options: ConnectOptions, logger=None):
        self.options = options
        self.logger = logger or logging.getLogger("CertInstaller.SSHHelper")

    def connect(self) -> paramiko.SSHClient:
        """
        Opens an authenticated SSH connection.
        Raises TransportError or AuthenticationError; never returns an unauthenticated client.
        """
        opts = self.options
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(opts.host_key_policy)

        self.logger.info(f"Establishing SSH connection to {opts.host}:{opts.port}")
        try:
            client.connect(
                hostname=opts.host,
                port=opts.port,
                username=opts.username,
                pkey=opts.private_key,
                timeout=opts.connect_timeout,
                banner_timeout=opts.connect_timeout,
                auth_timeout=opts.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except paramiko.BadHostKeyException as e:
            client.close()
            raise AuthenticationError(f"host key verification failed for SSH connection to {opts.host}") from e
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthenticationError(
                f"error while authenticating SSH connection to {opts.host} ({e})"
            ) from e
        except (OSError, paramiko.SSHException) as e:
            client.close()
            raise TransportError(f"error while establishing SSH connection to {opts.host} ({e})") from e

        transport = client.get_transport()
        if transport is None or not transport.is_authenticated():
            client.close()
            raise AuthenticationError(f"public key authentication unsuccessful for SSH connection to {opts.host}")

        return client

    def run_script(self, command: str, script: bytes) -> None:
        """
        Runs `command` on the remote with `script` as its stdin.
        Output is logged line by line. Returns on exit status 0, raises otherwise.
        """
        client = self.connect()
        try:
            self._run_on(client.get_transport(), command, script)
        finally:
            client.close()

    def _run_on(self, transport: paramiko.Transport, command: str, script: bytes) -> None:
        opts = self.options
        try:
            self.logger.debug("Opening session")
            channel = transport.open_session(timeout=opts.connect_timeout)
            channel.settimeout(opts.script_timeout)
            channel.set_combine_stderr(True)

            self.logger.debug(f"Executing: {command}")
            channel.exec_command(command)
            self._send_script(channel, script)

            self._drain_output(channel)

            if not channel.status_event.wait(opts.script_timeout):
                raise TransportError(f"timed out waiting for the exit status of \"{command}\" on {opts.host}")
        except socket.timeout as e:
            raise TransportError(f"timed out waiting for output of \"{command}\" on {opts.host}") from e
        except (OSError, paramiko.SSHException) as e:
            raise TransportError(f"SSH session to {opts.host} failed ({e})") from e

        # paramiko leaves exit_status at -1 when the channel closed without one
        exit_status = channel.exit_status
        if exit_status == -1:
            raise RemoteScriptError("SSH channel closed without an exit status from the script")
        if exit_status != 0:
            raise RemoteScriptError(f"certificate update script exited with status {exit_status}", exit_status)

    def _send_script(self, channel: paramiko.Channel, script: bytes) -> None:
        """
        Streams the script to the command's stdin. paramiko raises a plain OSError
        when the remote closes the channel before reading all of it.
        """
        try:
            channel.sendall(script)
            channel.shutdown_write()
        except socket.timeout:
            raise
        except OSError as e:
            exit_status = channel.exit_status
            if exit_status > 0:
                raise RemoteScriptError(
                    f"certificate update script exited with status {exit_status} before reading all of its input",
                    exit_status,
                ) from e
            raise TransportError(
                f"SSH channel to {self.options.host} closed while sending the script ({e})"
            ) from e

    def _drain_output(self, channel: paramiko.Channel) -> None:
        pending = b""
        while True:
            data = channel.recv(4096)
            if not data:
                break
            pending += data
            *lines, pending = pending.split(b"\n")
            for line in lines:
                self._log_output(line)
        if pending:
            self._log_output(pending)

    def _log_output(self, line: bytes):
        self.logger.info(f"script: {line.decode('utf-8', errors='replace').rstrip()}")
