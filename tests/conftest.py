import datetime
import socket
import threading

import paramiko
import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


def make_key(kind: str = "ec"):
    if kind == "rsa":
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return ec.generate_private_key(ec.SECP256R1())


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def make_cert(subject, public_key, issuer, issuer_key, ca=False, not_before=None, not_after=None,
              server_auth=True):
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - datetime.timedelta(days=1))
        .not_valid_after(not_after or now + datetime.timedelta(days=90))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if not ca:
        usage = ExtendedKeyUsageOID.SERVER_AUTH if server_auth else ExtendedKeyUsageOID.CLIENT_AUTH
        builder = builder.add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
        builder = builder.add_extension(x509.SubjectAlternativeName([x509.DNSName(subject)]), critical=False)
    return builder.sign(issuer_key, hashes.SHA256())


def cert_pem(*certs) -> bytes:
    return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs)


def key_pem(key, private_format=serialization.PrivateFormat.TraditionalOpenSSL) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=private_format,
        encryption_algorithm=serialization.NoEncryption(),
    )


class Pki:
    """A throwaway CA plus helpers to write leaf certificate pairs to disk."""

    def __init__(self, directory):
        self.directory = directory
        self.ca_key = make_key()
        self.ca_cert = make_cert("Test Root CA", self.ca_key.public_key(), "Test Root CA", self.ca_key, ca=True)

    def leaf(self, key=None, **kwargs):
        key = key or make_key()
        cert = make_cert("nexus.example.net", key.public_key(), "Test Root CA", self.ca_key, **kwargs)
        return cert, key

    def write_pair(self, name="default", key=None, private_format=serialization.PrivateFormat.TraditionalOpenSSL,
                   **kwargs):
        """Writes <name>-fullchain.pem (leaf + CA) and <name>-key.pem. Returns (chain_path, key_path)."""
        cert, key = self.leaf(key=key, **kwargs)
        chain_path = self.directory / f"{name}-fullchain.pem"
        key_path = self.directory / f"{name}-key.pem"
        chain_path.write_bytes(cert_pem(cert, self.ca_cert))
        key_path.write_bytes(key_pem(key, private_format))
        return str(chain_path), str(key_path)


@pytest.fixture
def pki(tmp_path):
    return Pki(tmp_path)


@pytest.fixture
def ssh_key_path(tmp_path):
    """Client key for SSH public key authentication, written as a PEM file."""
    key = paramiko.ECDSAKey.generate()
    path = tmp_path / "id_ecdsa"
    key.write_private_key_file(str(path))
    return str(path)


class StubSSHInterface(paramiko.ServerInterface):
    def __init__(self, authorized_key=None):
        self.authorized_key = authorized_key
        self.username = None
        self.command = None
        self.exec_event = threading.Event()

    def check_channel_request(self, kind, chanid):
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def get_allowed_auths(self, username):
        return "publickey"

    def check_auth_publickey(self, username, key):
        self.username = username
        if self.authorized_key is None or key.asbytes() == self.authorized_key.asbytes():
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED

    def check_channel_exec_request(self, channel, command):
        self.command = command.decode() if isinstance(command, bytes) else command
        self.exec_event.set()
        return True


class StubSSHServer:
    """
    Single-connection SSH server on localhost. It reads the exec'd command's stdin
    until EOF, writes `output`, then reports `exit_status` (unless send_exit_status
    is False) and closes the channel.

    With read_stdin=False it exits after the first chunk of stdin, like a shell that
    can't find the command. With hang=True it never answers once stdin is read.
    """

    def __init__(self, exit_status=0, output=b"", send_exit_status=True, authorized_key=None,
                 read_stdin=True, hang=False):
        self.host_key = paramiko.ECDSAKey.generate()
        self.interface = StubSSHInterface(authorized_key)
        self.exit_status = exit_status
        self.output = output
        self.send_exit_status = send_exit_status
        self.read_stdin = read_stdin
        self.hang = hang
        self.script = None
        self.connections = 0
        self.transport = None

        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(1)
        self.sock.settimeout(0.2)
        self.port = self.sock.getsockname()[1]
        self.stopping = threading.Event()

        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    @property
    def url(self):
        return f"ssh://admin@127.0.0.1:{self.port}/"

    def _accept(self):
        while not self.stopping.is_set():
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return None
            conn.settimeout(None)
            return conn
        return None

    def _serve(self):
        conn = self._accept()
        if conn is None:
            return
        self.connections += 1

        self.transport = paramiko.Transport(conn)
        self.transport.add_server_key(self.host_key)
        try:
            self.transport.start_server(server=self.interface)
        except (paramiko.SSHException, EOFError):
            return

        channel = self.transport.accept(10)
        if channel is None:
            return
        if not self.interface.exec_event.wait(10):
            channel.close()
            return

        chunks = []
        while True:
            data = channel.recv(4096)
            if not data:
                break
            chunks.append(data)
            if not self.read_stdin:
                break
        self.script = b"".join(chunks).decode('utf-8', errors='replace')

        if self.hang:
            self.stopping.wait()
            return

        if self.output:
            channel.sendall(self.output)
        if self.send_exit_status:
            channel.send_exit_status(self.exit_status)
        channel.close()

    def stop(self):
        self.stopping.set()
        if self.transport is not None:
            self.transport.close()
        self.thread.join(timeout=2)
        self.sock.close()


@pytest.fixture
def ssh_server_factory():
    servers = []

    def factory(**kwargs):
        server = StubSSHServer(**kwargs)
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()


@pytest.fixture
def write_config(tmp_path):
    def write(document: dict, name="certinstaller.yaml"):
        path = tmp_path / name
        path.write_text(yaml.safe_dump(document, sort_keys=False))
        return str(path)
    return write
