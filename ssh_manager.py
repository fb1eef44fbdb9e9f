import paramiko
import logging
import threading
import posixpath
import stat
from queue import Queue, Empty
from contextlib import contextmanager
from dataclasses import dataclass
import typing
import shlex

from config_manager import AuthMethod, PasswordAuth, PrivateKeyAuth, AgentAuth
from utils import Timeouts, RemoteSessionError

# Constants
DEFAULT_KEEPALIVE_INTERVAL = 30
DEFAULT_SSH_POOL_SIZE = 4


class RemoteEntry(typing.NamedTuple):
    """One child of a remote directory, with its lstat type information."""
    name: str
    is_directory: bool
    is_symlink: bool


@dataclass
class CommandResult:
    exit_status: int
    stdout: str
    stderr: str


def _auth_kwargs(auth: AuthMethod) -> typing.Dict[str, typing.Any]:
    """Translates an auth method into `SSHClient.connect` keyword arguments."""
    if isinstance(auth, PasswordAuth):
        return {"password": auth.password, "allow_agent": False, "look_for_keys": False}
    if isinstance(auth, PrivateKeyAuth):
        # paramiko derives the public half from the private key; an explicit
        # public key file is only checked for existence at startup.
        return {
            "key_filename": auth.private_key,
            "passphrase": auth.passphrase,
            "allow_agent": False,
            "look_for_keys": False,
        }
    if isinstance(auth, AgentAuth):
        return {"allow_agent": True, "look_for_keys": False}
    raise TypeError(f"Unsupported authentication method: {auth!r}")


class SSHConnectionPool:
    """A thread-safe pool for managing Paramiko SSH and SFTP connections.

    Every connection handed out by `get_connection` is used by exactly one
    thread until it is returned, so a paramiko `SFTPClient` is never shared
    between threads.

    Attributes:
        host: The hostname or IP address of the SSH server.
        port: The port number of the SSH server.
        username: The username for authentication.
        auth: The authentication method.
        max_size: The maximum number of connections allowed in the pool.
        connect_timeout: The timeout in seconds for establishing a new connection.
        pool_wait_timeout: The timeout in seconds for waiting to get a connection
            from the pool when it is full.
    """

    def __init__(self, host: str, port: int, username: str, auth: AuthMethod,
                 max_size: int = DEFAULT_SSH_POOL_SIZE, connect_timeout: float = Timeouts.SSH_CONNECT,
                 pool_wait_timeout: float = Timeouts.POOL_WAIT):
        self.host = host
        self.port = port
        self.username = username
        self.auth = auth
        self.max_size = max_size
        self.connect_timeout = connect_timeout
        self.pool_wait_timeout = pool_wait_timeout
        self._pool: Queue[typing.Tuple[paramiko.SFTPClient, paramiko.SSHClient]] = Queue(maxsize=max_size)
        self._lock = threading.Lock()
        self._active_connections = 0  # Track connections in use + in pool
        self._condition = threading.Condition(self._lock)
        self._closed = False
        logging.debug(f"Initialized SSHConnectionPool for {host} with max_size={max_size}")

    def _create_connection(self) -> typing.Tuple[paramiko.SFTPClient, paramiko.SSHClient]:
        """Create a new SSH client and SFTP session."""
        try:
            ssh_client = paramiko.SSHClient()
            ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            ssh_client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                timeout=self.connect_timeout,
                **_auth_kwargs(self.auth)
            )
            transport = ssh_client.get_transport()
            if transport:
                transport.set_keepalive(DEFAULT_KEEPALIVE_INTERVAL)
            sftp = ssh_client.open_sftp()
            logging.debug(f"Successfully created new SSH connection to {self.host}")
            return sftp, ssh_client
        except Exception as e:
            logging.error(f"Failed to create SSH connection to {self.host}:{self.port}: {e}")
            raise

    def _is_connection_alive(self, ssh: paramiko.SSHClient) -> bool:
        """Check if SSH connection is still active."""
        try:
            transport = ssh.get_transport()
            return transport is not None and transport.is_active()
        except Exception:
            return False

    def _discard(self, ssh: paramiko.SSHClient) -> None:
        with self._lock:
            self._active_connections -= 1
            self._condition.notify()
        try:
            ssh.close()
        except Exception as e:
            logging.debug(f"Error while closing connection to {self.host}: {e}")

    def _release(self, sftp: paramiko.SFTPClient, ssh: paramiko.SSHClient) -> None:
        if self._closed:
            logging.debug(f"Pool for {self.host} is closed. Closing returned connection.")
            self._discard(ssh)
            return
        try:
            self._pool.put_nowait((sftp, ssh))
            logging.debug(f"Returned connection to pool for {self.host}. (In pool: {self._pool.qsize()})")
        except Exception:
            logging.warning(f"Pool was full on return. Closing connection. {self.host}")
            self._discard(ssh)
            return
        with self._condition:
            self._condition.notify()

    @contextmanager
    def get_connection(self) -> typing.Generator[typing.Tuple[paramiko.SFTPClient, paramiko.SSHClient], None, None]:
        """Provides a connection from the pool within a context manager.

        Yields:
            A tuple containing an active (SFTPClient, SSHClient).

        Raises:
            RuntimeError: If the pool is closed.
            TimeoutError: If waiting for a connection exceeds `pool_wait_timeout`.
        """
        if self._closed:
            raise RuntimeError("Connection pool is closed")

        sftp, ssh = None, None
        created_new = False

        while True:
            if self._closed:
                raise RuntimeError("Connection pool was closed while waiting")

            try:
                sftp, ssh = self._pool.get_nowait()
                if self._is_connection_alive(ssh):
                    logging.debug(f"Reusing connection to {self.host}")
                    break
                logging.debug(f"Discarding dead connection to {self.host}")
                self._discard(ssh)
                sftp, ssh = None, None
                continue
            except Empty:
                with self._condition:
                    if self._active_connections < self.max_size:
                        self._active_connections += 1
                        created_new = True
                        logging.debug(
                            f"Creating new connection to {self.host} "
                            f"({self._active_connections}/{self.max_size})"
                        )
                        break
                    if not self._pool.empty():
                        # returned between get_nowait() and taking the lock
                        continue
                    logging.debug(
                        f"Pool full ({self.max_size}/{self.max_size}), "
                        f"waiting for connection to {self.host}"
                    )
                    if not self._condition.wait(timeout=self.pool_wait_timeout):
                        raise TimeoutError(
                            f"Timeout waiting for SSH connection to {self.host}"
                        )

        # If we need to create a new connection, do it outside the lock
        if created_new:
            try:
                sftp, ssh = self._create_connection()
            except Exception:
                with self._lock:
                    self._active_connections -= 1
                    self._condition.notify()
                raise

        try:
            yield sftp, ssh
        except Exception as e:
            # Don't return broken connection to pool
            if not self._is_connection_alive(ssh):
                logging.warning(f"Connection to {self.host} found dead after use: {e}")
                self._discard(ssh)
            else:
                self._release(sftp, ssh)
            raise
        else:
            self._release(sftp, ssh)

    def close_all(self):
        """Closes all pooled connections and wakes up any waiting threads."""
        logging.debug(f"Closing all connections for {self.host}...")
        self._closed = True

        with self._condition:
            self._condition.notify_all()

        while not self._pool.empty():
            try:
                sftp, ssh = self._pool.get_nowait()
                try:
                    ssh.close()
                except Exception as e:
                    logging.debug(f"Error while closing connection to {self.host}: {e}")
            except Empty:
                break
        logging.debug(f"Pool for {self.host} closed.")

    def get_stats(self) -> typing.Dict[str, int]:
        """Returns a dictionary with current pool statistics."""
        with self._lock:
            in_pool = self._pool.qsize()
            in_use = self._active_connections - in_pool
            return {
                "active_connections": self._active_connections,
                "max_size": self.max_size,
                "in_pool": in_pool,
                "in_use": in_use
            }


class SFTPChannel:
    """Remote filesystem operations bound to one pooled (SFTPClient, SSHClient) pair.

    Obtained through `RemoteSession.channel()` and only valid inside that
    context. Failures surface as `IOError`/`OSError` or `paramiko.SSHException`;
    callers convert them at their own boundary.
    """

    def __init__(self, sftp: paramiko.SFTPClient, ssh: paramiko.SSHClient):
        self.sftp = sftp
        self.ssh = ssh

    def list(self, path: str, want_hidden: bool = True) -> typing.List[RemoteEntry]:
        entries = []
        for attr in self.sftp.listdir_attr(path):
            name = attr.filename
            if name in ('.', '..'):
                continue
            if not want_hidden and name.startswith('.'):
                continue
            mode = attr.st_mode or 0
            entries.append(RemoteEntry(name, stat.S_ISDIR(mode), stat.S_ISLNK(mode)))
        return entries

    def is_directory(self, path: str) -> bool:
        """Follows symlinks. Raises if the path does not exist."""
        mode = self.sftp.stat(path).st_mode or 0
        return stat.S_ISDIR(mode)

    def probe_directory(self, path: str) -> bool:
        """Best-effort check that `path` is visible as a directory right now."""
        try:
            return self.is_directory(path)
        except (IOError, paramiko.SSHException):
            return False

    def size(self, path: str) -> int:
        return self.sftp.stat(path).st_size or 0

    def open_read(self, path: str) -> typing.IO[bytes]:
        remote_file = self.sftp.open(path, 'rb')
        if hasattr(remote_file, 'prefetch'):
            remote_file.prefetch()
        return remote_file

    def create_write(self, path: str) -> typing.IO[bytes]:
        return self.sftp.open(path, 'wb')

    def run(self, command: str, timeout: float = Timeouts.SSH_EXEC) -> CommandResult:
        logging.debug(f"Executing remote command: {command}")
        stdin, stdout, stderr = self.ssh.exec_command(command, timeout=timeout)
        exit_status = stdout.channel.recv_exit_status()
        return CommandResult(
            exit_status=exit_status,
            stdout=stdout.read().decode('utf-8', errors='replace'),
            stderr=stderr.read().decode('utf-8', errors='replace'),
        )

    def make_directory(self, path: str) -> bool:
        """Creates `path` on the remote host with a shell `mkdir`.

        A structured SFTP mkdir misbehaves on some servers, so this goes
        through command execution instead. That assumes a POSIX shell on the
        remote side.

        Returns:
            True if the directory was created, False if `mkdir` reported an
            error (which includes the directory already existing).
        """
        result = self.run(f"mkdir {shlex.quote(path)}")
        if result.exit_status != 0:
            logging.debug(f"Remote mkdir '{path}' exited with {result.exit_status}: {result.stderr.strip()}")
            return False
        return True

    def home_directory(self) -> str:
        home = self.sftp.normalize('.')
        if home:
            return home
        result = self.run("pwd")
        home = result.stdout.strip()
        if result.exit_status != 0 or not home:
            raise RemoteSessionError("Could not determine the remote home directory.")
        return home


class RemoteSession:
    """Authenticated access to the remote filesystem.

    Safe to use from several threads: each call borrows its own connection
    from the pool. A worker that performs many operations in a row should use
    `channel()` to keep a single connection for all of them.
    """

    def __init__(self, pool: SSHConnectionPool):
        self.pool = pool

    @property
    def host(self) -> str:
        return self.pool.host

    @contextmanager
    def channel(self) -> typing.Generator[SFTPChannel, None, None]:
        with self.pool.get_connection() as (sftp, ssh):
            yield SFTPChannel(sftp, ssh)

    def list(self, path: str, want_hidden: bool = True) -> typing.List[RemoteEntry]:
        with self.channel() as channel:
            return channel.list(path, want_hidden)

    def is_directory(self, path: str) -> bool:
        with self.channel() as channel:
            return channel.is_directory(path)

    def probe_directory(self, path: str) -> bool:
        with self.channel() as channel:
            return channel.probe_directory(path)

    def run(self, command: str) -> CommandResult:
        with self.channel() as channel:
            return channel.run(command)

    def make_directory(self, path: str) -> bool:
        with self.channel() as channel:
            return channel.make_directory(path)

    def home_directory(self) -> str:
        with self.channel() as channel:
            return channel.home_directory()

    def close(self) -> None:
        self.pool.close_all()


def join_remote(directory: str, name: str) -> str:
    return posixpath.join(directory, name)


def open_session(host: str, port: int, username: str, auth: AuthMethod, max_size: int) -> RemoteSession:
    """Creates a session and establishes its first connection eagerly.

    Raises:
        RemoteSessionError: If the connection or authentication fails.
    """
    pool = SSHConnectionPool(host, port, username, auth, max_size=max_size)
    try:
        with pool.get_connection():
            pass
    except (paramiko.SSHException, OSError, TimeoutError) as e:
        pool.close_all()
        raise RemoteSessionError(f"Error establishing SSH session with {username}@{host}:{port}: {e}") from e
    return RemoteSession(pool)
