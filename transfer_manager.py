"""
Recursive file and directory transfers between the local filesystem and the
remote session.

NOTES
=====

1. Thread Safety:
   - `TransferEngine.execute` runs on worker threads. It only touches its own
     `TransferRequest` and one pooled connection held for the whole request.
   - `TransferScheduler.submit` and `poll` are called from the event loop
     thread only. Results travel back through one single-slot queue per
     request.

2. Leniency:
   - A destination file that cannot be created is skipped with a warning,
     the surrounding directory transfer carries on.
   - Symlinks inside a transferred directory are skipped, never followed.
   - Everything else aborts the transfer with a `TransferError`. Whatever was
     already copied stays where it is.

3. Remote directory visibility:
   - Directories are created with a shell `mkdir`, and the SFTP subsystem may
     not see them immediately. Uploads probe the parent a few times before
     writing. This narrows the race, it does not close it.
"""
import enum
import logging
import os
import posixpath
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from queue import Queue, Empty
from typing import List, Tuple

import paramiko

from ssh_manager import RemoteSession, SFTPChannel
from utils import TransferError, retry

logger = logging.getLogger(__name__)

DEFAULT_DIR_PROBE_ATTEMPTS = 5
DEFAULT_DIR_PROBE_DELAY = 0.02  # seconds
COMPLETION_OK = ""


class TransferDirection(enum.Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


@dataclass(frozen=True)
class TransferRequest:
    """A snapshot of what to copy where, taken when the user triggers a transfer."""
    source_path: str
    dest_path: str
    direction: TransferDirection

    @property
    def name(self) -> str:
        if self.direction is TransferDirection.UPLOAD:
            return os.path.basename(os.path.normpath(self.source_path))
        return posixpath.basename(posixpath.normpath(self.source_path))

    @property
    def verb(self) -> str:
        return "Upload" if self.direction is TransferDirection.UPLOAD else "Download"

    @property
    def progressive(self) -> str:
        return "Uploading" if self.direction is TransferDirection.UPLOAD else "Downloading"


class TransferEngine:
    """Copies a file or a whole directory tree in one direction."""

    def __init__(self, session: RemoteSession, dir_probe_attempts: int = DEFAULT_DIR_PROBE_ATTEMPTS,
                 dir_probe_delay: float = DEFAULT_DIR_PROBE_DELAY):
        self.session = session
        self.dir_probe_attempts = dir_probe_attempts
        self.dir_probe_delay = dir_probe_delay

    def execute(self, request: TransferRequest) -> None:
        """Runs one transfer to completion.

        Raises:
            TransferError: If the transfer failed. Files copied before the
                failure are left in place.
        """
        logger.info(f"{request.verb} started: {request.source_path} -> {request.dest_path}")
        start_time = time.time()
        try:
            with self.session.channel() as channel:
                if request.direction is TransferDirection.UPLOAD:
                    self._upload(channel, request.source_path, request.dest_path)
                else:
                    self._download(channel, request.source_path, request.dest_path)
        except TransferError as e:
            logger.error(f"{request.verb} of '{request.name}' failed: {e}")
            raise
        except (OSError, paramiko.SSHException, RuntimeError) as e:
            # IOError, socket errors and TimeoutError are all OSError
            logger.error(f"{request.verb} of '{request.name}' failed: {e}")
            raise TransferError(f"{request.verb} of '{request.name}' failed: {e}") from e

        duration = time.time() - start_time
        logger.info(f"{request.verb} finished: {request.name}")
        logger.debug(f"PERF: {request.verb.lower()} of '{request.name}' took {duration:.2f} seconds.")

    # --- Download (remote -> local) ---

    def _download(self, channel: SFTPChannel, source: str, dest: str) -> None:
        if channel.is_directory(source):
            self._download_directory(channel, source, dest)
        else:
            self._download_file(channel, source, dest)

    def _download_file(self, channel: SFTPChannel, source: str, dest: str) -> None:
        expected_size = channel.size(source)
        with channel.open_read(source) as remote_file:
            data = remote_file.read()
        if len(data) != expected_size:
            raise TransferError(f"Size mismatch for '{source}': expected {expected_size}, got {len(data)}")

        try:
            local_file = open(dest, 'wb')
        except OSError as e:
            logger.warning(f"Skipping '{source}': cannot create local file '{dest}': {e}")
            return
        with local_file:
            local_file.write(data)
        logger.debug(f"Downloaded {source} ({len(data)} bytes)")

    def _download_directory(self, channel: SFTPChannel, source: str, dest: str) -> None:
        try:
            os.mkdir(dest)
        except FileExistsError:
            if not os.path.isdir(dest):
                raise
            logger.debug(f"Local directory already exists: {dest}")

        for entry in channel.list(source):
            remote_path = posixpath.join(source, entry.name)
            local_path = os.path.join(dest, entry.name)
            if entry.is_symlink:
                logger.debug(f"Skipping symlink: {remote_path}")
                continue
            if entry.is_directory:
                self._download_directory(channel, remote_path, local_path)
            else:
                self._download_file(channel, remote_path, local_path)

    # --- Upload (local -> remote) ---

    def _upload(self, channel: SFTPChannel, source: str, dest: str) -> None:
        if os.path.isdir(source):
            self._upload_directory(channel, source, dest)
        elif os.path.isfile(source):
            self._upload_file(channel, source, dest)
        else:
            raise TransferError(f"'{source}' is not a regular file or directory")

    def _upload_file(self, channel: SFTPChannel, source: str, dest: str) -> None:
        with open(source, 'rb') as local_file:
            data = local_file.read()

        try:
            remote_file = channel.create_write(dest)
        except (IOError, paramiko.SSHException) as e:
            logger.warning(f"Skipping '{source}': cannot create remote file '{dest}': {e}")
            return
        with remote_file:
            remote_file.write(data)
        logger.debug(f"Uploaded {source} ({len(data)} bytes)")

    def _upload_directory(self, channel: SFTPChannel, source: str, dest: str) -> None:
        channel.make_directory(dest)
        with os.scandir(source) as scan:
            entries = list(scan)

        dest_visible = False
        for entry in entries:
            remote_path = posixpath.join(dest, entry.name)
            if entry.is_symlink():
                logger.debug(f"Skipping symlink: {entry.path}")
                continue
            if entry.is_dir(follow_symlinks=False):
                self._upload_directory(channel, entry.path, remote_path)
            elif entry.is_file(follow_symlinks=False):
                if not dest_visible:
                    dest_visible = self._wait_for_remote_directory(channel, dest)
                self._upload_file(channel, entry.path, remote_path)
            else:
                logger.warning(f"Skipping special file: {entry.path}")

    def _wait_for_remote_directory(self, channel: SFTPChannel, path: str) -> bool:
        """Polls until `path` is visible over SFTP. Gives up quietly after the last attempt."""
        @retry(tries=self.dir_probe_attempts, delay=self.dir_probe_delay, log_level=logging.DEBUG)
        def probe() -> None:
            if not channel.probe_directory(path):
                raise TransferError(f"remote directory '{path}' is not visible yet")

        try:
            probe()
        except TransferError:
            logger.warning(f"Remote directory '{path}' still not visible after "
                           f"{self.dir_probe_attempts} attempts, uploading anyway.")
            return False
        return True


def _run_transfer(engine: TransferEngine, request: TransferRequest, completion: "Queue[str]") -> None:
    """Worker body: executes the request and reports exactly one completion message."""
    try:
        engine.execute(request)
    except TransferError as e:
        completion.put(f"Transfer error: {e}")
    except Exception as e:
        logger.error(f"Unexpected error in {request.verb.lower()} worker for '{request.name}': {e}", exc_info=True)
        completion.put(f"Transfer error: {e}")
    else:
        completion.put(COMPLETION_OK)


class TransferScheduler:
    """Runs transfers on worker threads and collects their results.

    `submit` never blocks: requests beyond `max_workers` wait inside the
    executor. Only the event loop thread calls `submit`, `poll` and
    `shutdown`.
    """

    def __init__(self, engine: TransferEngine, max_workers: int = 4):
        self.engine = engine
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='Transfer')
        self._pending: List[Tuple[TransferRequest, "Queue[str]"]] = []

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def submit(self, request: TransferRequest) -> "Queue[str]":
        completion: "Queue[str]" = Queue(maxsize=1)
        self._executor.submit(_run_transfer, self.engine, request, completion)
        self._pending.append((request, completion))
        logger.debug(f"Queued {request.verb.lower()} of '{request.name}' ({len(self._pending)} pending)")
        return completion

    def poll(self) -> List[str]:
        """Returns the completion messages of finished transfers, each exactly once.

        An empty string means success; anything else is an error description.
        """
        messages = []
        still_pending = []
        for request, completion in self._pending:
            try:
                messages.append(completion.get_nowait())
            except Empty:
                still_pending.append((request, completion))
        self._pending = still_pending
        return messages

    def shutdown(self) -> List[str]:
        """Waits for every outstanding transfer and returns their messages."""
        if self._pending:
            logger.info(f"Waiting for {len(self._pending)} transfer(s) to finish...")
        self._executor.shutdown(wait=True)
        return self.poll()
