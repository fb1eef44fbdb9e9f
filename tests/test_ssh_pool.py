import unittest
from unittest.mock import patch, MagicMock
import time
import threading
from config_manager import AgentAuth, PasswordAuth, PrivateKeyAuth
from ssh_manager import SSHConnectionPool, SFTPChannel, RemoteSession, _auth_kwargs, open_session
from utils import RemoteSessionError

class TestSSHConnectionPool(unittest.TestCase):

    @patch('ssh_manager.paramiko.SSHClient')
    def test_basic_reuse(self, mock_ssh_client):
        """Test that connections are reused from the pool."""
        mock_ssh_instance = MagicMock()
        mock_ssh_instance.get_transport.return_value.is_active.return_value = True
        mock_ssh_client.return_value = mock_ssh_instance

        pool = SSHConnectionPool(
            host='localhost',
            port=22,
            username='testuser',
            auth=PasswordAuth('testpass'),
            max_size=3
        )

        connection_ids = []

        with pool.get_connection() as (sftp, ssh):
            connection_ids.append(id(ssh))
        with pool.get_connection() as (sftp, ssh):
            connection_ids.append(id(ssh))

        self.assertEqual(connection_ids[0], connection_ids[1])
        mock_ssh_instance.connect.assert_called_once()
        pool.close_all()

    @patch('ssh_manager.paramiko.SSHClient')
    def test_pool_size_limit(self, mock_ssh_client):
        """Test that pool respects max_size."""
        mock_ssh_instance = MagicMock()
        mock_ssh_instance.get_transport.return_value.is_active.return_value = True
        mock_ssh_client.return_value = mock_ssh_instance

        pool = SSHConnectionPool(
            host='localhost',
            port=22,
            username='testuser',
            auth=PasswordAuth('testpass'),
            max_size=1,
            pool_wait_timeout=0.1
        )

        with pool.get_connection() as (sftp, ssh):
            with self.assertRaises(TimeoutError):
                with pool.get_connection() as (sftp2, ssh2):
                    pass

        pool.close_all()

    @patch('ssh_manager.paramiko.SSHClient')
    def test_dead_connection_removal(self, mock_ssh_client):
        """Test that dead connections are removed from pool."""
        mock_ssh_instance_one = MagicMock()
        mock_ssh_instance_one.get_transport.return_value.is_active.return_value = True

        mock_ssh_instance_two = MagicMock()
        mock_ssh_instance_two.get_transport.return_value.is_active.return_value = True

        mock_ssh_client.side_effect = [mock_ssh_instance_one, mock_ssh_instance_two]

        pool = SSHConnectionPool(
            host='localhost',
            port=22,
            username='testuser',
            auth=PasswordAuth('testpass'),
            max_size=1
        )

        with pool.get_connection() as (sftp, ssh):
            conn_id1 = id(ssh)
            # Simulate the connection dying
            ssh.get_transport.return_value.is_active.return_value = False

        with pool.get_connection() as (sftp, ssh):
            conn_id2 = id(ssh)

        self.assertNotEqual(conn_id1, conn_id2)
        self.assertEqual(mock_ssh_client.call_count, 2)
        pool.close_all()

    @patch('ssh_manager.paramiko.SSHClient')
    def test_concurrent_access(self, mock_ssh_client):
        """Test thread safety with multiple threads."""
        mock_ssh_instance = MagicMock()
        mock_ssh_instance.get_transport.return_value.is_active.return_value = True
        mock_ssh_client.return_value = mock_ssh_instance

        pool = SSHConnectionPool(
            host='localhost',
            port=22,
            username='testuser',
            auth=PasswordAuth('testpass'),
            max_size=10
        )

        results = {'success': 0, 'failed': 0}
        lock = threading.Lock()

        def worker():
            try:
                for _ in range(5):
                    with pool.get_connection() as (sftp, ssh):
                        time.sleep(0.01)
                        with lock:
                            results['success'] += 1
            except Exception:
                with lock:
                    results['failed'] += 1

        threads = []
        for _ in range(10):
            t = threading.Thread(target=worker)
            threads.append(t)
            t.start()

        for t in threads:
            t.join()

        self.assertEqual(results['success'], 50)
        self.assertEqual(results['failed'], 0)
        pool.close_all()

    @patch('ssh_manager.paramiko.SSHClient')
    def test_connection_counter(self, mock_ssh_client):
        """Test that _active_connections counter is accurate using get_stats()."""
        mock_ssh_instance = MagicMock()
        mock_ssh_instance.get_transport.return_value.is_active.return_value = True
        mock_ssh_client.return_value = mock_ssh_instance

        pool = SSHConnectionPool(
            host='localhost',
            port=22,
            username='testuser',
            auth=PasswordAuth('testpass'),
            max_size=3
        )

        stats = pool.get_stats()
        self.assertEqual(stats['active_connections'], 0)
        self.assertEqual(stats['in_use'], 0)
        self.assertEqual(stats['in_pool'], 0)

        with pool.get_connection() as (sftp1, ssh1):
            stats1 = pool.get_stats()
            self.assertEqual(stats1['active_connections'], 1)
            self.assertEqual(stats1['in_use'], 1)
            self.assertEqual(stats1['in_pool'], 0)

            with pool.get_connection() as (sftp2, ssh2):
                stats2 = pool.get_stats()
                self.assertEqual(stats2['active_connections'], 2)
                self.assertEqual(stats2['in_use'], 2)
                self.assertEqual(stats2['in_pool'], 0)

        stats_final = pool.get_stats()
        self.assertEqual(stats_final['active_connections'], 2)
        self.assertEqual(stats_final['in_use'], 0)
        self.assertEqual(stats_final['in_pool'], 2)

        pool.close_all()

    @patch('ssh_manager.paramiko.SSHClient')
    def test_waiter_woken_when_connection_returned(self, mock_ssh_client):
        """A thread waiting on a full pool gets the connection as soon as it is released."""
        mock_ssh_instance = MagicMock()
        mock_ssh_instance.get_transport.return_value.is_active.return_value = True
        mock_ssh_client.return_value = mock_ssh_instance

        pool = SSHConnectionPool(
            host='localhost',
            port=22,
            username='testuser',
            auth=PasswordAuth('testpass'),
            max_size=1,
            pool_wait_timeout=10
        )
        waited = []

        def waiter():
            start = time.monotonic()
            with pool.get_connection():
                waited.append(time.monotonic() - start)

        with pool.get_connection():
            t = threading.Thread(target=waiter)
            t.start()
            time.sleep(0.05)
        t.join(timeout=5)

        self.assertEqual(len(waited), 1)
        self.assertLess(waited[0], 5)
        mock_ssh_instance.connect.assert_called_once()
        pool.close_all()

    @patch('ssh_manager.paramiko.SSHClient')
    def test_connect_passes_auth_kwargs(self, mock_ssh_client):
        mock_ssh_instance = MagicMock()
        mock_ssh_client.return_value = mock_ssh_instance
        pool = SSHConnectionPool('10.0.0.1', 2222, 'me', PrivateKeyAuth('/k/id', passphrase='pw'), max_size=1)

        with pool.get_connection():
            pass

        kwargs = mock_ssh_instance.connect.call_args.kwargs
        self.assertEqual(kwargs['hostname'], '10.0.0.1')
        self.assertEqual(kwargs['port'], 2222)
        self.assertEqual(kwargs['username'], 'me')
        self.assertEqual(kwargs['key_filename'], '/k/id')
        self.assertEqual(kwargs['passphrase'], 'pw')
        pool.close_all()

    def test_closed_pool_refuses_connections(self):
        pool = SSHConnectionPool('localhost', 22, 'u', AgentAuth(), max_size=1)
        pool.close_all()
        with self.assertRaises(RuntimeError):
            with pool.get_connection():
                pass

    @patch('ssh_manager.paramiko.SSHClient')
    def test_connection_returned_after_close_is_closed(self, mock_ssh_client):
        """A connection checked out across close_all() is closed on return, not pooled."""
        mock_ssh_instance = MagicMock()
        mock_ssh_instance.get_transport.return_value.is_active.return_value = True
        mock_ssh_client.return_value = mock_ssh_instance
        pool = SSHConnectionPool('localhost', 22, 'u', AgentAuth(), max_size=1)

        with pool.get_connection():
            pool.close_all()
            mock_ssh_instance.close.assert_not_called()

        mock_ssh_instance.close.assert_called_once()
        stats = pool.get_stats()
        self.assertEqual(stats['in_pool'], 0)
        self.assertEqual(stats['active_connections'], 0)


class TestAuthKwargs(unittest.TestCase):

    def test_password(self):
        kwargs = _auth_kwargs(PasswordAuth('secret'))
        self.assertEqual(kwargs['password'], 'secret')
        self.assertFalse(kwargs['allow_agent'])

    def test_agent(self):
        kwargs = _auth_kwargs(AgentAuth())
        self.assertTrue(kwargs['allow_agent'])
        self.assertNotIn('password', kwargs)

    def test_private_key(self):
        kwargs = _auth_kwargs(PrivateKeyAuth('/home/me/.ssh/id_ed25519', '/home/me/.ssh/id_ed25519.pub'))
        self.assertEqual(kwargs['key_filename'], '/home/me/.ssh/id_ed25519')
        self.assertIsNone(kwargs['passphrase'])

    def test_unknown_method(self):
        with self.assertRaises(TypeError):
            _auth_kwargs("hunter2")


def _command_streams(exit_status, stdout=b"", stderr=b""):
    out = MagicMock()
    out.channel.recv_exit_status.return_value = exit_status
    out.read.return_value = stdout
    err = MagicMock()
    err.read.return_value = stderr
    return MagicMock(), out, err


class TestSFTPChannel(unittest.TestCase):

    def setUp(self):
        self.sftp = MagicMock()
        self.ssh = MagicMock()
        self.channel = SFTPChannel(self.sftp, self.ssh)

    def test_make_directory_quotes_path(self):
        self.ssh.exec_command.return_value = _command_streams(0)
        self.assertTrue(self.channel.make_directory("/srv/my dir; rm -rf x"))
        command = self.ssh.exec_command.call_args.args[0]
        self.assertEqual(command, "mkdir '/srv/my dir; rm -rf x'")

    def test_make_directory_failure_is_not_an_error(self):
        self.ssh.exec_command.return_value = _command_streams(1, stderr=b"mkdir: File exists")
        self.assertFalse(self.channel.make_directory("/srv/exists"))

    def test_is_directory_uses_stat_mode(self):
        self.sftp.stat.return_value.st_mode = 0o040755
        self.assertTrue(self.channel.is_directory("/srv"))
        self.sftp.stat.return_value.st_mode = 0o100644
        self.assertFalse(self.channel.is_directory("/srv/file"))

    def test_probe_directory_swallows_missing_path(self):
        self.sftp.stat.side_effect = IOError(2, "No such file")
        self.assertFalse(self.channel.probe_directory("/srv/new"))

    def test_list_reports_types(self):
        entries = []
        for name, mode in (("d", 0o040755), ("f", 0o100644), ("l", 0o120777)):
            attr = MagicMock()
            attr.filename = name
            attr.st_mode = mode
            entries.append(attr)
        self.sftp.listdir_attr.return_value = entries

        result = {e.name: (e.is_directory, e.is_symlink) for e in self.channel.list("/srv")}

        self.assertEqual(result, {"d": (True, False), "f": (False, False), "l": (False, True)})

    def test_home_directory_falls_back_to_pwd(self):
        self.sftp.normalize.return_value = ""
        self.ssh.exec_command.return_value = _command_streams(0, stdout=b"/home/me\n")
        self.assertEqual(self.channel.home_directory(), "/home/me")

    def test_home_directory_unknown(self):
        self.sftp.normalize.return_value = ""
        self.ssh.exec_command.return_value = _command_streams(1)
        with self.assertRaises(RemoteSessionError):
            self.channel.home_directory()


class TestOpenSession(unittest.TestCase):

    @patch('ssh_manager.paramiko.SSHClient')
    def test_connect_failure_raises_session_error(self, mock_ssh_client):
        mock_ssh_client.return_value.connect.side_effect = OSError("Connection refused")
        with self.assertRaises(RemoteSessionError):
            open_session('127.0.0.1', 22, 'me', AgentAuth(), max_size=1)

    @patch('ssh_manager.paramiko.SSHClient')
    def test_session_connects_eagerly(self, mock_ssh_client):
        mock_ssh_client.return_value.get_transport.return_value.is_active.return_value = True
        session = open_session('127.0.0.1', 22, 'me', AgentAuth(), max_size=2)
        self.assertIsInstance(session, RemoteSession)
        self.assertEqual(session.host, '127.0.0.1')
        mock_ssh_client.return_value.connect.assert_called_once()
        session.close()


if __name__ == '__main__':
    unittest.main()
