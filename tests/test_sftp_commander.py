import logging
from unittest.mock import MagicMock, patch

import pytest

import sftp_commander
from utils import StartupError


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "conf" / "config.ini"


def test_parser_accepts_documented_flags():
    args = sftp_commander.build_arg_parser().parse_args(
        ["-i", "/k/id", "--pubkey", "/k/id.pub", "--passphrase", "pp", "-a", "-s", "-P", "2222", "me@host"]
    )
    assert args.identity == "/k/id"
    assert args.pubkey == "/k/id.pub"
    assert args.all and args.shortcuts
    assert args.port == 2222
    assert args.destination == "me@host"


def test_password_and_identity_are_exclusive(capsys):
    with pytest.raises(SystemExit):
        sftp_commander.build_arg_parser().parse_args(["-p", "pw", "-i", "/k/id", "me@host"])


def test_version(capsys, config_path):
    assert sftp_commander.main(["--version", "--config", str(config_path)]) == 0
    assert sftp_commander.__version__ in capsys.readouterr().out


def test_check_config_valid(config_path, restore_root_logger):
    config_path.parent.mkdir(parents=True)
    config_path.write_text("[SETTINGS]\nport = 22\n")
    assert sftp_commander.main(["--check-config", "--config", str(config_path)]) == 0
    assert list((config_path.parent / "logs").iterdir())


def test_check_config_invalid(config_path, restore_root_logger):
    config_path.parent.mkdir(parents=True)
    config_path.write_text("[SETTINGS]\nmax_concurrent_transfers = 0\n")
    assert sftp_commander.main(["--check-config", "--config", str(config_path)]) == 1


def test_missing_destination_is_an_error(config_path, restore_root_logger, capsys):
    assert sftp_commander.main(["--config", str(config_path)]) == 1
    assert "USER@HOST" in capsys.readouterr().err


def test_startup_error_printed_and_exit_code_one(config_path, restore_root_logger, capsys):
    with patch("sftp_commander.run_session", side_effect=StartupError("Couldn't resolve remote server nope.")):
        assert sftp_commander.main(["--config", str(config_path), "me@nope"]) == 1
    assert "Couldn't resolve remote server nope." in capsys.readouterr().err
    assert config_path.is_file()


def test_non_tty_stdin_fails_before_connecting(config_path, restore_root_logger, capsys):
    with patch("terminal.sys.stdin") as stdin, patch("sftp_commander.open_session") as open_session:
        stdin.isatty.return_value = False
        assert sftp_commander.main(["--config", str(config_path), "me@127.0.0.1"]) == 1
    open_session.assert_not_called()
    assert "not a terminal" in capsys.readouterr().err


def test_run_session_drains_transfers_and_closes_sessions(tmp_path, config_path, restore_root_logger):
    config_path.parent.mkdir(parents=True)
    config_path.write_text("")
    config_manager = sftp_commander.ConfigManager(str(config_path))
    args = sftp_commander.build_arg_parser().parse_args(["-P", "2200", "me@127.0.0.1"])

    browse, transfer = MagicMock(), MagicMock()
    browse.home_directory.return_value = str(tmp_path)
    browse.list.return_value = []
    scheduler = MagicMock()
    scheduler.shutdown.return_value = ["", "Transfer error: boom"]

    with patch("sftp_commander.TerminalController") as terminal_cls, \
            patch("sftp_commander.startup_directory", return_value=str(tmp_path)), \
            patch("sftp_commander.open_session", side_effect=[browse, transfer]) as open_session, \
            patch("sftp_commander.TransferScheduler", return_value=scheduler), \
            patch("sftp_commander.KeyReader"), \
            patch("sftp_commander.FileManagerUI"), \
            patch("sftp_commander.EventLoop") as loop_cls:
        with patch.object(logging, "error") as log_error:
            sftp_commander.run_session(args, config_manager, rich_handler=None)

    assert open_session.call_args_list[0].args == ("127.0.0.1", 2200, "me", sftp_commander.build_auth_method(), 1)
    assert open_session.call_args_list[1].args[4] == 4
    terminal_cls.for_stdin.return_value.cbreak_mode.assert_called_once()
    loop_cls.return_value.run.assert_called_once()
    scheduler.shutdown.assert_called_once()
    log_error.assert_called_once_with("Transfer error: boom")
    browse.close.assert_called_once()
    transfer.close.assert_called_once()


def test_session_failure_is_startup_error(tmp_path, config_path, restore_root_logger):
    config_path.parent.mkdir(parents=True)
    config_path.write_text("")
    config_manager = sftp_commander.ConfigManager(str(config_path))
    args = sftp_commander.build_arg_parser().parse_args(["me@127.0.0.1"])

    with patch("sftp_commander.TerminalController"), \
            patch("sftp_commander.startup_directory", return_value=str(tmp_path)), \
            patch("sftp_commander.open_session",
                  side_effect=sftp_commander.RemoteSessionError("Authentication failed.")):
        with pytest.raises(StartupError, match="Authentication failed"):
            sftp_commander.run_session(args, config_manager, rich_handler=None)


def test_interrupt_while_draining_still_closes_sessions(tmp_path, config_path, restore_root_logger):
    config_path.parent.mkdir(parents=True)
    config_path.write_text("")
    config_manager = sftp_commander.ConfigManager(str(config_path))
    args = sftp_commander.build_arg_parser().parse_args(["me@127.0.0.1"])

    browse, transfer = MagicMock(), MagicMock()
    browse.home_directory.return_value = str(tmp_path)
    browse.list.return_value = []
    scheduler = MagicMock()
    scheduler.shutdown.side_effect = KeyboardInterrupt
    scheduler.pending_count.return_value = 2

    with patch("sftp_commander.TerminalController"), \
            patch("sftp_commander.startup_directory", return_value=str(tmp_path)), \
            patch("sftp_commander.open_session", side_effect=[browse, transfer]), \
            patch("sftp_commander.TransferScheduler", return_value=scheduler), \
            patch("sftp_commander.KeyReader"), \
            patch("sftp_commander.FileManagerUI"), \
            patch("sftp_commander.EventLoop"):
        with patch.object(logging, "warning") as log_warning:
            sftp_commander.run_session(args, config_manager, rich_handler=None)

    assert any("abandoning 2 transfer(s)" in call.args[0] for call in log_warning.call_args_list)
    browse.close.assert_called_once()
    transfer.close.assert_called_once()
