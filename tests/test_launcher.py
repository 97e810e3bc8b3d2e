import socket

import pytest

from relay import Launcher, main
from relay_server import logger


@pytest.fixture(autouse=True)
def restore_log_level():
    level = logger.level
    yield
    logger.setLevel(level)


def _write_ini(path, **values):
    lines = ["[relay]"] + [f"{k} = {v}" for k, v in values.items()]
    path.write_text("\n".join(lines) + "\n")
    return path


def test_defaults_without_config_file(tmp_path):
    launcher = Launcher(["-c", str(tmp_path / "missing.ini")])
    launcher.config_ini()
    assert launcher.listen == "0.0.0.0:4040"
    assert launcher.upstream == "0.0.0.0:4044"
    assert launcher.dial_timeout == 15.0
    assert launcher.buffer_size == 1024
    assert launcher.log_level == "INFO"
    assert launcher.relay_config.dial_timeout == 15.0
    assert launcher.relay_config.buffer_size == 1024


def test_values_from_config_file(tmp_path):
    ini = _write_ini(
        tmp_path / "config.ini",
        listen="127.0.0.1:5000",
        upstream="10.0.0.2:6000",
        dial_timeout="2.5",
        buffer_size="4096",
        log_level="debug",
    )
    launcher = Launcher(["-c", str(ini)])
    launcher.config_ini()
    assert launcher.listen == "127.0.0.1:5000"
    assert launcher.upstream == "10.0.0.2:6000"
    assert launcher.dial_timeout == 2.5
    assert launcher.buffer_size == 4096
    assert launcher.log_level == "DEBUG"


def test_command_line_overrides_config_file(tmp_path):
    ini = _write_ini(tmp_path / "config.ini", listen="127.0.0.1:5000", dial_timeout="2.5")
    launcher = Launcher(
        ["-c", str(ini), "--listen", "127.0.0.1:7000", "--dial-timeout", "0.5", "--log-level", "trace"]
    )
    launcher.config_ini()
    assert launcher.listen == "127.0.0.1:7000"
    assert launcher.dial_timeout == 0.5
    assert launcher.log_level == "TRACE"
    assert logger.level == 5


@pytest.mark.parametrize(
    "argv",
    [
        ["--upstream", "no-port-here"],
        ["--listen", "127.0.0.1:99999"],
        ["--dial-timeout", "0"],
        ["--buffer-size", "-1"],
    ],
)
def test_invalid_configuration_exits_nonzero(tmp_path, argv):
    assert main(["-c", str(tmp_path / "missing.ini")] + argv) == 1


def test_bind_failure_exits_nonzero(tmp_path):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen(1)
        port = busy.getsockname()[1]
        rc = main(["-c", str(tmp_path / "missing.ini"), "--listen", f"127.0.0.1:{port}", "--upstream", "127.0.0.1:1"])
    assert rc == 1


def test_unknown_log_level_in_config_file_exits_nonzero(tmp_path):
    ini = _write_ini(tmp_path / "config.ini", log_level="verbose")
    assert main(["-c", str(ini)]) == 1
