"""配置、认证辅助函数和命令行测试"""

import base64

from click.testing import CliRunner

from container_debug.__main__ import main
from container_debug.auth import is_protected, parse_basic_auth
from container_debug.config import DEFAULT_MONITOR_INTERVAL, AppSettings


class TestAppSettings:
    def test_defaults(self, monkeypatch):
        for name in ("COMPOSE_PATH", "MONITOR_INTERVAL", "PORT", "PASSWORD", "SHELL_CMD", "LOG_TAIL"):
            monkeypatch.delenv(name, raising=False)

        settings = AppSettings.from_env()

        assert settings.compose_path == ""
        assert settings.monitor_interval == 5.0
        assert settings.port == 8080
        assert settings.password == ""
        assert settings.shell == "/bin/sh"
        assert settings.log_tail == 100

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("COMPOSE_PATH", "/srv/app")
        monkeypatch.setenv("MONITOR_INTERVAL", "2.5")
        monkeypatch.setenv("PORT", "9000")
        monkeypatch.setenv("PASSWORD", "pw")

        settings = AppSettings.from_env()

        assert settings.compose_path == "/srv/app"
        assert settings.monitor_interval == 2.5
        assert settings.port == 9000
        assert settings.password == "pw"

    def test_invalid_number_falls_back(self, monkeypatch):
        monkeypatch.setenv("MONITOR_INTERVAL", "soon")

        assert AppSettings.from_env().monitor_interval == DEFAULT_MONITOR_INTERVAL


class TestAuthHelpers:
    def test_protected_paths(self):
        assert is_protected("/ws")
        assert is_protected("/containers")
        assert is_protected("/containers/web/logs")
        assert is_protected("/container/logs/download")
        assert not is_protected("/health")
        assert not is_protected("/static/index.html")

    def test_parse_basic_auth(self):
        token = base64.b64encode(b"admin:pa:ss").decode()

        assert parse_basic_auth(f"Basic {token}") == ("admin", "pa:ss")

    def test_parse_basic_auth_rejects_garbage(self):
        assert parse_basic_auth("") is None
        assert parse_basic_auth("Bearer abc") is None
        assert parse_basic_auth("Basic !!!") is None
        assert parse_basic_auth("Basic " + base64.b64encode(b"nocolon").decode()) is None


class TestCli:
    def test_missing_compose_file_exits(self, tmp_path):
        result = CliRunner().invoke(main, ["--compose-path", str(tmp_path / "missing.yml")])

        assert result.exit_code == 1
