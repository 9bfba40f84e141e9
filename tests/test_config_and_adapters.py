from __future__ import annotations

import json
import logging
import os
import stat
import sys
from pathlib import Path

import pytest
from keyring.errors import KeyringError, PasswordDeleteError

from acp import cli
from acp.credentials import (
    Credentials,
    FileCredentialProvider,
    KeyringCredentialProvider,
    MemoryCredentialProvider,
    credential_provider,
)
from acp.errors import CredentialError
from acp.logging_config import mask_value
from acp.notifications import DesktopNotifier, notification_command
from acp.settings import DEFAULT_CHECK_URL, Settings, load_settings
from acp.state import write_status

from .conftest import FakePortal


def test_load_settings_defaults_when_missing(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "missing.json")
    assert settings.check_url == DEFAULT_CHECK_URL
    assert settings.min_delay == 10.0
    assert settings.max_delay == 1800.0
    assert settings.max_login_retries == 3
    assert settings.initial_retry_delay == 2.0
    assert settings.request_timeout == 10.0
    assert settings.debounce_seconds == 3.0
    assert settings.signal_queue_size == 10


def test_load_settings_overrides_and_paths(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    p = tmp_path / "settings.json"
    p.write_text(
        json.dumps({"check_url": "http://check.test/generate_204", "state_path": "~/s.json", "bogus": 1}),
        encoding="utf-8",
    )
    with caplog.at_level(logging.WARNING):
        settings = load_settings(p)
    assert settings.check_url == "http://check.test/generate_204"
    assert settings.state_path == Path("~/s.json").expanduser()
    assert "bogus" in caplog.text


def test_settings_env_var(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    p = tmp_path / "custom.json"
    p.write_text(json.dumps({"log_level": "DEBUG"}), encoding="utf-8")
    monkeypatch.setenv("ACP_CONFIG", str(p))
    assert load_settings().log_level == "DEBUG"


def test_settings_reject_inverted_bounds() -> None:
    with pytest.raises(ValueError):
        Settings.from_dict({"min_delay": 100, "max_delay": 10})


def test_file_credentials_round_trip(tmp_path: Path) -> None:
    provider = FileCredentialProvider(tmp_path / "acp" / "credentials.json")
    with pytest.raises(CredentialError):
        provider.get()

    provider.set("student01", "hunter22")
    assert provider.get() == Credentials("student01", "hunter22")
    if sys.platform != "win32":
        mode = stat.S_IMODE(os.stat(provider.path).st_mode)
        assert mode == 0o600

    provider.clear()
    provider.clear()
    with pytest.raises(CredentialError):
        provider.get()


def test_file_credentials_corrupt(tmp_path: Path) -> None:
    p = tmp_path / "credentials.json"
    p.write_text("nope", encoding="utf-8")
    with pytest.raises(CredentialError):
        FileCredentialProvider(p).get()


def test_memory_credentials_validate() -> None:
    provider = MemoryCredentialProvider()
    with pytest.raises(CredentialError):
        provider.get()
    with pytest.raises(CredentialError):
        provider.set("  ", "secret")
    provider.set("user", "secret")
    assert provider.get().username == "user"


def test_credentials_repr_masks_secret() -> None:
    text = repr(Credentials("student01", "supersecretpassword"))
    assert "supersecretpassword" not in text
    assert "student01" in text


def test_mask_value() -> None:
    assert mask_value("") == ""
    assert mask_value("abc") == "***"
    assert mask_value("abcdefgh") == "ab***gh"


def test_notification_command_per_platform() -> None:
    assert notification_command("T", "B", platform="linux")[0] == "notify-send"
    mac = notification_command('Ti"tle', "Body", platform="darwin")
    assert mac[:2] == ["osascript", "-e"]
    assert '\\"' in mac[2]


def test_desktop_notifier_never_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def boom(*args: object, **kwargs: object) -> None:
        raise OSError("no display")

    monkeypatch.setattr("acp.notifications.shutil.which", lambda name: "/usr/bin/" + name)
    monkeypatch.setattr("acp.notifications.subprocess.run", boom)
    DesktopNotifier().notify("title", "body")


def test_build_daemon_wires_settings(tmp_path: Path) -> None:
    settings = Settings(
        state_path=tmp_path / "state.json",
        credentials_path=tmp_path / "credentials.json",
        log_dir=tmp_path / "logs",
        min_delay=5.0,
        signal_queue_size=4,
        notifications=False,
    )
    daemon = cli.build_daemon(settings)
    assert daemon.min_delay == 5.0
    assert daemon.backoff.interval == 5.0
    assert daemon.signals.maxsize == 4
    assert daemon.bridge is not None
    assert daemon.detector.cancel_event is daemon.stop_event
    daemon.stop()
    assert daemon.stop_event.is_set()


def test_cli_setup_stores_credentials(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "settings.json"
    config.write_text(
        json.dumps(
            {
                "credentials_path": str(tmp_path / "credentials.json"),
                "credential_store": "file",
                "state_path": str(tmp_path / "state.json"),
                "log_dir": str(tmp_path / "logs"),
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr("acp.cli.getpass.getpass", lambda prompt: "hunter22")
    assert cli.main(["--config", str(config), "setup", "--username", "student01"]) == 0
    assert FileCredentialProvider(tmp_path / "credentials.json").get().secret == "hunter22"


def test_cli_health_fails_without_credentials(tmp_path: Path) -> None:
    config = tmp_path / "settings.json"
    config.write_text(
        json.dumps(
            {
                "credentials_path": str(tmp_path / "credentials.json"),
                "credential_store": "file",
                "log_dir": str(tmp_path / "logs"),
            }
        ),
        encoding="utf-8",
    )
    assert cli.main(["--config", str(config), "health"]) == 1


def test_cli_invalid_settings(tmp_path: Path) -> None:
    config = tmp_path / "settings.json"
    config.write_text("{broken", encoding="utf-8")
    assert cli.main(["--config", str(config), "status"]) == 1


def test_settings_coerce_numeric_strings() -> None:
    settings = Settings.from_dict({"min_delay": "10", "max_login_retries": "5", "request_timeout": 3})
    assert settings.min_delay == 10.0
    assert isinstance(settings.min_delay, float)
    assert settings.max_login_retries == 5
    assert settings.request_timeout == 3.0


@pytest.mark.parametrize(
    "data",
    [
        {"min_delay": "ten"},
        {"min_delay": None},
        {"max_login_retries": [3]},
        {"notifications": "yes"},
        {"check_url": 42},
        {"state_path": 7},
        {"credential_store": "vault"},
        {"request_timeout": True},
    ],
)
def test_settings_reject_wrong_types(data: dict) -> None:
    with pytest.raises(ValueError):
        Settings.from_dict(data)


def test_cli_rejects_wrongly_typed_settings(tmp_path: Path) -> None:
    config = tmp_path / "settings.json"
    config.write_text(json.dumps({"min_delay": "soon"}), encoding="utf-8")
    assert cli.main(["--config", str(config), "status"]) == 1


@pytest.mark.parametrize(
    ("command", "console"),
    [(None, True), ("run", False), ("status", True), ("health", True), ("setup", True)],
)
def test_console_logging_off_only_for_explicit_run(command: str | None, console: bool) -> None:
    assert cli.wants_console(command) is console


class FakeKeyring:
    def __init__(self) -> None:
        self.entries: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, name: str) -> str | None:
        return self.entries.get((service, name))

    def set_password(self, service: str, name: str, value: str) -> None:
        self.entries[(service, name)] = value

    def delete_password(self, service: str, name: str) -> None:
        if (service, name) not in self.entries:
            raise PasswordDeleteError("not found")
        del self.entries[(service, name)]


@pytest.fixture()
def fake_keyring(monkeypatch: pytest.MonkeyPatch) -> FakeKeyring:
    backend = FakeKeyring()
    for name in ("get_password", "set_password", "delete_password"):
        monkeypatch.setattr(f"acp.credentials.keyring.{name}", getattr(backend, name))
    return backend


def test_keyring_credentials_round_trip(fake_keyring: FakeKeyring) -> None:
    provider = KeyringCredentialProvider(service="acp-test")
    with pytest.raises(CredentialError):
        provider.get()

    provider.set("student01", "hunter22")
    assert provider.get() == Credentials("student01", "hunter22")
    assert fake_keyring.entries[("acp-test", "ldap_username")] == "student01"
    assert fake_keyring.entries[("acp-test", "ldap_password")] == "hunter22"

    provider.clear()
    provider.clear()
    assert fake_keyring.entries == {}
    with pytest.raises(CredentialError):
        provider.get()


def test_keyring_backend_failure_is_credential_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def locked(*args: object) -> None:
        raise KeyringError("no backend available")

    monkeypatch.setattr("acp.credentials.keyring.get_password", locked)
    monkeypatch.setattr("acp.credentials.keyring.set_password", locked)
    provider = KeyringCredentialProvider()
    with pytest.raises(CredentialError):
        provider.get()
    with pytest.raises(CredentialError):
        provider.set("student01", "hunter22")


def test_credential_provider_factory(tmp_path: Path) -> None:
    assert isinstance(credential_provider("keyring", tmp_path / "c.json"), KeyringCredentialProvider)
    file_provider = credential_provider("file", tmp_path / "c.json")
    assert isinstance(file_provider, FileCredentialProvider)
    assert file_provider.path == tmp_path / "c.json"


def test_cli_setup_uses_keyring_by_default(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_keyring: FakeKeyring
) -> None:
    config = tmp_path / "settings.json"
    config.write_text(json.dumps({"log_dir": str(tmp_path / "logs")}), encoding="utf-8")
    monkeypatch.setattr("acp.cli.getpass.getpass", lambda prompt: "hunter22")
    assert cli.main(["--config", str(config), "setup", "-u", "student01"]) == 0
    assert KeyringCredentialProvider().get() == Credentials("student01", "hunter22")


def test_cli_status_prints_daemon_status(
    tmp_path: Path, fake_portal: FakePortal, capsys: pytest.CaptureFixture[str]
) -> None:
    config = tmp_path / "settings.json"
    config.write_text(
        json.dumps(
            {
                "check_url": f"{fake_portal.base_url}/generate_204",
                "credential_store": "file",
                "credentials_path": str(tmp_path / "credentials.json"),
                "state_path": str(tmp_path / "state.json"),
                "log_dir": str(tmp_path / "logs"),
            }
        ),
        encoding="utf-8",
    )
    assert cli.main(["--config", str(config), "status"]) == 0
    assert "no status published" in capsys.readouterr().out

    write_status(
        tmp_path / "status.json",
        {
            "current_regime": "portal_detected",
            "phase": "sleeping",
            "interval": 10.0,
            "next_check_at": None,
            "last_error": "login: portal rejected the credentials",
            "cycles": 7,
            "updated_at": 0,
        },
    )
    assert cli.main(["--config", str(config), "status"]) == 0
    out = capsys.readouterr().out
    assert "Portal Status:      not detected" in out
    assert "Current Regime:     portal_detected" in out
    assert "Check Cycles:       7" in out
    assert "Last Error:         login: portal rejected the credentials" in out
