import logging
import shutil
import subprocess
import sys

logger = logging.getLogger(__name__)

APP_NAME = "Auto Captive Portal"


class Notifier:
    def notify(self, title: str, body: str) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    def notify(self, title: str, body: str) -> None:
        logger.info("%s: %s", title, body)


def _applescript_quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def notification_command(title: str, body: str, platform: str = sys.platform) -> list[str]:
    if platform == "darwin":
        script = f"display notification {_applescript_quote(body)} with title {_applescript_quote(title)}"
        return ["osascript", "-e", script]
    return ["notify-send", "--app-name", APP_NAME, "--icon", "dialog-information", title, body]


class DesktopNotifier(Notifier):
    """Shows a desktop notification; failures are logged and never raised."""

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout

    def notify(self, title: str, body: str) -> None:
        command = notification_command(title, body)
        if shutil.which(command[0]) is None:
            logger.debug("%s not available, notification skipped", command[0])
            return
        logger.info("Sending notification: %s", body)
        try:
            result = subprocess.run(
                command, capture_output=True, text=True, timeout=self.timeout, check=False
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("Failed to send notification: %s", exc)
            return
        if result.returncode != 0:
            logger.error(
                "Notification command exited with %s: %s",
                result.returncode,
                result.stderr.strip(),
            )
