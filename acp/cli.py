import argparse
import getpass
import logging
import queue
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from . import __version__
from .credentials import CredentialProvider, credential_provider
from .daemon import DaemonLoop
from .detector import Clear, PortalDetector, build_session
from .errors import AcpError, CredentialError, NetworkError, ParseError
from .events import EventBridge, InterfaceWatcher
from .logging_config import mask_value, setup_logging
from .login import LoginClient, login_endpoint
from .notifications import DesktopNotifier, LogNotifier
from .scraper import extract_magic_value
from .settings import Settings, load_settings
from .state import StatePersistence, format_duration_ago, read_state, read_status

logger = logging.getLogger(__name__)

SERVICE_COMMANDS = ("run",)


def wants_console(command: Optional[str]) -> bool:
    """Console logging is off only for an explicit `acp run` (service mode)."""
    return command not in SERVICE_COMMANDS


def _provider(settings: Settings) -> CredentialProvider:
    return credential_provider(settings.credential_store, settings.credentials_path)


def build_daemon(
    settings: Settings,
    credentials: Optional[CredentialProvider] = None,
) -> DaemonLoop:
    stop_event = threading.Event()
    signals = queue.Queue(maxsize=settings.signal_queue_size)
    session = build_session(settings.user_agent)
    detector = PortalDetector(
        session, settings.check_url, settings.request_timeout, cancel_event=stop_event
    )
    login_client = LoginClient(
        session,
        detector,
        login_path=settings.login_path,
        logout_url=settings.logout_url,
        redirect_target=settings.redirect_target,
        timeout=settings.request_timeout,
        cancel_event=stop_event,
    )
    return DaemonLoop(
        detector=detector,
        login_client=login_client,
        credentials=credentials or _provider(settings),
        persistence=StatePersistence(settings.state_path),
        notifier=DesktopNotifier() if settings.notifications else LogNotifier(),
        signals=signals,
        stop_event=stop_event,
        bridge=EventBridge(signals, settings.debounce_seconds),
        session=session,
        min_delay=settings.min_delay,
        max_delay=settings.max_delay,
        max_login_retries=settings.max_login_retries,
        initial_retry_delay=settings.initial_retry_delay,
    )


def run_daemon(settings: Settings) -> int:
    daemon = build_daemon(settings)

    def handle_signal(signum: int, _frame: object) -> None:
        logger.info("Received %s, initiating graceful shutdown", signal.Signals(signum).name)
        threading.Thread(target=daemon.stop, name="acp-shutdown").start()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    watcher = None
    if daemon.bridge is not None:
        watcher = InterfaceWatcher(
            daemon.bridge.notify, daemon.stop_event, settings.interface_poll_seconds
        )
        watcher.start()
    try:
        daemon.run()
    finally:
        daemon.stop()
        if watcher is not None:
            watcher.join(timeout=settings.interface_poll_seconds + 1)
    return 0


def show_status(settings: Settings) -> int:
    provider = _provider(settings)
    try:
        creds = provider.get()
        print(f"Credentials:        configured (user: {creds.username})")
    except CredentialError:
        print("Credentials:        not configured (run 'acp setup')")

    session = build_session(settings.user_agent)
    detector = PortalDetector(session, settings.check_url, settings.request_timeout)
    try:
        result = detector.detect()
    except (NetworkError, ParseError) as exc:
        print(f"Portal Status:      check failed ({exc})")
    else:
        if isinstance(result, Clear):
            print("Portal Status:      not detected, internet reachable")
        else:
            print("Portal Status:      detected")
            print(f"Portal URL:         {result.location}")
    finally:
        session.close()

    state = read_state(settings.state_path)
    if state.last_check_time is not None:
        print(f"Last Check:         {format_duration_ago(state.last_check_time)}")
    if state.last_successful_login_time is not None:
        print(f"Last Login:         {format_duration_ago(state.last_successful_login_time)}")
    if state.last_portal_url:
        print(f"Last Portal:        {state.last_portal_url}")

    status = read_status(settings.state_path.with_name("status.json"))
    if status is None:
        print("Daemon:             no status published (is `acp run` active?)")
        return 0
    print(f"Daemon Phase:       {status.get('phase', 'unknown')}")
    print(f"Current Regime:     {status.get('current_regime', 'unknown')}")
    next_check_at = status.get("next_check_at")
    if isinstance(next_check_at, (int, float)):
        remaining = max(0, int(next_check_at - time.time()))
        print(f"Next Check:         in {remaining} seconds")
    print(f"Check Cycles:       {status.get('cycles', 0)}")
    print(f"Last Error:         {status.get('last_error') or 'none'}")
    return 0


def health_check(settings: Settings) -> int:
    provider = _provider(settings)
    try:
        creds = provider.get()
    except CredentialError as exc:
        logger.error("Failed to retrieve credentials: %s", exc)
        return 1
    logger.info("Credentials found for user: %s", creds.username)

    session = build_session(settings.user_agent)
    try:
        result = PortalDetector(session, settings.check_url, settings.request_timeout).detect()
    except (NetworkError, ParseError) as exc:
        logger.error("Network check failed: %s", exc)
        return 1
    finally:
        session.close()

    if isinstance(result, Clear):
        logger.info("No captive portal detected (internet is accessible)")
    else:
        logger.info("Captive portal detected at: %s", result.location)
        magic = extract_magic_value(result.html)
        if magic is None:
            logger.error("Portal page has no magic value")
            return 1
        logger.info("Magic value extracted: %s", mask_value(magic, keep=4))
    logger.info("Health check completed successfully")
    return 0


def setup_credentials(settings: Settings, username: Optional[str]) -> int:
    provider = _provider(settings)
    username = username or input("Enter portal username: ").strip()
    secret = getpass.getpass("Enter portal password: ")
    try:
        provider.set(username, secret)
    except CredentialError as exc:
        logger.error("%s", exc)
        return 2
    where = "system keyring" if settings.credential_store == "keyring" else settings.credentials_path
    print(f"Credentials stored in {where}")
    return 0


def logout_command(settings: Settings, clear: bool) -> int:
    provider = _provider(settings)
    logout_url = settings.logout_url
    if not logout_url:
        last_portal = read_state(settings.state_path).last_portal_url
        if last_portal:
            logout_url = login_endpoint(last_portal, "/logout?")

    session = build_session(settings.user_agent)
    detector = PortalDetector(session, settings.check_url, settings.request_timeout)
    client = LoginClient(
        session, detector, logout_url=logout_url, timeout=settings.request_timeout
    )
    exit_code = 0
    try:
        creds = provider.get()
    except CredentialError:
        creds = None
    try:
        if client.logout(creds):
            print("Logout request sent.")
            if settings.notifications:
                DesktopNotifier().notify("Auto Captive Portal", "Logged out from captive portal.")
        else:
            print("No logout endpoint known; set logout_url in the settings file.")
            exit_code = 1
    except NetworkError as exc:
        print(f"Logout request failed: {exc}")
        exit_code = 1
    finally:
        session.close()

    if clear:
        provider.clear()
        print("Credentials cleared.")
    return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="acp", description="Automatic captive portal login daemon"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="path to settings.json")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser(
        "run",
        help="run the monitoring daemon in service mode, logging to file only "
        "(with no command it runs in the foreground and also logs to the console)",
    )
    sub.add_parser("status", help="show credentials, portal and last check state")
    sub.add_parser("health", help="check credentials and portal detection once")
    setup = sub.add_parser("setup", help="store portal credentials")
    setup.add_argument("-u", "--username")
    logout = sub.add_parser("logout", help="log out from the captive portal")
    logout.add_argument("--clear-credentials", action="store_true")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "run"

    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except (OSError, ValueError) as exc:
        print(f"Invalid settings: {exc}", file=sys.stderr)
        return 1

    setup_logging(settings.log_dir, settings.log_level, console=wants_console(args.command))

    try:
        if command == "run":
            return run_daemon(settings)
        if command == "status":
            return show_status(settings)
        if command == "health":
            return health_check(settings)
        if command == "setup":
            return setup_credentials(settings, args.username)
        if command == "logout":
            return logout_command(settings, args.clear_credentials)
    except AcpError as exc:
        logger.error("Error: %s", exc)
        return 1
    return 1
