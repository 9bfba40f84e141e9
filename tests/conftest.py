from __future__ import annotations

import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Iterator
from urllib.parse import parse_qs

import pytest

PORTAL_TEMPLATE = (
    "<html><head><title>Firewall Authentication</title></head><body>"
    '<script language="JavaScript">window.location="{portal}";</script>'
    '<form method="post" action="/">'
    '<input type="hidden" name="4Tredir" value="http://clients3.google.com/generate_204">'
    '<input type="hidden" name="magic" value="{magic}">'
    "</form></body></html>"
)


class FakePortal:
    """Mutable behaviour shared with the request handler."""

    def __init__(self) -> None:
        self.base_url = ""
        self.check_mode = "clear"
        self.login = "ok"
        self.magic = "0123456789abcdef"
        self.logins: list[dict[str, str]] = []
        self.logouts = 0

    @property
    def portal_url(self) -> str:
        return f"{self.base_url}/fgtauth?{self.magic}"


class _Handler(BaseHTTPRequestHandler):
    portal: FakePortal

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        return

    def _send(self, status: int, body: str = "") -> None:
        body_bytes = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body_bytes)))
        self.end_headers()
        self.wfile.write(body_bytes)

    def do_GET(self) -> None:  # noqa: N802
        portal = self.portal
        if self.path == "/generate_204":
            if portal.check_mode == "clear":
                self._send(204)
            elif portal.check_mode == "portal":
                self._send(200, PORTAL_TEMPLATE.format(portal=portal.portal_url, magic=portal.magic))
            elif portal.check_mode == "blank":
                self._send(200, "<html><body>hello</body></html>")
            else:
                self._send(500, "boom")
            return
        if self.path.startswith("/logout"):
            portal.logouts += 1
            self._send(200, "<html>You have been logged out</html>")
            return
        self._send(404, "Not Found")

    def do_POST(self) -> None:  # noqa: N802
        portal = self.portal
        length = int(self.headers.get("Content-Length", "0"))
        form = {k: v[0] for k, v in parse_qs(self.rfile.read(length).decode("utf-8")).items()}
        portal.logins.append(form)
        if portal.login == "ok":
            portal.check_mode = "clear"
            self._send(200, "<html><h2>Authentication Successful</h2></html>")
        elif portal.login == "reject":
            self._send(200, "<html><h2>Firewall authentication failed</h2></html>")
        elif portal.login == "forbidden":
            self._send(403, "Forbidden")
        else:
            self._send(200, "<html>Please wait</html>")


@pytest.fixture()
def fake_portal() -> Iterator[FakePortal]:
    portal = FakePortal()
    handler = type("Handler", (_Handler,), {"portal": portal})
    httpd = HTTPServer(("127.0.0.1", 0), handler)
    host, port = httpd.server_address[:2]
    portal.base_url = f"http://{host}:{port}"
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()

    try:
        yield portal
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture()
def silent_server() -> Iterator[str]:
    """Accept TCP connections and never answer; yields a base URL."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(8)
    listener.settimeout(0.1)
    host, port = listener.getsockname()[:2]
    held: list[socket.socket] = []
    done = threading.Event()

    def accept_loop() -> None:
        while not done.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            held.append(conn)

    thread = threading.Thread(target=accept_loop, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        done.set()
        thread.join(timeout=5)
        for conn in held:
            conn.close()
        listener.close()
