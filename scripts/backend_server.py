#!/usr/bin/env python3
"""Echo backend for local runs: GET /health answers 200, anything else echoes."""

from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)


class Handler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    timeout = 5

    def _send(self, body: bytes, close: bool):
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close" if close else "keep-alive")
        self.end_headers()
        self.wfile.write(body)
        self.close_connection = close

    def _echo(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        keep_alive = self.headers.get("Connection", "").lower() == "keep-alive"
        prefix = f"Echo from port: {self.server.server_port}:\n".encode()
        self._send(prefix + body, close=not keep_alive)

    def do_GET(self):
        if self.path == "/health":
            self._send(b"OK", close=True)
        else:
            self._echo()

    do_POST = do_PUT = do_DELETE = do_PATCH = _echo

    def log_message(self, format, *args):
        pass


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("usage: backend_server.py <port>", file=sys.stderr)
        sys.exit(1)
    port = int(sys.argv[1])
    server = ThreadingHTTPServer(("127.0.0.1", port), Handler)
    logging.info(f"Backend server listening on port {port}")
    server.serve_forever()
