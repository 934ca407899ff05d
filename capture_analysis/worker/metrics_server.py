"""
Metrics HTTP Server for the analysis worker.

The worker runs in its own process, so its Prometheus registry is exposed on
a dedicated port from a background thread.
"""

from http.server import HTTPServer, BaseHTTPRequestHandler
from threading import Thread
from typing import Optional
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from capture_analysis.core.logging_config import get_logger

logger = get_logger(__name__)


class MetricsHandler(BaseHTTPRequestHandler):
    """Serves /metrics and /healthz."""

    def do_GET(self):
        if self.path == '/metrics':
            payload = generate_latest()
            self._respond(200, CONTENT_TYPE_LATEST, payload)
        elif self.path == '/healthz':
            self._respond(200, 'text/plain; charset=utf-8', b'ok')
        else:
            self._respond(404, 'text/plain; charset=utf-8', b'not found')

    def _respond(self, status: int, content_type: str, body: bytes):
        self.send_response(status)
        self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        logger.debug(f"Metrics request: {format % args}")


class MetricsServer:
    """Background-thread HTTP server for Prometheus scraping."""

    def __init__(self, port: int = 9090, host: str = '0.0.0.0'):
        self.host = host
        self.port = port
        self.server: Optional[HTTPServer] = None
        self.thread: Optional[Thread] = None

    def start(self) -> bool:
        try:
            self.server = HTTPServer((self.host, self.port), MetricsHandler)
        except OSError as e:
            # Metrics are optional; the worker keeps running without them
            logger.error(f"Failed to start metrics server on port {self.port}: {e}")
            return False

        self.port = self.server.server_address[1]
        self.thread = Thread(target=self.server.serve_forever, daemon=True, name="metrics-server")
        self.thread.start()
        logger.info(f"Worker metrics server started on port {self.port}")
        return True

    def stop(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Worker metrics server stopped")
