#!/usr/bin/env python3
"""
GitLab Build Monitor Server
Python stdlib-only implementation using http.server, urllib and asyncio

This is the main entry point. It wires together:
- config_loader: Configuration loading and the validation gate
- gitlab_client: GitLab API client
- engine: AggregationEngine + PollScheduler (asyncio, on a background thread)

The HTTP handler never touches engine state. The engine publishes a
snapshot after every change; the snapshot is stored in STATE under
STATE_LOCK and served from there.
"""

import asyncio
import json
import logging
import os
import sys
import threading
from datetime import datetime
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

# Add parent directory to path to allow direct execution (python3 build_monitor/app.py)
_parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _parent_dir not in sys.path:
    sys.path.insert(0, _parent_dir)

from build_monitor.config_loader import configure_logging, load_config, validate_config
from build_monitor.engine import AggregationEngine, PollScheduler, STATE_POLLING
from build_monitor.errors import ConfigurationError
from build_monitor.gitlab_client import GitLabAPIClient, ambient_auth_headers

# Configure logging at module load (can be reconfigured in main())
_configured_level = configure_logging()
logger = logging.getLogger(__name__)

# Global STATE holding the latest published engine snapshot
STATE = {
    'pipelines': [],
    'last_run': None,
    'error': None,
    'status': 'INITIALIZING',
    'tracked_projects': 0,
    'last_updated': None,
}
STATE_LOCK = threading.Lock()


def update_state_from_snapshot(snapshot):
    """Engine observer: store a published snapshot atomically"""
    with STATE_LOCK:
        STATE['pipelines'] = snapshot['pipelines']
        STATE['last_run'] = snapshot['last_run']
        STATE['error'] = snapshot['error']
        STATE['status'] = snapshot['state']
        STATE['tracked_projects'] = snapshot['tracked_projects']
        STATE['last_updated'] = datetime.now()


def get_state_snapshot():
    """Thread-safe shallow copy of STATE"""
    with STATE_LOCK:
        return dict(STATE)


def set_state_error(message):
    """Thread-safe error update for failures outside the engine"""
    with STATE_LOCK:
        STATE['status'] = 'ERROR'
        STATE['error'] = {'message': str(message)}


def build_client(config, environ=None):
    """Create the GitLab client for a validated configuration"""
    environ = os.environ if environ is None else environ
    auth_headers = ambient_auth_headers(environ) if config.get('use_cookie') else None
    return GitLabAPIClient(
        config['gitlab'],
        api_token=None if config.get('use_cookie') else config['token'],
        auth_headers=auth_headers,
        insecure_skip_verify=config.get('insecure_skip_verify', False),
        max_retries=config.get('max_retries', 3),
        ca_bundle_path=config.get('ca_bundle_path'),
    )


def build_scheduler(config, client=None):
    """Create engine + scheduler and parse the configured references

    Raises:
        ConfigurationError: If no project or group can be tracked
    """
    client = client or build_client(config)
    engine = AggregationEngine(client, blacklist=config.get('blacklist'), branch_override=config.get('ref'))
    engine.add_observer(update_state_from_snapshot)
    scheduler = PollScheduler(
        engine,
        config.get('projects'),
        groups=config.get('groups'),
        poll_interval_sec=config['poll_interval_sec'],
    )
    scheduler.prepare()
    return scheduler


class BackgroundPoller(threading.Thread):
    """Background thread running the PollScheduler on its own event loop"""

    def __init__(self, scheduler):
        super().__init__(daemon=True)
        self.scheduler = scheduler

    def run(self):
        logger.info("Background poller started")
        try:
            asyncio.run(self.scheduler.run())
        except Exception as e:
            logger.error(f"Background poller crashed: {e}")
            set_state_error(e)

    def stop(self):
        """Stop the polling thread"""
        logger.info("Stopping background poller")
        self.scheduler.stop()


class DashboardRequestHandler(BaseHTTPRequestHandler):
    """JSON API for the build monitor wall display"""

    def do_GET(self):
        """Handle GET requests"""
        path = urlparse(self.path).path

        if path == '/api/pipelines':
            self.handle_pipelines()
        elif path == '/api/health':
            self.handle_health()
        else:
            self.send_json_response({'error': 'Endpoint not found'}, status=404)

    def do_OPTIONS(self):
        """Handle OPTIONS requests for CORS preflight"""
        self.send_response(200)
        self.send_header('Access-Control-Allow-Origin', '*')
        self.send_header('Access-Control-Allow-Methods', 'GET, OPTIONS')
        self.send_header('Access-Control-Allow-Headers', 'Content-Type')
        self.send_header('Access-Control-Max-Age', '86400')
        self.end_headers()

    def handle_pipelines(self):
        """Handle /api/pipelines endpoint

        Returns the published pipelines in display order, the last run stamp
        and the current error. Supports ?status=<status> filtering.
        """
        snapshot = get_state_snapshot()
        pipelines = snapshot['pipelines'] or []

        query_params = parse_qs(urlparse(self.path).query)
        status_filter = query_params.get('status', [None])[0]
        if status_filter:
            pipelines = [p for p in pipelines if p.get('status') == status_filter]

        self.send_json_response({
            'pipelines': pipelines,
            'total': len(pipelines),
            'last_run': snapshot['last_run'],
            'error': snapshot['error'],
            'backend_status': snapshot['status'],
            'tracked_projects': snapshot['tracked_projects'],
        })

    def handle_health(self):
        """Handle /api/health endpoint

        200 while polling without a current error, 503 otherwise.
        """
        snapshot = get_state_snapshot()
        is_healthy = snapshot['status'] == STATE_POLLING and snapshot['error'] is None
        last_updated = snapshot['last_updated']
        self.send_json_response({
            'status': 'healthy' if is_healthy else 'unhealthy',
            'backend_status': snapshot['status'],
            'timestamp': datetime.now().isoformat(),
            'last_updated': last_updated.isoformat() if last_updated else None,
            'last_run': snapshot['last_run'],
            'error': snapshot['error'],
        }, status=200 if is_healthy else 503)

    def send_json_response(self, data, status=200):
        """Send JSON response with security headers"""
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Access-Control-Allow-Origin', '*')
        self.send_header('Cache-Control', 'no-store, max-age=0')
        self.send_header('X-Content-Type-Options', 'nosniff')
        self.end_headers()
        self.wfile.write(json.dumps(data, indent=2).encode('utf-8'))

    def log_message(self, format, *args):
        """Route access logs through the module logger"""
        logger.info("%s %s - %s - %s" % (
            getattr(self, 'command', 'UNKNOWN'),
            getattr(self, 'path', ''),
            format % args,
            self.address_string()
        ))


def main():
    """Main entry point"""
    logger.info("Starting GitLab Build Monitor...")

    config = load_config()
    try:
        validate_config(config)
        scheduler = build_scheduler(config)
    except ConfigurationError as e:
        logger.error(f"Startup aborted due to configuration error: {e}")
        return 1

    poller = BackgroundPoller(scheduler)
    poller.start()
    logger.info(f"Background poller started (interval: {config['poll_interval_sec']}s)")

    httpd = HTTPServer(('', config['port']), DashboardRequestHandler)
    logger.info(f"Server running at http://localhost:{config['port']}/")
    logger.info("Press Ctrl+C to stop the server")

    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down server...")
        poller.stop()
        poller.join(timeout=5)
        if poller.is_alive():
            logger.warning("Poller thread did not stop cleanly")
        httpd.server_close()
        logger.info("Server stopped.")

    return 0


if __name__ == '__main__':
    sys.exit(main() or 0)
