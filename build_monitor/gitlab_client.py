#!/usr/bin/env python3
"""
GitLab API Client Module for GitLab Build Monitor

Handles all GitLab API interactions needed by the aggregation engine:
- API requests with retry and rate limiting
- Typed error signalling (authorization vs. transient failures)
- Project, group, pipeline and commit lookups

This module uses only Python standard library (no pip dependencies).
Calls are blocking; the engine runs them off its event loop thread.
"""

import json
import logging
import socket
import ssl
import time
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from build_monitor.errors import AuthorizationError, TransientFetchError

logger = logging.getLogger(__name__)

# Token value that selects ambient-session authentication
USE_COOKIE_TOKEN = 'use_cookie'

# Per-request socket timeout (seconds)
REQUEST_TIMEOUT = 30


def normalize_base_url(gitlab_host):
    """Build the v4 API base URL from a configured host

    Accepts a bare host ('gitlab.example.com') or a full URL
    ('https://gitlab.example.com/'). Bare hosts are addressed over HTTPS.
    """
    host = gitlab_host.strip().rstrip('/')
    if not host.startswith(('http://', 'https://')):
        host = f"https://{host}"
    return f"{host}/api/v4"


def infer_ambient_host(environ):
    """Infer the GitLab host from the current execution context

    Inside a GitLab CI job CI_SERVER_HOST names the instance. Outside of CI
    we assume the monitor runs on the GitLab server itself.
    """
    host = environ.get('CI_SERVER_HOST')
    if host:
        return host
    return socket.getfqdn()


def ambient_auth_headers(environ):
    """Authentication headers for ambient-session mode

    Prefers a CI job token, then a browser session cookie.

    Returns:
        dict: Headers to send with each request (may be empty)
    """
    if environ.get('CI_JOB_TOKEN'):
        return {'JOB-TOKEN': environ['CI_JOB_TOKEN']}
    if environ.get('GITLAB_SESSION_COOKIE'):
        return {'Cookie': f"_gitlab_session={environ['GITLAB_SESSION_COOKIE']}"}
    logger.warning("Ambient session mode selected but neither CI_JOB_TOKEN nor GITLAB_SESSION_COOKIE is set")
    return {}


class GitLabAPIClient:
    """GitLab API client using urllib with retry and rate limiting

    Every public lookup returns the decoded JSON body. Failures are raised:
    AuthorizationError for HTTP 401, TransientFetchError for everything else.
    """

    def __init__(self, gitlab_host, api_token=None, auth_headers=None, insecure_skip_verify=False,
                 max_retries=3, initial_retry_delay=1.0, ca_bundle_path=None):
        self.base_url = normalize_base_url(gitlab_host)
        self.api_token = api_token
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay

        if auth_headers is not None:
            self.auth_headers = dict(auth_headers)
        elif api_token:
            self.auth_headers = {'PRIVATE-TOKEN': api_token}
        else:
            self.auth_headers = {}

        if ca_bundle_path:
            try:
                logger.info(f"Using custom CA bundle: {ca_bundle_path}")
                self.ssl_context = ssl.create_default_context(cafile=ca_bundle_path)
            except (ssl.SSLError, OSError) as e:
                logger.error(f"Failed to load CA bundle {ca_bundle_path}: {e}. Falling back to default SSL verification")
                self.ssl_context = None
        elif insecure_skip_verify:
            self.ssl_context = ssl.create_default_context()
            self.ssl_context.check_hostname = False
            self.ssl_context.verify_mode = ssl.CERT_NONE
            logger.warning("=" * 70)
            logger.warning("SSL VERIFICATION DISABLED - SECURITY RISK")
            logger.warning("Only use this setting on trusted internal networks")
            logger.warning("=" * 70)
        else:
            self.ssl_context = None

    def _backoff(self, retry_count):
        return self.initial_retry_delay * (2 ** retry_count)

    def gitlab_request(self, endpoint, params=None, retry_count=0):
        """Make a GET request to the GitLab API with retry and rate limiting

        Handles:
        - Exponential backoff for transient errors (5xx, timeouts, connection resets)
        - Rate limiting (429) with Retry-After header support
        - Max retry attempts (default: 3)

        Args:
            endpoint: API path below /api/v4 (e.g., 'projects/42/pipelines')
            params: Optional query parameters dict
            retry_count: Current retry attempt (internal use)

        Returns:
            Decoded JSON body (dict or list)

        Raises:
            AuthorizationError: GitLab answered 401
            TransientFetchError: Any other failure, after retries where applicable
        """
        url = f"{self.base_url}/{endpoint}"
        if params:
            url = f"{url}?{urlencode(params)}"

        headers = {'Content-Type': 'application/json'}
        headers.update(self.auth_headers)

        start_time = time.monotonic()

        try:
            request = Request(url, headers=headers)
            if self.ssl_context:
                response_cm = urlopen(request, timeout=REQUEST_TIMEOUT, context=self.ssl_context)
            else:
                response_cm = urlopen(request, timeout=REQUEST_TIMEOUT)
            with response_cm as response:
                result = self._process_response(response, endpoint)
                elapsed_ms = (time.monotonic() - start_time) * 1000
                logger.debug(f"GET {endpoint} -> {response.status} in {elapsed_ms:.1f}ms")
                return result

        except HTTPError as e:
            elapsed_ms = (time.monotonic() - start_time) * 1000

            if e.code == 401:
                logger.error(f"GET {endpoint} -> 401 in {elapsed_ms:.1f}ms - token rejected")
                raise AuthorizationError(status_code=401) from e

            if e.code == 429:
                retry_after = e.headers.get('Retry-After') if e.headers else None
                try:
                    wait_time = int(retry_after)
                except (ValueError, TypeError):
                    wait_time = self._backoff(retry_count)
                if retry_count < self.max_retries:
                    logger.warning(f"GET {endpoint} -> 429 in {elapsed_ms:.1f}ms - Rate limited. Waiting {wait_time}s before retry")
                    time.sleep(wait_time)
                    return self.gitlab_request(endpoint, params, retry_count + 1)
                logger.error(f"GET {endpoint} -> 429 - Max retries exceeded")
                raise TransientFetchError(status_code=429) from e

            if 500 <= e.code < 600:
                if retry_count < self.max_retries:
                    wait_time = self._backoff(retry_count)
                    logger.warning(f"GET {endpoint} -> {e.code} in {elapsed_ms:.1f}ms - Retrying in {wait_time}s (attempt {retry_count + 1}/{self.max_retries})")
                    time.sleep(wait_time)
                    return self.gitlab_request(endpoint, params, retry_count + 1)
                logger.error(f"GET {endpoint} -> {e.code} {e.reason} after {self.max_retries} retries")
                raise TransientFetchError(status_code=e.code) from e

            logger.error(f"GET {endpoint} -> {e.code} {e.reason} in {elapsed_ms:.1f}ms")
            raise TransientFetchError(status_code=e.code) from e

        except URLError as e:
            elapsed_ms = (time.monotonic() - start_time) * 1000
            if retry_count < self.max_retries:
                wait_time = self._backoff(retry_count)
                logger.warning(f"GET {endpoint} -> URLError in {elapsed_ms:.1f}ms: {e.reason}. Retrying in {wait_time}s (attempt {retry_count + 1}/{self.max_retries})")
                time.sleep(wait_time)
                return self.gitlab_request(endpoint, params, retry_count + 1)
            logger.error(f"GET {endpoint} -> URLError: {e.reason} after {self.max_retries} retries")
            raise TransientFetchError() from e

        except (socket.timeout, ConnectionError) as e:
            elapsed_ms = (time.monotonic() - start_time) * 1000
            logger.error(f"GET {endpoint} -> {type(e).__name__} in {elapsed_ms:.1f}ms: {e}")
            raise TransientFetchError() from e

    def _process_response(self, response, endpoint):
        """Decode a JSON response body"""
        try:
            return json.loads(response.read().decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"Failed to parse JSON response from {endpoint}: {e}")
            raise TransientFetchError() from e

    def get_project(self, path_with_namespace):
        """Get a single project by its full path (e.g. 'group/sub/project')"""
        return self.gitlab_request(f"projects/{quote(path_with_namespace, safe='')}")

    def get_group(self, group_id):
        """Get a group with its embedded 'projects' list

        group_id may be a numeric ID or a (sub)group full path.
        """
        return self.gitlab_request(f"groups/{quote(str(group_id), safe='')}")

    def get_pipelines(self, project_id, ref):
        """List pipelines for a project ref, newest first"""
        return self.gitlab_request(f'projects/{project_id}/pipelines', {'ref': ref})

    def get_commit(self, project_id, sha):
        """Get commit detail for a SHA"""
        return self.gitlab_request(f'projects/{project_id}/repository/commits/{sha}')

    def get_pipeline(self, project_id, pipeline_id):
        """Get full pipeline detail, including started_at"""
        return self.gitlab_request(f'projects/{project_id}/pipelines/{pipeline_id}')
