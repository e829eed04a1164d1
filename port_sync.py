#!/usr/bin/env python3
"""
Sync a VPN-forwarded port to qBittorrent
Reads the forwarded port written by the VPN sidecar and updates qBittorrent
"""
import json
import logging
import math
import os
import sys
import time
from dataclasses import dataclass

import requests

log = logging.getLogger(__name__)

DEFAULT_URL = 'http://localhost:30024'
DEFAULT_USERNAME = 'admin'
DEFAULT_PORT_FILE = '/tmp/gluetun/forwarded_port'
DEFAULT_CHECK_INTERVAL = 30
DEFAULT_REQUEST_TIMEOUT = 10
DEFAULT_PORT_FILE_WAIT = 5

LOGIN_OK = 'Ok.'


class ConfigError(Exception):
    """Raised when the environment does not describe a usable setup."""


class PortFileError(Exception):
    """Raised when the port file cannot be read or holds no valid port."""


class QBittorrentError(Exception):
    """Raised when a qBittorrent API call fails."""


class AuthenticationError(QBittorrentError):
    """Raised when qBittorrent rejects the credentials."""


class SessionExpiredError(QBittorrentError):
    """Raised when qBittorrent answers 403 to an authenticated call."""


class PreferencesDecodeError(QBittorrentError):
    """Raised when the preferences payload has no usable listen_port."""


@dataclass(frozen=True)
class Config:
    url: str
    username: str
    password: str
    port_file: str
    check_interval: float = DEFAULT_CHECK_INTERVAL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    port_file_wait: float = DEFAULT_PORT_FILE_WAIT

    @classmethod
    def from_env(cls, environ=None):
        """Build the configuration from environment variables"""
        env = os.environ if environ is None else environ

        password = env.get('QBITTORRENT_PASSWORD', '')
        if not password:
            raise ConfigError('QBITTORRENT_PASSWORD environment variable is required')

        return cls(
            url=(env.get('QBITTORRENT_URL') or DEFAULT_URL).rstrip('/'),
            username=env.get('QBITTORRENT_USERNAME') or DEFAULT_USERNAME,
            password=password,
            port_file=env.get('PORT_FILE') or DEFAULT_PORT_FILE,
            check_interval=_env_number(env, 'CHECK_INTERVAL', DEFAULT_CHECK_INTERVAL),
            request_timeout=_env_number(env, 'REQUEST_TIMEOUT', DEFAULT_REQUEST_TIMEOUT),
            port_file_wait=_env_number(env, 'PORT_FILE_WAIT', DEFAULT_PORT_FILE_WAIT),
        )

    def log_summary(self):
        log.info(f"qBittorrent: {self.url}")
        log.info(f"Username: {self.username}")
        log.info(f"Port file: {self.port_file}")
        log.info(f"Check interval: {self.check_interval}s")


def _env_number(env, key, default):
    raw = env.get(key)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        value = 0
    if not math.isfinite(value) or value <= 0:
        log.warning(f"Ignoring invalid {key}={raw!r}, using {default}")
        return default
    return int(value) if value.is_integer() else value


class QBittorrentClient:
    """Talks to the qBittorrent Web API on behalf of one user.

    Each login starts a fresh requests.Session whose cookie jar carries
    the session cookie, whatever qBittorrent names it, to later calls.
    Expiry is only noticed when the server answers 403, which surfaces
    as SessionExpiredError.
    """

    def __init__(self, base_url, username, password, timeout=DEFAULT_REQUEST_TIMEOUT):
        self.base_url = base_url.rstrip('/')
        self.username = username
        self.password = password
        self.timeout = timeout
        self.session = requests.Session()

    def _url(self, path):
        return f"{self.base_url}/api/v2/{path}"

    def _request(self, method, path, **kwargs):
        try:
            return self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise QBittorrentError(f"{method} {path} failed: {e}") from e

    def login(self):
        """Log in on a new session and keep it for later calls"""
        self.session.close()
        self.session = requests.Session()
        response = self._request(
            'POST',
            'auth/login',
            data={'username': self.username, 'password': self.password},
        )

        body = response.text.strip()
        if response.status_code != 200 or body != LOGIN_OK:
            raise AuthenticationError(
                f"login failed: status={response.status_code}, body={body}"
            )

        log.info(f"✓ Logged in to qBittorrent at {self.base_url}")

    def get_listen_port(self):
        """Get current listening port from qBittorrent"""
        response = self._request('GET', 'app/preferences')

        if response.status_code == 403:
            raise SessionExpiredError("authentication expired")
        if response.status_code != 200:
            raise QBittorrentError(f"unexpected status code: {response.status_code}")

        try:
            prefs = response.json()
        except ValueError as e:
            raise PreferencesDecodeError(f"failed to decode preferences: {e}") from e

        port = prefs.get('listen_port') if isinstance(prefs, dict) else None
        # bool is an int subclass and never a port
        if isinstance(port, bool) or not isinstance(port, (int, float)):
            raise PreferencesDecodeError("listen_port not found in preferences")
        return int(port)

    def set_listen_port(self, port):
        """Set qBittorrent listening port"""
        # qBittorrent expects JSON string as form data
        preferences = json.dumps({'listen_port': port})
        response = self._request('POST', 'app/setPreferences', data={'json': preferences})

        if response.status_code == 403:
            raise SessionExpiredError("authentication expired")
        if response.status_code != 200:
            raise QBittorrentError(
                f"unexpected status code: {response.status_code}, body: {response.text}"
            )


def parse_port(text):
    """Parse the port file contents into a port number"""
    value = text.strip()
    # int() alone would also take '+80', '1_000' and non-ASCII digits
    if not value.isascii() or not value.isdigit():
        raise PortFileError(f"invalid port number: {value!r}")
    # long digit runs hit int()'s conversion limit before the range check
    digits = value.lstrip('0') or '0'
    if len(digits) > 5:
        raise PortFileError(f"port number out of range: {value[:16]}...")

    port = int(digits)
    if port < 1 or port > 65535:
        raise PortFileError(f"port number out of range: {port}")
    return port


def read_port_file(path):
    try:
        with open(path, encoding='utf-8') as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise PortFileError(f"failed to read port file: {e}") from e
    return parse_port(text)


def _with_reauth(client, call, what):
    """Run call, logging in again and retrying once if the session expired.

    Returns (ok, result). Failures are logged here.
    """
    try:
        return True, call()
    except SessionExpiredError:
        log.info(f"Session expired during {what}, re-authenticating...")
    except QBittorrentError as e:
        log.error(f"✗ Failed to {what}: {e}")
        return False, None

    try:
        client.login()
    except QBittorrentError as e:
        log.error(f"✗ Re-authentication failed: {e}")
        return False, None

    try:
        return True, call()
    except QBittorrentError as e:
        log.error(f"✗ Failed to {what} after re-auth: {e}")
        return False, None


def sync_port(client, port_file, last_port):
    """Run one reconciliation cycle and return the new last known port.

    last_port is returned unchanged whenever the cycle aborts so the next
    tick retries the same change.
    """
    try:
        file_port = read_port_file(port_file)
    except PortFileError as e:
        log.warning(f"Error reading port file: {e}")
        return last_port

    if file_port == last_port:
        log.debug(f"✓ Port unchanged: {file_port}")
        return last_port

    log.info(f"🔄 Port changed from {last_port} to {file_port}, updating qBittorrent...")

    ok, current_port = _with_reauth(client, client.get_listen_port, 'get current port')
    if not ok:
        return last_port

    log.info(f"Current qBittorrent port: {current_port}")

    if current_port == file_port:
        log.info(f"✓ Port already set correctly: {file_port}")
        return file_port

    ok, _ = _with_reauth(
        client, lambda: client.set_listen_port(file_port), 'set listening port'
    )
    if not ok:
        return last_port

    log.info(f"✅ Successfully updated port to {file_port}")
    return file_port


def wait_for_port_file(path, delay=DEFAULT_PORT_FILE_WAIT):
    """Block until the port file exists"""
    if os.path.exists(path):
        return
    log.info(f"⏳ Waiting for port file: {path}")
    while not os.path.exists(path):
        time.sleep(delay)
    log.info("Port file found")


def run(client, port_file, interval):
    """Sync now, then once per interval until the process is stopped"""
    last_port = 0
    next_tick = time.monotonic()

    while True:
        try:
            last_port = sync_port(client, port_file, last_port)
        except Exception:
            log.exception("❌ Unexpected error during sync")

        next_tick += interval
        now = time.monotonic()
        if next_tick < now:
            # cycle overran: drop the ticks that were missed
            missed = (now - next_tick) // interval + 1
            next_tick += missed * interval
        time.sleep(next_tick - now)


def setup_logging(level_name):
    level = getattr(logging, level_name.upper(), None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(message)s',
        stream=sys.stderr,
    )


def main():
    setup_logging(os.getenv('LOG_LEVEL', 'INFO'))
    log.info("qBittorrent Port Sync starting...")

    try:
        config = Config.from_env()
    except ConfigError as e:
        log.error(f"Failed to load configuration: {e}")
        sys.exit(1)

    config.log_summary()

    client = QBittorrentClient(
        config.url, config.username, config.password, timeout=config.request_timeout
    )

    try:
        client.login()
    except QBittorrentError as e:
        log.error(f"Initial login failed: {e}")
        sys.exit(1)

    try:
        wait_for_port_file(config.port_file, config.port_file_wait)
        log.info("Starting sync loop...")
        run(client, config.port_file, config.check_interval)
    except KeyboardInterrupt:
        log.info("👋 Shutting down...")
        sys.exit(0)


if __name__ == '__main__':
    main()
