#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "requests",
#     "python-dotenv",
#     "types-requests",
# ]
# ///
"""
Dynamic DNS Daemon

Keeps a single Cloudflare DNS record pointed at this host's public IP address.
Runs as a long-lived polling loop: resolves the zone and record once, then
every interval compares the public IP against the last value written and
patches the record when it changes. A missing record is created.

Environment Variables:
    Required:
        CF_API_KEY: Scoped API token, sent as a Bearer credential
        CF_DOMAIN: Fully-qualified record name (e.g., home.example.com)

    Optional:
        CF_DOMAIN_TYPE: Record type to manage (default: A)
        PROXIED: Route traffic through the Cloudflare proxy (default: true,
                 anything other than "true"/"1" disables it)
        INTERVAL: Minutes between checks (default: 5)
        LOG_LEVEL: debug, info, warning or error (default: info)
        DDNS_IP_SERVICE_URL: Plaintext "what is my IP" endpoint
                             (default: http://ipinfo.io/ip)
        DDNS_REQUEST_TIMEOUT_SECONDS: Per-request timeout (default: 30)
        CF_API_BASE: API base URL (default: https://api.cloudflare.com/client/v4)

    A missing CF_API_KEY or CF_DOMAIN is reported on every cycle; the daemon
    keeps running so a supervisor restart is never needed to see the error.
"""

__version__ = "1.0.0"

import argparse
import ipaddress
import json
import logging
import os
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests
from dotenv import load_dotenv  # type: ignore[import-not-found]  # no stubs available

# Configure logging for systemd/journald compatibility
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"
DEFAULT_IP_SERVICE_URL = "http://ipinfo.io/ip"

DEFAULT_RECORD_TYPE = "A"
DEFAULT_INTERVAL_MINUTES = 5
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
DEFAULT_LOG_LEVEL = "info"

# Cloudflare treats a TTL of 1 as "automatic"
AUTO_TTL = 1

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


# =============================================================================
# Errors
# =============================================================================


class DDNSError(Exception):
    """Base exception for all errors raised during an update cycle."""


class ConfigurationError(DDNSError):
    """Required configuration (API key or domain) is missing."""


class ZoneNotFoundError(DDNSError):
    """The zone query succeeded but matched no zone."""


class ResponseDecodeError(DDNSError):
    """A response body did not have the expected shape."""


class HTTPStatusError(DDNSError):
    """
    A request completed with a non-success status.

    Attributes:
        status_code: HTTP status code of the response
        reason: HTTP reason phrase
        body: Decoded error body, when one was captured
    """

    action = "complete request"

    def __init__(self, status_code: int, reason: str, body: Any = None) -> None:
        self.status_code = status_code
        self.reason = reason
        self.body = body
        message = f"Failed to {self.action}. (Error {status_code}: {reason})"
        if body is not None:
            message += f" - {json.dumps(body)}"
        super().__init__(message)


class ZoneLookupError(HTTPStatusError):
    action = "fetch zone ID"


class RecordLookupError(HTTPStatusError):
    action = "fetch DNS records"


class RecordCreateError(HTTPStatusError):
    action = "create DNS record"


class RecordPatchError(HTTPStatusError):
    action = "patch DNS record"


class PublicIPFetchError(HTTPStatusError):
    action = "fetch public IP"


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class Config:
    """Settings read once at startup. See the module docstring for sources."""

    api_key: str = ""
    domain: str = ""
    record_type: str = DEFAULT_RECORD_TYPE
    proxied: bool = True
    interval_minutes: float = DEFAULT_INTERVAL_MINUTES
    log_level: str = DEFAULT_LOG_LEVEL
    ip_service_url: str = DEFAULT_IP_SERVICE_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    api_base: str = CLOUDFLARE_API_BASE

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60

    @property
    def logging_level(self) -> int:
        """Logging level for LOG_LEVEL; unknown names only let errors through."""
        return LOG_LEVELS.get(self.log_level, logging.ERROR)

    def validate(self) -> None:
        """
        Check that the required settings are present.

        Raises:
            ConfigurationError: If CF_API_KEY or CF_DOMAIN is empty.
        """
        if not self.api_key:
            raise ConfigurationError("Missing Cloudflare API key (CF_API_KEY).")
        if not self.domain:
            raise ConfigurationError("Missing Cloudflare domain (CF_DOMAIN).")


def parse_proxied(value: str | None) -> bool:
    """Unset or empty means proxied; otherwise only "true" and "1" enable it."""
    if value is None:
        return True
    value = value.strip().lower()
    return value in ("", "true", "1")


def get_interval_minutes() -> int:
    """
    Get the poll interval from the INTERVAL environment variable.

    Returns:
        Interval in minutes (default: 5)
    """
    try:
        interval = int(os.getenv("INTERVAL", str(DEFAULT_INTERVAL_MINUTES)))
        if interval < 1:
            logger.warning(f"INTERVAL must be >= 1, using default {DEFAULT_INTERVAL_MINUTES}")
            return DEFAULT_INTERVAL_MINUTES
        return interval
    except ValueError:
        logger.warning(f"Invalid INTERVAL, using default {DEFAULT_INTERVAL_MINUTES}")
        return DEFAULT_INTERVAL_MINUTES


def get_request_timeout() -> float:
    """Get the per-request timeout in seconds from DDNS_REQUEST_TIMEOUT_SECONDS."""
    raw = os.getenv("DDNS_REQUEST_TIMEOUT_SECONDS", "").strip()
    if not raw:
        return DEFAULT_REQUEST_TIMEOUT_SECONDS
    try:
        timeout = float(raw)
    except ValueError:
        timeout = 0
    if timeout <= 0:
        logger.warning(f"Invalid DDNS_REQUEST_TIMEOUT_SECONDS, using default {DEFAULT_REQUEST_TIMEOUT_SECONDS:g}")
        return DEFAULT_REQUEST_TIMEOUT_SECONDS
    return timeout


def load_config() -> Config:
    """
    Build the configuration from environment variables.

    Missing required values are not an error here; they are reported by
    Config.validate() on every cycle.
    """
    return Config(
        api_key=os.getenv("CF_API_KEY", "").strip(),
        domain=os.getenv("CF_DOMAIN", "").strip(),
        record_type=os.getenv("CF_DOMAIN_TYPE", "").strip().upper() or DEFAULT_RECORD_TYPE,
        proxied=parse_proxied(os.getenv("PROXIED")),
        interval_minutes=get_interval_minutes(),
        log_level=os.getenv("LOG_LEVEL", "").strip().lower() or DEFAULT_LOG_LEVEL,
        ip_service_url=os.getenv("DDNS_IP_SERVICE_URL", "").strip() or DEFAULT_IP_SERVICE_URL,
        request_timeout=get_request_timeout(),
        api_base=(os.getenv("CF_API_BASE", "").strip() or CLOUDFLARE_API_BASE).rstrip("/"),
    )


# =============================================================================
# Public IP
# =============================================================================


def get_public_ip(
    url: str = DEFAULT_IP_SERVICE_URL,
    timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    session: requests.Session | None = None,
) -> str:
    """
    Fetch this host's public IP address from a plaintext IP service.

    Returns:
        The IP address with surrounding whitespace removed.

    Raises:
        PublicIPFetchError: On a non-success status.
        ResponseDecodeError: If the body is not an IP address.
    """
    logger.debug("Retrieving public IP...")
    http = session or requests
    response = http.get(url, timeout=timeout)
    if not response.ok:
        raise PublicIPFetchError(response.status_code, response.reason)

    ip = response.text.strip()
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        raise ResponseDecodeError(f"IP service {url} returned an invalid address: {ip[:64]!r}") from None

    logger.debug(f"GET successful. Public IP: {ip}")
    return ip


# =============================================================================
# Cloudflare API
# =============================================================================


@dataclass(frozen=True)
class DnsRecord:
    """The parts of a DNS record the daemon tracks."""

    id: str
    content: str


def root_domain(domain: str) -> str:
    """
    Return the zone name for a domain: its last two labels.

    home.example.com -> example.com. Multi-label public suffixes such as
    co.uk are not recognised.
    """
    return ".".join(domain.split(".")[-2:])


def _decode_result(response: requests.Response) -> Any:
    """Return the "result" member of a Cloudflare JSON envelope."""
    try:
        data = response.json()
    except ValueError as e:
        raise ResponseDecodeError(f"Invalid JSON from {response.url}: {e}") from e

    if not isinstance(data, dict) or "result" not in data:
        raise ResponseDecodeError(f"Missing 'result' in response from {response.url}")
    return data["result"]


def _error_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


class CloudflareClient:
    """
    Zone and DNS record operations against the Cloudflare v4 API.

    Each method is a single request. Failures are raised, never retried; the
    reconciler retries on its next cycle.
    """

    def __init__(self, config: Config, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
            }
        )

    def _url(self, path: str) -> str:
        return f"{self.config.api_base}{path}"

    def _record_payload(self, domain: str, ip: str) -> dict[str, Any]:
        return {
            "type": self.config.record_type,
            "name": domain,
            "content": ip,
            "ttl": AUTO_TTL,
            "proxied": self.config.proxied,
        }

    def get_zone_id(self, domain: str) -> str:
        """
        Look up the zone that holds a domain.

        Raises:
            ZoneLookupError: On a non-success status.
            ZoneNotFoundError: If no zone matches the root domain.
        """
        logger.debug(f"Fetching zone ID for domain: {domain}")
        root = root_domain(domain)

        response = self.session.get(
            self._url("/zones"), params={"name": root}, timeout=self.config.request_timeout
        )
        if not response.ok:
            raise ZoneLookupError(response.status_code, response.reason)

        zones = _decode_result(response)
        if not zones:
            raise ZoneNotFoundError(f"No zone found for domain: {root}")

        try:
            zone_id = str(zones[0]["id"])
        except (KeyError, IndexError, TypeError) as e:
            raise ResponseDecodeError(f"Malformed zone list for {root}: {e!r}") from e
        logger.debug(f"Found zone ID: {zone_id}")
        return zone_id

    def get_record(self, zone_id: str, domain: str) -> DnsRecord | None:
        """
        Look up the record named exactly `domain` in a zone.

        Returns:
            The first matching record, or None if the record does not exist.

        Raises:
            RecordLookupError: On a non-success status.
        """
        logger.debug(f"Fetching DNS record ID for: {domain}")

        response = self.session.get(
            self._url(f"/zones/{zone_id}/dns_records"),
            params={"name": domain, "type": self.config.record_type},
            timeout=self.config.request_timeout,
        )
        if not response.ok:
            raise RecordLookupError(response.status_code, response.reason)

        records = _decode_result(response)
        if not records:
            logger.info(f"No {self.config.record_type} record found for {domain}. Will create one.")
            return None

        try:
            record = DnsRecord(id=str(records[0]["id"]), content=str(records[0]["content"]).strip())
        except (KeyError, IndexError, TypeError) as e:
            raise ResponseDecodeError(f"Malformed record list for {domain}: {e!r}") from e
        logger.debug(f"Found record ID: {record.id} with IP: {record.content}")
        return record

    def get_record_content(self, zone_id: str, record_id: str) -> str:
        """Read the current content of a record by id."""
        logger.debug("Retrieving Cloudflare IP...")

        response = self.session.get(
            self._url(f"/zones/{zone_id}/dns_records/{record_id}"), timeout=self.config.request_timeout
        )
        if not response.ok:
            raise RecordLookupError(response.status_code, response.reason)

        result = _decode_result(response)
        try:
            ip = str(result["content"]).strip()
        except (KeyError, TypeError) as e:
            raise ResponseDecodeError(f"Malformed record {record_id}: {e!r}") from e
        logger.debug(f"GET successful. Cloudflare IP: {ip}")
        return ip

    def create_record(self, zone_id: str, domain: str, ip: str) -> str:
        """
        Create the record with automatic TTL.

        Returns:
            Id of the new record.

        Raises:
            RecordCreateError: On a non-success status, with the error body attached.
        """
        logger.info(f"Creating DNS record for {domain} with IP {ip}...")

        response = self.session.post(
            self._url(f"/zones/{zone_id}/dns_records"),
            json=self._record_payload(domain, ip),
            timeout=self.config.request_timeout,
        )
        if not response.ok:
            raise RecordCreateError(response.status_code, response.reason, _error_body(response))

        result = _decode_result(response)
        try:
            record_id = str(result["id"])
        except (KeyError, TypeError) as e:
            raise ResponseDecodeError(f"Create response for {domain} has no record id: {e!r}") from e
        logger.info(f"DNS record created successfully. Record ID: {record_id}")
        return record_id

    def patch_record(self, zone_id: str, record_id: str, domain: str, ip: str) -> None:
        """
        Point an existing record at `ip`, resending every managed field.

        Raises:
            RecordPatchError: On a non-success status.
        """
        logger.debug(f"Patching Cloudflare IP to {ip}...")

        response = self.session.patch(
            self._url(f"/zones/{zone_id}/dns_records/{record_id}"),
            json=self._record_payload(domain, ip),
            timeout=self.config.request_timeout,
        )
        if not response.ok:
            raise RecordPatchError(response.status_code, response.reason)

        logger.debug(f"Patch successful. Response: {response.text}")


# =============================================================================
# Reconciliation loop
# =============================================================================


class Reconciler:
    """
    Keeps the configured record in line with the public IP.

    Zone id, record id and the last IP written are cached for the life of
    the process. A failed cycle leaves them as they were.
    """

    def __init__(self, config: Config, client: CloudflareClient) -> None:
        self.config = config
        self.client = client
        self.zone_id: str | None = None
        self.record_id: str | None = None
        self.cached_ip = ""

    def fetch_public_ip(self) -> str:
        # Not through the client session, which carries the API token
        return get_public_ip(self.config.ip_service_url, self.config.request_timeout)

    def run_cycle(self) -> bool:
        """
        Run one reconciliation pass.

        Returns:
            True if the cycle finished without error, False otherwise.
        """
        try:
            self._reconcile()
            return True
        except (DDNSError, requests.RequestException) as e:
            logger.error(str(e))
        except Exception:
            logger.exception("Unexpected error during update cycle")
        return False

    def _reconcile(self) -> None:
        self.config.validate()
        domain = self.config.domain

        if self.zone_id is None:
            self.zone_id = self.client.get_zone_id(domain)

        if self.record_id is None:
            record = self.client.get_record(self.zone_id, domain)
            if record is None:
                # Fresh record already holds the current IP; compare next cycle
                public_ip = self.fetch_public_ip()
                self.record_id = self.client.create_record(self.zone_id, domain, public_ip)
                self.cached_ip = public_ip
                logger.info("Initial DNS record created successfully.")
                return
            self.record_id = record.id
            self.cached_ip = record.content

        public_ip = self.fetch_public_ip()
        if public_ip == self.cached_ip:
            logger.debug(f"{domain} already points to {public_ip}, no update needed")
            return

        logger.info(f"Public IP changed. Updating {domain}: {self.cached_ip or '(none)'} -> {public_ip}")
        self.client.patch_record(self.zone_id, self.record_id, domain, public_ip)
        self.cached_ip = public_ip
        logger.info("Cloudflare IP changed.")

    def run(self, stop_event: threading.Event | None = None) -> None:
        """
        Run cycles until `stop_event` is set, sleeping the configured interval between them.
        """
        stop_event = stop_event or threading.Event()
        while True:
            self.run_cycle()
            if stop_event.is_set():
                break
            logger.debug("Starting sleep...")
            if stop_event.wait(self.config.interval_seconds):
                break
            logger.debug("Waking up...")
        logger.info("Update loop stopped")


# =============================================================================
# Entry point
# =============================================================================


def check_record(reconciler: Reconciler) -> int:
    """
    Report the live record value against the public IP without writing.

    Returns:
        Exit code: 0 if they match, 1 on mismatch or error.
    """
    config = reconciler.config
    client = reconciler.client
    try:
        config.validate()
        zone_id = client.get_zone_id(config.domain)
        record = client.get_record(zone_id, config.domain)
        public_ip = reconciler.fetch_public_ip()
        if record is None:
            print(f"{config.domain}: no {config.record_type} record (public IP {public_ip})")
            return 1
        live_ip = client.get_record_content(zone_id, record.id)
    except (DDNSError, requests.RequestException) as e:
        logger.error(str(e))
        return 1

    print(f"{config.domain}: record {live_ip}, public IP {public_ip}")
    return 0 if live_ip == public_ip else 1


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Keep a Cloudflare DNS record pointed at this host's public IP")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single update cycle and exit")
    mode.add_argument("--check", action="store_true", help="Compare the record with the public IP without updating")
    parser.add_argument("--env-file", type=Path, help="Load environment from this file instead of .env beside the script")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the DDNS daemon.

    Returns:
        Exit code: 0 on success or interrupt, 1 on a failed --once/--check.
    """
    args = parse_args(argv)

    # Load .env from script's directory unless told otherwise
    env_file = args.env_file or Path(__file__).parent.resolve() / ".env"
    if env_file.exists():
        load_dotenv(env_file)
        logger.debug(f"Loaded environment from {env_file}")
    elif args.env_file:
        logger.warning(f"Environment file not found: {env_file}")

    config = load_config()
    logging.getLogger().setLevel(config.logging_level)
    logger.setLevel(config.logging_level)

    logger.info(
        f"Managing {config.record_type} record {config.domain or '(unset)'} "
        f"(proxied={config.proxied}, interval={config.interval_minutes:g} minutes)"
    )

    reconciler = Reconciler(config, CloudflareClient(config))

    if args.check:
        return check_record(reconciler)
    if args.once:
        return 0 if reconciler.run_cycle() else 1

    try:
        reconciler.run()
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
