"""HTTP client for a WPPConnect-style WhatsApp gateway.

Retry policy:
- 500/502/503/504/408/429 and transport failures (timeouts, refused or reset
  connections) are retried with exponential backoff plus jitter
- any other 4xx and malformed bodies fail immediately
"""

from __future__ import annotations

import ipaddress
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote, urlsplit

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from reminder_engine.domain.errors import (
    ConfigurationError,
    DeliveryError,
    TerminalDeliveryError,
    TransientDeliveryError,
)
from reminder_engine.utils.phone import DEFAULT_COUNTRY_CODE, mask_phone, normalize_phone

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({500, 502, 503, 504, 408, 429})
RETRYABLE_MESSAGES = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "network unreachable",
    "service unavailable",
)
TRANSPORT_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)

MAX_BACKOFF_SECONDS = 8
JITTER_SECONDS = 0.5

Sleep = Callable[[float], None]


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    host: str = "http://localhost"
    port: int | None = 21465
    session: str = "default"
    secret_key: str | None = None
    token: str | None = None
    enabled: bool = True
    wait_qr: bool = True
    timeout_seconds: float = 30.0
    default_country_code: str = DEFAULT_COUNTRY_CODE
    max_attempts: int = 3

    def is_configured(self) -> bool:
        host = (self.host or "").strip()
        has_scheme = "://" in host
        has_port = _host_has_port(host)
        return bool(host) and bool(self.session) and (has_scheme or has_port or bool(self.port))


@dataclass(slots=True)
class GatewayResponse:
    payload: dict[str, Any]
    http_status: int
    attempt_count: int = 1
    response_time_ms: float = 0.0


def _host_has_port(host: str) -> bool:
    tail = host.rstrip("/").rsplit(":", 1)
    return len(tail) == 2 and tail[1].isdigit()


def _is_ip_address(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return True


def build_base_url(host: str, port: int | str | None) -> str:
    """Join host and port the way the gateway expects.

    https hosts never get a port; http domains only get a non-80 port; bare
    hosts and http IPs always get the configured port.
    """
    host = (host or "").strip().rstrip("/")
    if not host:
        return ""

    port_text = str(port) if port not in (None, "") else ""
    if _host_has_port(host):
        return host

    if "://" not in host:
        return f"{host}:{port_text}" if port_text else host

    parts = urlsplit(host)
    scheme = parts.scheme.lower()
    if not parts.hostname or scheme == "https":
        return host

    if scheme == "http" and port_text:
        if _is_ip_address(parts.hostname) or port_text != "80":
            return f"{host}:{port_text}"
    return host


def is_retryable(http_status: int | None, message: str) -> bool:
    if http_status in RETRYABLE_STATUS_CODES:
        return True
    lowered = (message or "").lower()
    return any(pattern in lowered for pattern in RETRYABLE_MESSAGES)


class DeliveryClient:
    """Synchronous gateway client built from one configuration snapshot."""

    def __init__(
        self,
        config: GatewayConfig,
        *,
        http_client: httpx.Client | None = None,
        sleep: Sleep = time.sleep,
    ) -> None:
        self.config = config
        self._client = http_client or httpx.Client(timeout=config.timeout_seconds)
        self._owns_client = http_client is None
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> DeliveryClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def base_url(self) -> str:
        return build_base_url(self.config.host, self.config.port)

    def _session_url(self, action: str) -> str:
        return f"{self.base_url}/api/{quote(self.config.session, safe='')}/{action}"

    def ensure_authenticated(self) -> None:
        if not self.config.token:
            raise ConfigurationError("Authentication token is required. Generate a token first.")

    def ensure_ready(self) -> None:
        """Raise ConfigurationError unless the gateway can be used for sends."""
        if not self.config.enabled:
            raise ConfigurationError("WhatsApp integration is disabled")
        if not self.config.is_configured():
            raise ConfigurationError("WhatsApp gateway host/port/session are not configured")
        self.ensure_authenticated()

    def generate_token(self, secret_key: str | None = None) -> GatewayResponse:
        secret = secret_key or self.config.secret_key
        if not secret:
            raise ConfigurationError("Secret key is required to generate a token")

        session = quote(self.config.session, safe="")
        url = f"{self.base_url}/api/{session}/{quote(secret, safe='')}/generate-token"
        safe_url = f"{self.base_url}/api/{session}/[SECRET]/generate-token"
        logger.info("Generating gateway token via %s", safe_url)
        return self._request("POST", url, use_auth=False, log_url=safe_url)

    def start_session(self, wait_qr: bool | None = None) -> GatewayResponse:
        self.ensure_authenticated()
        wait = self.config.wait_qr if wait_qr is None else wait_qr
        return self._request("POST", self._session_url("start-session"), json_body={"waitQrCode": wait})

    def session_status(self) -> GatewayResponse:
        self.ensure_authenticated()
        return self._request("GET", self._session_url("status-session"))

    def is_connected(self) -> bool:
        try:
            status = self.session_status()
        except (DeliveryError, ConfigurationError) as exc:
            logger.warning("Gateway status check failed: %s", exc)
            return False
        return status.payload.get("status") == "CONNECTED"

    def send_message(self, phone: str, message: str) -> GatewayResponse:
        self.ensure_authenticated()
        normalized = normalize_phone(phone, self.config.default_country_code)
        if not normalized:
            raise TerminalDeliveryError(f"Invalid phone number: {mask_phone(phone)}", attempt_count=0)

        logger.info("Sending message to %s", mask_phone(normalized))
        return self._request(
            "POST",
            self._session_url("send-message"),
            json_body={"phone": normalized, "message": message},
        )

    def close_session(self) -> GatewayResponse:
        self.ensure_authenticated()
        return self._request("POST", self._session_url("close-session"))

    def logout_session(self) -> GatewayResponse:
        self.ensure_authenticated()
        return self._request("POST", self._session_url("logout-session"))

    def _headers(self, use_auth: bool) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if use_auth and self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    def _request(
        self,
        method: str,
        url: str,
        *,
        json_body: dict[str, Any] | None = None,
        use_auth: bool = True,
        log_url: str | None = None,
    ) -> GatewayResponse:
        retrying = Retrying(
            retry=retry_if_exception_type(TransientDeliveryError),
            stop=stop_after_attempt(max(1, self.config.max_attempts)),
            wait=wait_exponential(multiplier=1, max=MAX_BACKOFF_SECONDS) + wait_random(0, JITTER_SECONDS),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        for attempt in retrying:
            with attempt:
                response = self._attempt(
                    method,
                    url,
                    json_body=json_body,
                    use_auth=use_auth,
                    attempt_number=attempt.retry_state.attempt_number,
                    log_url=log_url or url,
                )
        if response.attempt_count > 1:
            logger.info("Gateway request succeeded after %s attempts", response.attempt_count)
        return response

    def _attempt(
        self,
        method: str,
        url: str,
        *,
        json_body: dict[str, Any] | None,
        use_auth: bool,
        attempt_number: int,
        log_url: str,
    ) -> GatewayResponse:
        started = time.perf_counter()
        try:
            response = self._client.request(method, url, json=json_body, headers=self._headers(use_auth))
        except TRANSPORT_ERRORS as exc:
            elapsed = round((time.perf_counter() - started) * 1000, 2)
            raise TransientDeliveryError(
                f"Connection error calling {log_url}: {exc}",
                attempt_count=attempt_number,
                response_time_ms=elapsed,
            ) from exc
        except httpx.HTTPError as exc:
            elapsed = round((time.perf_counter() - started) * 1000, 2)
            error_cls = TransientDeliveryError if is_retryable(None, str(exc)) else TerminalDeliveryError
            raise error_cls(
                f"HTTP error calling {log_url}: {exc}",
                attempt_count=attempt_number,
                response_time_ms=elapsed,
            ) from exc

        elapsed = round((time.perf_counter() - started) * 1000, 2)
        status = response.status_code

        try:
            payload = response.json()
        except ValueError as exc:
            if status in RETRYABLE_STATUS_CODES:
                raise TransientDeliveryError(
                    f"HTTP {status} error",
                    http_status=status,
                    attempt_count=attempt_number,
                    response_time_ms=elapsed,
                ) from exc
            raise TerminalDeliveryError(
                f"Invalid JSON response (HTTP {status})",
                http_status=status,
                attempt_count=attempt_number,
                response_time_ms=elapsed,
            ) from exc

        if not isinstance(payload, dict):
            raise TerminalDeliveryError(
                "Unexpected response body: expected a JSON object",
                http_status=status,
                attempt_count=attempt_number,
                response_time_ms=elapsed,
            )

        if status >= 400:
            message = str(payload.get("message") or f"HTTP {status} error")
            error_cls = TransientDeliveryError if is_retryable(status, message) else TerminalDeliveryError
            raise error_cls(
                message,
                http_status=status,
                attempt_count=attempt_number,
                response_time_ms=elapsed,
                payload=payload,
            )

        return GatewayResponse(
            payload=payload,
            http_status=status,
            attempt_count=attempt_number,
            response_time_ms=elapsed,
        )
