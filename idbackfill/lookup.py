"""Resolve natural keys to external identifiers.

Every client answers with a closed ``LookupOutcome`` and never raises: transport
problems and malformed responses become ``LookupFailed``, anything that simply
carries no usable identifier becomes ``NotFound``.
"""

from abc import ABC, abstractmethod
import logging
import random
import time
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter

from idbackfill.config import Settings
from idbackfill.schemas import LookupFailed, LookupOutcome, NotFound, Resolved


logger = logging.getLogger(__name__)


def normalize_identifier(raw: object, prefix: str) -> str | None:
    """Return ``prefix + number`` for a positive identifier, otherwise None.

    Accepts integers, integral floats and digit strings, optionally already
    carrying the prefix.
    """
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, int):
        number = raw
    elif isinstance(raw, float):
        if not raw.is_integer():
            return None
        number = int(raw)
    elif isinstance(raw, str):
        text = raw.strip()
        if prefix and text.startswith(prefix):
            text = text[len(prefix):]
        if not (text.isascii() and text.isdigit()):
            return None
        number = int(text)
    else:
        return None

    if number <= 0:
        return None
    return f"{prefix}{number}"


class LookupClient(ABC):
    def resolve(self, natural_key: str) -> LookupOutcome:
        if natural_key is None or not str(natural_key).strip():
            logger.warning("lookup skipped for blank natural key")
            return NotFound()

        try:
            return self._lookup(str(natural_key).strip())
        except Exception as exc:
            logger.exception("lookup raised unexpectedly", extra={"natural_key": natural_key})
            return LookupFailed(f"{type(exc).__name__}: {exc}")

    @abstractmethod
    def _lookup(self, natural_key: str) -> LookupOutcome:
        raise NotImplementedError

    def close(self) -> None:
        return None


class HttpLookupClient(LookupClient):
    def __init__(
        self,
        base_url: str,
        *,
        identifier_prefix: str,
        lookup_path: str | None = None,
        timeout_seconds: float = 10.0,
        username: str | None = None,
        password: str | None = None,
        identifier_field: str = "AspnID",
        errors_field: str = "Errors",
        session: requests.Session | None = None,
        pool_maxsize: int = 10,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.identifier_prefix = identifier_prefix
        self.lookup_path = lookup_path.strip("/") if lookup_path else None
        self.timeout_seconds = timeout_seconds
        self.identifier_field = identifier_field
        self.errors_field = errors_field
        if session is None:
            session = requests.Session()
            # One pooled connection per worker thread.
            adapter = HTTPAdapter(pool_maxsize=pool_maxsize)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session
        if username and password:
            self.session.auth = (username, password)
            logger.info("lookup client using basic authentication")
        else:
            logger.info("lookup client without authentication")

    def request_target(self, natural_key: str) -> tuple[str, dict[str, str] | None]:
        if self.lookup_path:
            return f"{self.base_url}/{self.lookup_path}", {"key": natural_key}
        return f"{self.base_url}/{quote(natural_key, safe='')}", None

    def _lookup(self, natural_key: str) -> LookupOutcome:
        url, params = self.request_target(natural_key)
        logger.debug("lookup request", extra={"url": url, "natural_key": natural_key})

        try:
            response = self.session.get(url, params=params, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            logger.error("lookup request failed", extra={"natural_key": natural_key, "error": str(exc)})
            return LookupFailed(f"request failed: {exc}")

        if not 200 <= response.status_code < 300:
            logger.warning(
                "lookup returned non-success status",
                extra={"natural_key": natural_key, "status_code": response.status_code},
            )
            return NotFound()

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("lookup response is not valid JSON", extra={"natural_key": natural_key})
            return LookupFailed(f"invalid JSON body: {exc}")

        return self.interpret(natural_key, payload)

    def interpret(self, natural_key: str, payload: object) -> LookupOutcome:
        if not isinstance(payload, dict):
            return LookupFailed(f"unexpected response shape: {type(payload).__name__}")

        errors = payload.get(self.errors_field)
        if errors:
            logger.warning("lookup returned errors", extra={"natural_key": natural_key, "errors": errors})
            return NotFound()

        identifier = normalize_identifier(payload.get(self.identifier_field), self.identifier_prefix)
        if identifier is None:
            logger.info("no identifier found", extra={"natural_key": natural_key})
            return NotFound()

        logger.debug("identifier resolved", extra={"natural_key": natural_key, "identifier": identifier})
        return Resolved(identifier)

    def close(self) -> None:
        self.session.close()


class MockLookupClient(LookupClient):
    """Simulated lookup used for local runs and load rehearsals."""

    def __init__(
        self,
        *,
        identifier_prefix: str,
        success_rate: float = 0.95,
        latency_seconds: tuple[float, float] = (0.05, 0.3),
        seed: int | None = None,
        base_url: str = "",
    ) -> None:
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")
        self.identifier_prefix = identifier_prefix
        self.success_rate = success_rate
        self.latency_seconds = latency_seconds
        self.base_url = base_url.rstrip("/")
        self._random = random.Random(seed)

    def _lookup(self, natural_key: str) -> LookupOutcome:
        low, high = self.latency_seconds
        if high > 0:
            time.sleep(self._random.uniform(low, high))

        logger.debug("mock lookup", extra={"url": f"{self.base_url}/{natural_key}"})
        if self._random.random() < self.success_rate:
            return Resolved(f"{self.identifier_prefix}{self._random.randint(100000, 999999)}")
        return NotFound()


def build_lookup_client(settings: Settings) -> LookupClient:
    if settings.api_use_mock:
        logger.info("using mock lookup client", extra={"base_url": settings.api_base_url})
        return MockLookupClient(
            identifier_prefix=settings.identifier_prefix,
            success_rate=settings.mock_success_rate,
            base_url=settings.api_base_url,
        )

    logger.info("using HTTP lookup client", extra={"base_url": settings.api_base_url})
    return HttpLookupClient(
        settings.api_base_url,
        identifier_prefix=settings.identifier_prefix,
        lookup_path=settings.api_lookup_path,
        timeout_seconds=settings.api_timeout_seconds,
        username=settings.api_username,
        password=settings.api_password,
        identifier_field=settings.api_identifier_field,
        errors_field=settings.api_errors_field,
        pool_maxsize=max(settings.concurrency, 1),
    )
