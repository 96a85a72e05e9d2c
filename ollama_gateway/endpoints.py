"""Multi-endpoint configuration.

The endpoint string is a comma separated list of ``url`` or
``url_credential`` entries, e.g.::

    http://gpu-a:11434_secret-a, http://gpu-b:11434

Only the first ``_`` of an entry separates the url from its credential.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

DEFAULT_ENDPOINT_URL = "http://localhost:11434"
ENTRY_DELIMITER = ","
CREDENTIAL_SEPARATOR = "_"

logger = logging.getLogger("uvicorn.error")


class ConfigError(ValueError):
    """Raised when an endpoint string yields no usable entries."""


@dataclass(frozen=True, slots=True)
class EndpointConfig:
    url: str
    credential: str | None = None


def _parse_entry(entry: str) -> EndpointConfig:
    url, sep, credential = entry.partition(CREDENTIAL_SEPARATOR)
    if not sep:
        return EndpointConfig(url=entry, credential=None)
    return EndpointConfig(url=url.strip(), credential=credential.strip() or None)


def parse_endpoints(raw: str | None) -> list[EndpointConfig]:
    if not raw or not raw.strip():
        return [EndpointConfig(url=DEFAULT_ENDPOINT_URL)]

    entries = [
        _parse_entry(item.strip())
        for item in raw.split(ENTRY_DELIMITER)
        if item.strip()
    ]
    if not entries:
        raise ConfigError(f"No endpoints found in {raw!r}")
    return entries


class EndpointRegistry:
    def __init__(self, endpoints: Iterable[EndpointConfig]) -> None:
        self._endpoints = tuple(endpoints)

    @classmethod
    def from_string(cls, raw: str | None) -> EndpointRegistry:
        try:
            return cls(parse_endpoints(raw))
        except ConfigError as exc:
            logger.warning(
                "endpoint_config_invalid fallback=%s reason=%s",
                DEFAULT_ENDPOINT_URL,
                exc,
            )
            return cls([EndpointConfig(url=DEFAULT_ENDPOINT_URL)])

    @property
    def endpoints(self) -> tuple[EndpointConfig, ...]:
        return self._endpoints

    def __len__(self) -> int:
        return len(self._endpoints)

    def urls_only(self) -> list[str]:
        return [endpoint.url for endpoint in self._endpoints]

    def credential_for(self, url: str) -> str | None:
        for endpoint in self._endpoints:
            if endpoint.url == url:
                return endpoint.credential
        return None
