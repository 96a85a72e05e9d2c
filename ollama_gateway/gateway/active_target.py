from __future__ import annotations

from ollama_gateway.endpoints import DEFAULT_ENDPOINT_URL


class ActiveTargetStore:
    """Holds the backend url that outbound calls are addressed to.

    Writes are plain assignments; a request that is already in flight may
    observe a newer selection on its next backend call.
    """

    def __init__(self, url: str = DEFAULT_ENDPOINT_URL) -> None:
        self._url = url

    def get(self) -> str:
        return self._url

    def set(self, url: str) -> None:
        self._url = url
