"""Outbound HTTP for the api_call and webhook nodes."""

from typing import Any, Dict, Optional
import requests

from ..core.exceptions import HttpCallError
from ..core.logging import get_logger

logger = get_logger(__name__)


class HttpClient:
    """Thin wrapper over a ``requests.Session`` sending JSON bodies."""

    def __init__(self, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        json_body: Optional[Any] = None
    ) -> Dict[str, Any]:
        """
        Send a request and return its outcome.

        Non-2xx responses are returned, not raised; only transport failures
        raise.

        Returns:
            Dict with ``status``, ``ok`` and ``data`` (parsed JSON, the raw
            text when the body is not JSON, or None when it is empty)

        Raises:
            HttpCallError: If the request cannot be sent or times out
        """
        request_headers = {"Content-Type": "application/json"}
        request_headers.update(headers or {})

        logger.info(f"{method} {url}")
        try:
            response = self.session.request(
                method,
                url,
                headers=request_headers,
                json=json_body,
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise HttpCallError(f"{method} {url} failed: {str(e)}", url=url, method=method)

        return {
            "status": response.status_code,
            "ok": response.ok,
            "data": self._parse_body(response)
        }

    @staticmethod
    def _parse_body(response: requests.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def close(self) -> None:
        self.session.close()
