"""
Base client class providing common HTTP request functionality.
"""
from typing import Any, Dict, Optional

import requests

from codejudge.config.defaults import CLIENT_DEFAULTS
from codejudge.exceptions import JudgeClientError


class BaseClient:
    """
    Base client class that provides common HTTP request methods.

    All client classes that need to communicate with the codejudge server
    should inherit from this class to ensure consistent error handling
    and request patterns.
    """

    def __init__(self, server_url: str = "http://localhost:8000", timeout: float = CLIENT_DEFAULTS.timeout):
        """
        Initialize the base client.

        Args:
            server_url: The URL of the codejudge server.
            timeout: Seconds to wait for each HTTP response.
        """
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout

    def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.server_url}{endpoint}"
        try:
            response = requests.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise JudgeClientError(
                f"Request to {endpoint} failed: {e}",
                details={"endpoint": endpoint},
            ) from e

        if response.status_code != 200:
            details = {
                "status_code": response.status_code,
                "response_text": response.text,
                "endpoint": endpoint,
            }
            retry_after = response.headers.get("Retry-After")
            if retry_after is not None:
                details["retry_after"] = retry_after
            raise JudgeClientError(
                f"Request to {endpoint} failed with status {response.status_code}",
                details=details,
            )

        return response.json()

    def _post(self, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make a POST request to the server.

        Raises:
            JudgeClientError: If the request fails or returns a non-200 status.
        """
        return self._request("POST", endpoint, json=data or {})

    def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make a GET request to the server.

        Raises:
            JudgeClientError: If the request fails or returns a non-200 status.
        """
        return self._request("GET", endpoint, params=params)

    def _delete(self, endpoint: str) -> Dict[str, Any]:
        return self._request("DELETE", endpoint)
