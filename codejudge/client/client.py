"""
HTTP client for a codejudge server.
"""
from typing import Any, Dict, List, Optional

from codejudge.client.base import BaseClient


class JudgeClient(BaseClient):
    """
    Submit code to a codejudge server.

    Example:
        client = JudgeClient("http://localhost:8000")
        result = client.execute("python", "print(input())", stdin="hi")
        assert result["outcome"] == "success"
    """

    def execute(
        self,
        language: str,
        source_code: str,
        stdin: str = "",
        limits: Optional[Dict[str, int]] = None,
        job_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run code remotely and return the execution result as a dict.

        Pass ``job_id`` to be able to ``cancel`` the job from another thread
        while this call waits.

        Service-side refusals (overload, unsupported language, invalid limits)
        raise ``JudgeClientError``; failures of the submitted code are results.
        """
        payload: Dict[str, Any] = {
            "language": language,
            "source_code": source_code,
            "stdin": stdin,
        }
        if limits:
            payload["limits"] = limits
        if job_id:
            payload["job_id"] = job_id
        return self._post("/execute", payload)

    def cancel(self, job_id: str) -> bool:
        return self._delete(f"/jobs/{job_id}")["cancelled"]

    def languages(self) -> List[Dict[str, Any]]:
        return self._get("/languages")["languages"]

    def status(self) -> Dict[str, Any]:
        return self._get("/status")["data"]

    def health(self) -> Dict[str, Any]:
        return self._get("/health")
