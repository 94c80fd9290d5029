"""
Pydantic models for API requests and responses.
"""
from pydantic import BaseModel, Field
from typing import Dict, List, Any, Optional


class LimitsModel(BaseModel):
    """Requested ceilings. Each may only tighten the language's default."""
    cpu_ms: Optional[int] = None
    wall_ms: Optional[int] = None
    memory_bytes: Optional[int] = None
    max_processes: Optional[int] = None
    max_output_bytes: Optional[int] = None
    max_file_bytes: Optional[int] = None


class ExecuteRequest(BaseModel):
    language: str
    source_code: str
    stdin: str = ""
    limits: Optional[LimitsModel] = None
    # Caller-chosen id, so the job can be cancelled while this request waits.
    job_id: Optional[str] = Field(None, pattern=r"^[A-Za-z0-9_-]{1,64}$")


class ExecuteResponse(BaseModel):
    status: str
    job_id: str
    language: str
    outcome: str
    phase: str
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    memory_peak_bytes: int = 0
    compile_log: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    message: Optional[str] = None
    user_outcome: bool = True


class CancelResponse(BaseModel):
    status: str
    job_id: str
    cancelled: bool


class LanguageInfo(BaseModel):
    language: str
    version: str
    aliases: List[str]
    compiled: bool
    image: str
    default_limits: Dict[str, int]


class LanguagesResponse(BaseModel):
    status: str
    languages: List[LanguageInfo]


class StatusResponse(BaseModel):
    status: str
    data: Dict[str, Any]


class HealthResponse(BaseModel):
    status: str
    initialized: bool
